# backend/app/apps/lifecycle.py
from __future__ import annotations

from enum import IntEnum
from typing import Dict, FrozenSet, TypeVar

from .errors import InvalidTransitionError


class InstallState(IntEnum):
    """
    Coarse install lifecycle of an app.

    - INSTALLED: steady state. The app is on the device (also the value a
      preinstalled app is registered with).
    - INSTALLING: package is being downloaded and unpacked.
    - PENDING: record registered, download not started yet.
    """

    INSTALLED = 0
    INSTALLING = 1
    PENDING = 2


class UpdateState(IntEnum):
    """
    Coarse update lifecycle of an app.

    - IDLE: steady state, no update known or in progress.
    - AVAILABLE: the update source advertises a different version.
    - DOWNLOADING: the new package is being fetched.
    - UPDATING: the new package is being swapped in.
    """

    IDLE = 0
    AVAILABLE = 1
    DOWNLOADING = 2
    UPDATING = 3


class AppStatus(IntEnum):
    ENABLED = 0
    DISABLED = 1


INSTALL_TRANSITIONS: Dict[InstallState, FrozenSet[InstallState]] = {
    InstallState.PENDING: frozenset({InstallState.INSTALLING}),
    InstallState.INSTALLING: frozenset({InstallState.INSTALLED}),
    # reinstall
    InstallState.INSTALLED: frozenset({InstallState.PENDING}),
}

UPDATE_TRANSITIONS: Dict[UpdateState, FrozenSet[UpdateState]] = {
    UpdateState.IDLE: frozenset({UpdateState.AVAILABLE, UpdateState.DOWNLOADING}),
    # IDLE again when the source goes back to the installed version
    UpdateState.AVAILABLE: frozenset({UpdateState.DOWNLOADING, UpdateState.IDLE}),
    UpdateState.DOWNLOADING: frozenset({UpdateState.UPDATING}),
    UpdateState.UPDATING: frozenset({UpdateState.IDLE}),
}

S = TypeVar("S", InstallState, UpdateState)


def _advance(table: Dict[S, FrozenSet[S]], current: S, target: S) -> S:
    if target not in table.get(current, frozenset()):
        raise InvalidTransitionError(
            f"{type(current).__name__}: {current.name} -> {target.name} is not allowed"
        )
    return target


def advance_install(current: InstallState, target: InstallState) -> InstallState:
    return _advance(INSTALL_TRANSITIONS, current, target)


def advance_update(current: UpdateState, target: UpdateState) -> UpdateState:
    return _advance(UPDATE_TRANSITIONS, current, target)
