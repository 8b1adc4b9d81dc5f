# backend/app/apps/api/router.py
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ...config import get_settings
from ..errors import (
    AppAlreadyInstalledError,
    AppConflictError,
    AppNotFoundError,
    AppsError,
    InvalidManifestError,
    NoUpdateSourceError,
)
from ..models import (
    AppRecord,
    AppsEvent,
    InstallRequest,
    OperationResult,
    SetAutoDownloadRequest,
    SetEnabledRequest,
)
from ..service import AppsService

router = APIRouter(prefix="/api/apps", tags=["apps"])
logger = logging.getLogger("appsd.api")

# ----------------------------
# Singleton
# ----------------------------

_apps_service: AppsService | None = None


def get_apps_service() -> AppsService:
    global _apps_service
    if _apps_service is None:
        _apps_service = AppsService(get_settings())
    return _apps_service


def _http_error(exc: AppsError) -> HTTPException:
    if isinstance(exc, AppNotFoundError):
        status = 404
    elif isinstance(exc, NoUpdateSourceError):
        status = 400
    elif isinstance(exc, (AppConflictError, AppAlreadyInstalledError)):
        status = 409
    elif isinstance(exc, InvalidManifestError):
        status = 422
    else:
        status = 500
    return HTTPException(status_code=status, detail={"code": exc.code, "message": str(exc)})


# ----------------------------
# Queries
# ----------------------------

@router.get("", response_model=List[AppRecord])
def api_get_all(svc: AppsService = Depends(get_apps_service)) -> List[AppRecord]:
    """Every tracked app, in registration order."""
    return svc.get_all()


@router.get("/events", response_model=List[AppsEvent])
def api_recent_events(
    name: Optional[str] = Query(default=None, description="Only events for this app"),
    svc: AppsService = Depends(get_apps_service),
) -> List[AppsEvent]:
    return svc.events.recent(name)


@router.get("/{name}", response_model=AppRecord)
def api_get(name: str, svc: AppsService = Depends(get_apps_service)) -> AppRecord:
    try:
        return svc.get(name)
    except AppNotFoundError as e:
        logger.info(f"GET unknown app: {name}")
        raise _http_error(e)


# ----------------------------
# Install / update / uninstall
# ----------------------------

@router.post("/install", response_model=OperationResult)
def api_install(req: InstallRequest, svc: AppsService = Depends(get_apps_service)) -> OperationResult:
    """
    Install a packaged app from its mini-manifest URL.

    Example:
      curl -X POST http://localhost:9001/api/apps/install \
        -H 'Content-Type: application/json' \
        -d '{"url": "http://127.0.0.1:8081/tests/fixtures/packaged_app_manifest.json"}'
    """
    logger.info(f"POST /install url={req.url} force={req.force}")
    try:
        result = svc.install(req.url, force=req.force)
    except AppsError as e:
        logger.warning(f"Install from {req.url} rejected: {e}")
        raise _http_error(e)
    if not result.ok:
        logger.warning(f"Install from {req.url} failed: {result.error}")
    return result


@router.post("/install-pwa", response_model=OperationResult)
def api_install_pwa(req: InstallRequest, svc: AppsService = Depends(get_apps_service)) -> OperationResult:
    logger.info(f"POST /install-pwa url={req.url} force={req.force}")
    try:
        return svc.install_pwa(req.url, force=req.force)
    except AppsError as e:
        logger.warning(f"PWA install from {req.url} rejected: {e}")
        raise _http_error(e)


@router.post("/{name}/check-update", response_model=OperationResult)
def api_check_update(name: str, svc: AppsService = Depends(get_apps_service)) -> OperationResult:
    try:
        return svc.check_for_update(name)
    except AppsError as e:
        raise _http_error(e)


@router.post("/{name}/update", response_model=OperationResult)
def api_update(name: str, svc: AppsService = Depends(get_apps_service)) -> OperationResult:
    logger.info(f"POST /{name}/update")
    try:
        return svc.update(name)
    except AppsError as e:
        logger.warning(f"Update of {name} rejected: {e}")
        raise _http_error(e)


@router.post("/{name}/uninstall", response_model=OperationResult)
def api_uninstall(name: str, svc: AppsService = Depends(get_apps_service)) -> OperationResult:
    logger.info(f"POST /{name}/uninstall")
    try:
        return svc.uninstall(name)
    except AppsError as e:
        raise _http_error(e)


# ----------------------------
# Settings
# ----------------------------

@router.post("/{name}/enabled", response_model=AppRecord)
def api_set_enabled(
    name: str,
    req: SetEnabledRequest,
    svc: AppsService = Depends(get_apps_service),
) -> AppRecord:
    try:
        return svc.set_enabled(name, req.enabled)
    except AppsError as e:
        raise _http_error(e)


@router.post("/{name}/auto-download", response_model=AppRecord)
def api_set_auto_download(
    name: str,
    req: SetAutoDownloadRequest,
    svc: AppsService = Depends(get_apps_service),
) -> AppRecord:
    try:
        return svc.set_auto_download(name, req.allowed)
    except AppsError as e:
        raise _http_error(e)
