import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

FORMAT = (
    "%(asctime)s | %(levelname)-7s | %(name)s | "
    "%(filename)s:%(lineno)d | %(funcName)s() | %(message)s"
)
formatter = logging.Formatter(FORMAT)

# Set by setup_logging(); per-app handlers are only bound once logging is configured
_LOG_DIR: Optional[Path] = None


def _file_handler(path: Path, level=logging.INFO) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _attach(logger: logging.Logger, handler: logging.Handler) -> None:
    for h in logger.handlers:
        if getattr(h, "baseFilename", None) == getattr(handler, "baseFilename", None):
            return
    logger.addHandler(handler)


_APP_FILE_HANDLERS: dict[str, RotatingFileHandler] = {}


def get_app_handler(name: str) -> Optional[RotatingFileHandler]:
    if _LOG_DIR is None:
        return None
    h = _APP_FILE_HANDLERS.get(name)
    if h:
        return h
    path = _LOG_DIR / "apps" / f"{name}.log"
    h = _file_handler(path)
    _APP_FILE_HANDLERS[name] = h
    return h


def bind_app_logger(name: str) -> logging.Logger:
    """
    Logger for one app's install/update history: appsd.apps.<name>.
    Writes to <log_dir>/apps/<name>.log once setup_logging() has run, and
    always propagates to apps.log.
    """
    app_logger = logging.getLogger(f"appsd.apps.{name}")
    handler = get_app_handler(name)
    if handler is not None:
        _attach(app_logger, handler)
    return app_logger


def setup_logging(log_dir: Path = Path("logs")) -> None:
    global _LOG_DIR

    log_dir.mkdir(parents=True, exist_ok=True)
    (log_dir / "apps").mkdir(exist_ok=True)
    _LOG_DIR = log_dir

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # --- Core ---
    core_handler = _file_handler(log_dir / "core.log")

    core_parent = logging.getLogger("backend.app")
    _attach(core_parent, core_handler)
    core_parent.propagate = False

    appsd_parent = logging.getLogger("appsd")
    _attach(appsd_parent, core_handler)
    appsd_parent.propagate = False

    # --- Apps (install/update lifecycle, catch-all parent) ---
    apps_handler = _file_handler(log_dir / "apps.log", level=logging.DEBUG)

    apps_parent = logging.getLogger("appsd.apps")
    _attach(apps_parent, apps_handler)
    apps_parent.propagate = False

    # --- Uvicorn ---
    uvicorn_handler = _file_handler(log_dir / "uvicorn.log")
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        ul = logging.getLogger(name)
        _attach(ul, uvicorn_handler)
        ul.propagate = False
