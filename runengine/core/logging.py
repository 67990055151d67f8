import logging

from runengine.core.config import get_settings

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    s = get_settings()
    lvl = (level or s.LOG_LEVEL or "INFO").upper()
    logging.basicConfig(level=getattr(logging, lvl, logging.INFO), format=_FORMAT)
    # httpx logs every request at INFO; keep that out of normal runs
    logging.getLogger("httpx").setLevel(logging.WARNING)
