import logging
from typing import Optional, Union

from config import config


def _configured_level() -> int:
    monitoring = config.get('monitoring') or {}
    name = str(monitoring.get('log_level', 'INFO')).upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def setup_logging(level: Optional[Union[int, str]] = None, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    The level defaults to ``monitoring.log_level`` from the configuration.
    Safe to call multiple times; subsequent calls are ignored if handlers exist.
    """
    if logging.getLogger().handlers:
        return

    if level is None:
        level = _configured_level()
    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
