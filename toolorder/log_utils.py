import logging
from typing import Optional

# Whether we've already configured the package logger
_configured = False

PACKAGE_LOGGER = "toolorder"


def configure_logging(level: int = logging.INFO) -> None:
    """Attach a stream handler to the package logger once."""
    global _configured
    if _configured:
        return

    class _Formatter(logging.Formatter):
        def format(self, record: logging.LogRecord) -> str:
            return f"[{record.levelname}] {record.name}: {record.getMessage()}"

    handler = logging.StreamHandler()
    handler.setFormatter(_Formatter())

    root = logging.getLogger(PACKAGE_LOGGER)
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)
    _configured = True


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger below the package logger.

    Library modules never configure handlers themselves; the entry point calls
    ``configure_logging``.
    """
    if not name:
        return logging.getLogger(PACKAGE_LOGGER)
    if name == PACKAGE_LOGGER or name.startswith(PACKAGE_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")
