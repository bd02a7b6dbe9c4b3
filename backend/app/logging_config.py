"""Logging setup for the AgroTrust escrow backend."""

import logging
import sys

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once, at application startup."""
    root = logging.getLogger()
    if not any(getattr(h, "_agrotrust", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._agrotrust = True
        root.addHandler(handler)
    root.setLevel(level.upper())
    # Library loggers follow the service level
    logging.getLogger("agrotrust").setLevel(level.upper())


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)


def log_escrow_operation(
    operation: str,
    escrow_id: str | None,
    actor_id: str | None,
    success: bool,
    detail: str | None = None,
) -> None:
    """Log one escrow API operation in a fixed, greppable shape."""
    logger = logging.getLogger("agrotrust.escrow.audit")
    status = "OK" if success else "FAIL"
    message = f"{operation.upper()} | {escrow_id or '-'} | actor={actor_id or 'system'} | {status}"
    if detail:
        message += f" | {detail}"
    if success:
        logger.info(message)
    else:
        logger.warning(message)
