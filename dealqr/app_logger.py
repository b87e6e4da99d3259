import logging

ROOT_LOGGER = "dealqr"


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Library-friendly: do NOT touch root or add handlers.
    gunicorn (or the test runner) owns the handlers; we only set the level.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    if not any(isinstance(h, logging.NullHandler) for h in logger.handlers):
        logger.addHandler(logging.NullHandler())
    logger.propagate = True
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    base = logging.getLogger(ROOT_LOGGER)
    return base.getChild(name) if name else base


def token_hint(token: str | None) -> str:
    """First characters of a token, safe to put in a log line."""
    if not token:
        return "-"
    return token[:6] + "…"
