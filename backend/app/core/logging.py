import logging

from app.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    root = logging.getLogger()
    if getattr(root, "_billing_configured", False):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel((level or settings.LOG_LEVEL or "INFO").upper())
    # stripe logs every request at INFO
    logging.getLogger("stripe").setLevel(logging.WARNING)
    root._billing_configured = True
