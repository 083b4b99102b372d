# storefront/utils/log.py
import logging

from flask import g, has_request_context, request

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [req=%(request_id)s] %(message)s"
HANDLER_NAME = "storefront-console"


class RequestIdFilter(logging.Filter):
    def filter(self, record):
        rid = "-"
        if has_request_context():
            rid = getattr(g, "request_id", None) or request.headers.get("X-Request-Id") or "-"
        record.request_id = rid
        return True


def configure_logging(app):
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logger = logging.getLogger("storefront")
    logger.setLevel(level)

    # create_app may run many times in one process (tests)
    if not any(h.get_name() == HANDLER_NAME for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.set_name(HANDLER_NAME)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(RequestIdFilter())
        logger.addHandler(handler)

    app.logger.setLevel(level)
    return logger
