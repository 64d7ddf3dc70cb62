from __future__ import annotations

import logging
import os

from app.infra.tenant import get_tenant_id, get_user_id

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s tenant=%(tenant_id)s user=%(user_id)s: %(message)s"


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.tenant_id = get_tenant_id() or "-"
        record.user_id = get_user_id() or "-"
        return True


def configure_logging(level: str | None = None) -> None:
    root = logging.getLogger("app")
    root.setLevel((level or LOG_LEVEL).upper())
    if root.handlers:
        return
    handler = logging.StreamHandler()
    handler.addFilter(RequestContextFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
