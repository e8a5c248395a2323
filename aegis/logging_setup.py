# aegis/logging_setup.py
import logging
import json
import time
from flask import has_request_context, request

# extras que los servicios pasan con logger.info(..., extra={...})
AUDIT_FIELDS = ("trade_id", "token", "phase", "detector", "provider", "tx_hash")

# rutas de alta frecuencia que no se loguean
QUIET_PATHS = ("/healthz", "/metrics")


class JsonRequestFormatter(logging.Formatter):
    """Una línea JSON por registro, con contexto HTTP y de auditoría si lo hay."""

    def format(self, record):
        if has_request_context() and request.path in QUIET_PATHS:
            return ""

        data = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }

        for key in AUDIT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                data[key] = value if isinstance(value, (int, bool)) else str(value)

        if has_request_context():
            data.update({
                "method": request.method,
                "path": request.path,
                "remote_addr": request.headers.get("X-Forwarded-For", request.remote_addr),
                "request_id": request.headers.get("X-Request-ID"),
            })

        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(data, ensure_ascii=False)


def setup_logging(app=None, level=None):
    level = level or (app.config.get("LOG_LEVEL") if app else None) or "INFO"

    root = logging.getLogger()
    root.setLevel(level)

    # limpia handlers duplicados en reload
    for h in list(root.handlers):
        root.removeHandler(h)

    h = logging.StreamHandler()
    h.setFormatter(JsonRequestFormatter())
    root.addHandler(h)

    # urllib3 loguea cada request al RPC / APIs externas
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    if app:
        app.logger.handlers = [h]
        app.logger.setLevel(level)
