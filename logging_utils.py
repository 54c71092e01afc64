"""Utilities for structured JSON logging with secret redaction."""
from __future__ import annotations

import json
import logging
import os
import re
import threading
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from core.settings import Settings

MAX_IN_LOG_BODY = 2048

_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

_SECRET_SUFFIXES = ("_TOKEN", "_KEY", "_SECRET")
_SECRET_ENV_KEYS = {
    "DATABASE_URL",
    "LEDGER_ENCRYPTION_KEY",
}


def _is_secret_name(name: str) -> bool:
    upper = name.upper()
    return upper.endswith(_SECRET_SUFFIXES) or upper in _SECRET_ENV_KEYS


_SECRET_VALUES_LOCK = threading.Lock()
_SECRET_VALUES = {
    value for name, value in os.environ.items() if value and _is_secret_name(name)
}


def refresh_secret_cache() -> None:
    """Reload the cached secret values from the environment."""

    with _SECRET_VALUES_LOCK:
        _SECRET_VALUES.clear()
        for name, value in os.environ.items():
            if value and _is_secret_name(name):
                _SECRET_VALUES.add(value)


def register_secret(value: Optional[str]) -> None:
    """Redact ``value`` from every subsequent log line."""

    if not value:
        return
    with _SECRET_VALUES_LOCK:
        _SECRET_VALUES.add(value)


def _truncate(value: str) -> str:
    if len(value) <= MAX_IN_LOG_BODY:
        return value
    return value[:MAX_IN_LOG_BODY] + "…(truncated)"


_DSN_PASSWORD_RE = re.compile(r"(postgres(?:ql)?(?:\+\w+)?://[^:/@\s]+:)([^@\s]+)(@)", re.IGNORECASE)


def _redact_text(value: str) -> str:
    if not value:
        return value
    with _SECRET_VALUES_LOCK:
        secrets = list(_SECRET_VALUES)
    for secret in secrets:
        if secret and secret in value:
            value = value.replace(secret, "***")
    value = _DSN_PASSWORD_RE.sub(r"\1***\3", value)
    return value


def _sanitize(value: Any) -> Any:
    if isinstance(value, str):
        return _truncate(_redact_text(value))
    if isinstance(value, bytes):
        text = value.decode("utf-8", errors="replace")
        return _truncate(_redact_text(text))
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): _sanitize(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_sanitize(item) for item in value]
    return value


class JsonFormatter(logging.Formatter):
    """Format log records into JSON with structured metadata."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        message = _truncate(_redact_text(message))
        meta: dict[str, Any] = {}
        extra_meta = getattr(record, "meta", None)
        if isinstance(extra_meta, Mapping):
            meta.update(_sanitize(dict(extra_meta)))
        elif extra_meta is not None:
            meta["extra"] = _sanitize(extra_meta)

        meta.setdefault("logger", record.name)
        meta.setdefault("module", record.module)
        meta.setdefault("pid", os.getpid())

        if record.exc_info:
            try:
                exc_text = self.formatException(record.exc_info)
            except Exception:  # pragma: no cover - defensive
                exc_text = "exception"
            meta["exc_info"] = _truncate(_redact_text(exc_text))

        data = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "msg": message,
            "meta": meta,
        }
        return json.dumps(data, ensure_ascii=False, default=str)


_RESERVED_RECORD_FIELDS = set(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}


def build_log_extra(context: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> dict[str, Any]:
    """Wrap structured fields so they never collide with ``LogRecord`` attributes."""

    meta: dict[str, Any] = {}
    for source in (context or {}, kwargs):
        for key, value in source.items():
            if value is None:
                continue
            name = str(key)
            if name in _RESERVED_RECORD_FIELDS:
                name = f"ctx_{name}"
            meta[name] = value
    return {"extra": {"meta": meta}}


_CONFIGURED = False
_CONFIG_LOCK = threading.Lock()


def _resolve_level(name: str | None) -> int:
    normalized = str(name or "INFO").strip().upper() or "INFO"
    return _LEVEL_MAP.get(normalized, logging.INFO)


def init_logging(
    app_name: str,
    settings: Optional[Settings] = None,
    *,
    level: str | None = None,
    json_logs: bool | None = None,
) -> logging.Logger:
    """Configure root logging according to runtime configuration."""

    global _CONFIGURED, MAX_IN_LOG_BODY

    refresh_secret_cache()
    if settings is not None:
        MAX_IN_LOG_BODY = int(settings.MAX_IN_LOG_BODY)
        register_secret(settings.LEDGER_ENCRYPTION_KEY)
        register_secret(settings.DATABASE_URL)
    effective_level = _resolve_level(level or (settings.LOG_LEVEL if settings else None))
    if json_logs is None:
        use_json = bool(settings.LOG_JSON) if settings is not None else True
    else:
        use_json = bool(json_logs)

    with _CONFIG_LOCK:
        if not _CONFIGURED:
            handler = logging.StreamHandler()
            if use_json:
                handler.setFormatter(JsonFormatter())
            else:
                handler.setFormatter(
                    logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
                )
            root = logging.getLogger()
            root.handlers.clear()
            root.addHandler(handler)
            root.setLevel(effective_level)
            logging.captureWarnings(True)
            for noisy in ("uvicorn", "psycopg", "psycopg.pool", "sqlalchemy", "pydantic"):
                logging.getLogger(noisy).setLevel(logging.WARNING)
            _CONFIGURED = True
        else:
            logging.getLogger().setLevel(effective_level)

    logger = logging.getLogger(app_name)
    if settings is not None:
        logger.log(
            max(logging.INFO, effective_level),
            "configuration summary",
            extra={"meta": settings.configuration_summary()},
        )
    return logger


__all__ = [
    "JsonFormatter",
    "build_log_extra",
    "init_logging",
    "refresh_secret_cache",
    "register_secret",
]
