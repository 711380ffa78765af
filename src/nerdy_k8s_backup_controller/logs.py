from __future__ import annotations

import logging
from typing import Any, MutableMapping

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class FieldsAdapter(logging.LoggerAdapter):
    """Prefixes every message with ``key=value`` fields and passes them as ``extra``."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        fields = " ".join(f"{key}={value}" for key, value in (self.extra or {}).items() if value)
        kwargs.setdefault("extra", {}).update(self.extra or {})
        if not fields:
            return msg, kwargs
        return f"[{fields}] {msg}", kwargs


def logger_with_fields(logger: logging.Logger, **fields: Any) -> FieldsAdapter:
    return FieldsAdapter(logger, fields)


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.strip().upper(), format=LOG_FORMAT)
