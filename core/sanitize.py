"""
Storage Sanitizer - Make assessment payloads safe to persist as JSON.

Binary content, handles and callables are replaced with a placeholder,
long strings are truncated, embedding vectors are summarised and
non-finite numbers become null. The result is verified with a JSON
round-trip before it is handed to storage.
"""

import io
import json
import math
import logging
from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any

from core.errors import SerializationError

log = logging.getLogger(__name__)

PLACEHOLDER = "[Removed for storage]"
TRUNCATION_MARKER = "... [truncated for storage]"
MAX_STRING_LENGTH = 1000
MAX_EMBEDDING_LENGTH = 100


def sanitize_for_storage(value: Any) -> Any:
    """
    Return a JSON-safe copy of value.

    Sanitizing an already sanitized value returns an equal value.

    Raises:
        SerializationError if the sanitized copy does not survive a JSON round-trip
    """
    clean = _sanitize(value, key=None)
    try:
        restored = json.loads(json.dumps(clean, allow_nan=False))
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Sanitized payload is not JSON serializable: {e}") from e
    if restored != clean:
        raise SerializationError("Sanitized payload changed across a JSON round-trip")
    return clean


def truncate(text: str) -> str:
    if len(text) <= MAX_STRING_LENGTH:
        return text
    if text.endswith(TRUNCATION_MARKER) and len(text) == MAX_STRING_LENGTH + len(TRUNCATION_MARKER):
        return text
    return text[:MAX_STRING_LENGTH] + TRUNCATION_MARKER


def _sanitize(value: Any, key: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        return truncate(value)
    if isinstance(value, (bytes, bytearray, memoryview, io.IOBase)) or callable(value):
        return PLACEHOLDER
    if isinstance(value, Enum):
        return _sanitize(value.value, key)
    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if key == "vector_store":
        return f"[Vector store with {_length(value)} embeddings]"
    if key == "embedding" and isinstance(value, (list, tuple)) and len(value) > MAX_EMBEDDING_LENGTH:
        return f"[Embedding vector, length: {len(value)}]"

    if hasattr(value, "to_dict"):
        return _sanitize(value.to_dict(), key)
    if is_dataclass(value) and not isinstance(value, type):
        return _sanitize(asdict(value), key)
    if isinstance(value, dict):
        return {str(k): _sanitize(v, k) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_sanitize(v, None) for v in value]
    if hasattr(value, "tolist"):
        return _sanitize(value.tolist(), key)

    log.debug(f"Storing {type(value).__name__} as its string form")
    return truncate(str(value))


def _length(value: Any) -> int:
    try:
        return len(value)
    except TypeError:
        return 0
