"""
Payload compression for large audit fields.

A compressed field is replaced by an envelope:

    {"_compressed": true, "encoding": "gzip+base64",
     "originalSize": <bytes>, "data": "<base64>"}
"""

import base64
import gzip
import json
from typing import Any, Dict, Tuple

from .exceptions import CompressionError

ENCODING = "gzip+base64"


def _serialize(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def is_envelope(value: Any) -> bool:
    return isinstance(value, dict) and value.get("_compressed") is True and value.get("encoding") == ENCODING


def compress_value(value: Any) -> Dict[str, Any]:
    try:
        raw = _serialize(value)
        data = base64.b64encode(gzip.compress(raw)).decode("ascii")
    except (TypeError, ValueError, OSError) as e:
        raise CompressionError("Failed to compress value", details={"error": str(e)}) from e
    return {"_compressed": True, "encoding": ENCODING, "originalSize": len(raw), "data": data}


def decompress_value(value: Any) -> Any:
    """Return the original value for an envelope, anything else unchanged."""
    if not is_envelope(value):
        return value
    try:
        raw = gzip.decompress(base64.b64decode(value["data"]))
        return json.loads(raw.decode("utf-8"))
    except (ValueError, OSError, KeyError) as e:
        raise CompressionError("Failed to decompress value", details={"error": str(e)}) from e


def maybe_compress(value: Any, threshold_bytes: int) -> Tuple[Any, bool]:
    """
    Compress ``value`` when its JSON form exceeds the threshold.

    Returns:
        (stored value, whether it was compressed)
    """
    if value is None or is_envelope(value):
        return value, False
    try:
        size = len(_serialize(value))
    except (TypeError, ValueError) as e:
        raise CompressionError("Value is not serializable", details={"error": str(e)}) from e
    if size <= threshold_bytes:
        return value, False
    return compress_value(value), True
