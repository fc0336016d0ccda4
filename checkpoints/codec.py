"""Tagged, versioned checkpoint values.

Every value written through this module is a JSON object of the form
``{"kind": <str>, "v": <int>, "data": <payload>}``. Values written before
tagging existed are plain JSON; they decode as version 0 so callers can
branch on the version instead of sniffing fields.
"""

from __future__ import annotations

import json
from typing import Any


def encode_checkpoint(kind: str, version: int, data: Any) -> str:
    return json.dumps({"kind": str(kind), "v": int(version), "data": data}, ensure_ascii=False, sort_keys=True)


def _is_tagged(obj: Any) -> bool:
    return isinstance(obj, dict) and set(obj.keys()) == {"kind", "v", "data"}


def decode_checkpoint(raw: str | None, kind: str) -> tuple[int, Any] | None:
    if not raw:
        return None
    try:
        obj = json.loads(raw)
    except (TypeError, ValueError):
        return None

    if _is_tagged(obj):
        if obj.get("kind") != kind:
            return None
        try:
            version = int(obj.get("v"))
        except (TypeError, ValueError):
            return None
        return (version, obj.get("data"))

    return (0, obj)


def decode_checkpoint_text(raw: str | None, kind: str) -> str | None:
    """Decode a tagged string value, accepting the bare text stored before tagging."""
    decoded = decode_checkpoint(raw, kind)
    if decoded is not None:
        _version, data = decoded
        return data if isinstance(data, str) and data else None
    if raw and not raw.lstrip().startswith("{"):
        return raw
    return None
