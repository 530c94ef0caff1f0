from __future__ import annotations

import re
from typing import Any

_MOBILE_UA = re.compile(r"Android|webOS|iPhone|iPad|iPod|BlackBerry|IEMobile|Opera Mini", re.I)

# Server-only fields that bloat entity payloads on metered links.
HEAVY_FIELDS: frozenset[str] = frozenset(
    {
        "fullDescription",
        "detailedMetadata",
        "auditTrail",
        "systemLogs",
        "debugInfo",
        "internalNotes",
    }
)


def is_mobile_user_agent(user_agent: str | None) -> bool:
    if not user_agent:
        return False
    return _MOBILE_UA.search(user_agent) is not None


def strip_heavy_fields(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: strip_heavy_fields(v) for k, v in value.items() if k not in HEAVY_FIELDS}
    if isinstance(value, list):
        return [strip_heavy_fields(v) for v in value]
    return value


def drop_nulls(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: drop_nulls(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [drop_nulls(v) for v in value]
    return value


def optimize_for_mobile(
    response: dict[str, Any], *, compression_enabled: bool, optimized_at: str
) -> dict[str, Any]:
    """Slim a sync response for a mobile client.

    Heavy fields are removed at any depth; with compression enabled, null
    values are dropped too. The input is not modified.
    """
    out = strip_heavy_fields(response)
    if compression_enabled:
        out = drop_nulls(out)
    out["mobileOptimized"] = True
    out["optimizedAt"] = optimized_at
    return out
