"""Per-field rules of the intelligent_merge overlap policy.

Only fields both sides changed since the merge base go through here. Lists
are unioned, objects deep-merged, priorities escalate; anything without a
rule goes to the non-empty side and then to the later writer.
"""

from __future__ import annotations

from collections.abc import Mapping

from zetra_sync.domain.validator import canonical_json

PRIORITY_WEIGHTS: dict[str, int] = {"LOW": 1, "MEDIUM": 2, "HIGH": 3, "CRITICAL": 4}
_DEFAULT_PRIORITY_WEIGHT = 2

# The server stays authoritative for these.
SERVER_AUTHORITY_FIELDS: dict[str, frozenset[str]] = {
    "task": frozenset({"assigneeId"}),
    "client": frozenset({"relationshipManager", "status", "isActive"}),
}

# Free text merged sentence by sentence.
TEXT_FIELDS: dict[str, frozenset[str]] = {
    "task": frozenset({"description"}),
    "document": frozenset({"description"}),
}


def _is_empty(value: object) -> bool:
    return value is None or value == "" or value == [] or value == {}


def union_lists(client: list[object], server: list[object]) -> list[object]:
    out: list[object] = []
    seen: set[bytes] = set()
    for item in [*client, *server]:
        key = canonical_json(item)
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
    return out


def deep_merge(client: Mapping[str, object], server: Mapping[str, object]) -> dict[str, object]:
    # Server values overlay the client's; nulls on the server side do not erase.
    merged = dict(client)
    for key, value in server.items():
        if value is None:
            continue
        if isinstance(value, Mapping):
            existing = merged.get(key)
            merged[key] = deep_merge(existing if isinstance(existing, Mapping) else {}, value)
        else:
            merged[key] = value
    return merged


def higher_priority(client: object, server: object) -> object:
    client_weight = PRIORITY_WEIGHTS.get(str(client).upper(), _DEFAULT_PRIORITY_WEIGHT)
    server_weight = PRIORITY_WEIGHTS.get(str(server).upper(), _DEFAULT_PRIORITY_WEIGHT)
    return client if client_weight >= server_weight else server


def merge_text(client: str, server: str) -> str:
    if client == server:
        return client
    sentences: list[str] = []
    for text in (client, server):
        for part in text.split("."):
            part = part.strip()
            if part and part not in sentences:
                sentences.append(part)
    return ". ".join(sentences) + ("." if sentences else "")


def merge_field(
    entity_type: str,
    field: str,
    client_value: object,
    server_value: object,
    *,
    client_is_later: bool,
) -> object:
    if field in SERVER_AUTHORITY_FIELDS.get(entity_type, frozenset()):
        return client_value if _is_empty(server_value) else server_value
    if _is_empty(client_value):
        return server_value
    if _is_empty(server_value):
        return client_value
    if isinstance(client_value, list) and isinstance(server_value, list):
        return union_lists(client_value, server_value)
    if isinstance(client_value, Mapping) and isinstance(server_value, Mapping):
        return deep_merge(client_value, server_value)
    if field == "priority":
        return higher_priority(client_value, server_value)
    if (
        field in TEXT_FIELDS.get(entity_type, frozenset())
        and isinstance(client_value, str)
        and isinstance(server_value, str)
    ):
        return merge_text(client_value, server_value)
    return client_value if client_is_later else server_value
