from __future__ import annotations

import hashlib
import json
import math
import re
from typing import Any

VALIDATION_NAMESPACE = "validation"
EVIDENCE_NAMESPACE = "evidence"
NOTIFICATION_NAMESPACE = "notification"

KEY_DIGEST_LENGTH = 32

_SHA256_HEX_RE = re.compile(r"^[0-9a-f]{64}$")


def _digest(namespace: str, *components: str) -> str:
    hasher = hashlib.sha256()
    for part in (namespace, *components):
        encoded = str(part).encode("utf-8")
        hasher.update(f"{len(encoded)}:".encode("ascii"))
        hasher.update(encoded)
    return hasher.hexdigest()


def key_for(deal_id: str, game_id: str, condition_signature: str) -> str:
    digest = _digest(VALIDATION_NAMESPACE, deal_id, game_id, condition_signature)
    return f"{VALIDATION_NAMESPACE}:{digest[:KEY_DIGEST_LENGTH]}"


def key_for_evidence(evidence_hash: str) -> str:
    normalized = str(evidence_hash or "").strip().lower()
    if not _SHA256_HEX_RE.match(normalized):
        raise ValueError(f"evidence hash must be a 64-character sha256 hex digest: {evidence_hash!r}")
    return f"{EVIDENCE_NAMESPACE}:{normalized}"


def key_for_notification(activation_key: str, recipient_id: str, channel: str) -> str:
    digest = _digest(NOTIFICATION_NAMESPACE, activation_key, recipient_id, channel)
    return f"{NOTIFICATION_NAMESPACE}:{digest[:KEY_DIGEST_LENGTH]}"


def key_namespace(key: str) -> str:
    namespace, sep, _ = str(key).partition(":")
    if not sep:
        raise ValueError(f"key has no namespace: {key!r}")
    return namespace


def _canonical_value(value: Any) -> Any:
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return None
    if isinstance(value, dict):
        return {str(k): _canonical_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical_value(v) for v in value]
    return value


def canonical_json(payload: Any) -> str:
    return json.dumps(
        _canonical_value(payload),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
        default=str,
    )


def hash_evidence(payload: Any) -> str:
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
