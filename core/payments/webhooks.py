from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

from core.errors import ErrorCode, ValidationError


def hmac_hexdigest(secret: str, raw_payload: bytes, digestmod: Any = hashlib.sha256) -> str:
    return hmac.new(secret.encode("utf-8"), raw_payload, digestmod).hexdigest()


def signature_matches(expected: str, provided: str | None) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(expected.lower().encode("utf-8"), provided.strip().lower().encode("utf-8"))


def load_json_payload(raw_payload: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as err:
        raise ValidationError(
            "Webhook payload is not valid JSON",
            code=ErrorCode.PAYMENT_WEBHOOK_INVALID,
        ) from err
    if not isinstance(payload, dict):
        raise ValidationError(
            "Webhook payload must be a JSON object",
            code=ErrorCode.PAYMENT_WEBHOOK_INVALID,
        )
    return payload


def as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def as_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)
