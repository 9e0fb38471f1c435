"""Utility helpers for deterministic serialisation of payloads."""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Dict


def canonical_json(payload: Dict[str, Any]) -> str:
    """Return *payload* as JSON text with stable key order and no whitespace."""

    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def b64encode_text(data: bytes) -> str:
    """Encode *data* as standard base64 text."""

    return base64.b64encode(data).decode("ascii")


def b64decode_text(value: str | bytes) -> bytes:
    """Strictly decode base64 text, raising ``ValueError`` on bad input."""

    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise ValueError("payload is not valid base64") from exc


__all__ = ["canonical_json", "b64encode_text", "b64decode_text"]
