"""Signalling envelopes and their sealed wire form.

An envelope carries one direction of a negotiation: the session descriptor
produced by the transport engine plus every connectivity candidate gathered
before sending. It is serialised to canonical JSON, sealed for a single
recipient and shipped through the relay as base64 text.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from nacl.public import PrivateKey, PublicKey

from . import crypto_utils
from .errors import DecryptionError, MalformedEnvelopeError
from .utils.serialization import b64decode_text, b64encode_text, canonical_json

ENVELOPE_VERSION = 1


class EnvelopeKind(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"


@dataclass(frozen=True)
class Descriptor:
    """Connection parameters of one side (an SDP offer or answer)."""

    format: str
    body: str

    def to_dict(self) -> Dict[str, str]:
        return {"format": self.format, "body": self.body}


@dataclass(frozen=True)
class Candidate:
    """One gathered network path, shaped like ``RTCIceCandidateInit``."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Candidate":
        candidate = payload.get("candidate")
        sdp_mid = payload.get("sdpMid")
        index = payload.get("sdpMLineIndex")
        if not isinstance(candidate, str):
            raise ValueError("candidate must be a string")
        if sdp_mid is not None and not isinstance(sdp_mid, str):
            raise ValueError("sdpMid must be a string")
        if index is not None and (isinstance(index, bool) or not isinstance(index, int)):
            raise ValueError("sdpMLineIndex must be an integer")
        return cls(candidate, sdp_mid, index)


@dataclass(frozen=True)
class Envelope:
    kind: EnvelopeKind
    descriptor: Descriptor
    candidates: List[Candidate] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "v": ENVELOPE_VERSION,
            "kind": self.kind.value,
            "descriptor": self.descriptor.to_dict(),
            "candidates": [c.to_dict() for c in self.candidates],
        }

    @classmethod
    def from_dict(cls, payload: object) -> "Envelope":
        """Validate a decoded JSON object and build an envelope from it."""

        if not isinstance(payload, dict):
            raise MalformedEnvelopeError("envelope must be a JSON object")
        if payload.get("v", ENVELOPE_VERSION) != ENVELOPE_VERSION:
            raise MalformedEnvelopeError(f"unsupported envelope version {payload.get('v')!r}")

        try:
            kind = EnvelopeKind(payload.get("kind"))
        except ValueError as exc:
            raise MalformedEnvelopeError(f"unknown envelope kind {payload.get('kind')!r}") from exc

        descriptor = payload.get("descriptor")
        if not isinstance(descriptor, dict):
            raise MalformedEnvelopeError("descriptor must be an object")
        fmt, body = descriptor.get("format"), descriptor.get("body")
        if not isinstance(fmt, str) or not isinstance(body, str):
            raise MalformedEnvelopeError("descriptor format and body must be strings")

        raw_candidates = payload.get("candidates", [])
        if not isinstance(raw_candidates, list):
            raise MalformedEnvelopeError("candidates must be a list")
        try:
            candidates = [Candidate.from_dict(c) for c in raw_candidates if isinstance(c, dict)]
        except ValueError as exc:
            raise MalformedEnvelopeError(str(exc)) from exc
        if len(candidates) != len(raw_candidates):
            raise MalformedEnvelopeError("every candidate must be an object")

        return cls(kind, Descriptor(fmt, body), candidates)


class EnvelopeCodec:
    """Stateless transform between :class:`Envelope` and relay payload bytes."""

    @staticmethod
    def seal(envelope: Envelope, recipient_public_key: PublicKey) -> bytes:
        """Serialise *envelope*, encrypt it for the recipient and return transport bytes."""

        plaintext = canonical_json(envelope.to_dict()).encode("utf-8")
        ciphertext = crypto_utils.encrypt_for(recipient_public_key, plaintext)
        return b64encode_text(ciphertext).encode("ascii")

    @staticmethod
    def open(payload: bytes, private_key: PrivateKey) -> Envelope:
        """Decrypt a relay payload addressed to *private_key*.

        Raises :class:`DecryptionError` when the payload was not sealed for this
        key and :class:`MalformedEnvelopeError` when it was, but the plaintext is
        not an envelope.
        """

        try:
            ciphertext = b64decode_text(bytes(payload))
            plaintext = crypto_utils.decrypt_with(private_key, ciphertext)
        except (ValueError, TypeError, crypto_utils.CryptoError) as exc:
            raise DecryptionError("payload is not sealed for this identity") from exc

        try:
            decoded = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise MalformedEnvelopeError("envelope plaintext is not JSON") from exc
        return Envelope.from_dict(decoded)


__all__ = [
    "ENVELOPE_VERSION",
    "EnvelopeKind",
    "Descriptor",
    "Candidate",
    "Envelope",
    "EnvelopeCodec",
]
