"""Encrypted offer/answer exchange over a public ledger relay.

Two parties identified by ledger account addresses open a direct data
channel, using the ledger's ``SignalServer`` event log as their only
rendezvous. Signalling envelopes are sealed for the recipient, so the relay
only ever sees ciphertext.
"""

from .channel import OpenChannel
from .config import SessionConfig
from .engine import AiortcEngine, NegotiationEngine
from .envelope import Candidate, Descriptor, Envelope, EnvelopeCodec, EnvelopeKind
from .errors import (
    DecryptionError,
    DirectoryRequiredError,
    EngineError,
    MalformedEnvelopeError,
    NegotiationStateError,
    NegotiationTimeout,
    SignalError,
    SubmissionError,
    UnknownPeerError,
)
from .identity import Identity, PeerDirectory
from .negotiation import InboundNegotiation, InboundState, OutboundNegotiation, OutboundState
from .relay import InMemoryLedger, Relay, RelayGateway
from .session import SignalSession

__version__ = "0.1.0"

__all__ = [
    "OpenChannel",
    "SessionConfig",
    "AiortcEngine",
    "NegotiationEngine",
    "Candidate",
    "Descriptor",
    "Envelope",
    "EnvelopeCodec",
    "EnvelopeKind",
    "SignalError",
    "DecryptionError",
    "MalformedEnvelopeError",
    "UnknownPeerError",
    "DirectoryRequiredError",
    "SubmissionError",
    "NegotiationTimeout",
    "EngineError",
    "NegotiationStateError",
    "Identity",
    "PeerDirectory",
    "InboundNegotiation",
    "InboundState",
    "OutboundNegotiation",
    "OutboundState",
    "InMemoryLedger",
    "Relay",
    "RelayGateway",
    "SignalSession",
]
