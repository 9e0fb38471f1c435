"""Exception taxonomy for relay-based session negotiation.

Every failure raised by the package derives from :class:`SignalError`. Errors
are scoped to a single negotiation attempt; none of them leaves the owning
:class:`~chainsignal.session.SignalSession` in a failed state.
"""

from __future__ import annotations


class SignalError(Exception):
    """Base class for every error raised by chainsignal."""


class DecryptionError(SignalError):
    """The payload was not sealed for our key or is not valid transport text.

    On a shared public relay this is expected noise and is skipped silently.
    """


class MalformedEnvelopeError(SignalError):
    """Decryption succeeded but the plaintext is not a well-formed envelope."""


class UnknownPeerError(SignalError):
    """The peer directory holds no encryption key for an address."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"no public key for peer {address}")


class DirectoryRequiredError(SignalError, ValueError):
    """A session was constructed with an empty peer directory."""

    def __init__(self) -> None:
        super().__init__("peer public key directory is required")


class SubmissionError(SignalError):
    """The relay rejected a submission or could not be reached."""


class NegotiationTimeout(SignalError, TimeoutError):
    """No valid reply or open channel before the attempt's deadline."""


class EngineError(SignalError):
    """The transport engine failed; the attempt's engine state is torn down."""


class NegotiationStateError(SignalError):
    """An operation was invoked in a state that does not allow it."""


__all__ = [
    "SignalError",
    "DecryptionError",
    "MalformedEnvelopeError",
    "UnknownPeerError",
    "DirectoryRequiredError",
    "SubmissionError",
    "NegotiationTimeout",
    "EngineError",
    "NegotiationStateError",
]
