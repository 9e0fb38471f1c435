"""Per-attempt negotiation state machines.

An :class:`OutboundNegotiation` sends one ``request`` envelope to a peer and
waits for the matching ``response``; an :class:`InboundNegotiation` holds a
received request until the application accepts or rejects it. Each attempt
owns its engine and, for outbound attempts, a subscription narrowed to
``(peer -> self)``. Both are released on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, List, Optional

from nacl.public import PublicKey

from .channel import OpenChannel
from .engine import EngineFactory, NegotiationEngine
from .envelope import Candidate, Descriptor, Envelope, EnvelopeCodec, EnvelopeKind
from .errors import (
    DecryptionError,
    EngineError,
    MalformedEnvelopeError,
    NegotiationStateError,
    NegotiationTimeout,
    UnknownPeerError,
)
from .identity import Identity
from .relay.base import RelayEvent
from .relay.gateway import RelayGateway

logger = logging.getLogger(__name__)

ChannelCallback = Callable[[OpenChannel], None]


class OutboundState(str, Enum):
    INIT = "init"
    BUNDLING_LOCAL = "bundling_local"
    ENVELOPE_SENT = "envelope_sent"
    AWAITING_REPLY = "awaiting_reply"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class InboundState(str, Enum):
    OFFER_RECEIVED = "offer_received"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    BUNDLING_LOCAL = "bundling_local"
    ANSWER_SENT = "answer_sent"
    AWAITING_CHANNEL = "awaiting_channel"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class OutboundNegotiation:
    """One attempt to open a channel to *peer*.

    :meth:`run` may be awaited once. It performs exactly one relay
    submission and resolves exactly once: with the :class:`OpenChannel`, or by
    raising :class:`NegotiationTimeout`, :class:`SubmissionError` or
    :class:`EngineError`. The reply timer starts when the relay accepts the
    request; the same deadline bounds the wait for the channel to open.
    """

    def __init__(
        self,
        identity: Identity,
        gateway: RelayGateway,
        peer: str,
        peer_public_key: PublicKey,
        engine: NegotiationEngine,
        timeout_s: float,
        on_channel: Optional[ChannelCallback] = None,
    ):
        self.identity = identity
        self.peer = peer
        self.peer_public_key = peer_public_key
        self.timeout_s = timeout_s
        self.state = OutboundState.INIT
        self.submitted_at: Optional[float] = None
        self._gateway = gateway
        self._engine = engine
        self._on_channel = on_channel
        self._replies: asyncio.Queue = asyncio.Queue()
        self._started = False

    def __repr__(self) -> str:
        return f"<OutboundNegotiation {self.identity.address} -> {self.peer} {self.state.value}>"

    def _set_state(self, state: OutboundState) -> None:
        logger.debug("%r -> %s", self, state.value)
        self.state = state

    async def run(self) -> OpenChannel:
        if self._started:
            raise NegotiationStateError("an outbound attempt can only run once")
        self._started = True

        subscription = None
        try:
            await self._engine.create_offer()
            self._set_state(OutboundState.BUNDLING_LOCAL)
            descriptor, candidates = await self._engine.gather()
            payload = EnvelopeCodec.seal(
                Envelope(EnvelopeKind.REQUEST, descriptor, candidates), self.peer_public_key
            )

            # Registered before submitting so a reply observed right after acceptance is queued.
            subscription = self._gateway.subscribe(
                self._replies.put_nowait, sender=self.peer, recipient=self.identity.address
            )
            self._set_state(OutboundState.ENVELOPE_SENT)
            await self._gateway.submit(self.peer, payload)
            self.submitted_at = time.time()

            self._set_state(OutboundState.AWAITING_REPLY)
            try:
                channel = await asyncio.wait_for(self._await_channel(), self.timeout_s)
            except asyncio.TimeoutError:
                self._set_state(OutboundState.TIMED_OUT)
                raise NegotiationTimeout(
                    f"no response from {self.peer} within {self.timeout_s:g}s"
                ) from None
        except BaseException:
            if self.state is not OutboundState.TIMED_OUT:
                self._set_state(OutboundState.FAILED)
            await self._engine.close()
            raise
        finally:
            if subscription is not None:
                self._gateway.unsubscribe(subscription)

        self._set_state(OutboundState.COMPLETED)
        logger.info("channel open %s -> %s", self.identity.address, self.peer)
        open_channel = OpenChannel(self.peer, channel, self._engine)
        if self._on_channel is not None:
            self._on_channel(open_channel)
        return open_channel

    def _open_reply(self, event: RelayEvent) -> Optional[Envelope]:
        try:
            envelope = EnvelopeCodec.open(event.payload, self.identity.encryption_key)
        except DecryptionError:
            return None
        except MalformedEnvelopeError as exc:
            logger.warning("ignoring malformed reply from %s: %s", event.sender, exc)
            return None
        if envelope.kind is not EnvelopeKind.RESPONSE:
            logger.debug("ignoring %s envelope while awaiting a response", envelope.kind.value)
            return None
        return envelope

    async def _await_channel(self):
        while True:
            envelope = self._open_reply(await self._replies.get())
            if envelope is None:
                continue
            try:
                await self._engine.apply_answer(envelope.descriptor, envelope.candidates)
            except EngineError as exc:
                logger.warning("ignoring response from %s: %s", self.peer, exc)
                continue
            break
        return await self._engine.wait_channel_open()


class InboundNegotiation:
    """A received request, surfaced to the application before any side effect.

    ``public_key`` is ``None`` when the sender is missing from the peer
    directory; such a request can be inspected and rejected, but
    :meth:`accept` raises :class:`UnknownPeerError`.
    """

    def __init__(
        self,
        identity: Identity,
        gateway: RelayGateway,
        sender: str,
        envelope: Envelope,
        public_key: Optional[PublicKey],
        engine_factory: EngineFactory,
        timeout_s: float,
        on_channel: Optional[ChannelCallback] = None,
    ):
        self.identity = identity
        self.sender = sender
        self.descriptor: Descriptor = envelope.descriptor
        self.candidates: List[Candidate] = list(envelope.candidates)
        self.public_key = public_key
        self.received_at = time.time()
        self.timeout_s = timeout_s
        self.state = InboundState.OFFER_RECEIVED
        self._gateway = gateway
        self._engine_factory = engine_factory
        self._on_channel = on_channel

    def __repr__(self) -> str:
        return f"<InboundNegotiation {self.sender} -> {self.identity.address} {self.state.value}>"

    @property
    def decided(self) -> bool:
        return self.state is not InboundState.OFFER_RECEIVED

    def _set_state(self, state: InboundState) -> None:
        logger.debug("%r -> %s", self, state.value)
        self.state = state

    def _decide(self) -> None:
        if self.decided:
            raise NegotiationStateError(f"request from {self.sender} was already {self.state.value}")

    def reject(self) -> None:
        """Decline the request. Nothing is sent; the initiator times out."""

        self._decide()
        self._set_state(InboundState.REJECTED)

    async def accept(self) -> OpenChannel:
        """Answer the request and return the channel once it opens."""

        self._decide()
        if self.public_key is None:
            raise UnknownPeerError(self.sender)
        self._set_state(InboundState.ACCEPTED)

        engine = self._engine_factory()
        try:
            await engine.accept_offer(self.descriptor, self.candidates)
            self._set_state(InboundState.BUNDLING_LOCAL)
            descriptor, candidates = await engine.gather()
            payload = EnvelopeCodec.seal(
                Envelope(EnvelopeKind.RESPONSE, descriptor, candidates), self.public_key
            )
            await self._gateway.submit(self.sender, payload)
            self._set_state(InboundState.ANSWER_SENT)

            self._set_state(InboundState.AWAITING_CHANNEL)
            try:
                channel = await asyncio.wait_for(engine.wait_channel_open(), self.timeout_s)
            except asyncio.TimeoutError:
                self._set_state(InboundState.TIMED_OUT)
                raise NegotiationTimeout(
                    f"channel from {self.sender} did not open within {self.timeout_s:g}s"
                ) from None
        except BaseException:
            if self.state is not InboundState.TIMED_OUT:
                self._set_state(InboundState.FAILED)
            await engine.close()
            raise

        self._set_state(InboundState.COMPLETED)
        logger.info("channel open %s -> %s", self.sender, self.identity.address)
        open_channel = OpenChannel(self.sender, channel, engine)
        if self._on_channel is not None:
            self._on_channel(open_channel)
        return open_channel


__all__ = [
    "OutboundState",
    "InboundState",
    "OutboundNegotiation",
    "InboundNegotiation",
]
