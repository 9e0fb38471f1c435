"""The application entry point: one local identity on one relay.

Usage:
    session = SignalSession(identity, relay, {bob_address: bob_public_key_hex})

    @session.on_request
    async def handle(request):
        channel = await request.accept()
        channel.respond("hello")

    channel = await session.initiate(bob_address)
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from nacl.public import PublicKey

from .channel import OpenChannel
from .config import SessionConfig
from .engine import AiortcEngine, EngineFactory
from .envelope import EnvelopeCodec, EnvelopeKind
from .errors import DecryptionError, MalformedEnvelopeError, UnknownPeerError
from .identity import Identity, PeerDirectory, normalize_address
from .negotiation import InboundNegotiation, OutboundNegotiation
from .relay.base import Relay, RelayEvent
from .relay.gateway import RelayGateway
from .utils.callbacks import invoke

logger = logging.getLogger(__name__)

RequestHandler = Callable[[InboundNegotiation], Any]
ChannelHandler = Callable[[OpenChannel], Any]


class SignalSession:
    """Negotiates data channels for *identity* with the peers in a key directory.

    The session never enters a failed state: every error is scoped to the
    attempt that raised it. It keeps a single wildcard subscription for
    records addressed to ``identity.address`` and dispatches decrypted
    requests to the handlers registered with :meth:`on_request`.
    """

    def __init__(
        self,
        identity: Identity,
        relay: Relay,
        peer_public_keys: Mapping,
        *,
        engine_factory: Optional[EngineFactory] = None,
        config: Optional[SessionConfig] = None,
    ):
        self.directory = PeerDirectory(peer_public_keys)
        self.identity = identity
        self.config = config or SessionConfig()
        self._engine_factory = engine_factory or partial(
            AiortcEngine, self.config.ice_servers, self.config.channel_label
        )
        self._gateway = RelayGateway(relay)
        self._request_handlers: List[RequestHandler] = []
        self._channel_handlers: List[ChannelHandler] = []
        self._pending: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False
        self._subscription = self._gateway.subscribe(
            self._on_event, recipient=identity.address
        )

    def __repr__(self) -> str:
        return f"<SignalSession {self.identity.address} peers={len(self.directory)}>"

    @property
    def address(self) -> str:
        return self.identity.address

    @property
    def gateway(self) -> RelayGateway:
        return self._gateway

    # ---- registration ----
    def on_request(self, handler: RequestHandler) -> RequestHandler:
        """Call *handler* with every incoming :class:`InboundNegotiation`."""

        self._request_handlers.append(handler)
        return handler

    def on_channel(self, handler: ChannelHandler) -> ChannelHandler:
        """Call *handler* with every channel that opens, in either direction."""

        self._channel_handlers.append(handler)
        return handler

    def public_key_for(self, peer: str) -> PublicKey:
        return self.directory.public_key_for(peer)

    # ---- outbound ----
    async def initiate(self, peer: str) -> OpenChannel:
        """Open a channel to *peer*.

        Raises :class:`UnknownPeerError` before touching the relay when the
        peer has no directory entry. A second call while an attempt to the
        same peer is pending waits for that attempt instead of starting one.
        """

        public_key = self.public_key_for(peer)
        peer = normalize_address(peer)

        pending = self._pending.get(peer)
        if pending is not None and not pending.done():
            logger.debug("joining pending attempt to %s", peer)
            return await asyncio.shield(pending)

        attempt = OutboundNegotiation(
            self.identity,
            self._gateway,
            peer,
            public_key,
            self._engine_factory(),
            self.config.timeout_s,
            on_channel=self._emit_channel,
        )
        task = asyncio.ensure_future(attempt.run())
        self._pending[peer] = task
        task.add_done_callback(partial(self._attempt_done, peer))
        return await asyncio.shield(task)

    def _attempt_done(self, peer: str, task: asyncio.Task) -> None:
        if self._pending.get(peer) is task:
            del self._pending[peer]
        if not task.cancelled() and task.exception() is not None:
            logger.info("attempt to %s failed: %s", peer, task.exception())

    # ---- inbound ----
    def _on_event(self, event: RelayEvent) -> None:
        try:
            envelope = EnvelopeCodec.open(event.payload, self.identity.encryption_key)
        except DecryptionError:
            return
        except MalformedEnvelopeError as exc:
            logger.warning("ignoring malformed envelope from %s: %s", event.sender, exc)
            return

        if envelope.kind is not EnvelopeKind.REQUEST:
            # Responses are consumed by the outbound attempt's own subscription.
            return

        try:
            public_key = self.public_key_for(event.sender)
        except UnknownPeerError:
            public_key = None
            logger.info("request from %s, who is not in the peer directory", event.sender)

        request = InboundNegotiation(
            self.identity,
            self._gateway,
            normalize_address(event.sender),
            envelope,
            public_key,
            self._engine_factory,
            self.config.timeout_s,
            on_channel=self._emit_channel,
        )
        logger.debug("request received: %r", request)
        if not self._request_handlers:
            logger.debug("no request handler registered; %r left undecided", request)
        for handler in list(self._request_handlers):
            invoke(handler, request, tasks=self._tasks, description="request handler")

    def _emit_channel(self, channel: OpenChannel) -> None:
        for handler in list(self._channel_handlers):
            invoke(handler, channel, tasks=self._tasks, description="channel handler")

    # ---- teardown ----
    async def close(self) -> None:
        """Stop observing the relay and cancel pending attempts and handler tasks."""

        if self._closed:
            return
        self._closed = True
        self._gateway.unsubscribe(self._subscription)
        tasks = list(self._pending.values()) + list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._gateway.close()


__all__ = ["SignalSession", "RequestHandler", "ChannelHandler"]
