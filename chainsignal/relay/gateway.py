"""Ordered submission and filtered subscriptions on top of a :class:`Relay`.

One gateway wraps the relay handle of one local identity. Every submission
goes through a FIFO lock so the next one never starts transmitting before the
previous one was accepted; a ledger account with two racing transactions
would otherwise see ordering-dependent rejections (nonce clashes).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Set

from ..errors import SubmissionError
from ..identity import is_null_address, normalize_address
from ..utils.callbacks import invoke
from .base import Listener, Relay, RelayEvent

logger = logging.getLogger(__name__)

Handler = Callable[[RelayEvent], Any]


class Subscription:
    """Handle returned by :meth:`RelayGateway.subscribe`."""

    def __init__(
        self,
        handler: Handler,
        sender: Optional[str],
        recipient: str,
        once: bool,
    ):
        self.handler = handler
        self.sender = sender
        self.recipient = recipient
        self.once = once
        self.active = True
        self.delivered = 0
        self._listener: Optional[Listener] = None

    def __repr__(self) -> str:
        sender = self.sender or "*"
        state = "active" if self.active else "closed"
        return f"<Subscription {sender} -> {self.recipient} once={self.once} {state}>"


class RelayGateway:
    def __init__(self, relay: Relay):
        self._relay = relay
        self._submit_lock = asyncio.Lock()
        self._subscriptions: Set[Subscription] = set()
        self._tasks: Set[asyncio.Task] = set()
        self.submissions = 0

    @property
    def address(self) -> str:
        return self._relay.address

    @property
    def relay(self) -> Relay:
        return self._relay

    # ---- submission ----
    async def submit(self, recipient: str, payload: bytes) -> str:
        """Append one record to the relay, after any earlier submission was accepted.

        Returns the relay's receipt identifier. Raises :class:`SubmissionError`
        without contacting the relay for the null recipient or an empty payload.
        """

        if not isinstance(recipient, str) or is_null_address(recipient):
            raise SubmissionError("recipient must not be the null address")
        if not payload:
            raise SubmissionError("payload must not be empty")
        try:
            recipient = normalize_address(recipient)
        except ValueError as exc:
            raise SubmissionError(str(exc)) from exc

        async with self._submit_lock:
            logger.debug("submitting %d bytes %s -> %s", len(payload), self.address, recipient)
            try:
                receipt = await self._relay.submit(recipient, payload)
            except SubmissionError:
                raise
            except (OSError, asyncio.TimeoutError) as exc:
                raise SubmissionError(f"relay unreachable: {exc}") from exc
            self.submissions += 1
            logger.debug("submission accepted: %s", receipt)
            return receipt

    # ---- subscriptions ----
    def subscribe(
        self,
        handler: Handler,
        *,
        recipient: str,
        sender: Optional[str] = None,
        once: bool = False,
    ) -> Subscription:
        """Register *handler* for records from *sender* (any when ``None``) to *recipient*.

        Coroutine handlers run as tasks owned by the gateway. With ``once`` the
        registration is dropped after the first delivery.
        """

        sub = Subscription(
            handler,
            normalize_address(sender) if sender is not None else None,
            normalize_address(recipient),
            once,
        )
        sub._listener = self._relay.subscribe(
            lambda event: self._deliver(sub, event),
            sender=sub.sender,
            recipient=sub.recipient,
        )
        self._subscriptions.add(sub)
        logger.debug("subscribed %r", sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if not sub.active:
            return
        sub.active = False
        self._subscriptions.discard(sub)
        if sub._listener is not None:
            self._relay.unsubscribe(sub._listener)
        logger.debug("unsubscribed %r", sub)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def _deliver(self, sub: Subscription, event: RelayEvent) -> None:
        if not sub.active:
            return
        if sub.once:
            self.unsubscribe(sub)
        sub.delivered += 1
        invoke(sub.handler, event, tasks=self._tasks, description=f"relay handler for {sub!r}")

    async def close(self) -> None:
        """Drop every registration and cancel in-flight handler tasks."""

        for sub in list(self._subscriptions):
            self.unsubscribe(sub)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["RelayGateway", "Subscription", "Handler"]
