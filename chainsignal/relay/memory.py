"""Process-local relay log.

Mirrors the behaviour of the on-chain ``SignalServer`` contract closely
enough for tests and simulations: submissions are validated the same way,
accepted after an optional latency, appended to a shared log, and delivered to
matching listeners on the next event-loop iteration.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from ..errors import SubmissionError
from ..identity import is_null_address, normalize_address
from .base import EventCallback, Listener, ListenerRegistry, Relay, RelayEvent

logger = logging.getLogger(__name__)


class InMemoryLedger:
    """Shared append-only log that several :class:`InMemoryRelay` accounts write to."""

    def __init__(self, latency_s: float = 0.0):
        self.latency_s = latency_s
        self.records: List[RelayEvent] = []
        self.offline = False
        self._registry = ListenerRegistry()

    def connect(self, address: str) -> "InMemoryRelay":
        """Return a relay handle that signs submissions as *address*."""

        return InMemoryRelay(self, address)

    async def append(self, sender: str, recipient: str, payload: bytes) -> RelayEvent:
        if self.offline:
            raise SubmissionError("relay unreachable")
        if is_null_address(recipient):
            raise SubmissionError("recipient must not be the null address")
        if not payload:
            raise SubmissionError("payload must not be empty")
        if self.latency_s:
            await asyncio.sleep(self.latency_s)

        event = RelayEvent(sender, recipient, bytes(payload), index=len(self.records))
        self.records.append(event)
        logger.debug("ledger record %d: %s -> %s (%d bytes)", event.index, sender, recipient, len(payload))

        # Deliver after the submitter resumes, like a mined log being observed.
        loop = asyncio.get_running_loop()
        for listener in self._registry.matching(event):
            loop.call_soon(self._deliver, listener, event)
        return event

    def _deliver(self, listener: Listener, event: RelayEvent) -> None:
        if listener not in self._registry:
            return
        try:
            listener.callback(event)
        except Exception:
            logger.exception("ledger listener %s failed", listener.id)

    def listen(
        self,
        callback: EventCallback,
        sender: Optional[str] = None,
        recipient: Optional[str] = None,
    ) -> Listener:
        return self._registry.add(callback, sender, recipient)

    def unlisten(self, listener: Listener) -> None:
        self._registry.remove(listener)

    def submissions_from(self, sender: str) -> List[RelayEvent]:
        return [r for r in self.records if r.sender.lower() == sender.lower()]

    @property
    def listener_count(self) -> int:
        return len(self._registry)


class InMemoryRelay(Relay):
    def __init__(self, ledger: InMemoryLedger, address: str):
        self._ledger = ledger
        self._address = normalize_address(address)
        self._listeners: List[Listener] = []

    @property
    def address(self) -> str:
        return self._address

    @property
    def ledger(self) -> InMemoryLedger:
        return self._ledger

    async def submit(self, recipient: str, payload: bytes) -> str:
        event = await self._ledger.append(self._address, recipient, payload)
        return f"0x{event.index:064x}"

    def subscribe(
        self,
        callback: EventCallback,
        *,
        sender: Optional[str] = None,
        recipient: Optional[str] = None,
    ) -> Listener:
        listener = self._ledger.listen(callback, sender, recipient)
        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: Listener) -> None:
        self._ledger.unlisten(listener)
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def close(self) -> None:
        for listener in list(self._listeners):
            self.unsubscribe(listener)


__all__ = ["InMemoryLedger", "InMemoryRelay"]
