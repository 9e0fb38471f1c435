"""Contract for public append/observe logs used as a signalling relay."""

from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

_listener_ids = itertools.count(1)


@dataclass(frozen=True)
class RelayEvent:
    """One observed relay record.

    ``sender`` is authenticated by the relay (it is the transaction signer);
    ``payload`` is opaque ciphertext.
    """

    sender: str
    recipient: str
    payload: bytes
    index: Optional[int] = None


EventCallback = Callable[[RelayEvent], None]


@dataclass(eq=False)
class Listener:
    """A relay-level registration filtered by sender and/or recipient."""

    callback: EventCallback
    sender: Optional[str] = None
    recipient: Optional[str] = None

    def __post_init__(self) -> None:
        self.id = next(_listener_ids)
        self._sender = self.sender.lower() if self.sender else None
        self._recipient = self.recipient.lower() if self.recipient else None

    def matches(self, event: RelayEvent) -> bool:
        if self._sender is not None and event.sender.lower() != self._sender:
            return False
        if self._recipient is not None and event.recipient.lower() != self._recipient:
            return False
        return True


class ListenerRegistry:
    """Bookkeeping shared by relay implementations that fan out locally."""

    def __init__(self) -> None:
        self._listeners: Dict[int, Listener] = {}

    def add(self, callback: EventCallback, sender: Optional[str], recipient: Optional[str]) -> Listener:
        listener = Listener(callback, sender, recipient)
        self._listeners[listener.id] = listener
        return listener

    def remove(self, listener: Listener) -> None:
        self._listeners.pop(listener.id, None)

    def clear(self) -> None:
        self._listeners.clear()

    def matching(self, event: RelayEvent) -> Iterable[Listener]:
        return [l for l in list(self._listeners.values()) if l.matches(event)]

    def dispatch(self, event: RelayEvent) -> None:
        for listener in self.matching(event):
            if listener.id not in self._listeners:
                continue
            try:
                listener.callback(event)
            except Exception:
                logger.exception("relay listener %s failed", listener.id)

    def __contains__(self, listener: object) -> bool:
        return isinstance(listener, Listener) and listener.id in self._listeners

    def __len__(self) -> int:
        return len(self._listeners)


class Relay(ABC):
    """A public log bound to one signing account.

    ``submit`` appends ``(address, recipient, payload)`` and returns once the
    relay has accepted it; it raises
    :class:`~chainsignal.errors.SubmissionError` for the null recipient, an
    empty payload, or when the relay rejects or cannot be reached.
    """

    @property
    @abstractmethod
    def address(self) -> str:
        """Account that signs this relay's submissions."""
        raise NotImplementedError

    @abstractmethod
    async def submit(self, recipient: str, payload: bytes) -> str:
        """Append one record and return a receipt identifier."""
        raise NotImplementedError

    @abstractmethod
    def subscribe(
        self,
        callback: EventCallback,
        *,
        sender: Optional[str] = None,
        recipient: Optional[str] = None,
    ) -> Listener:
        """Deliver every matching record observed from now on to *callback*."""
        raise NotImplementedError

    @abstractmethod
    def unsubscribe(self, listener: Listener) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        """Release network resources, if any."""


__all__ = ["RelayEvent", "EventCallback", "Listener", "ListenerRegistry", "Relay"]
