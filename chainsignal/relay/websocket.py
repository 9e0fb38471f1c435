"""Client for the development relay server (:mod:`chainsignal.relay.server`)."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import websockets

from .. import config
from ..errors import SubmissionError
from ..identity import is_null_address, normalize_address
from ..utils.serialization import b64decode_text, b64encode_text
from .base import EventCallback, Listener, ListenerRegistry, Relay, RelayEvent

logger = logging.getLogger(__name__)


class WebSocketRelay(Relay):
    """Relay handle over one WebSocket connection to the development server.

    Call :meth:`connect` (or use ``async with``) before submitting.
    """

    def __init__(
        self,
        address: str,
        url: Optional[str] = None,
        *,
        proxy_url: Optional[str] = None,
        ack_timeout_s: float = 30.0,
    ):
        self._address = normalize_address(address)
        self._url = (url or config.RELAY_URL).rstrip("/")
        self._proxy_url = proxy_url if proxy_url is not None else config.PROXY
        self._ack_timeout_s = ack_timeout_s
        self._registry = ListenerRegistry()
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._ws = None
        self._reader: Optional[asyncio.Task] = None

    @property
    def address(self) -> str:
        return self._address

    async def __aenter__(self) -> "WebSocketRelay":
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def connect(self) -> None:
        connect_kwargs: Dict[str, Any] = {}
        if self._proxy_url:
            import python_socks.asyncio

            parsed = urlparse(self._url)
            dest_port = parsed.port or (443 if parsed.scheme == "wss" else 80)
            proxy = python_socks.asyncio.Proxy.from_url(self._proxy_url)
            connect_kwargs["sock"] = await proxy.connect(dest_host=parsed.hostname, dest_port=dest_port)

        try:
            self._ws = await websockets.connect(self._url + "/relay", max_size=None, **connect_kwargs)
            await self._ws.send(json.dumps({"type": "hello", "address": self._address}))
            hello = json.loads(await self._ws.recv())
        except (OSError, websockets.WebSocketException) as exc:
            raise SubmissionError(f"relay unreachable: {exc}") from exc
        except ValueError as exc:
            raise SubmissionError("relay sent a non-JSON hello") from exc
        if not isinstance(hello, dict) or hello.get("type") != "hello":
            raise SubmissionError("relay did not complete the hello exchange")
        self._reader = asyncio.get_running_loop().create_task(self._read_loop())

    async def _read_loop(self) -> None:
        try:
            async for data in self._ws:
                try:
                    msg = json.loads(data)
                except ValueError:
                    logger.warning("dropping non-JSON relay frame")
                    continue
                self.handle_frame(msg)
        except websockets.ConnectionClosed:
            pass
        finally:
            for fut in self._pending.values():
                if not fut.done():
                    fut.set_exception(SubmissionError("relay connection closed"))
            self._pending.clear()

    def handle_frame(self, msg: Dict[str, Any]) -> None:
        """Route one server frame: acks resolve submissions, events fan out."""

        if not isinstance(msg, dict):
            logger.warning("dropping relay frame that is not an object")
            return
        typ = msg.get("type")
        if typ == "ack":
            fut = self._pending.pop(msg.get("id"), None)
            if fut is None or fut.done():
                return
            if msg.get("ok"):
                fut.set_result(msg.get("index"))
            else:
                fut.set_exception(SubmissionError(msg.get("error") or "rejected by relay"))
        elif typ == "event":
            try:
                event = RelayEvent(
                    sender=msg["sender"],
                    recipient=msg["recipient"],
                    payload=b64decode_text(msg["data"]),
                    index=msg.get("index"),
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("dropping malformed relay frame")
                return
            self._registry.dispatch(event)

    async def submit(self, recipient: str, payload: bytes) -> str:
        if is_null_address(recipient):
            raise SubmissionError("recipient must not be the null address")
        if not payload:
            raise SubmissionError("payload must not be empty")
        if self._ws is None:
            raise SubmissionError("relay is not connected")

        msg_id = next(self._ids)
        fut = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = fut
        frame = {"type": "submit", "id": msg_id, "recipient": recipient, "data": b64encode_text(payload)}
        try:
            await self._ws.send(json.dumps(frame))
            index = await asyncio.wait_for(fut, self._ack_timeout_s)
        except websockets.ConnectionClosed as exc:
            raise SubmissionError("relay connection closed") from exc
        finally:
            self._pending.pop(msg_id, None)
        return str(index)

    def subscribe(
        self,
        callback: EventCallback,
        *,
        sender: Optional[str] = None,
        recipient: Optional[str] = None,
    ) -> Listener:
        return self._registry.add(callback, sender, recipient)

    def unsubscribe(self, listener: Listener) -> None:
        self._registry.remove(listener)

    async def close(self) -> None:
        self._registry.clear()
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None


__all__ = ["WebSocketRelay"]
