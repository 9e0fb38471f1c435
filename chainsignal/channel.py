"""Application-facing wrapper around an open data channel."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, List, Optional, Set

from .utils.callbacks import invoke
from .utils.serialization import b64decode_text, b64encode_text

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str], Any]
FileHandler = Callable[[bytes], Any]
CloseHandler = Callable[[], Any]


def encode_frame(message: str, file: Optional[bytes] = None) -> str:
    frame = {"message": message}
    if file is not None:
        frame["file"] = b64encode_text(file)
    return json.dumps(frame)


def decode_frame(data: Any) -> tuple[Optional[str], Optional[bytes]]:
    """Parse one frame into ``(message, file)``; raise ``ValueError`` when invalid."""

    if isinstance(data, bytes):
        data = data.decode("utf-8")
    frame = json.loads(data)
    if not isinstance(frame, dict):
        raise ValueError("frame must be a JSON object")
    message = frame.get("message")
    if message is not None and not isinstance(message, str):
        raise ValueError("message must be a string")
    file = frame.get("file")
    return message, (b64decode_text(file) if file is not None else None)


class OpenChannel:
    """A data channel to ``remote_address`` that finished negotiating.

    *channel* is anything with the event-emitter surface of an aiortc
    ``RTCDataChannel``: ``on(event, callback)``, ``send(data)``, ``close()``
    and ``readyState``. When *engine* is given it is closed together with the
    channel.
    """

    def __init__(self, remote_address: str, channel: Any, engine: Any = None):
        self.remote_address = remote_address
        self.opened_at = time.time()
        self._channel = channel
        self._engine = engine
        self._closed = False
        self._message_handlers: List[MessageHandler] = []
        self._file_handlers: List[FileHandler] = []
        self._close_handlers: List[CloseHandler] = []
        self._tasks: Set[asyncio.Task] = set()

        channel.on("message", self._on_frame)
        channel.on("close", self._on_channel_close)

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<OpenChannel {self.remote_address} {state}>"

    @property
    def closed(self) -> bool:
        return self._closed or getattr(self._channel, "readyState", "open") == "closed"

    def on_message(self, handler: MessageHandler) -> None:
        self._message_handlers.append(handler)

    def on_file(self, handler: FileHandler) -> None:
        self._file_handlers.append(handler)

    def on_close(self, handler: CloseHandler) -> None:
        self._close_handlers.append(handler)

    def respond(self, message: str, file: Optional[bytes] = None) -> None:
        """Send one frame with a text *message* and optional *file* bytes."""

        if self.closed:
            raise ConnectionError(f"channel to {self.remote_address} is closed")
        self._channel.send(encode_frame(message, file))

    def _on_frame(self, data: Any) -> None:
        try:
            message, file = decode_frame(data)
        except (UnicodeDecodeError, ValueError) as exc:
            logger.warning("dropping invalid frame from %s: %s", self.remote_address, exc)
            return
        if message is not None:
            for handler in list(self._message_handlers):
                invoke(handler, message, tasks=self._tasks, description="message handler")
        if file is not None:
            for handler in list(self._file_handlers):
                invoke(handler, file, tasks=self._tasks, description="file handler")

    def _on_channel_close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.debug("channel to %s closed", self.remote_address)
        for handler in list(self._close_handlers):
            invoke(handler, tasks=self._tasks, description="close handler")

    async def close(self) -> None:
        if not self._closed:
            self._channel.close()
            self._on_channel_close()
        if self._engine is not None:
            engine, self._engine = self._engine, None
            await engine.close()


__all__ = ["OpenChannel", "encode_frame", "decode_frame"]
