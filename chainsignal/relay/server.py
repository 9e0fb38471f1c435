"""Development relay: the SignalServer contract's semantics over HTTP and WebSocket.

Records are kept in memory and broadcast to every connected client, exactly
like a public event log. The claimed sender is trusted, so this server is
only meant for local development and demos, never as a substitute for a
ledger that authenticates its signers.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Set

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.websockets import WebSocketState

from .. import config
from ..identity import is_null_address, normalize_address
from ..utils.serialization import b64decode_text, b64encode_text

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------------------
# State
# ------------------------------------------------------------------------------
RECORDS: List[Dict[str, Any]] = []
CLIENTS: Set["Client"] = set()


class Client:
    def __init__(self, ws: WebSocket, address: str):
        self.ws = ws
        self.address = address
        self._lock = asyncio.Lock()

    async def send_json(self, obj: dict) -> None:
        async with self._lock:
            if self.ws.application_state == WebSocketState.CONNECTED:
                await self.ws.send_json(obj)


class SubmitRequest(BaseModel):
    sender: str
    recipient: str
    data: str


# ------------------------------------------------------------------------------
# Log
# ------------------------------------------------------------------------------
def validate_submission(sender: str, recipient: str, data: str) -> tuple[str, str, bytes]:
    """Return the normalised ``(sender, recipient, payload)`` or raise ``ValueError``."""

    if is_null_address(recipient):
        raise ValueError("recipient must not be the null address")
    sender = normalize_address(sender)
    recipient = normalize_address(recipient)
    payload = b64decode_text(data)
    if not payload:
        raise ValueError("payload must not be empty")
    return sender, recipient, payload


async def append_record(sender: str, recipient: str, payload: bytes) -> Dict[str, Any]:
    record = {
        "index": len(RECORDS),
        "sender": sender,
        "recipient": recipient,
        "data": b64encode_text(payload),
    }
    RECORDS.append(record)
    logger.debug("record %d: %s -> %s", record["index"], sender, recipient)
    await broadcast({"type": "event", **record})
    return record


async def broadcast(msg: dict) -> None:
    for client in list(CLIENTS):
        try:
            await client.send_json(msg)
        except (WebSocketDisconnect, RuntimeError):
            CLIENTS.discard(client)


def reset_state() -> None:
    """Reset in-memory relay state (used by tests)."""

    RECORDS.clear()
    CLIENTS.clear()


# ------------------------------------------------------------------------------
# App
# ------------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("development relay started; senders are NOT authenticated")
    yield
    for client in list(CLIENTS):
        try:
            await client.ws.close()
        except RuntimeError:
            pass
    CLIENTS.clear()


app = FastAPI(title="chainsignal development relay", version="0.1.0", lifespan=lifespan)


async def receive_object(ws: WebSocket) -> Optional[Dict[str, Any]]:
    """Next frame as a JSON object, or None when the frame is not one."""

    try:
        msg = await ws.receive_json()
    except (KeyError, TypeError, ValueError):
        return None
    return msg if isinstance(msg, dict) else None


@app.websocket("/relay")
async def relay_socket(ws: WebSocket):
    await ws.accept()
    # 1) hello: {"type": "hello", "address": "0x..."}
    hello = await receive_object(ws)
    try:
        if hello is None or hello.get("type") != "hello":
            raise ValueError("expected hello")
        address = normalize_address(hello.get("address"))
    except ValueError:
        await ws.close(code=4000)
        return

    client = Client(ws, address)
    CLIENTS.add(client)
    await client.send_json({"type": "hello", "address": address, "events": len(RECORDS)})

    try:
        while True:
            msg = await receive_object(ws)
            if msg is None:
                logger.warning("closing relay socket of %s after a malformed frame", address)
                await ws.close(code=4000)
                break
            if msg.get("type") != "submit":
                continue
            await handle_submit(client, msg)
    except WebSocketDisconnect:
        pass
    finally:
        CLIENTS.discard(client)


async def handle_submit(client: Client, msg: dict) -> None:
    ack: Dict[str, Any] = {"type": "ack", "id": msg.get("id")}
    try:
        sender, recipient, payload = validate_submission(
            client.address, str(msg.get("recipient", "")), str(msg.get("data", ""))
        )
    except ValueError as exc:
        await client.send_json({**ack, "ok": False, "error": str(exc)})
        return
    record = await append_record(sender, recipient, payload)
    await client.send_json({**ack, "ok": True, "index": record["index"]})


@app.post("/relay/submit")
async def relay_submit(body: SubmitRequest):
    try:
        sender, recipient, payload = validate_submission(body.sender, body.recipient, body.data)
    except ValueError as exc:
        return JSONResponse({"ok": False, "error": str(exc)}, status_code=400)
    record = await append_record(sender, recipient, payload)
    return JSONResponse({"ok": True, "index": record["index"]})


@app.get("/relay/events")
async def relay_events(since: int = 0, recipient: Optional[str] = None):
    records = RECORDS[max(since, 0):]
    if recipient:
        records = [r for r in records if r["recipient"].lower() == recipient.lower()]
    return JSONResponse({"events": records})


@app.get("/relay/status")
async def relay_status():
    return JSONResponse({"events": len(RECORDS), "clients": len(CLIENTS)})


def main(host: Optional[str] = None, port: Optional[int] = None):
    import uvicorn

    if config.UVLOOP:
        import uvloop

        uvloop.install()
    uvicorn.run(app, host=host or config.RELAY_HOST, port=port or config.RELAY_PORT, log_level="info")


if __name__ == "__main__":
    main()
