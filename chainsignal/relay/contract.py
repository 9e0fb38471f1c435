"""Relay backed by the ``SignalServer`` smart contract.

The contract is a pass-through log::

    function sendSignal(address _recipient, bytes _encryptedData)
    event SignalSent(address indexed sender, address indexed recipient, bytes encryptedData)

``sender`` is ``msg.sender``, so the ledger itself authenticates it.
Submissions are signed locally with ``eth_account`` and considered accepted
once their receipt reports success. Events are observed by polling
``eth_getLogs`` from the block current when the first listener registered.

Usage:
    relay = ContractRelay(
        contract_address="0x...",
        rpc_url="http://localhost:8545",
        private_key="0x...",
    )
    receipt = await relay.submit(peer_address, payload)
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import Web3Exception

from .. import config
from ..errors import SubmissionError
from ..identity import is_null_address, normalize_address
from .base import EventCallback, Listener, ListenerRegistry, Relay, RelayEvent

logger = logging.getLogger(__name__)


SIGNAL_SERVER_ABI: List[Dict[str, Any]] = [
    {
        "type": "function",
        "name": "sendSignal",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "_recipient", "type": "address"},
            {"name": "_encryptedData", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "type": "event",
        "name": "SignalSent",
        "anonymous": False,
        "inputs": [
            {"name": "sender", "type": "address", "indexed": True},
            {"name": "recipient", "type": "address", "indexed": True},
            {"name": "encryptedData", "type": "bytes", "indexed": False},
        ],
    },
]


def load_abi(path: str | Path) -> List[Dict[str, Any]]:
    """Load a contract ABI from a JSON file (bare list or build artifact)."""

    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    abi = data.get("abi") if isinstance(data, dict) else data
    if not isinstance(abi, list):
        raise ValueError(f"no ABI found in {path}")
    return abi


def event_from_log(log: Mapping[str, Any]) -> RelayEvent:
    """Convert a decoded ``SignalSent`` log into a :class:`RelayEvent`."""

    args = log["args"]
    return RelayEvent(
        sender=Web3.to_checksum_address(args["sender"]),
        recipient=Web3.to_checksum_address(args["recipient"]),
        payload=bytes(args["encryptedData"]),
        index=log.get("blockNumber"),
    )


class ContractRelay(Relay):
    def __init__(
        self,
        private_key: str,
        contract_address: Optional[str] = None,
        rpc_url: Optional[str] = None,
        *,
        abi: Optional[List[Dict[str, Any]]] = None,
        chain_id: Optional[int] = None,
        poll_interval_s: Optional[float] = None,
        receipt_timeout_s: Optional[float] = None,
        gas_limit: Optional[int] = None,
    ):
        contract_address = contract_address or config.CONTRACT_ADDRESS
        if not contract_address:
            raise ValueError("ContractRelay: missing CONTRACT_ADDRESS")

        self._account = Account.from_key(private_key)
        self._w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url or config.RPC_URL))
        self._contract = self._w3.eth.contract(
            address=normalize_address(contract_address),
            abi=abi or SIGNAL_SERVER_ABI,
        )
        self._chain_id = chain_id
        self._poll_interval_s = poll_interval_s or config.RELAY_POLL_INTERVAL_S
        self._receipt_timeout_s = receipt_timeout_s or config.RELAY_RECEIPT_TIMEOUT_S
        self._gas_limit = gas_limit

        self._registry = ListenerRegistry()
        self._cursor: Optional[int] = None
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def address(self) -> str:
        return self._account.address

    # ---- write ----
    async def submit(self, recipient: str, payload: bytes) -> str:
        if is_null_address(recipient):
            raise SubmissionError("recipient must not be the null address")
        if not payload:
            raise SubmissionError("payload must not be empty")

        try:
            if self._chain_id is None:
                self._chain_id = await self._w3.eth.chain_id
            params: Dict[str, Any] = {
                "from": self.address,
                "chainId": self._chain_id,
                "nonce": await self._w3.eth.get_transaction_count(self.address, "pending"),
            }
            if self._gas_limit:
                params["gas"] = self._gas_limit
            tx = await self._contract.functions.sendSignal(
                normalize_address(recipient), bytes(payload)
            ).build_transaction(params)

            signed = self._account.sign_transaction(tx)
            tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._receipt_timeout_s
            )
        except (Web3Exception, ValueError, OSError, asyncio.TimeoutError) as exc:
            raise SubmissionError(f"sendSignal failed: {exc}") from exc

        if receipt["status"] != 1:
            raise SubmissionError(f"sendSignal reverted: {tx_hash.hex()}")
        return tx_hash.hex()

    # ---- observe ----
    def subscribe(
        self,
        callback: EventCallback,
        *,
        sender: Optional[str] = None,
        recipient: Optional[str] = None,
    ) -> Listener:
        listener = self._registry.add(callback, sender, recipient)
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.get_running_loop().create_task(self._poll())
        return listener

    def unsubscribe(self, listener: Listener) -> None:
        self._registry.remove(listener)

    async def poll_once(self) -> int:
        """Fetch and dispatch logs mined since the last poll; return how many."""

        latest = await self._w3.eth.block_number
        if self._cursor is None:
            self._cursor = latest
        if latest < self._cursor:
            return 0
        logs = await self._contract.events.SignalSent.get_logs(
            from_block=self._cursor, to_block=latest
        )
        self._cursor = latest + 1
        return self.dispatch_logs(logs)

    def dispatch_logs(self, logs: Iterable[Mapping[str, Any]]) -> int:
        """Deliver decoded logs to listeners, skipping malformed ones; return how many."""

        delivered = 0
        for log in logs:
            try:
                event = event_from_log(log)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("dropping malformed SignalSent log: %s", exc)
                continue
            self._registry.dispatch(event)
            delivered += 1
        return delivered

    async def _poll(self) -> None:
        while True:
            try:
                await self.poll_once()
            except (Web3Exception, ValueError, OSError, asyncio.TimeoutError) as exc:
                logger.warning("SignalSent poll failed, retrying: %s", exc)
            except Exception:
                logger.exception("SignalSent poll failed unexpectedly, retrying")
            await asyncio.sleep(self._poll_interval_s)

    async def close(self) -> None:
        self._registry.clear()
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        await self._w3.provider.disconnect()


__all__ = ["SIGNAL_SERVER_ABI", "load_abi", "event_from_log", "ContractRelay"]
