"""Transport engines: who produces descriptors and opens the data channel.

A negotiation only needs a handful of steps from the peer-connection stack,
captured by :class:`NegotiationEngine`. :class:`AiortcEngine` implements them
on aiortc; tests substitute an in-process fake.

aiortc gathers every candidate while setting the local description, so the
descriptor body it returns already lists them. The candidates are still
extracted and sent separately for peers whose stacks trickle.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp

from .envelope import Candidate, Descriptor
from .errors import EngineError

logger = logging.getLogger(__name__)

_ICE_SERVER_FIELDS = ("urls", "username", "credential")


class NegotiationEngine(ABC):
    """One peer connection driven through offer/answer."""

    @abstractmethod
    async def create_offer(self) -> None:
        """Open the outgoing data channel and set the local offer."""

    @abstractmethod
    async def accept_offer(self, descriptor: Descriptor, candidates: Sequence[Candidate]) -> None:
        """Apply a remote offer and its candidates, then set the local answer."""

    @abstractmethod
    async def gather(self) -> Tuple[Descriptor, List[Candidate]]:
        """Wait for candidate gathering to complete and return the local side."""

    @abstractmethod
    async def apply_answer(self, descriptor: Descriptor, candidates: Sequence[Candidate]) -> None:
        """Apply the remote answer and its candidates."""

    @abstractmethod
    async def wait_channel_open(self) -> Any:
        """Return the data channel once it reports open."""

    @abstractmethod
    async def close(self) -> None:
        """Tear down the connection; safe to call more than once."""


EngineFactory = Callable[[], NegotiationEngine]


def candidates_from_sdp(sdp: str) -> List[Candidate]:
    """Extract ``a=candidate`` lines with their media section's mid and index."""

    sections: List[Tuple[Optional[str], List[str]]] = []
    for line in sdp.splitlines():
        line = line.strip()
        if line.startswith("m="):
            sections.append((None, []))
        elif not sections:
            continue
        elif line.startswith("a=mid:"):
            sections[-1] = (line[len("a=mid:"):], sections[-1][1])
        elif line.startswith("a=candidate:"):
            sections[-1][1].append(line[len("a="):])

    candidates = []
    for index, (mid, lines) in enumerate(sections):
        candidates.extend(Candidate(text, mid, index) for text in lines)
    return candidates


def parse_candidate(cand: Candidate):
    """Build an aiortc candidate from its ``candidate:`` line, or raise :class:`EngineError`."""

    if not cand.candidate.startswith("candidate:"):
        raise EngineError(f"not a candidate line: {cand.candidate!r}")
    try:
        ice = candidate_from_sdp(cand.candidate[len("candidate:"):])
    except (AssertionError, IndexError, ValueError) as exc:
        raise EngineError(f"malformed candidate {cand.candidate!r}") from exc
    ice.sdpMid = cand.sdp_mid
    ice.sdpMLineIndex = cand.sdp_mline_index
    return ice


def ice_servers_from_config(servers: Sequence[Dict[str, Any]]) -> List[RTCIceServer]:
    return [
        RTCIceServer(**{k: v for k, v in server.items() if k in _ICE_SERVER_FIELDS})
        for server in servers
    ]


class AiortcEngine(NegotiationEngine):
    def __init__(self, ice_servers: Optional[Sequence[Dict[str, Any]]] = None, label: str = "chat"):
        configuration = RTCConfiguration(iceServers=ice_servers_from_config(ice_servers or []))
        self._pc = RTCPeerConnection(configuration)
        self._label = label
        self._opened: asyncio.Future = asyncio.get_running_loop().create_future()
        self._gathered = asyncio.Event()
        self._closed = False

        @self._pc.on("icegatheringstatechange")
        def on_gathering_state() -> None:
            if self._pc.iceGatheringState == "complete":
                self._gathered.set()

        @self._pc.on("datachannel")
        def on_datachannel(channel) -> None:
            self._watch(channel)

        @self._pc.on("connectionstatechange")
        def on_connection_state() -> None:
            logger.debug("connection state %s", self._pc.connectionState)
            if self._pc.connectionState == "failed" and not self._opened.done():
                self._opened.set_exception(EngineError("peer connection failed"))

    @property
    def peer_connection(self) -> RTCPeerConnection:
        return self._pc

    def _watch(self, channel) -> None:
        if channel.readyState == "open":
            self._resolve(channel)
            return
        channel.once("open", lambda: self._resolve(channel))

    def _resolve(self, channel) -> None:
        if not self._opened.done():
            self._opened.set_result(channel)

    async def _add_candidates(self, descriptor: Descriptor, candidates: Sequence[Candidate]) -> None:
        for cand in candidates:
            # Already part of the descriptor; aioice refuses duplicates after end-of-candidates.
            if "a=" + cand.candidate in descriptor.body:
                continue
            await self._pc.addIceCandidate(parse_candidate(cand))

    async def create_offer(self) -> None:
        try:
            channel = self._pc.createDataChannel(self._label)
            self._watch(channel)
            await self._pc.setLocalDescription(await self._pc.createOffer())
        except (InvalidStateError, InvalidAccessError, ValueError) as exc:
            raise EngineError(f"cannot create offer: {exc}") from exc

    async def accept_offer(self, descriptor: Descriptor, candidates: Sequence[Candidate]) -> None:
        try:
            await self._pc.setRemoteDescription(
                RTCSessionDescription(sdp=descriptor.body, type=descriptor.format)
            )
            await self._add_candidates(descriptor, candidates)
            await self._pc.setLocalDescription(await self._pc.createAnswer())
        except (InvalidStateError, InvalidAccessError, ValueError) as exc:
            raise EngineError(f"cannot accept offer: {exc}") from exc

    async def gather(self) -> Tuple[Descriptor, List[Candidate]]:
        if self._pc.iceGatheringState != "complete":
            await self._gathered.wait()
        local = self._pc.localDescription
        if local is None:
            raise EngineError("no local description to gather for")
        return Descriptor(local.type, local.sdp), candidates_from_sdp(local.sdp)

    async def apply_answer(self, descriptor: Descriptor, candidates: Sequence[Candidate]) -> None:
        if descriptor.format != "answer":
            raise EngineError(f"expected an answer, got {descriptor.format!r}")
        try:
            await self._pc.setRemoteDescription(
                RTCSessionDescription(sdp=descriptor.body, type=descriptor.format)
            )
            await self._add_candidates(descriptor, candidates)
        except (InvalidStateError, InvalidAccessError, ValueError) as exc:
            raise EngineError(f"cannot apply answer: {exc}") from exc

    async def wait_channel_open(self) -> Any:
        return await asyncio.shield(self._opened)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._opened.done():
            self._opened.cancel()
        await self._pc.close()


__all__ = [
    "NegotiationEngine",
    "EngineFactory",
    "AiortcEngine",
    "candidates_from_sdp",
    "parse_candidate",
    "ice_servers_from_config",
]
