import asyncio
import itertools
from typing import List, Optional

import pytest
from pyee import EventEmitter

from chainsignal.engine import NegotiationEngine
from chainsignal.envelope import Candidate, Descriptor
from chainsignal.errors import EngineError
from chainsignal.identity import Identity
from chainsignal.relay.memory import InMemoryLedger


class LoopbackChannel(EventEmitter):
    """In-process stand-in for an aiortc ``RTCDataChannel``."""

    def __init__(self):
        super().__init__()
        self.readyState = "connecting"
        self.peer: Optional["LoopbackChannel"] = None
        self.sent: List[str] = []

    def open(self):
        if self.readyState == "connecting":
            self.readyState = "open"
            self.emit("open")

    def send(self, data):
        if self.readyState != "open":
            raise ConnectionError("channel is not open")
        self.sent.append(data)
        if self.peer is not None:
            asyncio.get_running_loop().call_soon(self.peer.emit, "message", data)

    def close(self):
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")
        if self.peer is not None:
            self.peer.close()


def channel_pair():
    a, b = LoopbackChannel(), LoopbackChannel()
    a.peer, b.peer = b, a
    a.open()
    b.open()
    return a, b


class LoopbackEngine(NegotiationEngine):
    """Engine that pairs offerer and answerer through a shared :class:`LoopbackNetwork`.

    Descriptors carry a token naming the offer; applying the matching answer
    opens both channels on the next loop iteration.
    """

    def __init__(self, network, *, never_open=False, gather_delay=0.0, fail_on=None):
        self.network = network
        self.never_open = never_open
        self.gather_delay = gather_delay
        self.fail_on = fail_on
        self.token = None
        self.local: Optional[Descriptor] = None
        self.channel = LoopbackChannel()
        self.answers_applied = 0
        self.closed = False
        self._opened = None

    def _check(self, step):
        if self.fail_on == step:
            raise EngineError(f"{step} failed")

    def _future(self):
        if self._opened is None:
            self._opened = asyncio.get_running_loop().create_future()
        return self._opened

    def _resolve(self):
        self.channel.open()
        fut = self._future()
        if not fut.done():
            fut.set_result(self.channel)

    async def create_offer(self):
        self._check("create_offer")
        self._future()
        self.token = next(self.network.tokens)
        self.network.offers[self.token] = self
        self.local = Descriptor("offer", f"loopback-offer {self.token}")

    async def accept_offer(self, descriptor, candidates):
        self._check("accept_offer")
        self._future()
        if descriptor.format != "offer" or not descriptor.body.startswith("loopback-offer "):
            raise EngineError("not a loopback offer")
        self.token = int(descriptor.body.split()[1])
        if self.token not in self.network.offers:
            raise EngineError("unknown offer")
        self.network.answers[self.token] = self
        self.local = Descriptor("answer", f"loopback-answer {self.token}")

    async def gather(self):
        self._check("gather")
        if self.gather_delay:
            await asyncio.sleep(self.gather_delay)
        candidate = Candidate(f"candidate:1 1 udp 2130706431 127.0.0.1 {40000 + self.token} typ host", "0", 0)
        return self.local, [candidate]

    async def apply_answer(self, descriptor, candidates):
        self._check("apply_answer")
        if descriptor.body != f"loopback-answer {self.token}":
            raise EngineError("answer does not match this offer")
        answerer = self.network.answers.get(self.token)
        if answerer is None:
            raise EngineError("no answering engine")
        self.answers_applied += 1
        if self.never_open or answerer.never_open:
            return
        self.channel.peer, answerer.channel.peer = answerer.channel, self.channel
        loop = asyncio.get_running_loop()
        loop.call_soon(self._resolve)
        loop.call_soon(answerer._resolve)

    async def wait_channel_open(self):
        return await asyncio.shield(self._future())

    async def close(self):
        self.closed = True
        self.channel.close()


class LoopbackNetwork:
    def __init__(self, **engine_defaults):
        self.engine_defaults = engine_defaults
        self.tokens = itertools.count(1)
        self.offers = {}
        self.answers = {}
        self.engines: List[LoopbackEngine] = []

    def engine(self, **overrides):
        engine = LoopbackEngine(self, **{**self.engine_defaults, **overrides})
        self.engines.append(engine)
        return engine

    def factory(self, **overrides):
        return lambda: self.engine(**overrides)


@pytest.fixture
def alice():
    identity, _ = Identity.generate()
    return identity


@pytest.fixture
def bob():
    identity, _ = Identity.generate()
    return identity


@pytest.fixture
def carol():
    identity, _ = Identity.generate()
    return identity


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def network():
    return LoopbackNetwork()
