import asyncio

import pytest

from chainsignal import crypto_utils
from chainsignal.envelope import Descriptor, Envelope, EnvelopeCodec, EnvelopeKind
from chainsignal.errors import (
    EngineError,
    NegotiationStateError,
    NegotiationTimeout,
    SubmissionError,
    UnknownPeerError,
)
from chainsignal.negotiation import (
    InboundNegotiation,
    InboundState,
    OutboundNegotiation,
    OutboundState,
)
from chainsignal.relay.gateway import RelayGateway
from chainsignal.utils.serialization import b64encode_text

TIMEOUT = 0.2


def outbound(alice, bob, ledger, engine, timeout=TIMEOUT):
    gateway = RelayGateway(ledger.connect(alice.address))
    attempt = OutboundNegotiation(alice, gateway, bob.address, bob.public_key, engine, timeout)
    return attempt, gateway


def response_for(engine, recipient):
    envelope = Envelope(EnvelopeKind.RESPONSE, Descriptor("answer", f"loopback-answer {engine.token}"))
    return EnvelopeCodec.seal(envelope, recipient.public_key)


def answer_requests(bob, sender_public_key, ledger, network, *, noise=()):
    """Answer every request addressed to *bob*, after submitting *noise* to the sender."""

    gateway = RelayGateway(ledger.connect(bob.address))
    channels = []

    async def on_request(event):
        envelope = EnvelopeCodec.open(event.payload, bob.encryption_key)
        for payload in noise:
            await gateway.submit(event.sender, payload)
        request = InboundNegotiation(
            bob, gateway, event.sender, envelope, sender_public_key, network.factory(), TIMEOUT
        )
        channels.append(await request.accept())

    gateway.subscribe(on_request, recipient=bob.address)
    return channels


def test_timeout_with_exactly_one_submission(alice, bob, ledger, network):
    engine = network.engine()
    attempt, gateway = outbound(alice, bob, ledger, engine)

    with pytest.raises(NegotiationTimeout):
        asyncio.run(attempt.run())

    assert attempt.state is OutboundState.TIMED_OUT
    assert len(ledger.submissions_from(alice.address)) == 1
    assert engine.closed
    assert gateway.subscription_count == 0
    assert ledger.listener_count == 0


def test_negotiation_timeout_is_a_timeout_error(alice, bob, ledger, network):
    attempt, _ = outbound(alice, bob, ledger, network.engine(), timeout=0.05)
    with pytest.raises(TimeoutError):
        asyncio.run(attempt.run())


def test_late_reply_is_discarded(alice, bob, ledger, network):
    engine = network.engine()
    attempt, _ = outbound(alice, bob, ledger, engine, timeout=0.05)
    bob_gateway = RelayGateway(ledger.connect(bob.address))

    async def scenario():
        with pytest.raises(NegotiationTimeout):
            await attempt.run()
        await bob_gateway.submit(alice.address, response_for(engine, alice))
        await asyncio.sleep(0.01)

    asyncio.run(scenario())
    assert engine.answers_applied == 0
    assert attempt.state is OutboundState.TIMED_OUT


def test_reply_received_opens_channel(alice, bob, ledger, network):
    engine = network.engine()
    attempt, gateway = outbound(alice, bob, ledger, engine)

    async def scenario():
        channels = answer_requests(bob, alice.public_key, ledger, network)
        channel = await attempt.run()
        await asyncio.sleep(0.01)
        return channel, channels

    channel, bob_channels = asyncio.run(scenario())
    assert attempt.state is OutboundState.COMPLETED
    assert channel.remote_address == bob.address
    assert len(bob_channels) == 1
    assert bob_channels[0].remote_address == alice.address
    assert len(ledger.submissions_from(alice.address)) == 1
    assert len(ledger.submissions_from(bob.address)) == 1
    assert gateway.subscription_count == 0
    assert not engine.closed


def test_invalid_replies_do_not_consume_the_attempt(alice, bob, ledger, network):
    engine = network.engine()
    attempt, _ = outbound(alice, bob, ledger, engine)
    garbage = b"definitely not sealed"
    corrupt = b64encode_text(crypto_utils.encrypt_for(alice.public_key, b"{oops")).encode("ascii")
    wrong_kind = EnvelopeCodec.seal(
        Envelope(EnvelopeKind.REQUEST, Descriptor("offer", "loopback-offer 999")), alice.public_key
    )
    wrong_answer = EnvelopeCodec.seal(
        Envelope(EnvelopeKind.RESPONSE, Descriptor("answer", "loopback-answer 999")), alice.public_key
    )

    async def scenario():
        answer_requests(
            bob, alice.public_key, ledger, network, noise=(garbage, corrupt, wrong_kind, wrong_answer)
        )
        return await attempt.run()

    channel = asyncio.run(scenario())
    assert channel.remote_address == bob.address
    assert engine.answers_applied == 1
    assert len(ledger.submissions_from(bob.address)) == 5


def test_submission_failure_fails_without_retry(alice, bob, ledger, network):
    ledger.offline = True
    engine = network.engine()
    attempt, gateway = outbound(alice, bob, ledger, engine)

    with pytest.raises(SubmissionError):
        asyncio.run(attempt.run())

    assert attempt.state is OutboundState.FAILED
    assert engine.closed
    assert gateway.subscription_count == 0
    assert ledger.records == []


@pytest.mark.parametrize("step", ["create_offer", "gather"])
def test_engine_failure_before_submission(alice, bob, ledger, network, step):
    engine = network.engine(fail_on=step)
    attempt, gateway = outbound(alice, bob, ledger, engine)

    with pytest.raises(EngineError):
        asyncio.run(attempt.run())

    assert attempt.state is OutboundState.FAILED
    assert engine.closed
    assert ledger.records == []
    assert gateway.subscription_count == 0


def test_outbound_attempt_runs_once(alice, bob, ledger, network):
    attempt, _ = outbound(alice, bob, ledger, network.engine(), timeout=0.01)

    async def scenario():
        with pytest.raises(NegotiationTimeout):
            await attempt.run()
        with pytest.raises(NegotiationStateError):
            await attempt.run()

    asyncio.run(scenario())
    assert len(ledger.submissions_from(alice.address)) == 1


# ---- inbound ----


async def received_request(alice, bob, ledger, network, public_key, **engine_overrides):
    offerer = network.engine()
    await offerer.create_offer()
    descriptor, candidates = await offerer.gather()
    envelope = Envelope(EnvelopeKind.REQUEST, descriptor, candidates)
    gateway = RelayGateway(ledger.connect(bob.address))
    request = InboundNegotiation(
        bob, gateway, alice.address, envelope, public_key, network.factory(**engine_overrides), TIMEOUT
    )
    return offerer, request


def test_request_exposes_offer_before_side_effects(alice, bob, ledger, network):
    async def scenario():
        return await received_request(alice, bob, ledger, network, alice.public_key)

    offerer, request = asyncio.run(scenario())
    assert request.state is InboundState.OFFER_RECEIVED
    assert request.sender == alice.address
    assert request.descriptor.format == "offer"
    assert len(request.candidates) == 1
    assert request.public_key == alice.public_key
    assert request.received_at > 0
    assert ledger.records == []
    assert len(network.engines) == 1


def test_reject_sends_nothing_and_is_final(alice, bob, ledger, network):
    async def scenario():
        _, request = await received_request(alice, bob, ledger, network, alice.public_key)
        request.reject()
        with pytest.raises(NegotiationStateError):
            request.reject()
        with pytest.raises(NegotiationStateError):
            await request.accept()
        return request

    request = asyncio.run(scenario())
    assert request.state is InboundState.REJECTED
    assert ledger.records == []


def test_accept_sends_one_response_and_opens_channel(alice, bob, ledger, network):
    async def scenario():
        offerer, request = await received_request(alice, bob, ledger, network, alice.public_key)
        accepting = asyncio.ensure_future(request.accept())
        while not ledger.records:
            await asyncio.sleep(0)
        response = EnvelopeCodec.open(ledger.records[0].payload, alice.encryption_key)
        await offerer.apply_answer(response.descriptor, response.candidates)
        channel = await accepting
        with pytest.raises(NegotiationStateError):
            await request.accept()
        return request, channel

    request, channel = asyncio.run(scenario())
    assert request.state is InboundState.COMPLETED
    assert channel.remote_address == alice.address
    assert len(ledger.records) == 1
    assert ledger.records[0].recipient == alice.address


def test_accept_times_out_when_channel_never_opens(alice, bob, ledger, network):
    async def scenario():
        offerer, request = await received_request(
            alice, bob, ledger, network, alice.public_key, never_open=True
        )
        with pytest.raises(NegotiationTimeout):
            await request.accept()
        return request

    request = asyncio.run(scenario())
    assert request.state is InboundState.TIMED_OUT
    assert len(ledger.submissions_from(bob.address)) == 1
    assert network.engines[-1].closed


def test_accept_from_unknown_sender_fails_before_side_effects(alice, bob, ledger, network):
    async def scenario():
        _, request = await received_request(alice, bob, ledger, network, None)
        with pytest.raises(UnknownPeerError):
            await request.accept()
        return request

    request = asyncio.run(scenario())
    assert request.state is InboundState.OFFER_RECEIVED
    assert ledger.records == []
    assert len(network.engines) == 1


def test_accept_engine_failure_tears_down(alice, bob, ledger, network):
    async def scenario():
        _, request = await received_request(
            alice, bob, ledger, network, alice.public_key, fail_on="accept_offer"
        )
        with pytest.raises(EngineError):
            await request.accept()
        return request

    request = asyncio.run(scenario())
    assert request.state is InboundState.FAILED
    assert network.engines[-1].closed
    assert ledger.records == []
