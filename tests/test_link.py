import pytest

from screenshare.rtc.link import ConnectionState, NegotiationState, PeerLink
from fakes import FakeTransport, SignalLog, settle

OFFER = {"type": "offer", "sdp": "v=0 offer"}
ANSWER = {"type": "answer", "sdp": "v=0 answer"}


def test_connection_state_coerce_tolerates_unknown_values() -> None:
    assert ConnectionState.coerce("Connected") is ConnectionState.CONNECTED
    assert ConnectionState.coerce(ConnectionState.FAILED) is ConnectionState.FAILED
    assert ConnectionState.coerce("checking") is ConnectionState.NEW


@pytest.mark.asyncio
async def test_offer_answer_then_connected() -> None:
    transport = FakeTransport()
    signals = SignalLog()
    link = PeerLink("viewer-1", transport, role="sharer", signal=signals)

    link.start_offer()
    await link.wait_idle()

    assert signals.sent == [{"type": "offer", "targetId": "viewer-1", "offer": OFFER}]
    assert link.negotiation_state is NegotiationState.OFFER_SENT

    link.accept_answer(ANSWER)
    await link.wait_idle()

    assert transport.remote_descriptions == [ANSWER]
    assert link.negotiation_state is NegotiationState.ANSWERED

    transport.emit_state("connected")

    assert link.is_connected
    assert link.negotiation_state is NegotiationState.CONNECTED


@pytest.mark.asyncio
async def test_answer_offer_applies_remote_then_answers() -> None:
    transport = FakeTransport()
    signals = SignalLog()
    link = PeerLink("sharer-1", transport, role="viewer", signal=signals)

    link.answer_offer(OFFER)
    link.add_remote_candidate({"candidate": "candidate:1", "sdpMid": "0", "sdpMLineIndex": 0})
    await link.wait_idle()

    assert transport.calls == ["set_remote_description", "create_answer", "add_ice_candidate"]
    assert signals.sent == [{"type": "answer", "targetId": "sharer-1", "answer": ANSWER}]
    assert link.negotiation_state is NegotiationState.ANSWER_SENT


@pytest.mark.asyncio
async def test_local_candidates_are_forwarded_to_the_remote_peer() -> None:
    transport = FakeTransport()
    signals = SignalLog()
    link = PeerLink("viewer-1", transport, role="sharer", signal=signals)
    candidate = {"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}

    transport.emit_candidate(candidate)
    transport.emit_candidate(None)
    await link.wait_idle()

    assert signals.sent == [{"type": "ice-candidate", "targetId": "viewer-1", "candidate": candidate}]


@pytest.mark.asyncio
async def test_failed_step_fails_only_its_own_link() -> None:
    broken = FakeTransport(fail_on=("create_offer",))
    healthy = FakeTransport()
    signals = SignalLog()
    states = []
    failing = PeerLink(
        "viewer-1",
        broken,
        role="sharer",
        signal=signals,
        on_state=lambda link, previous: states.append(link.connection_state),
    )
    other = PeerLink("viewer-2", healthy, role="sharer", signal=signals)

    failing.start_offer()
    other.start_offer()
    await failing.wait_idle()
    await other.wait_idle()
    await failing.wait_closed()

    assert states == [ConnectionState.FAILED, ConnectionState.CLOSED]
    assert broken.closed is True
    assert other.negotiation_state is NegotiationState.OFFER_SENT
    assert other.connection_state is ConnectionState.NEW
    assert healthy.closed is False
    assert [message["targetId"] for message in signals.sent] == ["viewer-2"]


@pytest.mark.asyncio
async def test_transport_disconnect_closes_link() -> None:
    transport = FakeTransport()
    link = PeerLink("viewer-1", transport, role="sharer", signal=SignalLog())

    transport.emit_state("connected")
    transport.emit_state("disconnected")
    await link.wait_closed()

    assert link.closed
    assert transport.closed
    assert link.connection_state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_close_is_idempotent_and_drops_later_operations() -> None:
    transport = FakeTransport()
    signals = SignalLog()
    link = PeerLink("viewer-1", transport, role="sharer", signal=signals)

    await link.close()
    await link.close()
    link.start_offer()
    await settle()

    assert transport.closed
    assert signals.sent == []
    assert link.negotiation_state is NegotiationState.CLOSED


@pytest.mark.asyncio
async def test_close_cancels_pending_negotiation() -> None:
    transport = FakeTransport()
    signals = SignalLog()
    link = PeerLink("viewer-1", transport, role="sharer", signal=signals)

    link.start_offer()
    link.accept_answer(ANSWER)
    await link.close()
    await link.wait_idle()

    assert transport.closed
    assert transport.remote_descriptions == []
