import pytest

from screenshare.rtc.link import NegotiationState
from screenshare.rtc.viewer import ViewerSessionController
from fakes import FakeSink, FakeTrack, SignalLog, TransportPool

OFFER = {"type": "offer", "sdp": "v=0 offer"}


def make_viewer():
    signals = SignalLog()
    pool = TransportPool()
    sink = FakeSink()
    viewer = ViewerSessionController(signals, transport_factory=pool, sink=sink)
    return viewer, signals, pool, sink


def sharer_entry(client_id: str, sharing: bool = True) -> dict:
    return {"id": client_id, "username": "Ann", "isSharing": sharing, "connectedAt": "2024-01-01T00:00:00"}


@pytest.mark.asyncio
async def test_view_requests_stream() -> None:
    viewer, signals, _, _ = make_viewer()
    assert viewer.state is NegotiationState.IDLE

    await viewer.view("sharer-1")

    assert signals.sent == [{"type": "request-stream", "targetId": "sharer-1"}]
    assert viewer.state is NegotiationState.REQUESTED
    assert viewer.is_viewing


@pytest.mark.asyncio
async def test_offer_from_target_is_answered() -> None:
    viewer, signals, pool, _ = make_viewer()
    await viewer.view("sharer-1")

    link = await viewer.handle_offer("sharer-1", OFFER)
    await link.wait_idle()

    assert pool.created[0].remote_descriptions == [OFFER]
    assert signals.of_type("answer") == [
        {"type": "answer", "targetId": "sharer-1", "answer": {"type": "answer", "sdp": "v=0 answer"}}
    ]
    assert viewer.state is NegotiationState.ANSWER_SENT


@pytest.mark.asyncio
async def test_offer_from_someone_else_is_ignored() -> None:
    viewer, _, pool, _ = make_viewer()
    await viewer.view("sharer-1")

    assert await viewer.handle_offer("intruder", OFFER) is None
    assert pool.created == []
    assert viewer.state is NegotiationState.REQUESTED


@pytest.mark.asyncio
async def test_early_candidates_are_applied_after_the_offer() -> None:
    viewer, _, pool, _ = make_viewer()
    await viewer.view("sharer-1")
    early = {"candidate": "candidate:1", "sdpMid": "0", "sdpMLineIndex": 0}

    await viewer.handle_ice_candidate("sharer-1", early)
    await viewer.handle_ice_candidate("stranger", {"candidate": "candidate:9"})
    link = await viewer.handle_offer("sharer-1", OFFER)
    await link.wait_idle()

    transport = pool.created[0]
    assert transport.calls == ["set_remote_description", "create_answer", "add_ice_candidate"]
    assert transport.candidates == [early]


@pytest.mark.asyncio
async def test_inbound_tracks_reach_the_sink() -> None:
    viewer, _, pool, sink = make_viewer()
    await viewer.view("sharer-1")
    await viewer.handle_offer("sharer-1", OFFER)
    video, audio = FakeTrack("video"), FakeTrack("audio")

    pool.created[0].emit_track(video)
    pool.created[0].emit_track(audio)
    pool.created[0].emit_track(video)

    assert len(sink.attached) == 2
    assert sink.attached[-1].get_tracks() == [video, audio]


@pytest.mark.asyncio
async def test_viewing_another_sharer_closes_the_current_view() -> None:
    viewer, signals, pool, sink = make_viewer()
    await viewer.view("sharer-1")
    first = await viewer.handle_offer("sharer-1", OFFER)

    await viewer.view("sharer-2")

    assert first.closed and pool.created[0].closed
    assert viewer.link is None
    assert viewer.target_id == "sharer-2"
    assert sink.cleared == 1
    assert signals.sent[-1] == {"type": "request-stream", "targetId": "sharer-2"}


@pytest.mark.asyncio
async def test_user_list_without_the_sharer_closes_the_view() -> None:
    viewer, _, pool, sink = make_viewer()
    await viewer.view("sharer-1")
    link = await viewer.handle_offer("sharer-1", OFFER)
    track = FakeTrack()
    pool.created[0].emit_track(track)

    await viewer.handle_user_list([sharer_entry("sharer-1")])
    assert viewer.link is link

    await viewer.handle_user_list([sharer_entry("sharer-1", sharing=False)])

    assert viewer.link is None
    assert link.closed
    assert track.readyState == "ended"
    assert sink.cleared == 1
    assert viewer.state is NegotiationState.CLOSED


@pytest.mark.asyncio
async def test_departed_sharer_closes_a_pending_request() -> None:
    viewer, _, _, _ = make_viewer()
    await viewer.view("sharer-1")

    await viewer.handle_user_list([sharer_entry("someone-else")])

    assert not viewer.is_viewing
    assert viewer.state is NegotiationState.CLOSED


@pytest.mark.asyncio
async def test_transport_failure_clears_the_view() -> None:
    viewer, _, pool, sink = make_viewer()
    await viewer.view("sharer-1")
    link = await viewer.handle_offer("sharer-1", OFFER)
    await link.wait_idle()

    pool.created[0].emit_state("failed")
    await link.wait_closed()

    assert viewer.link is None
    assert viewer.state is NegotiationState.FAILED
    assert pool.created[0].closed
    assert sink.cleared == 1


@pytest.mark.asyncio
async def test_close_view_without_a_view_is_a_no_op() -> None:
    viewer, signals, _, sink = make_viewer()

    await viewer.close_view()
    await viewer.close_view()

    assert viewer.state is NegotiationState.IDLE
    assert signals.sent == []
    assert sink.cleared == 0
