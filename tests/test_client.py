import threading

import pytest

from screenshare import ClientConfig
from screenshare.client import PresenceSnapshot, ScreenShareClient, SignalingError
from screenshare.rtc.media import CaptureError, MediaStream
from fakes import FakeSink, FakeSocket, FakeTrack, TransportPool

OFFER = {"type": "offer", "sdp": "v=0 offer"}


class StaticCapture:
    def __init__(self, stream: MediaStream) -> None:
        self.stream = stream

    def acquire_local_stream(self) -> MediaStream:
        return self.stream


class DeniedCapture:
    def acquire_local_stream(self) -> MediaStream:
        raise CaptureError("Permission denied")


async def connected_client(**options):
    socket = FakeSocket()
    pool = TransportPool()
    urls = []

    async def connector(url: str) -> FakeSocket:
        urls.append(url)
        return socket

    client = ScreenShareClient(
        ClientConfig(url="ws://relay:9090/", username="Ann"),
        transport_factory=pool,
        connector=connector,
        **options,
    )
    await client.connect()
    assert urls == ["ws://relay:9090/"]
    await client.dispatch({"type": "connected", "clientId": "me", "message": "Connected to relay server"})
    return client, socket, pool


def user(client_id: str, name: str, sharing: bool = False) -> dict:
    return {"id": client_id, "username": name, "isSharing": sharing, "connectedAt": "2024-01-01T00:00:00"}


@pytest.mark.asyncio
async def test_connected_assigns_id_and_announces_name() -> None:
    client, socket, _ = await connected_client()

    assert client.client_id == "me"
    assert socket.sent == [{"type": "set-username", "username": "Ann"}]


@pytest.mark.asyncio
async def test_user_list_updates_presence_observers() -> None:
    client, _, _ = await connected_client()
    snapshots = []
    token = client.subscribe(snapshots.append)

    await client.dispatch({"type": "user-list", "users": [user("me", "Ann"), user("s1", "Bob", True)]})
    client.unsubscribe(token)
    await client.dispatch({"type": "user-list", "users": [user("me", "Ann")]})

    assert len(snapshots) == 2
    latest = snapshots[-1]
    assert isinstance(latest, PresenceSnapshot)
    assert latest.connected and latest.client_id == "me"
    assert [entry["id"] for entry in latest.users] == ["s1"]
    assert latest.to_dict()["users"][0]["isSharing"] is True
    assert [entry["id"] for entry in client.users] == ["me"]


@pytest.mark.asyncio
async def test_sharing_flow_routes_request_answer_and_candidates() -> None:
    stream = MediaStream([FakeTrack()])
    client, socket, pool = await connected_client(capture=StaticCapture(stream))

    await client.start_sharing()
    await client.dispatch({"type": "stream-request", "viewerId": "v1", "viewerUsername": "Bob"})
    link = client.sharer.links["v1"]
    await link.wait_idle()

    offers = [message for message in socket.sent if message["type"] == "offer"]
    assert offers == [{"type": "offer", "targetId": "v1", "offer": OFFER}]

    await client.dispatch({"type": "answer", "targetId": "me", "senderId": "v1", "answer": {"type": "answer", "sdp": "a"}})
    await client.dispatch({"type": "ice-candidate", "targetId": "me", "senderId": "v1", "candidate": {"candidate": "c"}})
    await link.wait_idle()

    assert pool.created[0].remote_descriptions == [{"type": "answer", "sdp": "a"}]
    assert pool.created[0].candidates == [{"candidate": "c"}]
    assert {"type": "start-sharing"} in socket.sent


@pytest.mark.asyncio
async def test_viewing_flow_routes_offer_and_candidates() -> None:
    sink = FakeSink()
    client, socket, pool = await connected_client(sink=sink)

    await client.view("s1")
    await client.dispatch({"type": "ice-candidate", "targetId": "me", "senderId": "s1", "candidate": {"candidate": "c"}})
    await client.dispatch({"type": "offer", "targetId": "me", "senderId": "s1", "offer": OFFER})
    await client.viewer.link.wait_idle()

    assert {"type": "request-stream", "targetId": "s1"} in socket.sent
    assert socket.sent[-1]["type"] == "answer"
    assert pool.created[0].candidates == [{"candidate": "c"}]
    assert client.snapshot().viewing == "s1"
    assert client.snapshot().viewer_state == "answer-sent"


@pytest.mark.asyncio
async def test_ping_is_answered_and_garbage_ignored() -> None:
    client, socket, _ = await connected_client()

    await client.dispatch("{not json")
    await client.dispatch({"type": "ping", "ts": 1.0})

    assert socket.sent[-1]["type"] == "pong"


@pytest.mark.asyncio
async def test_capture_failure_is_not_announced() -> None:
    client, socket, _ = await connected_client(capture=DeniedCapture())

    with pytest.raises(CaptureError):
        await client.start_sharing()

    assert not client.sharer.is_sharing
    assert socket.sent == [{"type": "set-username", "username": "Ann"}]


@pytest.mark.asyncio
async def test_actions_require_a_connection() -> None:
    client = ScreenShareClient(ClientConfig(), transport_factory=TransportPool())

    with pytest.raises(SignalingError):
        await client.start_sharing(MediaStream([FakeTrack()]))
    with pytest.raises(SignalingError):
        await client.view("s1")
    with pytest.raises(SignalingError):
        await client.run()


@pytest.mark.asyncio
async def test_channel_loss_tears_down_sessions() -> None:
    track = FakeTrack()
    client, socket, pool = await connected_client()
    await client.start_sharing(MediaStream([track]))
    await client.dispatch({"type": "stream-request", "viewerId": "v1", "viewerUsername": "Bob"})
    snapshots = []
    client.subscribe(snapshots.append)

    socket.feed({"type": "user-list", "users": [user("me", "Ann", True), user("v1", "Bob")]})
    socket.hang_up()
    await client.run()

    assert not client.connected
    assert client.client_id is None
    assert not client.sharer.is_sharing
    assert client.sharer.links == {}
    assert pool.created[0].closed
    assert track.readyState == "ended"
    assert snapshots[-1].connected is False


@pytest.mark.asyncio
async def test_disconnect_closes_socket_and_stops_sharing() -> None:
    client, socket, _ = await connected_client()
    await client.start_sharing(MediaStream([FakeTrack()]))

    await client.disconnect()

    assert socket.closed
    assert socket.sent[-1] == {"type": "stop-sharing"}
    assert not client.connected


@pytest.mark.asyncio
async def test_capture_is_acquired_off_the_event_loop() -> None:
    threads = []

    class RecordingCapture:
        def acquire_local_stream(self) -> MediaStream:
            threads.append(threading.get_ident())
            return MediaStream([FakeTrack()])

    client, socket, _ = await connected_client(capture=RecordingCapture())

    await client.start_sharing()

    assert len(threads) == 1 and threads[0] != threading.get_ident()
    assert socket.sent[-1] == {"type": "start-sharing"}


@pytest.mark.asyncio
async def test_candidates_from_a_peer_we_view_and_serve_reach_the_negotiating_link() -> None:
    client, _, pool = await connected_client(sink=FakeSink())
    await client.start_sharing(MediaStream([FakeTrack()]))
    await client.dispatch({"type": "stream-request", "viewerId": "p1", "viewerUsername": "Bob"})
    serving = client.sharer.links["p1"]
    await serving.wait_idle()
    pool.created[0].emit_state("connected")

    await client.view("p1")
    await client.dispatch({"type": "ice-candidate", "targetId": "me", "senderId": "p1", "candidate": {"candidate": "v1"}})
    await client.dispatch({"type": "offer", "targetId": "me", "senderId": "p1", "offer": OFFER})
    viewing = client.viewer.link
    await viewing.wait_idle()
    await client.dispatch({"type": "ice-candidate", "targetId": "me", "senderId": "p1", "candidate": {"candidate": "v2"}})
    await viewing.wait_idle()

    assert pool.created[1].candidates == [{"candidate": "v1"}, {"candidate": "v2"}]
    assert pool.created[0].candidates == []

    pool.created[1].emit_state("connected")
    await client.dispatch({"type": "ice-candidate", "targetId": "me", "senderId": "p1", "candidate": {"candidate": "s1"}})
    await serving.wait_idle()

    assert pool.created[0].candidates == [{"candidate": "s1"}]
