"""
Client side of the relay: one signaling channel driving both controllers.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import websockets
from pydantic import BaseModel
from websockets.exceptions import ConnectionClosed

from . import ClientConfig
from .protocol import (
    Answer,
    Connected,
    IceCandidate,
    MalformedMessage,
    Offer,
    Ping,
    Pong,
    SetUsername,
    StreamRequest,
    UserList,
    encode_message,
    parse_message,
)
from .rtc.link import TransportFactory
from .rtc.media import CaptureError, CaptureSource, MediaStream, RenderSink
from .rtc.sharer import SharerSessionController
from .rtc.viewer import ViewerSessionController

LOG = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]


class SignalingError(RuntimeError):
    """Raised when an operation needs a live relay connection."""


@dataclass(frozen=True)
class PresenceSnapshot:
    """
    What a presence UI needs to render: connection, peers and session state.
    """

    connected: bool
    client_id: Optional[str]
    username: str
    users: Tuple[Dict[str, Any], ...] = field(default_factory=tuple)
    is_sharing: bool = False
    viewer_count: int = 0
    viewing: Optional[str] = None
    viewer_state: str = "idle"

    def to_dict(self) -> dict:
        return {
            "connected": self.connected,
            "clientId": self.client_id,
            "username": self.username,
            "users": [dict(user) for user in self.users],
            "isSharing": self.is_sharing,
            "viewerCount": self.viewer_count,
            "viewing": self.viewing,
            "viewerState": self.viewer_state,
        }


class ScreenShareClient:
    """
    Connect to a relay and route its messages to the session controllers.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        capture: Optional[CaptureSource] = None,
        sink: Optional[RenderSink] = None,
        transport_factory: Optional[TransportFactory] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        self.config = config or ClientConfig()
        self.username = self.config.username
        self.client_id: Optional[str] = None
        self.users: List[Dict[str, Any]] = []
        self.capture = capture

        if transport_factory is None:
            from .rtc.transport import create_peer_transport

            transport_factory = partial(create_peer_transport, self.config.rtc)

        self.sharer = SharerSessionController(
            self.send,
            transport_factory=transport_factory,
            on_viewer_count=self._handle_viewer_count,
        )
        self.viewer = ViewerSessionController(self.send, transport_factory=transport_factory, sink=sink)

        self._connector: Connector = connector or websockets.connect
        self._ws: Any = None
        self._observer_counter = 0
        self._observers: Dict[int, Callable[[PresenceSnapshot], None]] = {}

    # ------------------------------------------------------------ presence

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def snapshot(self) -> PresenceSnapshot:
        return PresenceSnapshot(
            connected=self.connected,
            client_id=self.client_id,
            username=self.username,
            users=tuple(dict(user) for user in self.users if user.get("id") != self.client_id),
            is_sharing=self.sharer.is_sharing,
            viewer_count=self.sharer.viewer_count,
            viewing=self.viewer.target_id,
            viewer_state=self.viewer.state.value,
        )

    def subscribe(self, observer: Callable[[PresenceSnapshot], None]) -> int:
        """
        Register ``observer`` and immediately deliver the current snapshot.
        """

        self._observer_counter += 1
        token = self._observer_counter
        self._observers[token] = observer
        observer(self.snapshot())
        return token

    def unsubscribe(self, token: int) -> None:
        self._observers.pop(token, None)

    def _notify(self) -> None:
        if not self._observers:
            return
        snapshot = self.snapshot()
        for observer in list(self._observers.values()):
            try:
                observer(snapshot)
            except Exception:  # pragma: no cover - observer faults are isolated
                LOG.exception("Presence observer failed")

    def _handle_viewer_count(self, count: int) -> None:
        LOG.info("Viewer count: %d", count)
        self._notify()

    # ------------------------------------------------------------ channel

    async def connect(self) -> None:
        if self._ws is not None:
            return
        LOG.info("Connecting to relay %s", self.config.url)
        self._ws = await self._connector(self.config.url)
        self._notify()

    async def disconnect(self) -> None:
        await self.sharer.stop_sharing()
        await self.viewer.close_view()
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except ConnectionClosed:
                pass
        self._reset()

    async def run(self) -> None:
        """
        Process relay messages until the channel closes.
        """

        ws = self._ws
        if ws is None:
            raise SignalingError("not connected to a relay")
        try:
            async for frame in ws:
                await self.dispatch(frame)
        except ConnectionClosed as exc:
            LOG.info("Relay connection closed: %s", exc)
        finally:
            if self._ws is ws:
                await self._handle_channel_lost()

    async def send(self, message: Union[BaseModel, Dict[str, Any]]) -> None:
        payload = encode_message(message) if isinstance(message, BaseModel) else dict(message)
        ws = self._ws
        if ws is None:
            LOG.debug("Dropping %s; not connected", payload.get("type"))
            return
        try:
            await ws.send(json.dumps(payload))
        except ConnectionClosed:
            LOG.debug("Dropping %s; relay connection closed", payload.get("type"))

    async def dispatch(self, frame: Union[str, bytes, Dict[str, Any]]) -> None:
        try:
            message = parse_message(frame)
        except MalformedMessage as exc:
            LOG.warning("Ignoring malformed relay message: %s", exc)
            return

        if isinstance(message, Connected):
            self.client_id = message.client_id
            LOG.info("Assigned client ID: %s", self.client_id)
            await self.send(SetUsername(username=self.username))
            self._notify()
            return

        if isinstance(message, UserList):
            self.users = [user.model_dump(by_alias=True) for user in message.users]
            await self.viewer.handle_user_list(self.users)
            self._notify()
            return

        if isinstance(message, StreamRequest):
            await self.sharer.handle_stream_request(message.viewer_id, message.viewer_username)
            return

        if isinstance(message, Offer):
            if message.sender_id:
                await self.viewer.handle_offer(message.sender_id, message.offer)
                self._notify()
            return

        if isinstance(message, Answer):
            if message.sender_id:
                await self.sharer.handle_answer(message.sender_id, message.answer)
            return

        if isinstance(message, IceCandidate):
            if not message.sender_id:
                return
            if self._candidate_for_viewer(message.sender_id):
                await self.viewer.handle_ice_candidate(message.sender_id, message.candidate)
            else:
                await self.sharer.handle_ice_candidate(message.sender_id, message.candidate)
            return

        if isinstance(message, Ping):
            await self.send(Pong(ts=time.time()))
            return

        if isinstance(message, Pong):
            return

        LOG.debug("Ignoring %s from relay", message.type)

    def _candidate_for_viewer(self, sender_id: str) -> bool:
        """
        Pick the session a candidate belongs to when we both view and serve ``sender_id``.

        Candidates carry no direction, so the link still negotiating wins.
        """

        if sender_id not in self.sharer.links:
            return True
        if sender_id != self.viewer.target_id:
            return False
        link = self.viewer.link
        return link is None or not link.is_connected

    # ------------------------------------------------------------ actions

    async def set_username(self, username: str) -> None:
        self.username = username.strip() or self.username
        await self.send(SetUsername(username=self.username))
        self._notify()

    async def start_sharing(self, stream: Optional[MediaStream] = None) -> MediaStream:
        """
        Share ``stream`` or one acquired from the configured capture source.

        Raises :class:`CaptureError` before anything is announced if capture
        fails.
        """

        if self._ws is None:
            raise SignalingError("connect to a relay before sharing")
        if stream is None:
            if self.capture is None:
                raise CaptureError("Screen capture not supported in this environment")
            stream = await asyncio.to_thread(self.capture.acquire_local_stream)
        result = await self.sharer.start_sharing(stream)
        self._notify()
        return result

    async def stop_sharing(self) -> None:
        await self.sharer.stop_sharing()
        self._notify()

    async def view(self, target_id: str) -> None:
        if self._ws is None:
            raise SignalingError("connect to a relay before viewing")
        await self.viewer.view(target_id)
        self._notify()

    async def close_view(self) -> None:
        await self.viewer.close_view()
        self._notify()

    async def _handle_channel_lost(self) -> None:
        self._ws = None
        await self.sharer.stop_sharing()
        await self.viewer.close_view()
        self._reset()

    def _reset(self) -> None:
        self.client_id = None
        self.users = []
        self._notify()


async def run_client(client: ScreenShareClient, ready: Optional[Callable[[], Awaitable[None]]] = None) -> None:
    """
    Connect, optionally run ``ready`` once the relay assigns an id, then serve.
    """

    await client.connect()
    receiver = asyncio.create_task(client.run())
    try:
        if ready is not None:
            while client.client_id is None and not receiver.done():
                await asyncio.sleep(0.05)
            if client.client_id is not None:
                await ready()
        await receiver
    finally:
        if not receiver.done():
            receiver.cancel()
        await client.disconnect()
