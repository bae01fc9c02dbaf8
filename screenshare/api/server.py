"""
FastAPI signaling relay.

Each WebSocket is a :class:`RelayChannel`; the :class:`RelayManager` owns the
client directory and routes control messages between channels.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, Optional, Set, Union

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .. import RelayConfig
from ..protocol import (
    Answer,
    IceCandidate,
    MalformedMessage,
    Offer,
    Ping,
    Pong,
    RequestStream,
    SetUsername,
    StartSharing,
    StopSharing,
    decode_frame,
    parse_message,
)
from . import schemas
from .directory import DirectoryStore

LOG = logging.getLogger(__name__)

Frame = Union[str, bytes]


class RelayChannel:
    """Track per-connection state and orchestrate send/receive loops."""

    def __init__(self, manager: "RelayManager", websocket: WebSocket, *, queue_size: int) -> None:
        self.manager = manager
        self.websocket = websocket
        self.client_id = ""
        self.send_queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self.last_seen = time.monotonic()
        self._stop_event = asyncio.Event()
        self._closing = False
        self.logger = LOG

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover - defensive
            LOG.exception("Failed to accept WebSocket connection")
            return

        try:
            await self.manager.connect(self)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOG.exception("Failed to register relay channel")
            await self.close(code=1011, reason="init failure")
            return

        try:
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._recv_loop())
                task_group.create_task(self._send_loop())
                task_group.create_task(self._keepalive_loop())
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Relay channel crashed")
        finally:
            await self.manager.disconnect(self)
            await self.close(code=1000)

    def bind(self, client_id: str) -> None:
        self.client_id = client_id
        self.logger = LOG.getChild(f"ws.{client_id[:8]}")

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._stop_event.set()
        with contextlib.suppress(RuntimeError, OSError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    def enqueue(self, payload: Dict[str, Any]) -> bool:
        """
        Queue a message without waiting; ``False`` means the queue is full.
        """

        if self.is_stopped:
            return True
        try:
            self.send_queue.put_nowait(payload)
        except asyncio.QueueFull:
            return False
        return True

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    message = await self.websocket.receive()
                except asyncio.CancelledError:
                    raise
                except (RuntimeError, WebSocketDisconnect):
                    break
                except Exception:  # pragma: no cover - safety net
                    self.logger.exception("Failed to receive message")
                    break

                if message.get("type") == "websocket.disconnect":
                    break

                frame: Optional[Frame] = message.get("text")
                if frame is None:
                    frame = message.get("bytes")
                if frame is None:
                    continue
                self.last_seen = time.monotonic()

                try:
                    await self.manager.handle_frame(self, frame)
                except asyncio.CancelledError:
                    raise
                except Exception:  # pragma: no cover - guard rails
                    self.logger.exception("Unhandled error while processing message")
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    payload = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self.websocket.send_json(payload)
                except asyncio.CancelledError:
                    raise
                except (WebSocketDisconnect, OSError):
                    break
                except RuntimeError as exc:
                    message = str(exc)
                    if "close message has been sent" in message:
                        self.logger.debug("Send after close ignored: %s", message)
                    else:
                        self.logger.exception("Failed to send message", exc_info=exc)
                    break
                except Exception:  # pragma: no cover - defensive
                    self.logger.exception("Failed to send message")
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()

    async def _keepalive_loop(self) -> None:
        interval = self.manager.ping_interval
        if interval <= 0:
            return
        while not self.is_stopped:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            if self.is_stopped:
                break
            self.enqueue({"type": "ping", "ts": time.time()})
            if (time.monotonic() - self.last_seen) > self.manager.pong_timeout:
                self.logger.warning("No frames within %.1fs; closing relay channel", self.manager.pong_timeout)
                await self.close(code=1011, reason="ping timeout")
                break


class RelayManager:
    """
    Own the client directory and route signaling between channels.

    Directory mutations and the enqueueing of the resulting ``user-list``
    happen under one lock, so every channel observes broadcasts in the order
    the directory changed.
    """

    def __init__(
        self,
        *,
        directory: Optional[DirectoryStore] = None,
        queue_size: int = 256,
        ping_interval: float = 0.0,
        pong_timeout: float = 60.0,
    ) -> None:
        self.directory = directory or DirectoryStore()
        self.queue_size = max(1, int(queue_size))
        self.ping_interval = max(0.0, float(ping_interval))
        self.pong_timeout = max(self.ping_interval, float(pong_timeout))

        self._channels: Dict[str, RelayChannel] = {}
        self._lock = asyncio.Lock()
        self._background: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: RelayConfig) -> "RelayManager":
        return cls(
            queue_size=config.queue_size,
            ping_interval=config.ping_interval,
            pong_timeout=config.pong_timeout,
        )

    @property
    def client_count(self) -> int:
        return len(self.directory)

    def users(self) -> list:
        return self.directory.snapshot()

    async def run(self, websocket: WebSocket) -> None:
        channel = RelayChannel(self, websocket, queue_size=self.queue_size)
        await channel.run()

    async def stop(self) -> None:
        async with self._lock:
            channels = list(self._channels.values())
        await asyncio.gather(
            *[channel.close(code=1001, reason="relay shutting down") for channel in channels],
            return_exceptions=True,
        )
        for task in list(self._background):
            task.cancel()

    async def connect(self, channel: RelayChannel) -> None:
        async with self._lock:
            client_id = self.directory.new_id()
            channel.bind(client_id)
            self.directory.upsert(client_id)
            self._channels[client_id] = channel
            self._deliver_locked(
                channel,
                {
                    "type": "connected",
                    "clientId": client_id,
                    "message": "Connected to relay server",
                },
            )
            self._broadcast_user_list_locked()
            count = len(self._channels)
        LOG.info("Client connected id=%s clients=%d", client_id, count)

    async def disconnect(self, channel: RelayChannel) -> None:
        async with self._lock:
            if not channel.client_id or self._channels.get(channel.client_id) is not channel:
                return
            del self._channels[channel.client_id]
            session = self.directory.remove(channel.client_id)
            self._broadcast_user_list_locked()
            count = len(self._channels)
        LOG.info(
            "Client disconnected id=%s username=%s clients=%d",
            channel.client_id,
            session.display_name if session else None,
            count,
        )

    async def handle_frame(self, channel: RelayChannel, frame: Union[Frame, Dict[str, Any]]) -> None:
        try:
            raw = decode_frame(frame)
            message = parse_message(raw)
        except MalformedMessage as exc:
            channel.logger.warning("Ignoring malformed message: %s", exc)
            return

        if isinstance(message, SetUsername):
            async with self._lock:
                if channel.client_id not in self.directory:
                    return
                session = self.directory.upsert(channel.client_id, {"username": message.username})
                self._broadcast_user_list_locked()
            channel.logger.info("Username set to %s", session.display_name)
            return

        if isinstance(message, (StartSharing, StopSharing)):
            sharing = isinstance(message, StartSharing)
            async with self._lock:
                if channel.client_id not in self.directory:
                    return
                session = self.directory.upsert(channel.client_id, {"isSharing": sharing})
                self._broadcast_user_list_locked()
            channel.logger.info(
                "%s %s sharing", session.display_name, "started" if sharing else "stopped"
            )
            return

        if isinstance(message, RequestStream):
            await self._route_stream_request(channel, message.target_id)
            return

        if isinstance(message, (Offer, Answer, IceCandidate)):
            forwarded = dict(raw)
            forwarded["senderId"] = channel.client_id
            await self._route(channel, message.target_id, forwarded)
            return

        if isinstance(message, Ping):
            channel.enqueue({"type": "pong", "ts": time.time()})
            return

        if isinstance(message, Pong):
            return

        channel.logger.warning("Ignoring relay-only message type %s", message.type)

    async def _route_stream_request(self, channel: RelayChannel, target_id: str) -> None:
        async with self._lock:
            viewer = self.directory.get(channel.client_id)
            target = self.directory.get(target_id)
            target_channel = self._channels.get(target_id)
            if viewer is None or target is None or target_channel is None or not target.is_sharing:
                channel.logger.debug("Dropping stream request for %s", target_id)
                return
            self._deliver_locked(
                target_channel,
                {
                    "type": "stream-request",
                    "viewerId": channel.client_id,
                    "viewerUsername": viewer.display_name,
                },
            )
        channel.logger.info("%s requested stream from %s", viewer.display_name, target.display_name)

    async def _route(self, channel: RelayChannel, target_id: str, payload: Dict[str, Any]) -> None:
        async with self._lock:
            target_channel = self._channels.get(target_id)
            if target_channel is None:
                channel.logger.debug("Dropping %s for unknown target %s", payload.get("type"), target_id)
                return
            self._deliver_locked(target_channel, payload)

    def _broadcast_user_list_locked(self) -> None:
        message = {"type": "user-list", "users": self.directory.snapshot()}
        for channel in list(self._channels.values()):
            self._deliver_locked(channel, message)

    def _deliver_locked(self, channel: RelayChannel, payload: Dict[str, Any]) -> None:
        if channel.enqueue(payload):
            return
        channel.logger.warning("Outbound queue full; closing slow channel")
        task = asyncio.create_task(channel.close(code=1013, reason="slow consumer"))
        self._background.add(task)
        task.add_done_callback(self._background.discard)


def create_app(
    *,
    config: Optional[RelayConfig] = None,
    manager: Optional[RelayManager] = None,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    relay_config = config or RelayConfig()
    relay = manager or RelayManager.from_config(relay_config)

    @asynccontextmanager
    async def relay_lifespan(app: FastAPI) -> AsyncIterator[None]:
        LOG.info("Relay starting profile=%s", relay_config.profile)
        try:
            if lifespan is not None:
                async with lifespan(app):
                    yield
            else:
                yield
        finally:
            await relay.stop()
            LOG.info("Relay shut down")

    app = FastAPI(title="Screen Share Relay", lifespan=relay_lifespan)
    app.state.relay = relay
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.websocket("/")
    async def websocket_root(websocket: WebSocket) -> None:
        await relay.run(websocket)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await relay.run(websocket)

    @app.get("/health", response_model=schemas.HealthModel)
    async def health() -> schemas.HealthModel:
        return schemas.HealthModel(
            status="ok",
            clients=relay.client_count,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @app.get("/users", response_model=schemas.UserCollection)
    async def list_users() -> schemas.UserCollection:
        return schemas.UserCollection(
            users=[schemas.UserModel(**user) for user in relay.users()]
        )

    return app
