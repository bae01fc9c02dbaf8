"""
Peer link: one negotiated media transport between two clients.

A link serialises its own negotiation steps (offer, answer, remote
candidates, outbound candidates) on a private worker task so that links held
by the same controller never wait on each other.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from ..protocol import Answer, IceCandidate, Offer, encode_message

LOG = logging.getLogger(__name__)

SignalSender = Callable[[Dict[str, Any]], Awaitable[None]]
Operation = Callable[[], Awaitable[None]]


class ConnectionState(str, Enum):
    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"

    @classmethod
    def coerce(cls, value: object) -> "ConnectionState":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            LOG.warning("Unknown connection state %r", value)
            return cls.NEW


class NegotiationState(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    OFFER_SENT = "offer-sent"
    OFFER_RECEIVED = "offer-received"
    ANSWER_SENT = "answer-sent"
    ANSWERED = "answered"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


TERMINAL_STATES = frozenset(
    {ConnectionState.DISCONNECTED, ConnectionState.FAILED, ConnectionState.CLOSED}
)

_NEGOTIATION_FOR_CONNECTION = {
    ConnectionState.CONNECTED: NegotiationState.CONNECTED,
    ConnectionState.DISCONNECTED: NegotiationState.DISCONNECTED,
    ConnectionState.FAILED: NegotiationState.FAILED,
    ConnectionState.CLOSED: NegotiationState.CLOSED,
}


class PeerTransport(Protocol):
    """
    Interactive media transport primitives (a WebRTC peer connection).

    Descriptions are ``{"type", "sdp"}`` mappings and candidates are
    ``{"candidate", "sdpMid", "sdpMLineIndex"}`` mappings.
    """

    @property
    def connection_state(self) -> str:
        ...

    def bind(
        self,
        *,
        on_ice_candidate: Callable[[Optional[Dict[str, Any]]], None],
        on_connection_state_change: Callable[[str], None],
        on_track: Callable[[Any], None],
    ) -> None:
        ...

    def add_track(self, track: Any) -> None:
        ...

    async def create_offer(self) -> Dict[str, Any]:
        ...

    async def create_answer(self) -> Dict[str, Any]:
        ...

    async def set_remote_description(self, description: Any) -> None:
        ...

    async def add_ice_candidate(self, candidate: Any) -> None:
        ...

    async def close(self) -> None:
        ...


TransportFactory = Callable[[], PeerTransport]
StateListener = Callable[["PeerLink", ConnectionState], None]


class PeerLink:
    """
    Orchestrates offer/answer/ICE for one remote peer over a :class:`PeerTransport`.

    ``on_state`` is called with ``(link, previous_state)`` after every change
    of :attr:`connection_state`. Reaching ``disconnected``/``failed`` closes
    the link on its own; operations that raise mark only this link failed.
    """

    def __init__(
        self,
        remote_id: str,
        transport: PeerTransport,
        *,
        role: str,
        signal: SignalSender,
        on_state: Optional[StateListener] = None,
        on_track: Optional[Callable[[Any], None]] = None,
    ) -> None:
        self.remote_id = remote_id
        self.transport = transport
        self.role = role
        self.connection_state = ConnectionState.NEW
        self.negotiation_state = NegotiationState.IDLE
        self.logger = LOG.getChild(f"{role}.{remote_id[:8]}")

        self._signal = signal
        self._on_state = on_state
        self._on_track = on_track
        self._queue: asyncio.Queue[Operation] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None
        self._closed = False

        transport.bind(
            on_ice_candidate=self._handle_local_candidate,
            on_connection_state_change=self._handle_connection_state,
            on_track=self._handle_track,
        )

    def __repr__(self) -> str:
        return (
            f"PeerLink(remote_id={self.remote_id!r}, role={self.role!r}, "
            f"connection={self.connection_state.value}, negotiation={self.negotiation_state.value})"
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED

    # ------------------------------------------------------------ operations

    def add_track(self, track: Any) -> None:
        self.transport.add_track(track)

    def start_offer(self) -> None:
        self.submit(self._send_offer)

    def accept_answer(self, description: Any) -> None:
        self.submit(lambda: self._apply_answer(description))

    def answer_offer(self, description: Any) -> None:
        self.submit(lambda: self._send_answer(description))

    def add_remote_candidate(self, candidate: Any) -> None:
        self.submit(lambda: self.transport.add_ice_candidate(candidate))

    def submit(self, operation: Operation) -> None:
        if self._closed:
            self.logger.debug("Dropping operation on closed link")
            return
        self._queue.put_nowait(operation)
        if self._worker is None:
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def wait_idle(self) -> None:
        """Wait until every submitted operation has run."""

        await self._queue.join()

    async def wait_closed(self) -> None:
        if self._close_task is not None:
            await asyncio.shield(self._close_task)

    async def close(self) -> None:
        if self._closed:
            pending = self._close_task
            if pending is not None and pending is not asyncio.current_task():
                await asyncio.shield(pending)
            return
        self._closed = True

        worker, self._worker = self._worker, None
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        self._drain()

        try:
            await self.transport.close()
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Failed to close transport")
        self._set_connection_state(ConnectionState.CLOSED)

    # ------------------------------------------------------------ internals

    async def _run(self) -> None:
        while not self._closed:
            operation = await self._queue.get()
            try:
                await operation()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception("Negotiation step failed")
                self._set_connection_state(ConnectionState.FAILED)
            finally:
                self._queue.task_done()

    def _drain(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()

    async def _send_offer(self) -> None:
        description = await self.transport.create_offer()
        await self._signal(encode_message(Offer(target_id=self.remote_id, offer=description)))
        self._advance(NegotiationState.OFFER_SENT)
        self.logger.info("Sent offer")

    async def _apply_answer(self, description: Any) -> None:
        await self.transport.set_remote_description(description)
        self._advance(NegotiationState.ANSWERED)
        self.logger.info("Applied answer")

    async def _send_answer(self, description: Any) -> None:
        await self.transport.set_remote_description(description)
        self._advance(NegotiationState.OFFER_RECEIVED)
        answer = await self.transport.create_answer()
        await self._signal(encode_message(Answer(target_id=self.remote_id, answer=answer)))
        self._advance(NegotiationState.ANSWER_SENT)
        self.logger.info("Sent answer")

    async def _send_candidate(self, candidate: Dict[str, Any]) -> None:
        await self._signal(encode_message(IceCandidate(target_id=self.remote_id, candidate=candidate)))

    def _advance(self, state: NegotiationState) -> None:
        if self._closed or self.negotiation_state in (
            NegotiationState.CONNECTED,
            NegotiationState.DISCONNECTED,
            NegotiationState.FAILED,
            NegotiationState.CLOSED,
        ):
            return
        self.negotiation_state = state

    def _handle_local_candidate(self, candidate: Optional[Dict[str, Any]]) -> None:
        if candidate is None or self._closed:
            return
        self.submit(lambda: self._send_candidate(candidate))

    def _handle_track(self, track: Any) -> None:
        if self._closed:
            return
        self.logger.info("Receiving remote %s track", getattr(track, "kind", "unknown"))
        if self._on_track is not None:
            self._on_track(track)

    def _handle_connection_state(self, value: str) -> None:
        state = ConnectionState.coerce(value)
        if self._closed and state is not ConnectionState.CLOSED:
            return
        self._set_connection_state(state)

    def _set_connection_state(self, state: ConnectionState) -> None:
        previous = self.connection_state
        if state is previous:
            return
        if previous is ConnectionState.CLOSED:
            return
        self.connection_state = state
        negotiation = _NEGOTIATION_FOR_CONNECTION.get(state)
        if negotiation is not None:
            self.negotiation_state = negotiation
        self.logger.info("Connection state %s -> %s", previous.value, state.value)

        if self._on_state is not None:
            try:
                self._on_state(self, previous)
            except Exception:  # pragma: no cover - defensive
                self.logger.exception("Connection state listener failed")

        if state in TERMINAL_STATES and not self._closed:
            self._schedule_close()

    def _schedule_close(self) -> None:
        if self._close_task is not None:
            return
        self._close_task = asyncio.get_running_loop().create_task(self.close())
