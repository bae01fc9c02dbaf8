"""
Viewer side: request one sharer's stream and surface it to a render sink.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Mapping, Optional

from ..protocol import RequestStream, encode_message
from .link import (
    TERMINAL_STATES,
    ConnectionState,
    NegotiationState,
    PeerLink,
    SignalSender,
    TransportFactory,
)
from .media import MediaStream, RenderSink

LOG = logging.getLogger(__name__)


class ViewerSessionController:
    """
    Hold at most one viewing :class:`PeerLink` at a time.

    Candidates that arrive from the requested sharer before its offer are
    buffered and applied once the link exists.
    """

    def __init__(
        self,
        signal: SignalSender,
        *,
        transport_factory: TransportFactory,
        sink: Optional[RenderSink] = None,
    ) -> None:
        self._signal = signal
        self._transport_factory = transport_factory
        self.sink = sink
        self.target_id: Optional[str] = None
        self.link: Optional[PeerLink] = None
        self.remote_stream: Optional[MediaStream] = None
        self._state = NegotiationState.IDLE
        self._pending_candidates: List[Any] = []

    @property
    def state(self) -> NegotiationState:
        if self.link is not None:
            return self.link.negotiation_state
        return self._state

    @property
    def is_viewing(self) -> bool:
        return self.target_id is not None

    async def view(self, target_id: str) -> None:
        await self.close_view()
        self.target_id = target_id
        self._state = NegotiationState.REQUESTED
        await self._signal(encode_message(RequestStream(target_id=target_id)))
        LOG.info("Requested stream from %s", target_id)

    async def handle_offer(self, sender_id: str, description: Any) -> Optional[PeerLink]:
        if sender_id != self.target_id:
            LOG.warning("Ignoring offer from %s; not the requested sharer", sender_id)
            return None

        if self.link is not None:
            LOG.info("Renegotiating with %s", sender_id)
            await self._release_link()

        self.remote_stream = MediaStream()
        link = PeerLink(
            sender_id,
            self._transport_factory(),
            role="viewer",
            signal=self._signal,
            on_state=self._handle_link_state,
            on_track=self._handle_track,
        )
        self.link = link
        link.answer_offer(description)
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            link.add_remote_candidate(candidate)
        LOG.info("Received offer from %s", sender_id)
        return link

    async def handle_ice_candidate(self, sender_id: str, candidate: Any) -> None:
        link = self.link
        if link is not None and link.remote_id == sender_id:
            link.add_remote_candidate(candidate)
            return
        if link is None and sender_id == self.target_id:
            self._pending_candidates.append(candidate)
            return
        LOG.debug("ICE candidate from unexpected peer %s", sender_id)

    async def handle_user_list(self, users: Iterable[Mapping[str, Any]]) -> None:
        """
        Close the view when the watched sharer left or stopped sharing.
        """

        if self.target_id is None:
            return
        for user in users:
            if user.get("id") == self.target_id:
                if user.get("isSharing"):
                    return
                LOG.info("%s stopped sharing", user.get("username") or self.target_id)
                break
        else:
            LOG.info("Sharer %s left", self.target_id)
        await self.close_view()

    async def close_view(self) -> None:
        had_view = self.target_id is not None or self.link is not None
        await self._release_link()
        self._pending_candidates.clear()
        self.target_id = None
        self._state = NegotiationState.CLOSED if had_view else NegotiationState.IDLE

    async def _release_link(self) -> None:
        link, self.link = self.link, None
        stream, self.remote_stream = self.remote_stream, None
        if stream is not None:
            stream.stop()
        if link is not None:
            await link.close()
        if self.sink is not None and (stream is not None or link is not None):
            self.sink.clear()

    def _handle_track(self, track: Any) -> None:
        stream = self.remote_stream
        if stream is None or not stream.add_track(track):
            return
        if self.sink is not None:
            self.sink.attach_remote_stream(stream)

    def _handle_link_state(self, link: PeerLink, previous: ConnectionState) -> None:
        if link is not self.link:
            return
        if link.connection_state is ConnectionState.CONNECTED:
            LOG.info("Connected to %s", link.remote_id)
            return
        if link.connection_state not in TERMINAL_STATES:
            return

        LOG.info("View of %s ended (%s)", link.remote_id, link.connection_state.value)
        self.link = None
        self._state = link.negotiation_state
        stream, self.remote_stream = self.remote_stream, None
        if stream is not None:
            stream.stop()
        if self.sink is not None:
            self.sink.clear()
