"""
Sharer side: fan one local capture stream out to many viewers.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set, Union

from ..protocol import StartSharing, StopSharing, encode_message
from .link import (
    TERMINAL_STATES,
    ConnectionState,
    PeerLink,
    SignalSender,
    TransportFactory,
)
from .media import CaptureSource, MediaStream

LOG = logging.getLogger(__name__)


class SharerSessionController:
    """
    Own the local capture stream and one :class:`PeerLink` per viewer.

    ``on_viewer_count`` receives the number of viewers whose link is
    ``connected`` each time that number changes.
    """

    def __init__(
        self,
        signal: SignalSender,
        *,
        transport_factory: TransportFactory,
        on_viewer_count: Optional[Callable[[int], None]] = None,
    ) -> None:
        self._signal = signal
        self._transport_factory = transport_factory
        self._on_viewer_count = on_viewer_count
        self.local_stream: Optional[MediaStream] = None
        self.links: Dict[str, PeerLink] = {}
        self.viewer_names: Dict[str, str] = {}
        self._viewer_count = 0
        self._tasks: Set[asyncio.Task] = set()

    @property
    def is_sharing(self) -> bool:
        return self.local_stream is not None

    @property
    def viewer_count(self) -> int:
        return self._viewer_count

    async def start_sharing(self, source: Union[MediaStream, CaptureSource]) -> MediaStream:
        """
        Announce sharing of ``source``.

        A :class:`CaptureSource` is acquired first; a :class:`CaptureError`
        propagates and nothing is announced.
        """

        if self.local_stream is not None:
            LOG.info("Already sharing; ignoring start request")
            return self.local_stream
        if isinstance(source, MediaStream):
            stream = source
        else:
            stream = await asyncio.to_thread(source.acquire_local_stream)
        if not stream.get_tracks():
            raise ValueError("cannot share a stream without tracks")

        self.local_stream = stream
        stream.on_ended(lambda: self._handle_capture_ended(stream))
        await self._signal(encode_message(StartSharing()))
        LOG.info("Sharing started with %d track(s)", len(stream))
        return stream

    async def stop_sharing(self) -> None:
        stream, self.local_stream = self.local_stream, None
        links = list(self.links.values())
        self.links.clear()
        self.viewer_names.clear()
        if stream is None and not links:
            return

        if stream is not None:
            stream.stop()
        await asyncio.gather(*[link.close() for link in links], return_exceptions=True)
        if stream is not None:
            await self._signal(encode_message(StopSharing()))
        self._refresh_viewer_count()
        LOG.info("Sharing stopped; closed %d peer link(s)", len(links))

    async def handle_stream_request(self, viewer_id: str, viewer_username: str = "") -> Optional[PeerLink]:
        stream = self.local_stream
        if stream is None:
            LOG.warning("Stream request from %s while not sharing; ignoring", viewer_id)
            return None

        previous = self.links.pop(viewer_id, None)
        if previous is not None:
            LOG.info("Replacing existing link for viewer %s", viewer_id)
            await previous.close()

        link = PeerLink(
            viewer_id,
            self._transport_factory(),
            role="sharer",
            signal=self._signal,
            on_state=self._handle_link_state,
        )
        self.links[viewer_id] = link
        self.viewer_names[viewer_id] = viewer_username or viewer_id
        for track in stream.get_tracks():
            link.add_track(track)
        link.start_offer()
        LOG.info("%s requested to view stream", self.viewer_names[viewer_id])
        return link

    async def handle_answer(self, sender_id: str, description: Any) -> None:
        link = self.links.get(sender_id)
        if link is None:
            LOG.debug("Answer from unknown viewer %s", sender_id)
            return
        link.accept_answer(description)

    async def handle_ice_candidate(self, sender_id: str, candidate: Any) -> None:
        link = self.links.get(sender_id)
        if link is None:
            LOG.debug("ICE candidate from unknown viewer %s", sender_id)
            return
        link.add_remote_candidate(candidate)

    def _handle_link_state(self, link: PeerLink, previous: ConnectionState) -> None:
        name = self.viewer_names.get(link.remote_id, link.remote_id)
        if link.connection_state is ConnectionState.CONNECTED:
            LOG.info("%s is now viewing your screen", name)
        elif link.connection_state in TERMINAL_STATES:
            if self.links.get(link.remote_id) is link:
                del self.links[link.remote_id]
                self.viewer_names.pop(link.remote_id, None)
                LOG.info("%s disconnected (%s)", name, link.connection_state.value)
        if link.connection_state is ConnectionState.CONNECTED or previous is ConnectionState.CONNECTED:
            self._refresh_viewer_count()

    def _refresh_viewer_count(self) -> None:
        count = sum(1 for link in self.links.values() if link.is_connected)
        if count == self._viewer_count:
            return
        self._viewer_count = count
        if self._on_viewer_count is not None:
            self._on_viewer_count(count)

    def _handle_capture_ended(self, stream: MediaStream) -> None:
        if self.local_stream is not stream:
            return
        LOG.info("Screen sharing stopped by user")
        task = asyncio.get_running_loop().create_task(self.stop_sharing())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
