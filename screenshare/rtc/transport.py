"""
aiortc implementation of :class:`~screenshare.rtc.link.PeerTransport`.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaRelay
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from .. import RtcConfig

LOG = logging.getLogger(__name__)

# One relay per process lets a single capture track feed every viewer's sender.
_MEDIA_RELAY = MediaRelay()


def build_configuration(config: Optional[RtcConfig] = None) -> RTCConfiguration:
    config = config or RtcConfig()
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in config.ice_servers])


def _description_from_payload(payload: Any) -> RTCSessionDescription:
    if not isinstance(payload, Mapping):
        raise ValueError("session description must be an object with 'type' and 'sdp'")
    sdp = payload.get("sdp")
    kind = payload.get("type")
    if not isinstance(sdp, str) or kind not in ("offer", "answer", "pranswer", "rollback"):
        raise ValueError(f"invalid session description type={kind!r}")
    return RTCSessionDescription(sdp=sdp, type=kind)


class AiortcTransport:
    """Wrap an ``RTCPeerConnection`` behind the transport primitives."""

    def __init__(self, config: Optional[RtcConfig] = None, *, relay: Optional[MediaRelay] = None) -> None:
        self.pc = RTCPeerConnection(configuration=build_configuration(config))
        self._relay = relay or _MEDIA_RELAY
        self._on_ice_candidate: Optional[Callable[[Optional[Dict[str, Any]]], None]] = None
        self._on_connection_state_change: Optional[Callable[[str], None]] = None
        self._on_track: Optional[Callable[[Any], None]] = None

        self.pc.on("connectionstatechange", self._emit_connection_state)
        self.pc.on("track", self._emit_track)
        # aiortc bundles gathered candidates into the local description; the
        # handler covers implementations that trickle them separately.
        self.pc.on("icecandidate", self._emit_candidate)

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    def bind(
        self,
        *,
        on_ice_candidate: Callable[[Optional[Dict[str, Any]]], None],
        on_connection_state_change: Callable[[str], None],
        on_track: Callable[[Any], None],
    ) -> None:
        self._on_ice_candidate = on_ice_candidate
        self._on_connection_state_change = on_connection_state_change
        self._on_track = on_track

    def add_track(self, track: Any) -> None:
        self.pc.addTrack(self._relay.subscribe(track))

    async def create_offer(self) -> Dict[str, Any]:
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return self._local_description()

    async def create_answer(self) -> Dict[str, Any]:
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        return self._local_description()

    async def set_remote_description(self, description: Any) -> None:
        await self.pc.setRemoteDescription(_description_from_payload(description))

    async def add_ice_candidate(self, candidate: Any) -> None:
        if not candidate:
            return
        if isinstance(candidate, str):
            candidate = {"candidate": candidate}
        sdp = str(candidate.get("candidate") or "")
        if not sdp:
            LOG.debug("End of remote candidates")
            return
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        parsed = candidate_from_sdp(sdp)
        parsed.sdpMid = candidate.get("sdpMid")
        parsed.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(parsed)

    async def close(self) -> None:
        await self.pc.close()

    def _local_description(self) -> Dict[str, Any]:
        description = self.pc.localDescription
        return {"type": description.type, "sdp": description.sdp}

    def _emit_connection_state(self) -> None:
        if self._on_connection_state_change is not None:
            self._on_connection_state_change(self.pc.connectionState)

    def _emit_track(self, track: Any) -> None:
        if self._on_track is not None:
            self._on_track(track)

    def _emit_candidate(self, candidate: Any) -> None:
        if self._on_ice_candidate is None:
            return
        if candidate is None:
            self._on_ice_candidate(None)
            return
        self._on_ice_candidate(
            {
                "candidate": f"candidate:{candidate_to_sdp(candidate)}",
                "sdpMid": getattr(candidate, "sdpMid", None),
                "sdpMLineIndex": getattr(candidate, "sdpMLineIndex", None),
            }
        )


def create_peer_transport(config: Optional[RtcConfig] = None) -> AiortcTransport:
    return AiortcTransport(config)
