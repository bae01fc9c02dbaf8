"""
Peer-session helpers: links, media handles and the two session controllers.
"""

from __future__ import annotations

from .link import ConnectionState, NegotiationState, PeerLink, PeerTransport
from .media import CaptureError, CaptureSource, MediaError, MediaStream, RenderSink
from .sharer import SharerSessionController
from .viewer import ViewerSessionController

__all__ = [
    "CaptureError",
    "CaptureSource",
    "ConnectionState",
    "MediaError",
    "MediaStream",
    "NegotiationState",
    "PeerLink",
    "PeerTransport",
    "RenderSink",
    "SharerSessionController",
    "ViewerSessionController",
]
