"""
Media stream handles and the capture/render collaborators.

The session controllers never open capture devices or draw frames; they take
a :class:`MediaStream` from a :class:`CaptureSource` and hand inbound streams
to a :class:`RenderSink`.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Set

LOG = logging.getLogger(__name__)


class MediaError(RuntimeError):
    """Base class for media handling errors."""


class CaptureError(MediaError):
    """Raised when no local capture stream could be acquired."""


class MediaStream:
    """
    Ordered group of media tracks handled as one unit.

    Tracks are duck-typed: anything with ``kind`` and ``stop()`` works, which
    covers aiortc's ``MediaStreamTrack``.
    """

    def __init__(self, tracks: Iterable[Any] = ()) -> None:
        self.id = uuid.uuid4().hex
        self._tracks: List[Any] = []
        self._stopped = False
        for track in tracks:
            self.add_track(track)

    def __len__(self) -> int:
        return len(self._tracks)

    def add_track(self, track: Any) -> bool:
        if any(existing is track for existing in self._tracks):
            return False
        self._tracks.append(track)
        return True

    def get_tracks(self) -> List[Any]:
        return list(self._tracks)

    def get_tracks_of_kind(self, kind: str) -> List[Any]:
        return [track for track in self._tracks if getattr(track, "kind", None) == kind]

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def active(self) -> bool:
        if self._stopped:
            return False
        return any(getattr(track, "readyState", "live") != "ended" for track in self._tracks)

    def on_ended(self, callback: Callable[[], None]) -> None:
        """Invoke ``callback`` when any track reports ``ended``."""

        for track in self._tracks:
            register = getattr(track, "on", None)
            if callable(register):
                register("ended", callback)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        for track in self._tracks:
            try:
                track.stop()
            except Exception:  # pragma: no cover - defensive
                LOG.exception("Failed to stop %s track", getattr(track, "kind", "unknown"))


class CaptureSource(Protocol):
    def acquire_local_stream(self) -> MediaStream:
        """Return a live capture stream or raise :class:`CaptureError`."""


class RenderSink(Protocol):
    def attach_remote_stream(self, stream: MediaStream) -> None:
        ...

    def clear(self) -> None:
        ...


@dataclass
class CaptureDevice:
    """An ffmpeg input understood by aiortc's ``MediaPlayer``."""

    file: str
    format: Optional[str] = None
    options: Dict[str, str] = field(default_factory=dict)
    label: str = ""

    def describe(self) -> str:
        return self.label or f"{self.format or 'file'}:{self.file}"


def default_screen_devices(platform: Optional[str] = None) -> List[CaptureDevice]:
    """
    Screen-grab inputs for the running platform, most preferred first.
    """

    platform = platform or sys.platform
    options = {"framerate": "30", "video_size": "1920x1080"}
    if platform.startswith("linux"):
        return [
            CaptureDevice(":0.0", "x11grab", dict(options), "primary screen"),
            CaptureDevice(":1.0", "x11grab", dict(options), "secondary display"),
        ]
    if platform == "darwin":
        return [
            CaptureDevice("1:none", "avfoundation", {"framerate": "30", "capture_cursor": "1"}, "primary screen"),
            CaptureDevice("2:none", "avfoundation", {"framerate": "30", "capture_cursor": "1"}, "secondary screen"),
        ]
    if platform.startswith("win"):
        return [CaptureDevice("desktop", "gdigrab", {"framerate": "30"}, "desktop")]
    return []


class PlayerCaptureSource:
    """
    Capture source backed by :class:`aiortc.contrib.media.MediaPlayer`.

    Devices are tried in order until one yields a video track. Audio comes from
    a separate optional device; when it fails the stream is video only.
    """

    def __init__(
        self,
        devices: Optional[Sequence[CaptureDevice]] = None,
        *,
        audio: Optional[CaptureDevice] = None,
        player_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.devices = list(devices) if devices is not None else default_screen_devices()
        self.audio = audio
        self._player_factory = player_factory

    def _open(self, device: CaptureDevice) -> Any:
        factory = self._player_factory
        if factory is None:
            from aiortc.contrib.media import MediaPlayer

            factory = MediaPlayer
        return factory(device.file, format=device.format, options=dict(device.options))

    def acquire_local_stream(self) -> MediaStream:
        if not self.devices:
            raise CaptureError("No screen sources available")

        video_track = None
        last_error: Optional[Exception] = None
        for device in self.devices:
            try:
                player = self._open(device)
            except Exception as exc:
                LOG.warning("Failed to open capture source %s: %s", device.describe(), exc)
                last_error = exc
                continue
            if getattr(player, "video", None) is None:
                LOG.warning("Capture source %s has no video", device.describe())
                continue
            LOG.info("Capturing %s", device.describe())
            video_track = player.video
            break

        if video_track is None:
            message = "Failed to capture screen"
            if last_error is not None:
                message = f"{message}: {last_error}"
            raise CaptureError(message)

        stream = MediaStream([video_track])
        if self.audio is not None:
            try:
                audio_player = self._open(self.audio)
            except Exception as exc:
                LOG.warning("Could not capture system audio: %s", exc)
            else:
                if getattr(audio_player, "audio", None) is not None:
                    stream.add_track(audio_player.audio)
        LOG.info("Screen capture started (%s)", "with audio" if len(stream) > 1 else "video only")
        return stream


class NullRenderSink:
    """
    Render sink that drains inbound tracks through ``MediaBlackhole``.

    Useful for headless viewers: frames are received and discarded so the
    transport keeps flowing.
    """

    def __init__(self) -> None:
        self.stream: Optional[MediaStream] = None
        self._holes: Dict[int, Any] = {}
        self._tasks: Set[asyncio.Task] = set()

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def attach_remote_stream(self, stream: MediaStream) -> None:
        from aiortc.contrib.media import MediaBlackhole

        self.stream = stream
        for track in stream.get_tracks():
            if id(track) in self._holes:
                continue
            hole = MediaBlackhole()
            hole.addTrack(track)
            self._holes[id(track)] = hole
            self._spawn(hole.start())
        LOG.info("Rendering remote stream %s (%d track(s))", stream.id[:8], len(stream))

    def clear(self) -> None:
        holes = list(self._holes.values())
        self._holes.clear()
        self.stream = None
        for hole in holes:
            self._spawn(hole.stop())
