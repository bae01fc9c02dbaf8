"""Command line share/view client for a running relay.

Share the local screen::

    python scripts/demo_share.py --url ws://127.0.0.1:9090/ --name alice share

List who is online and watch the first sharer (frames are discarded)::

    python scripts/demo_share.py --name bob view

Watch a specific client::

    python scripts/demo_share.py view --target 3f2a9c1e0b7d4a55

Press Ctrl+C to disconnect.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Iterable, Optional

from screenshare import ClientConfig
from screenshare.client import PresenceSnapshot, ScreenShareClient, run_client
from screenshare.rtc.media import CaptureDevice, CaptureError, NullRenderSink, PlayerCaptureSource
from screenshare.utils.logging import configure_logging

LOG = logging.getLogger("demo_share")


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Screen share relay demo client")
    parser.add_argument("--profile", default="default", help="client profile to load")
    parser.add_argument("--url", default=None, help="relay WebSocket URL")
    parser.add_argument("--name", default=None, help="display name announced to the relay")
    commands = parser.add_subparsers(dest="mode", required=True)

    share = commands.add_parser("share", help="share the local screen")
    share.add_argument(
        "--input",
        action="append",
        default=[],
        help="ffmpeg input to capture instead of the screen (repeatable, tried in order)",
    )
    share.add_argument("--input-format", default=None, help="ffmpeg format for --input")
    share.add_argument("--audio", default=None, help="optional ffmpeg audio input")
    share.add_argument("--audio-format", default=None, help="ffmpeg format for --audio")

    view = commands.add_parser("view", help="watch a sharer")
    view.add_argument("--target", default=None, help="client id to watch; defaults to the first sharer")
    return parser.parse_args(argv)


def print_presence(snapshot: PresenceSnapshot) -> None:
    if not snapshot.connected:
        print("disconnected")
        return
    sharers = [user for user in snapshot.users if user.get("isSharing")]
    print(
        f"me={snapshot.client_id} ({snapshot.username}) sharing={snapshot.is_sharing} "
        f"viewers={snapshot.viewer_count} viewing={snapshot.viewing or '-'}:{snapshot.viewer_state} "
        f"online={len(snapshot.users)} sharers={[user['username'] for user in sharers]}"
    )


def build_capture(args: argparse.Namespace) -> PlayerCaptureSource:
    devices = None
    if args.input:
        devices = [CaptureDevice(item, args.input_format) for item in args.input]
    audio = CaptureDevice(args.audio, args.audio_format, label="audio") if args.audio else None
    return PlayerCaptureSource(devices, audio=audio)


async def share(client: ScreenShareClient) -> None:
    try:
        await client.start_sharing()
    except CaptureError as exc:
        LOG.error("%s", exc)
        await client.disconnect()


async def watch(client: ScreenShareClient, target: Optional[str]) -> None:
    while target is None:
        if not client.connected:
            return
        sharers = [user for user in client.users if user.get("isSharing") and user.get("id") != client.client_id]
        if sharers:
            target = sharers[0]["id"]
            break
        await asyncio.sleep(0.5)
    await client.view(target)


async def main(args: argparse.Namespace) -> None:
    config = ClientConfig.from_profile(args.profile, url=args.url, username=args.name)
    capture = build_capture(args) if args.mode == "share" else None
    client = ScreenShareClient(config, capture=capture, sink=NullRenderSink())
    token = client.subscribe(print_presence)

    async def ready() -> None:
        if args.mode == "share":
            await share(client)
        else:
            await watch(client, args.target)

    try:
        await run_client(client, ready)
    finally:
        client.unsubscribe(token)


if __name__ == "__main__":
    configure_logging()
    try:
        asyncio.run(main(parse_args()))
    except KeyboardInterrupt:
        pass
