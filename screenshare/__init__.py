"""
Screen-share signaling package.

This package hosts the relay that brokers offer/answer/ICE exchange between a
sharing client and any number of viewers, together with the client-side
session controllers that own the peer links on either end.  Configuration
objects live here so the relay, the client and the CLI share one definition.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

CONFIG_DIR = Path(__file__).resolve().parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"

DEFAULT_USERNAME = "Anonymous"
DEFAULT_ICE_SERVERS = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)

LOG = logging.getLogger(__name__)

__all__ = [
    "ClientConfig",
    "DEFAULT_USERNAME",
    "RelayConfig",
    "RtcConfig",
    "load_profiles",
]


def load_profiles(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Read the profile table from YAML; a missing file yields no profiles.
    """

    target = path or PROFILES_PATH
    try:
        with target.open("r", encoding="utf-8") as handle:
            profiles = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        profiles = {}
    if not isinstance(profiles, dict):
        LOG.warning("Ignoring malformed profile file %s", target)
        return {}
    return profiles


def _profile_section(profile: str, section: str, path: Optional[Path]) -> Dict[str, Any]:
    profiles = load_profiles(path)
    entry = profiles.get(profile)
    if entry is None:
        if profiles:
            LOG.warning("Unknown profile '%s'; using built-in defaults", profile)
        return {}
    value = (entry or {}).get(section) or {}
    return value if isinstance(value, dict) else {}


@dataclass
class RtcConfig:
    """ICE configuration handed to every peer transport."""

    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> "RtcConfig":
        if not payload or "ice_servers" not in payload:
            return cls()
        servers = payload.get("ice_servers") or []
        return cls(ice_servers=[str(url) for url in servers if url])


@dataclass
class RelayConfig:
    """Top level relay configuration."""

    profile: str = "default"
    host: str = "0.0.0.0"
    port: int = 9090
    queue_size: int = 256
    ping_interval: float = 0.0
    pong_timeout: float = 60.0

    @classmethod
    def from_profile(
        cls,
        profile: str = "default",
        *,
        path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "RelayConfig":
        """
        Build a config from ``profiles.yaml`` then apply environment overrides.

        ``SCREENSHARE_PORT`` wins over ``PORT``; both win over the profile.
        """

        config = cls(profile=profile)
        section = _profile_section(profile, "relay", path)
        if "host" in section:
            config.host = str(section["host"])
        if "port" in section:
            config.port = int(section["port"])
        if "queue_size" in section:
            config.queue_size = max(1, int(section["queue_size"]))
        if "ping_interval" in section:
            config.ping_interval = max(0.0, float(section["ping_interval"]))
        if "pong_timeout" in section:
            config.pong_timeout = max(0.0, float(section["pong_timeout"]))

        env = os.environ if environ is None else environ
        env_port = env.get("SCREENSHARE_PORT") or env.get("PORT")
        if env_port:
            try:
                config.port = int(env_port)
            except ValueError:
                LOG.warning("Ignoring non-numeric port override %r", env_port)
        return config


@dataclass
class ClientConfig:
    """Settings for a sharer/viewer client."""

    url: str = "ws://127.0.0.1:9090/"
    username: str = DEFAULT_USERNAME
    rtc: RtcConfig = field(default_factory=RtcConfig)

    @classmethod
    def from_profile(
        cls,
        profile: str = "default",
        *,
        path: Optional[Path] = None,
        url: Optional[str] = None,
        username: Optional[str] = None,
    ) -> "ClientConfig":
        section = _profile_section(profile, "client", path)
        rtc = RtcConfig.from_dict(_profile_section(profile, "rtc", path) or None)
        config = cls(rtc=rtc)
        if section.get("url"):
            config.url = str(section["url"])
        if section.get("username"):
            config.username = str(section["username"])
        if url:
            config.url = url
        if username:
            config.username = username
        return config
