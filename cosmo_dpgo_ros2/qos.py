"""QoS profiles for the coordination topics.

Profiles are plain dictionaries so the CLI can validate QoS flags without a
ROS 2 install; :mod:`cosmo_dpgo_ros2.bus` turns them into
``rclpy.qos.QoSProfile`` instances.

Overrides are written ``channel=reliability[:depth]``, for example
``status=best_effort:5`` or ``public_poses=reliable``.
"""

from __future__ import annotations

from typing import Dict, Iterable, Optional

DEFAULT_RELIABILITY = "reliable"
DEFAULT_DURABILITY = "volatile"
DEFAULT_DEPTH = 10

# Commands and the anchor must survive late joiners; heartbeats are disposable.
CHANNEL_DEFAULTS: Dict[str, Dict[str, object]] = {
    "command": {"reliability": "reliable", "durability": "transient_local", "depth": 10},
    "status": {"reliability": "best_effort", "durability": "volatile", "depth": 50},
    "public_poses": {"reliability": "reliable", "durability": "volatile", "depth": 20},
    "weights": {"reliability": "reliable", "durability": "volatile", "depth": 20},
    "anchor": {"reliability": "reliable", "durability": "transient_local", "depth": 1},
}

_VALID = {
    "reliability": {"reliable", "best_effort"},
    "durability": {"volatile", "transient_local"},
}


def default_qos_profile(channel: Optional[str] = None) -> Dict[str, object]:
    """Copy of the channel's default profile (request/response topics use the generic one)."""
    if channel in CHANNEL_DEFAULTS:
        return dict(CHANNEL_DEFAULTS[channel])
    return {"reliability": DEFAULT_RELIABILITY, "durability": DEFAULT_DURABILITY, "depth": DEFAULT_DEPTH}


def _apply(profile: Dict[str, object], policy: str, value: Optional[str]) -> None:
    if not value:
        return
    norm = value.lower()
    if norm not in _VALID[policy]:
        raise ValueError(f"Unsupported {policy} policy {value!r}")
    profile[policy] = norm


def parse_qos_options(
    reliability: Optional[str] = None,
    durability: Optional[str] = None,
    depth: Optional[int] = None,
    *,
    channel: Optional[str] = None,
) -> Dict[str, object]:
    """Validate QoS flags on top of the channel default and return the profile."""
    profile = default_qos_profile(channel)
    _apply(profile, "reliability", reliability)
    _apply(profile, "durability", durability)
    if depth is not None:
        if depth <= 0:
            raise ValueError("QoS depth must be positive")
        profile["depth"] = int(depth)
    return profile


def parse_channel_override(text: str) -> Dict[str, Dict[str, object]]:
    """Parse ``channel=reliability[:depth]`` into ``{channel: {...}}``."""
    name, sep, rest = text.partition("=")
    name = name.strip()
    if not sep or name not in CHANNEL_DEFAULTS:
        raise ValueError(f"Bad QoS override {text!r}; expected one of {sorted(CHANNEL_DEFAULTS)}=policy[:depth]")
    reliability, _, depth = rest.partition(":")
    entry: Dict[str, object] = {}
    if reliability.strip():
        entry["reliability"] = reliability.strip()
    if depth.strip():
        try:
            entry["depth"] = int(depth)
        except ValueError:
            raise ValueError(f"Bad QoS depth in {text!r}") from None
    return {name: entry}


def channel_profiles(
    reliability: Optional[str] = None,
    durability: Optional[str] = None,
    depth: Optional[int] = None,
    overrides: Optional[Iterable[str]] = None,
) -> Dict[str, Dict[str, object]]:
    """Per-channel profiles.

    Global flags apply to every channel; ``overrides`` then adjust single
    channels and win over the global flags.
    """
    per_channel: Dict[str, Dict[str, object]] = {}
    for text in overrides or ():
        for name, entry in parse_channel_override(text).items():
            per_channel.setdefault(name, {}).update(entry)
    profiles = {}
    for name in CHANNEL_DEFAULTS:
        profile = parse_qos_options(reliability, durability, depth, channel=name)
        local = per_channel.get(name)
        if local:
            profile = parse_qos_options(
                local.get("reliability") or profile["reliability"],
                str(profile["durability"]),
                local.get("depth", profile["depth"]),
                channel=name,
            )
        profiles[name] = profile
    return profiles
