"""ROS 2 helpers for the coordination layer.

This package provides lightweight JSON-based encode/decode helpers for the
coordination messages, per-channel QoS profiles and a reproducible network
impairment policy.  All of them work without ROS 2 installed; only
``cosmo_dpgo_ros2.bus`` needs ``rclpy`` and is imported lazily.
"""

from .codec import encode_message, decode_message, message_sender
from .qos import default_qos_profile, parse_qos_options, parse_channel_override, channel_profiles
from .impair import ImpairmentPolicy

__all__ = [
    "encode_message",
    "decode_message",
    "message_sender",
    "default_qos_profile",
    "parse_qos_options",
    "parse_channel_override",
    "channel_profiles",
    "ImpairmentPolicy",
]
