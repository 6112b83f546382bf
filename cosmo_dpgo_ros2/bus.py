"""ROS 2 transport implementing :class:`cosmo_dpgo.communication.MessageBus`.

One ``std_msgs/UInt8MultiArray`` topic per broadcast channel carries the JSON
payloads produced by :mod:`cosmo_dpgo_ros2.codec`.  The request/response
exchange used at bootstrap runs over a request topic and a response topic
with correlation IDs, so no custom service definitions are needed.
"""
from __future__ import annotations

from collections import deque
from typing import Any, Dict, List, Optional
import itertools
import json
import logging
import threading
import time

from cosmo_dpgo.communication import Channel, Envelope, MessageBus, RequestTimeout, Responder

from .codec import decode_message, encode_message, message_sender
from .impair import ImpairmentPolicy
from .qos import channel_profiles, default_qos_profile


class Ros2MessageBus(MessageBus):  # pragma: no cover - requires ROS 2 runtime
    """Single-agent ROS 2 bus; every process hosts one agent."""

    def __init__(
        self,
        agent_id: int,
        *,
        topic_prefix: str = "/cosmo_dpgo",
        qos_profiles: Optional[Dict[str, Dict[str, object]]] = None,
        spin_timeout: float = 0.1,
    ) -> None:
        self.agent_id = int(agent_id)
        self._topic_prefix = (topic_prefix or "/cosmo_dpgo").rstrip("/") or "/cosmo_dpgo"
        self._qos_profiles = qos_profiles or channel_profiles()
        self._spin_timeout = max(spin_timeout, 0.01)

        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._mailbox: deque = deque()
        self._requests: deque = deque()
        self._responder: Optional[Responder] = None
        self._waiting: Dict[str, Dict[str, Any]] = {}
        self._request_ids = itertools.count()
        self._publishers: Dict[str, object] = {}
        self._subscriptions: List[object] = []
        self._delivered = 0

        self._logger = logging.getLogger("cosmo_dpgo.ros2_bus")
        self._impair = ImpairmentPolicy.from_env()

        self._bootstrap_ros()
        self._thread = threading.Thread(target=self._spin_loop, daemon=True)
        self._thread.start()

    # ------------------------------------------------------------------
    # ROS 2 setup helpers
    # ------------------------------------------------------------------
    def _bootstrap_ros(self) -> None:
        try:
            import rclpy  # type: ignore
            from rclpy.qos import QoSProfile, ReliabilityPolicy, DurabilityPolicy  # type: ignore
            from std_msgs.msg import UInt8MultiArray  # type: ignore
        except ImportError as exc:
            raise RuntimeError("ROS 2 transport requested but rclpy/std_msgs are unavailable") from exc

        def to_qos(profile: Dict[str, object]):
            return QoSProfile(
                depth=int(profile.get("depth", 10)),
                reliability=(
                    ReliabilityPolicy.RELIABLE
                    if str(profile.get("reliability")) == "reliable"
                    else ReliabilityPolicy.BEST_EFFORT
                ),
                durability=(
                    DurabilityPolicy.TRANSIENT_LOCAL
                    if str(profile.get("durability")) == "transient_local"
                    else DurabilityPolicy.VOLATILE
                ),
            )

        self._rclpy = rclpy
        self._msg_type = UInt8MultiArray
        self._should_shutdown = not rclpy.ok()
        if self._should_shutdown:
            rclpy.init(args=None)
        self._node = rclpy.create_node(f"cosmo_dpgo_agent_{self.agent_id}")

        for channel in Channel:
            qos = to_qos(self._qos_profiles.get(channel.value, default_qos_profile(channel.value)))
            topic = self._topic(channel.value)
            self._publishers[channel.value] = self._node.create_publisher(UInt8MultiArray, topic, qos)
            self._subscriptions.append(
                self._node.create_subscription(
                    UInt8MultiArray, topic, lambda msg, ch=channel: self._on_broadcast(ch, msg), qos
                )
            )
        rr_qos = to_qos(default_qos_profile())
        for name, handler in (("request", self._on_request), ("response", self._on_response)):
            self._publishers[name] = self._node.create_publisher(UInt8MultiArray, self._topic(name), rr_qos)
            self._subscriptions.append(
                self._node.create_subscription(UInt8MultiArray, self._topic(name), handler, rr_qos)
            )

    def _topic(self, name: str) -> str:
        return f"{self._topic_prefix}/{name}"

    def _spin_loop(self) -> None:
        while not self._closed.is_set():
            try:
                self._rclpy.spin_once(self._node, timeout_sec=self._spin_timeout)
            except Exception as exc:
                self._logger.debug("ROS 2 spin_once failed: %s", exc)
                time.sleep(self._spin_timeout)

    def _send(self, topic_key: str, data: bytes, receiver: Optional[int] = None) -> None:
        if self._impair is not None:
            copies, _reason = self._impair.on_send(sender=self.agent_id, receiver=receiver, channel=topic_key)
        else:
            copies = 1
        ros_msg = self._msg_type()
        ros_msg.data = list(data)
        for _ in range(copies):
            self._publishers[topic_key].publish(ros_msg)

    # ------------------------------------------------------------------
    # MessageBus API
    # ------------------------------------------------------------------
    def register(self, agent_id: int) -> None:
        if int(agent_id) != self.agent_id:
            raise ValueError(f"This bus hosts agent {self.agent_id}, not {agent_id}")

    def publish(self, sender: int, channel: Channel, message: Any) -> None:
        self._send(Channel(channel).value, encode_message(message))

    def drain(self, agent_id: int) -> List[Envelope]:
        self._answer_requests()
        with self._lock:
            msgs = list(self._mailbox)
            self._mailbox.clear()
        self._delivered += len(msgs)
        return msgs

    def _answer_requests(self) -> None:
        with self._lock:
            pending = list(self._requests)
            self._requests.clear()
        if self._responder is None:
            return
        for doc in pending:
            try:
                response = self._responder(decode_message(doc["payload"]))
            except ValueError as exc:
                self._logger.warning("Malformed request %s: %s", doc.get("id"), exc)
                continue
            reply = {
                "id": doc["id"],
                "payload": None if response is None else encode_message(response).decode("utf-8"),
            }
            self._send("response", json.dumps(reply).encode("utf-8"), receiver=int(doc.get("sender", -1)))

    def register_responder(self, agent_id: int, handler: Responder) -> None:
        self._responder = handler

    def request(self, sender: int, target: int, payload: Any, timeout: float) -> Any:
        request_id = f"{self.agent_id}-{next(self._request_ids)}"
        slot = {"event": threading.Event(), "response": None}
        with self._lock:
            self._waiting[request_id] = slot
        envelope = {
            "id": request_id,
            "sender": int(sender),
            "target": int(target),
            "payload": encode_message(payload).decode("utf-8"),
        }
        self._send("request", json.dumps(envelope).encode("utf-8"), receiver=int(target))
        answered = slot["event"].wait(timeout)
        with self._lock:
            self._waiting.pop(request_id, None)
        if not answered:
            raise RequestTimeout(f"agent {target} did not answer within {timeout:.1f}s")
        return slot["response"]

    # ------------------------------------------------------------------
    # Callbacks (executor thread)
    # ------------------------------------------------------------------
    def _on_broadcast(self, channel: Channel, msg) -> None:
        try:
            decoded = decode_message(bytes(msg.data))
        except ValueError as exc:
            self._logger.warning("Failed to decode %s message: %s", channel.value, exc)
            return
        sender = message_sender(decoded)
        if sender == self.agent_id:
            return
        with self._lock:
            self._mailbox.append(Envelope(channel, sender, decoded))

    def _on_request(self, msg) -> None:
        doc = json.loads(bytes(msg.data).decode("utf-8"))
        if int(doc.get("target", -1)) != self.agent_id:
            return
        # answered from drain() so the responder runs on the dispatch loop
        with self._lock:
            self._requests.append(doc)

    def _on_response(self, msg) -> None:
        doc = json.loads(bytes(msg.data).decode("utf-8"))
        with self._lock:
            slot = self._waiting.get(doc.get("id"))
        if slot is None:
            return
        payload = doc.get("payload")
        slot["response"] = None if payload is None else decode_message(payload)
        slot["event"].set()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        if self._impair is not None:
            self._impair.export()
        if self._thread.is_alive():
            self._thread.join(timeout=1.0)
        self._node.destroy_node()
        if self._should_shutdown and self._rclpy.ok():
            self._rclpy.shutdown()
