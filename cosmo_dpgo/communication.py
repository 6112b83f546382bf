from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional
from collections import defaultdict, deque
import copy
import logging

from cosmo_dpgo_ros2.impair import ImpairmentPolicy
from cosmo_dpgo_common.bandwidth import BandwidthTracker, message_bytes

logger = logging.getLogger("cosmo_dpgo.bus")

Responder = Callable[[Any], Any]


class Channel(str, Enum):
    COMMAND = "command"
    STATUS = "status"
    PUBLIC_POSES = "public_poses"
    WEIGHTS = "weights"
    ANCHOR = "anchor"


@dataclass
class Envelope:
    """A message as delivered to one receiver."""

    channel: Channel
    sender: int
    message: Any


class RequestTimeout(Exception):
    """No response from the addressed agent within the caller's timeout."""


class MessageBus:
    """Transport contract used by the agent dispatcher."""

    def register(self, agent_id: int) -> None:  # pragma: no cover - interface method
        raise NotImplementedError

    def publish(self, sender: int, channel: Channel, message: Any) -> None:  # pragma: no cover - interface method
        raise NotImplementedError

    def drain(self, agent_id: int) -> List[Envelope]:  # pragma: no cover - interface method
        raise NotImplementedError

    def register_responder(self, agent_id: int, handler: Responder) -> None:  # pragma: no cover - interface method
        raise NotImplementedError

    def request(self, sender: int, target: int, payload: Any, timeout: float) -> Any:  # pragma: no cover
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - default no-op for compatibility
        return None


class InProcessBus(MessageBus):
    """In-memory broadcast bus used to emulate a team on one process.

    Every published message is copied into the mailbox of every other
    registered agent; FIFO order is preserved per receiver.  An optional
    :class:`ImpairmentPolicy` drops or duplicates individual deliveries and
    silences agents during blackouts, which is how tests emulate crashed
    robots and lossy links.
    """

    def __init__(
        self,
        agent_ids: Iterable[int] = (),
        *,
        impairment: Optional[ImpairmentPolicy] = None,
        bandwidth: Optional[BandwidthTracker] = None,
    ) -> None:
        self._mailboxes: Dict[int, deque] = {}
        self._responders: Dict[int, Responder] = {}
        self._offline: set = set()
        self._impair = impairment
        self.bandwidth = bandwidth
        self._delivered = 0
        self._published: Dict[str, int] = defaultdict(int)
        for rid in agent_ids:
            self.register(rid)

    def register(self, agent_id: int) -> None:
        self._mailboxes.setdefault(int(agent_id), deque())

    def set_online(self, agent_id: int, online: bool) -> None:
        """Emulate a crash (``online=False``) or restart of ``agent_id``."""
        agent_id = int(agent_id)
        if online:
            self._offline.discard(agent_id)
        else:
            self._offline.add(agent_id)
            mailbox = self._mailboxes.get(agent_id)
            if mailbox is not None:
                mailbox.clear()

    def is_online(self, agent_id: int) -> bool:
        return int(agent_id) not in self._offline

    def _copies_for(self, sender: int, receiver: Optional[int], channel: str) -> int:
        if self._impair is None:
            return 1
        copies, reason = self._impair.on_send(sender=sender, receiver=receiver, channel=channel)
        if reason is not None:
            logger.debug("Dropped %s from %s to %s (%s)", channel, sender, receiver, reason)
        return copies

    def publish(self, sender: int, channel: Channel, message: Any) -> None:
        sender = int(sender)
        channel = Channel(channel)
        if sender in self._offline:
            return
        self._published[channel.value] += 1
        if self.bandwidth is not None:
            self.bandwidth.add_uplink(channel.value, message_bytes(message), agent_id=sender)
        for receiver, mailbox in self._mailboxes.items():
            if receiver == sender or receiver in self._offline:
                continue
            for _ in range(self._copies_for(sender, receiver, channel.value)):
                mailbox.append(Envelope(channel, sender, copy.deepcopy(message)))

    def drain(self, agent_id: int) -> List[Envelope]:
        """Return and clear all pending messages for ``agent_id``."""
        mailbox = self._mailboxes.get(int(agent_id))
        if not mailbox:
            return []
        msgs = list(mailbox)
        self._delivered += len(msgs)
        mailbox.clear()
        if self.bandwidth is not None:
            for env in msgs:
                self.bandwidth.add_downlink(env.channel.value, message_bytes(env.message), agent_id=agent_id)
        return msgs

    # ------------------------------------------------------------------
    # Request / response
    # ------------------------------------------------------------------
    def register_responder(self, agent_id: int, handler: Responder) -> None:
        self._responders[int(agent_id)] = handler

    def request(self, sender: int, target: int, payload: Any, timeout: float) -> Any:
        """Synchronous query answered by ``target``'s responder.

        Raises :class:`RequestTimeout` when the target is offline, has no
        responder, or either leg of the exchange is lost.
        """
        target = int(target)
        handler = self._responders.get(target)
        if handler is None or target in self._offline or int(sender) in self._offline:
            raise RequestTimeout(f"agent {target} did not answer within {timeout:.1f}s")
        if self._copies_for(sender, target, "request") == 0:
            raise RequestTimeout(f"request to agent {target} lost")
        response = handler(copy.deepcopy(payload))
        if self._copies_for(target, sender, "response") == 0:
            raise RequestTimeout(f"response from agent {target} lost")
        return copy.deepcopy(response)

    # ------------------------------------------------------------------
    @property
    def pending_counts(self) -> Dict[int, int]:
        return {rid: len(q) for rid, q in self._mailboxes.items() if q}

    @property
    def delivered(self) -> int:
        return self._delivered

    @property
    def published(self) -> Dict[str, int]:
        return dict(self._published)

    def close(self) -> None:
        if self._impair is not None:
            self._impair.export()
