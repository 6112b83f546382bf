"""Request handling of the ROS 2 bus, exercised without a ROS 2 runtime."""

from collections import deque
from types import SimpleNamespace
import json
import logging
import threading

import numpy as np

from cosmo_dpgo.messages import LiftingMatrixRequest, LiftingMatrixResponse
from cosmo_dpgo_ros2.bus import Ros2MessageBus
from cosmo_dpgo_ros2.codec import decode_message, encode_message


def _bare_bus(agent_id, responder):
    """A bus with its state set up but no node, publishers or spin thread."""
    bus = Ros2MessageBus.__new__(Ros2MessageBus)
    bus.agent_id = agent_id
    bus._lock = threading.Lock()
    bus._mailbox = deque()
    bus._requests = deque()
    bus._waiting = {}
    bus._delivered = 0
    bus._responder = responder
    bus._logger = logging.getLogger("cosmo_dpgo.ros2_bus")
    bus.sent = []
    bus._send = lambda topic, data, receiver=None: bus.sent.append((topic, json.loads(data), receiver))
    return bus


def _request_msg(target, sender=1, request_id="1-0"):
    doc = {
        "id": request_id,
        "sender": sender,
        "target": target,
        "payload": encode_message(LiftingMatrixRequest(requester=sender)).decode("utf-8"),
    }
    return SimpleNamespace(data=json.dumps(doc).encode("utf-8"))


class TestRequests:
    """Requests are answered on the thread that drains the bus."""

    def test_answer_waits_for_drain(self):
        threads = []

        def responder(payload):
            threads.append(threading.current_thread())
            return LiftingMatrixResponse(owner=0, matrix=np.eye(5)[:, :3])

        bus = _bare_bus(0, responder)
        callback = threading.Thread(target=bus._on_request, args=(_request_msg(0),))
        callback.start()
        callback.join()
        assert threads == []
        assert bus.sent == []

        assert bus.drain(0) == []
        assert threads == [threading.current_thread()]
        topic, reply, receiver = bus.sent[0]
        assert (topic, reply["id"], receiver) == ("response", "1-0", 1)
        response = decode_message(reply["payload"])
        assert isinstance(response, LiftingMatrixResponse)
        assert response.matrix.shape == (5, 3)

    def test_request_for_other_agent_not_queued(self):
        bus = _bare_bus(0, lambda payload: None)
        bus._on_request(_request_msg(2))
        assert not bus._requests
        bus.drain(0)
        assert bus.sent == []

    def test_empty_answer_sent_as_null(self):
        bus = _bare_bus(0, lambda payload: None)
        bus._on_request(_request_msg(0, sender=2, request_id="2-5"))
        bus.drain(0)
        assert bus.sent == [("response", {"id": "2-5", "payload": None}, 2)]
