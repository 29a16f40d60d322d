import time

import httpx
import pytest

from npcbridge.bridge.dispatch import DispatchBridge
from npcbridge.bridge.queues import LocationKey, ReplyQueues
from npcbridge.config.store import ConfigStore
from npcbridge.conversation.state import ConversationState
from npcbridge.llm.client import KoboldClient

LOCATION = LocationKey(map_id=0, instance_id=0)
TURN = "\nPlayer: hello\nAldric:"


@pytest.fixture
def bridge_parts(fake_kobold):
    queues = ReplyQueues.create()
    conversation = ConversationState()
    client = KoboldClient(transport=httpx.MockTransport(fake_kobold))
    bridge = DispatchBridge(
        config_store=ConfigStore(),
        conversation=conversation,
        queues=queues,
        client=client,
        max_workers=2,
    )
    yield bridge, queues, conversation
    bridge.shutdown()


def test_generation_pushes_reply_and_extends_history(bridge_parts, fake_kobold):
    bridge, queues, conversation = bridge_parts
    conversation.set_target("c1")

    future = bridge.dispatch_generation("c1", LOCATION, {"prompt": "p"}, TURN)
    assert future is not None
    assert future.result(timeout=5) is True

    items = queues.dialogue_replies.drain()
    assert [(item.entity_id, item.location, item.text) for item in items] == [("c1", LOCATION, "Greetings, traveler.")]
    assert conversation.get_history("c1") == "\nPlayer: hello\nAldric: Greetings, traveler."
    assert fake_kobold.requests == [{"prompt": "p"}]


@pytest.mark.parametrize("text,status_code", (("   \n", 200), ("ignored", 500)))
def test_failed_or_empty_generation_leaves_no_trace(bridge_parts, fake_kobold, text, status_code):
    bridge, queues, conversation = bridge_parts
    fake_kobold.text = text
    fake_kobold.status_code = status_code
    conversation.set_target("c1")

    future = bridge.dispatch_generation("c1", LOCATION, {"prompt": "p"}, TURN)
    assert future.result(timeout=5) is False
    assert not queues.dialogue_replies
    assert conversation.get_history("c1") == ""


def test_generation_uses_address_from_dispatch_time(fake_kobold):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.host)
        return fake_kobold(request)

    store = ConfigStore()
    gate = fake_kobold.hold()
    bridge = DispatchBridge(
        config_store=store,
        conversation=ConversationState(),
        queues=ReplyQueues.create(),
        client=KoboldClient(transport=httpx.MockTransport(handler)),
        max_workers=1,
    )
    try:
        future = bridge.dispatch_generation("c1", LOCATION, {"prompt": "p"}, TURN)
        store.apply_updates({"host": "10.9.9.9"})
        gate.set()
        future.result(timeout=5)
    finally:
        bridge.shutdown()
    assert seen == ["127.0.0.1"]


def test_status_check_reports_connectivity(bridge_parts, fake_kobold):
    bridge, queues, _ = bridge_parts
    assert bridge.dispatch_status_check("p1", "127.0.0.1", 5001).result(timeout=5) is True
    fake_kobold.model_status = 500
    assert bridge.dispatch_status_check("p1", "127.0.0.1", 5001).result(timeout=5) is False

    replies = queues.status_replies.drain()
    assert [(item.requester_id, item.is_connected) for item in replies] == [("p1", True), ("p1", False)]


def test_config_delivery_enqueues_or_sends_now(bridge_parts):
    bridge, queues, _ = bridge_parts
    assert bridge.dispatch_config_delivery("p1") is None
    assert [item.requester_id for item in queues.config_requests.drain()] == ["p1"]

    sent = []
    line = bridge.dispatch_config_delivery("p1", deliver_now=sent.append)
    assert sent == [line]
    assert line.startswith("[AIMgr_CONFIG]host=127.0.0.1;port=5001;")
    assert not queues.config_requests


def test_dispatch_rejected_after_shutdown(bridge_parts):
    bridge, queues, _ = bridge_parts
    bridge.shutdown()
    assert bridge.closed
    assert bridge.dispatch_generation("c1", LOCATION, {"prompt": "p"}, TURN) is None
    assert bridge.dispatch_status_check("p1", "127.0.0.1", 5001) is None
    assert bridge.inflight_count() == 0


def test_result_arriving_after_shutdown_is_dropped(bridge_parts, fake_kobold):
    bridge, queues, conversation = bridge_parts
    gate = fake_kobold.hold()
    conversation.set_target("c1")
    future = bridge.dispatch_generation("c1", LOCATION, {"prompt": "p"}, TURN)
    deadline = time.monotonic() + 5
    while not fake_kobold.requests and time.monotonic() < deadline:
        time.sleep(0.01)

    bridge.shutdown()
    gate.set()

    assert future.result(timeout=5) is False
    assert not queues.dialogue_replies
    assert conversation.get_history("c1") == ""


def test_status_check_is_not_blocked_by_busy_generation_pool(fake_kobold):
    queues = ReplyQueues.create()
    gate = fake_kobold.hold()
    bridge = DispatchBridge(
        config_store=ConfigStore(),
        conversation=ConversationState(),
        queues=queues,
        client=KoboldClient(transport=httpx.MockTransport(fake_kobold)),
        max_workers=1,
    )
    try:
        generations = [bridge.dispatch_generation("c1", LOCATION, {"prompt": "p"}, TURN) for _ in range(3)]
        status = bridge.dispatch_status_check("p1", "127.0.0.1", 5001)

        assert status.result(timeout=2) is True
        assert not any(future.done() for future in generations)
        assert [(item.requester_id, item.is_connected) for item in queues.status_replies.drain()] == [("p1", True)]
    finally:
        gate.set()
        bridge.shutdown()
