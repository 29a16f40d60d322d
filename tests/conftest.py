from __future__ import annotations

import json
import threading
from collections.abc import Callable
from dataclasses import replace

import httpx
import pytest

from npcbridge.config.settings import BridgeSettings
from npcbridge.host.world import StubWorld
from npcbridge.llm.client import KoboldClient
from npcbridge.session import SessionContext


class FakeKobold:
    """Programmable stand-in for the generation service behind httpx.MockTransport."""

    def __init__(self, text: str = "Greetings, traveler.", status_code: int = 200) -> None:
        self.text = text
        self.status_code = status_code
        self.model_status = 200
        self.requests: list[dict] = []
        self.gate: threading.Event | None = None
        self._lock = threading.Lock()

    def hold(self) -> threading.Event:
        self.gate = threading.Event()
        return self.gate

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/v1/model":
            return httpx.Response(self.model_status, json={"result": "koboldcpp/test"})
        body = json.loads(request.content.decode("utf-8"))
        with self._lock:
            self.requests.append(body)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        return httpx.Response(self.status_code, json={"results": [{"text": self.text}]})


@pytest.fixture
def fake_kobold() -> FakeKobold:
    return FakeKobold()


@pytest.fixture
def settings(tmp_path) -> BridgeSettings:
    return BridgeSettings(config_path=tmp_path / "AI_Mod_Config.conf", worker_threads=4)


@pytest.fixture
def make_session(settings) -> Callable[..., tuple[StubWorld, SessionContext]]:
    sessions: list[SessionContext] = []

    def factory(handler: Callable[[httpx.Request], httpx.Response], **overrides) -> tuple[StubWorld, SessionContext]:
        effective = replace(settings, **overrides)
        client = KoboldClient(
            generate_timeout_sec=effective.generate_timeout_sec,
            status_timeout_sec=effective.status_timeout_sec,
            transport=httpx.MockTransport(handler),
        )
        world = StubWorld()
        session = SessionContext(world, effective, client=client)
        world.attach_hook(session)
        session.start()
        sessions.append(session)
        return world, session

    yield factory
    for session in sessions:
        session.shutdown()
