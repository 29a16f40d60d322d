from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Hashable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for_futures
from typing import Any

from npcbridge.bridge.control import format_config_reply
from npcbridge.bridge.queues import (
    ConfigRequestItem,
    DialogueReplyItem,
    LocationKey,
    ReplyQueues,
    StatusReplyItem,
)
from npcbridge.config.store import ConfigStore
from npcbridge.conversation.state import ConversationState
from npcbridge.errors import BridgeError
from npcbridge.llm.client import KoboldClient

LOGGER = logging.getLogger("npcbridge.bridge.dispatch")


class DispatchBridge:
    """Runs blocking network calls on a worker pool and hands results back through reply queues.

    Workers never raise: every failure becomes "no queue item". Once ``shutdown``
    is called no new work is accepted and late results are dropped.
    """

    def __init__(
        self,
        *,
        config_store: ConfigStore,
        conversation: ConversationState,
        queues: ReplyQueues,
        client: KoboldClient,
        max_workers: int = 8,
        executor: Executor | None = None,
        status_workers: int = 2,
    ) -> None:
        self._config_store = config_store
        self._conversation = conversation
        self._queues = queues
        self._client = client
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(1, max_workers),
            thread_name_prefix="npcbridge-worker",
        )
        # Health checks never queue behind generation work.
        self._status_executor = ThreadPoolExecutor(
            max_workers=max(1, status_workers),
            thread_name_prefix="npcbridge-status",
        )
        self._closed = threading.Event()
        self._inflight_lock = threading.Lock()
        self._inflight: set[Future] = set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def inflight_count(self) -> int:
        with self._inflight_lock:
            return len(self._inflight)

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._inflight_lock:
            pending = list(self._inflight)
        _, not_done = wait_for_futures(pending, timeout=timeout)
        return not not_done

    def _forget(self, future: Future) -> None:
        with self._inflight_lock:
            self._inflight.discard(future)

    def _submit(self, executor: Executor, fn: Callable[..., Any], *args: Any) -> Future | None:
        if self._closed.is_set():
            LOGGER.warning("Dispatch rejected after shutdown: %s", getattr(fn, "__name__", fn))
            return None
        try:
            future = executor.submit(fn, *args)
        except RuntimeError as exc:
            LOGGER.warning("Dispatch rejected by worker pool: %s", exc)
            return None
        with self._inflight_lock:
            self._inflight.add(future)
        future.add_done_callback(self._forget)
        return future

    def dispatch_generation(
        self,
        entity_id: Hashable,
        location: LocationKey,
        payload: dict[str, Any],
        turn_text: str,
    ) -> Future | None:
        base_url = self._config_store.snapshot().base_url
        return self._submit(
            self._executor,
            self._generation_worker,
            entity_id,
            location,
            payload,
            turn_text,
            base_url,
        )

    def dispatch_status_check(self, requester_id: Hashable, host: str, port: int) -> Future | None:
        return self._submit(self._status_executor, self._status_worker, requester_id, f"http://{host}:{port}")

    def dispatch_config_delivery(
        self,
        requester_id: Hashable,
        *,
        deliver_now: Callable[[str], None] | None = None,
    ) -> str | None:
        if deliver_now is None:
            self._queues.config_requests.push(ConfigRequestItem(requester_id=requester_id))
            return None
        line = format_config_reply(self._config_store.snapshot())
        deliver_now(line)
        return line

    def _generation_worker(
        self,
        entity_id: Hashable,
        location: LocationKey,
        payload: dict[str, Any],
        turn_text: str,
        base_url: str,
    ) -> bool:
        try:
            text = self._client.generate(base_url, payload)
        except BridgeError as exc:
            LOGGER.debug("Generation for %r abandoned (%s): %s", entity_id, exc.error_code, exc)
            return False
        except Exception:
            LOGGER.exception("Generation worker for %r failed unexpectedly", entity_id)
            return False

        if not text:
            LOGGER.debug("Generation for %r returned empty text", entity_id)
            return False
        if self._closed.is_set():
            return False

        item = DialogueReplyItem(entity_id=entity_id, location=location, text=text)
        self._queues.dialogue_replies.push(
            item,
            while_locked=lambda: self._conversation.append_turn(entity_id, f"{turn_text} {text}"),
        )
        return True

    def _status_worker(self, requester_id: Hashable, base_url: str) -> bool:
        try:
            connected = self._client.check_status(base_url)
        except Exception:
            LOGGER.exception("Status worker for %r failed unexpectedly", requester_id)
            connected = False

        if not self._closed.is_set():
            self._queues.status_replies.push(StatusReplyItem(requester_id=requester_id, is_connected=connected))
        return connected

    def shutdown(self, *, wait: bool = False) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._executor.shutdown(wait=wait, cancel_futures=True)
        self._status_executor.shutdown(wait=wait, cancel_futures=True)
        self._client.close()
        LOGGER.info("[AI MANAGER] Dispatch bridge stopped")
