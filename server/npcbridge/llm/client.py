from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from npcbridge.config.settings import BridgeSettings
from npcbridge.errors import MalformedResponseError, NetworkError

GENERATE_PATH = "/api/v1/generate"
MODEL_PATH = "/api/v1/model"
_TRIM_CHARS = " \t\n\r"


@dataclass
class KoboldClient:
    """Blocking client for the KoboldAI generation API.

    Every call runs against a total deadline, not only the per-operation httpx
    timeouts, so a backend trickling bytes cannot hold a worker indefinitely.
    """

    generate_timeout_sec: float = 60.0
    status_timeout_sec: float = 2.0
    debug: bool = False
    transport: httpx.BaseTransport | None = None
    _http: httpx.Client | None = field(default=None, init=False, repr=False)
    _http_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _closed: bool = field(default=False, init=False, repr=False)

    @classmethod
    def from_settings(cls, settings: BridgeSettings) -> "KoboldClient":
        return cls(
            generate_timeout_sec=settings.generate_timeout_sec,
            status_timeout_sec=settings.status_timeout_sec,
            debug=settings.debug,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def _get_http(self) -> httpx.Client:
        with self._http_lock:
            if self._closed:
                raise NetworkError("generation client is closed")
            if self._http is None:
                self._http = httpx.Client(
                    timeout=httpx.Timeout(self.generate_timeout_sec),
                    transport=self.transport,
                )
            return self._http

    def close(self) -> None:
        with self._http_lock:
            self._closed = True
            http, self._http = self._http, None
        if http is not None:
            http.close()

    def _debug(self, message: str) -> None:
        logger = logging.getLogger("npcbridge.llm.client")
        if self.debug:
            logger.warning(message)
        else:
            logger.debug(message)

    def _read_body(self, response: httpx.Response, url: str, deadline: float) -> bytes:
        chunks: list[bytes] = []
        for chunk in response.iter_bytes():
            chunks.append(chunk)
            if time.monotonic() > deadline:
                raise NetworkError(f"{url} exceeded its deadline while reading the body")
        return b"".join(chunks)

    def generate(self, base_url: str, payload: dict[str, Any]) -> str:
        url = base_url.rstrip("/") + GENERATE_PATH
        deadline = time.monotonic() + self.generate_timeout_sec
        http = self._get_http()
        try:
            with http.stream("POST", url, json=payload) as response:
                if response.status_code != 200:
                    raise NetworkError(
                        f"POST {url} returned HTTP {response.status_code}",
                        status_code=response.status_code,
                    )
                raw = self._read_body(response, url, deadline)
        except httpx.HTTPError as exc:
            raise NetworkError(f"POST {url} failed: {type(exc).__name__}: {exc}") from exc

        try:
            body = json.loads(raw)
        except ValueError as exc:
            raise MalformedResponseError(f"non-JSON body from {url}: {raw[:180]!r}") from exc

        text = self._extract_text(body)
        self._debug(f"Generation reply from {url} len={len(text)} prefix={text[:80]!r}")
        return text.strip(_TRIM_CHARS)

    def check_status(self, base_url: str) -> bool:
        url = base_url.rstrip("/") + MODEL_PATH
        try:
            http = self._get_http()
            # Only the status line matters; the body is never read.
            with http.stream("GET", url, timeout=self.status_timeout_sec) as response:
                return response.status_code == 200
        except (httpx.HTTPError, NetworkError) as exc:
            self._debug(f"Status check {url} failed: {type(exc).__name__}: {exc}")
            return False

    def _extract_text(self, body: Any) -> str:
        if not isinstance(body, dict):
            raise MalformedResponseError(f"expected JSON object, got {type(body).__name__}")
        results = body.get("results")
        if not isinstance(results, list) or not results:
            raise MalformedResponseError("missing or empty 'results' list")
        first = results[0]
        if not isinstance(first, dict):
            raise MalformedResponseError("results[0] is not an object")
        text = first.get("text")
        if not isinstance(text, str):
            raise MalformedResponseError("results[0].text is not a string")
        return text
