from __future__ import annotations

from typing import Any, Callable, Dict, Iterator, Optional
import json
import logging
import os
import time

import requests
from requests.adapters import HTTPAdapter

from ..domain.errors import (
    ConfigurationError,
    GenerationFailedError,
    TransientProviderError,
    TruncationError,
)


LOG = logging.getLogger("spin.llm")

DEFAULT_BASE_URL = "https://api.anthropic.com/v1"
DEFAULT_MODEL = "claude-3-5-sonnet-20241022"
DEFAULT_MAX_TOKENS = 8192
ANTHROPIC_VERSION = "2023-06-01"

OVERLOADED_STATUS = 529
MAX_ATTEMPTS = 3
INITIAL_BACKOFF_S = 1.0
OVERLOADED_BACKOFF_FACTOR = 2.0
FAILURE_BACKOFF_FACTOR = 1.5


def _timeouts() -> tuple[int, int]:
    return (
        int(os.getenv("SPIN_LLM_CONNECT_TIMEOUT", "5")),
        int(os.getenv("SPIN_LLM_READ_TIMEOUT", "120")),
    )


def _build_session() -> requests.Session:
    # Retries are handled by AnthropicClient.post_with_retry, not the adapter.
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=0, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class AnthropicClient:
    """Messages API client with the 529/backoff retry policy.

    ``sleep`` is injectable so callers (and tests) can observe the backoff
    schedule without waiting on a real clock.
    """

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: int = MAX_ATTEMPTS,
        initial_backoff: float = INITIAL_BACKOFF_S,
    ) -> None:
        self.api_key = api_key
        self.model = model or os.getenv("SPIN_LLM_MODEL", DEFAULT_MODEL)
        self.max_tokens = int(max_tokens or os.getenv("SPIN_LLM_MAX_TOKENS", str(DEFAULT_MAX_TOKENS)))
        self.base_url = (base_url or os.getenv("ANTHROPIC_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self.max_attempts = max(1, max_attempts)
        self.initial_backoff = initial_backoff
        self._session = session or _build_session()
        self._sleep = sleep
        self._timeout = _timeouts()

    @classmethod
    def from_env(cls, **kwargs: Any) -> "AnthropicClient":
        api_key = os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            raise ConfigurationError("Missing API key")
        return cls(api_key=api_key, **kwargs)

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/messages"

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def _payload(self, prompt: str, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if stream:
            payload["stream"] = True
        return payload

    def post_with_retry(self, payload: Dict[str, Any], stream: bool = False) -> requests.Response:
        """POST to the provider, retrying up to ``max_attempts`` times.

        A 529 (overloaded) doubles the backoff; any other non-2xx status or
        network failure multiplies it by 1.5. The backoff value is shared, so
        mixed failures continue from wherever the previous one left it.
        """
        backoff = self.initial_backoff
        last_error: Optional[TransientProviderError] = None
        attempt = 0
        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = self._session.post(
                    self.messages_url,
                    json=payload,
                    headers=self._headers(),
                    timeout=self._timeout,
                    stream=stream,
                )
            except requests.exceptions.RequestException as exc:
                last_error = TransientProviderError(f"Network error: {exc}")
            else:
                status = resp.status_code
                if status == OVERLOADED_STATUS and attempt < self.max_attempts:
                    resp.close()
                    LOG.warning(
                        "llm_overloaded_retry",
                        extra={"attempt": attempt, "backoff_s": backoff},
                    )
                    self._sleep(backoff)
                    backoff *= OVERLOADED_BACKOFF_FACTOR
                    continue
                if 200 <= status < 300:
                    return resp
                resp.close()
                last_error = TransientProviderError(f"Status: {status}", status=status)

            if attempt >= self.max_attempts:
                break
            LOG.warning(
                "llm_attempt_failed",
                extra={"attempt": attempt, "err": str(last_error), "backoff_s": backoff},
            )
            self._sleep(backoff)
            backoff *= FAILURE_BACKOFF_FACTOR

        LOG.error("llm_retries_exhausted", extra={"attempts": attempt, "err": str(last_error)})
        raise GenerationFailedError(str(last_error), attempts=attempt) from last_error

    def generate(self, prompt: str) -> str:
        resp = self.post_with_retry(self._payload(prompt, stream=False))
        try:
            data = resp.json()
        finally:
            resp.close()
        if data.get("stop_reason") == "max_tokens":
            raise TruncationError()
        content = data.get("content") or []
        text = content[0].get("text") if content and isinstance(content[0], dict) else None
        if not text:
            raise GenerationFailedError("No content generated by Anthropic API")
        return text

    def stream(self, prompt: str) -> Iterator[str]:
        """Yield text deltas from a streaming Messages call.

        Only ``content_block_delta`` frames contribute text. A ``message_delta``
        reporting ``stop_reason == "max_tokens"`` aborts with TruncationError.
        """
        resp = self.post_with_retry(self._payload(prompt, stream=True), stream=True)
        with resp:
            for raw_line in resp.iter_lines():
                if not raw_line:
                    continue
                line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
                event = parse_stream_line(line)
                if event is None:
                    continue
                if event.get("done"):
                    break
                etype = event.get("type")
                delta = event.get("delta") or {}
                if etype == "content_block_delta":
                    text = delta.get("text")
                    if text:
                        yield text
                elif etype == "message_delta":
                    if delta.get("stop_reason") == "max_tokens":
                        raise TruncationError()
                elif etype == "message_stop":
                    break


def parse_stream_line(line: str) -> Optional[Dict[str, Any]]:
    """Decode one ``data:`` line of the provider stream.

    Returns ``{"done": True}`` for the terminal sentinel and ``None`` for
    anything that is not a JSON data frame.
    """
    if not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if data == "[DONE]":
        return {"done": True}
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None
