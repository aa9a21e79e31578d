from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx


LOG = logging.getLogger("spin.client")

DEFAULT_BASE_URL = "http://127.0.0.1:8000"
DEFAULT_ENDPOINT = "/api/anthropic"

TRUNCATED_GUIDANCE = "Response too large. Try a simpler prompt or try again later."
OVERLOADED_GUIDANCE = "Anthropic API is temporarily unavailable. Please try again later."

EventCallback = Callable[[Dict[str, Any]], None]


def describe_error(message: str, action: str = "generate code") -> str:
    """Map a raw failure message to the guidance shown to the user."""
    if "truncate" in message or "max_tokens" in message:
        return TRUNCATED_GUIDANCE
    if "529" in message:
        return OVERLOADED_GUIDANCE
    return f"Failed to {action}: {message}"


class StreamError(Exception):
    def __init__(self, raw_message: str, action: str = "generate code") -> None:
        self.raw_message = raw_message
        self.guidance = describe_error(raw_message, action)
        super().__init__(self.guidance)


class StreamAborted(Exception):
    pass


@dataclass
class ConsumeResult:
    files: Dict[str, str]
    changed_files: List[Dict[str, Any]] = field(default_factory=list)
    conversation_id: Optional[str] = None
    is_iterative_update: bool = False
    file_order: List[str] = field(default_factory=list)


class Baseline:
    """Authoritative project state handed from one request to the next.

    Optionally mirrored to a JSON file so a later process can continue the
    same conversation.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path else None
        self.files: Dict[str, str] = {}
        self.conversation_id: Optional[str] = None
        self.changed_files: List[Dict[str, Any]] = []
        self.prompt_history: List[Dict[str, Any]] = []
        if self.path and self.path.exists():
            self.load()

    def load(self) -> None:
        if self.path is None:
            raise ValueError("baseline has no backing file")
        data = json.loads(self.path.read_text(encoding="utf-8"))
        self.files = dict(data.get("files") or {})
        self.conversation_id = data.get("conversationId")
        self.changed_files = list(data.get("changedFiles") or [])
        self.prompt_history = list(data.get("promptHistory") or [])

    def save(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "files": self.files,
            "conversationId": self.conversation_id,
            "changedFiles": self.changed_files,
            "promptHistory": self.prompt_history,
        }
        self.path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    def record_complete(self, prompt: str, result: ConsumeResult) -> None:
        self.files = dict(result.files)
        self.changed_files = list(result.changed_files)
        if result.conversation_id:
            self.conversation_id = result.conversation_id
        self.prompt_history.append(
            {"prompt": prompt, "files": list(result.changed_files), "fullState": dict(result.files)}
        )
        self.save()

    def request_body(self, prompt: str, user_id: str = "anonymous", iterative: bool = False) -> Dict[str, Any]:
        body: Dict[str, Any] = {"prompt": prompt, "streaming": True, "userId": user_id}
        if iterative:
            body["existingFiles"] = dict(self.files)
            body["isIterativeUpdate"] = True
            if self.conversation_id:
                body["conversationId"] = self.conversation_id
        return body


async def iter_sse_data(chunks: AsyncIterator[str]) -> AsyncIterator[str]:
    """Reassemble ``data:`` payloads from arbitrarily split text chunks."""
    buffer = ""
    async for chunk in chunks:
        buffer += chunk
        while "\n\n" in buffer:
            frame, buffer = buffer.split("\n\n", 1)
            data = _frame_data(frame)
            if data is not None:
                yield data
    data = _frame_data(buffer)
    if data is not None:
        yield data


def _frame_data(frame: str) -> Optional[str]:
    lines = [line[5:].lstrip(" ") for line in frame.splitlines() if line.startswith("data:")]
    if not lines:
        return None
    data = "\n".join(lines)
    if data.strip() == "[DONE]":
        return None
    return data


def parse_event(data: str) -> Optional[Dict[str, Any]]:
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        LOG.warning("sse_event_malformed", extra={"data": data[:200]})
        return None
    if not isinstance(event, dict) or "type" not in event:
        LOG.warning("sse_event_unrecognised", extra={"data": data[:200]})
        return None
    return event


class StreamConsumer:
    """Reads one generation stream and assembles the resulting files.

    ``abort()`` cancels an in-flight ``consume``; the response is closed by
    the ``httpx`` stream context and no further callbacks are made.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        http_client: Optional[httpx.AsyncClient] = None,
        baseline: Optional[Baseline] = None,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout: float = 300.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.endpoint = endpoint
        self.baseline = baseline or Baseline()
        self._client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout
        self._reader: Optional["asyncio.Task[ConsumeResult]"] = None
        self._aborted = False

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.endpoint}"

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout, connect=10.0))
        return self._client

    async def aclose(self) -> None:
        self.abort()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def abort(self) -> None:
        self._aborted = True
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()

    async def consume(
        self,
        body: Dict[str, Any],
        on_event: Optional[EventCallback] = None,
        action: str = "generate code",
    ) -> ConsumeResult:
        if self._reader is not None and not self._reader.done():
            # A new request supersedes the one in flight.
            self._reader.cancel()
        self._aborted = False
        reader = asyncio.ensure_future(self._read(body, on_event, action))
        self._reader = reader
        try:
            result = await reader
        except asyncio.CancelledError:
            if self._aborted or reader.cancelled():
                raise StreamAborted("Stream aborted") from None
            raise
        finally:
            if self._reader is reader:
                self._reader = None
        self.baseline.record_complete(str(body.get("prompt") or ""), result)
        return result

    async def _read(self, body: Dict[str, Any], on_event: Optional[EventCallback], action: str) -> ConsumeResult:
        files: Dict[str, str] = {}
        order: List[str] = []
        try:
            async with self._http().stream("POST", self.url, json=body) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise StreamError(_error_from_response(resp), action)
                async for data in iter_sse_data(resp.aiter_text()):
                    event = parse_event(data)
                    if event is None or self._aborted:
                        continue
                    etype = event.get("type")
                    if etype == "file":
                        name = event.get("fileName")
                        content = event.get("content")
                        if isinstance(name, str) and name and isinstance(content, str):
                            if name not in files:
                                order.append(name)
                            files[name] = content
                    elif etype == "error":
                        raise StreamError(str(event.get("error") or event.get("message") or "Streaming error occurred"), action)
                    if on_event is not None:
                        on_event(event)
                    if etype == "complete":
                        full = event.get("fullFiles")
                        final = dict(full) if isinstance(full, dict) else dict(files)
                        for name in final:
                            if name not in order:
                                order.append(name)
                        return ConsumeResult(
                            files=final,
                            changed_files=list(event.get("changedFiles") or []),
                            conversation_id=event.get("conversationId"),
                            is_iterative_update=bool(event.get("isIterativeUpdate")),
                            file_order=[n for n in order if n in final],
                        )
        except httpx.HTTPError as exc:
            raise StreamError(str(exc) or exc.__class__.__name__, action) from exc
        raise StreamError("Stream ended before generation completed", action)


def _error_from_response(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return f"HTTP error! status: {resp.status_code}"
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return f"HTTP error! status: {resp.status_code}"
