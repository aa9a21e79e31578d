"""End-to-end generation: prompt -> provider -> extraction -> diff -> store.

``GenerationService.stream`` produces the application-level event sequence
sent to the browser:

``status`` -> ``progress``* -> ``file``* -> ``complete``

or, on any failure, ``status`` -> ``progress``* -> ``error``. ``complete``
is only emitted after the turn has been written to the conversation store.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Iterator

from ..domain.errors import NotFoundError, PersistenceError, SpinError, ValidationError
from ..domain.models import (
    Conversation,
    ConversationTurn,
    FileChange,
    FileState,
    GenerateRequest,
    GenerateResponse,
    UploadedFile,
)
from ..infrastructure.conversation_store import ConversationStore, get_conversation_store, now_iso
from ..infrastructure.events import publish_event
from ..observability.metrics import record_generation
from .extractor import extract_files
from .llm_client import AnthropicClient
from .prompts import build_generation_prompt, build_iterative_prompt
from .reconciler import change_index, diff_file_states, merge_file_states
from .streaming import iterate_in_thread


LOG = logging.getLogger("spin.generation")

FILE_EVENT_DELAY_S = 0.3
UPLOAD_ONLY_PROMPT = "Generate from uploaded files"


class TextGenerator(Protocol):
    def generate(self, prompt: str) -> str: ...

    def stream(self, prompt: str) -> Iterator[str]: ...


@dataclass
class GenerationPlan:
    request: GenerateRequest
    client: TextGenerator
    prompt_text: str
    previous_files: FileState
    conversation: Optional[Conversation] = None

    @property
    def is_iterative(self) -> bool:
        return self.conversation is not None

    @property
    def mode(self) -> str:
        return "iterative" if self.is_iterative else "new"

    @property
    def user_id(self) -> str:
        return self.request.user_id

    @property
    def turn_prompt(self) -> str:
        return (self.request.prompt or "").strip() or UPLOAD_ONLY_PROMPT

    @property
    def uploads(self) -> List[UploadedFile]:
        return list(self.request.uploaded_files or [])


@dataclass
class GenerationResult:
    files: FileState
    full_files: FileState
    changes: List[FileChange]
    conversation_id: str
    user_id: str
    is_iterative: bool
    elapsed_s: float = 0.0

    def to_response(self) -> GenerateResponse:
        return GenerateResponse(
            files=self.files,
            full_files=self.full_files,
            changed_files=self.changes,
            conversation_id=self.conversation_id,
            user_id=self.user_id,
            is_iterative_update=self.is_iterative,
        )


def format_sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


def status_event(message: str) -> Dict[str, Any]:
    return {"type": "status", "message": message}


def progress_event(content: str) -> Dict[str, Any]:
    return {"type": "progress", "content": content}


def file_event(file_name: str, content: str, change_type: str) -> Dict[str, Any]:
    return {"type": "file", "fileName": file_name, "content": content, "changeType": change_type}


def complete_event(result: GenerationResult) -> Dict[str, Any]:
    return {
        "type": "complete",
        "conversationId": result.conversation_id,
        "userId": result.user_id,
        "changedFiles": [c.to_wire() for c in result.changes],
        "fullFiles": result.full_files,
        "isIterativeUpdate": result.is_iterative,
    }


def error_event(message: str) -> Dict[str, Any]:
    return {"type": "error", "error": message}


def _error_message(exc: BaseException) -> str:
    if isinstance(exc, SpinError):
        return exc.message
    return str(exc) or exc.__class__.__name__


class GenerationService:
    def __init__(
        self,
        store: Optional[ConversationStore] = None,
        client_factory: Optional[Callable[[], TextGenerator]] = None,
        file_event_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        queue_size: Optional[int] = None,
    ) -> None:
        self._store = store or get_conversation_store()
        self._client_factory = client_factory or AnthropicClient.from_env
        if file_event_delay is None:
            file_event_delay = float(os.getenv("SPIN_FILE_EVENT_DELAY", str(FILE_EVENT_DELAY_S)))
        self._file_event_delay = file_event_delay
        self._sleep = sleep
        self._queue_size = queue_size or int(os.getenv("SPIN_STREAM_QUEUE_SIZE", "64"))

    async def prepare(self, request: GenerateRequest) -> GenerationPlan:
        """Validate the request and resolve everything the provider call needs.

        Raises ValidationError (no prompt and no uploads), ConfigurationError
        (no provider credential), NotFoundError (iterative request against
        an unknown or foreign conversation) or PersistenceError (store
        unreachable), in that order.
        """
        prompt = (request.prompt or "").strip()
        if not prompt and not request.uploaded_files:
            raise ValidationError("Prompt or uploaded files required")

        client = self._client_factory()

        conversation: Optional[Conversation] = None
        if request.is_iterative_update and request.conversation_id:
            try:
                conversation = await self._store.get_conversation(request.conversation_id, request.user_id)
            except NotFoundError:
                raise
            except Exception as exc:
                LOG.error("conversation_load_failed", extra={"err": str(exc)})
                raise PersistenceError(f"Failed to load conversation: {exc}") from exc

        if request.existing_files is not None:
            previous = dict(request.existing_files)
        elif conversation is not None:
            previous = dict(conversation.current_files)
        else:
            previous = {}

        if conversation is not None:
            prompt_text = build_iterative_prompt(
                prompt,
                previous,
                conversation.conversation_turns,
                uploads=request.uploaded_files,
            )
        else:
            prompt_text = build_generation_prompt(
                prompt or None,
                request.existing_files or None,
                uploads=request.uploaded_files,
            )
        return GenerationPlan(
            request=request,
            client=client,
            prompt_text=prompt_text,
            previous_files=previous,
            conversation=conversation,
        )

    async def _persist(self, plan: GenerationPlan, full_state: FileState, changes: List[FileChange]) -> str:
        turn = ConversationTurn(
            prompt=plan.turn_prompt,
            timestamp=now_iso(),
            file_changes=changes,
            full_state=full_state,
        )
        try:
            if plan.conversation is not None:
                await self._store.append_turn(plan.conversation.id, plan.user_id, turn)
                return plan.conversation.id
            return await self._store.create_conversation(
                plan.user_id,
                plan.turn_prompt,
                plan.uploads,
                turn,
            )
        except NotFoundError:
            raise
        except Exception as exc:
            LOG.error("conversation_persist_failed", extra={"err": str(exc), "mode": plan.mode})
            raise PersistenceError(f"Failed to save conversation: {exc}") from exc

    async def _finish(self, plan: GenerationPlan, raw_text: str, started: float) -> GenerationResult:
        generated = extract_files(raw_text)
        full_state = merge_file_states(plan.previous_files, generated)
        changes = diff_file_states(plan.previous_files, full_state)
        conversation_id = await self._persist(plan, full_state, changes)
        result = GenerationResult(
            files=generated,
            full_files=full_state,
            changes=changes,
            conversation_id=conversation_id,
            user_id=plan.user_id,
            is_iterative=plan.is_iterative,
            elapsed_s=time.perf_counter() - started,
        )
        LOG.info(
            "generation_completed",
            extra={
                "conversation_id": conversation_id,
                "mode": plan.mode,
                "files": len(generated),
                "changes": len(changes),
            },
        )
        await asyncio.to_thread(
            publish_event,
            "generation.completed",
            {
                "conversationId": conversation_id,
                "userId": plan.user_id,
                "isIterativeUpdate": plan.is_iterative,
                "changedFiles": [c.path for c in changes],
            },
        )
        record_generation(plan.mode, "success", result.elapsed_s)
        return result

    async def run(self, plan: GenerationPlan) -> GenerationResult:
        """Non-streaming generation; errors propagate to the caller."""
        started = time.perf_counter()
        try:
            text = await asyncio.to_thread(plan.client.generate, plan.prompt_text)
            return await self._finish(plan, text, started)
        except Exception as exc:
            record_generation(plan.mode, exc.__class__.__name__)
            raise

    async def stream(self, plan: GenerationPlan) -> AsyncIterator[Dict[str, Any]]:
        """Yield the event sequence for one streaming generation.

        Never raises: any failure becomes a single ``error`` event and the
        sequence ends without ``complete``.
        """
        started = time.perf_counter()
        yield status_event("Applying changes..." if plan.is_iterative else "Starting generation...")
        try:
            chunks: List[str] = []
            deltas = iterate_in_thread(lambda: plan.client.stream(plan.prompt_text), maxsize=self._queue_size)
            async with aclosing(deltas):
                async for delta in deltas:
                    chunks.append(delta)
                    yield progress_event(delta)
            result = await self._finish(plan, "".join(chunks), started)
            changes = change_index(result.changes)
            for file_name, content in result.files.items():
                change = changes.get(file_name)
                yield file_event(file_name, content, change.status if change else "new")
                await self._sleep(self._file_event_delay)
            yield complete_event(result)
        except Exception as exc:
            LOG.warning(
                "generation_stream_failed",
                extra={"mode": plan.mode, "err_type": exc.__class__.__name__, "err": str(exc)},
            )
            record_generation(plan.mode, exc.__class__.__name__)
            yield error_event(_error_message(exc))
