import asyncio
import json
import logging

import httpx
import pytest

from src.spin.client.consumer import (
    OVERLOADED_GUIDANCE,
    TRUNCATED_GUIDANCE,
    Baseline,
    StreamAborted,
    StreamConsumer,
    StreamError,
    describe_error,
    iter_sse_data,
)


def _frame(event):
    return f"data: {json.dumps(event)}\n\n"


class _ChunkStream(httpx.AsyncByteStream):
    def __init__(self, chunks, hang=None):
        self._chunks = chunks
        self._hang = hang

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk.encode("utf-8")
        if self._hang is not None:
            await self._hang.wait()


def _consumer(handler, baseline=None):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return StreamConsumer("http://spin.test", http_client=http, baseline=baseline or Baseline())


def _sse_response(chunks, hang=None):
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=_ChunkStream(chunks, hang))


def test_describe_error_mapping():
    assert describe_error("Response truncated: Increase max_tokens or simplify prompt") == TRUNCATED_GUIDANCE
    assert describe_error("stop_reason max_tokens") == TRUNCATED_GUIDANCE
    assert describe_error("Status: 529") == OVERLOADED_GUIDANCE
    assert describe_error("Status: 500") == "Failed to generate code: Status: 500"
    assert describe_error("boom", action="update code") == "Failed to update code: boom"


def test_sse_frames_reassembled_across_arbitrary_chunks():
    body = _frame({"type": "status", "message": "hi"}) + "data: [DONE]\n\n" + _frame({"type": "progress", "content": "x"})

    async def _chunks():
        for i in range(0, len(body), 7):
            yield body[i : i + 7]

    async def _collect():
        return [json.loads(d) async for d in iter_sse_data(_chunks())]

    assert asyncio.run(_collect()) == [{"type": "status", "message": "hi"}, {"type": "progress", "content": "x"}]


def test_consume_assembles_files_and_records_baseline(tmp_path):
    frames = [
        _frame({"type": "status", "message": "Starting generation..."}),
        _frame({"type": "progress", "content": "{"}),
        _frame({"type": "file", "fileName": "/src/App.js", "content": "v1", "changeType": "new"}),
        _frame({"type": "file", "fileName": "/src/App.js", "content": "v2", "changeType": "new"}),
        _frame(
            {
                "type": "complete",
                "conversationId": "c1",
                "userId": "u1",
                "changedFiles": [{"path": "/src/App.js", "status": "new"}],
                "fullFiles": {"/src/App.js": "v2", "/src/App.css": "kept"},
                "isIterativeUpdate": False,
            }
        ),
    ]
    body = "".join(frames)
    split = [body[:25], body[25:90], body[90:]]
    seen_requests = []

    def handler(request):
        seen_requests.append(json.loads(request.content))
        return _sse_response(split)

    path = tmp_path / "baseline.json"
    consumer = _consumer(handler, Baseline(path))
    events = []
    result = asyncio.run(consumer.consume({"prompt": "todo", "streaming": True}, on_event=events.append))

    assert seen_requests[0]["prompt"] == "todo"
    assert [e["type"] for e in events] == ["status", "progress", "file", "file", "complete"]
    assert result.files == {"/src/App.js": "v2", "/src/App.css": "kept"}
    assert result.conversation_id == "c1"
    assert result.file_order == ["/src/App.js", "/src/App.css"]

    reloaded = Baseline(path)
    assert reloaded.files == result.files
    assert reloaded.conversation_id == "c1"
    assert reloaded.prompt_history[0]["prompt"] == "todo"
    body = reloaded.request_body("dark mode", user_id="u1", iterative=True)
    assert body["existingFiles"] == result.files
    assert body["conversationId"] == "c1"
    assert body["isIterativeUpdate"] is True


def test_baseline_without_file_cannot_load():
    with pytest.raises(ValueError):
        Baseline().load()


def test_malformed_frame_is_skipped(caplog):
    frames = [
        "data: {not json\n\n",
        _frame({"type": "file", "fileName": "/a.js", "content": "a"}),
        _frame({"type": "complete", "fullFiles": {"/a.js": "a"}, "changedFiles": []}),
    ]
    consumer = _consumer(lambda request: _sse_response(frames))
    with caplog.at_level(logging.WARNING, logger="spin.client"):
        result = asyncio.run(consumer.consume({"prompt": "x"}))
    assert result.files == {"/a.js": "a"}
    assert any(r.message == "sse_event_malformed" for r in caplog.records)


def test_error_event_raises_with_guidance_and_keeps_baseline():
    frames = [_frame({"type": "status", "message": "s"}), _frame({"type": "error", "error": "Status: 529"})]
    baseline = Baseline()
    baseline.files = {"/old.js": "old"}
    consumer = _consumer(lambda request: _sse_response(frames), baseline)
    with pytest.raises(StreamError) as exc:
        asyncio.run(consumer.consume({"prompt": "x"}, action="update code"))
    assert exc.value.guidance == OVERLOADED_GUIDANCE
    assert exc.value.raw_message == "Status: 529"
    assert baseline.files == {"/old.js": "old"}


def test_http_error_body_is_surfaced():
    consumer = _consumer(lambda request: httpx.Response(400, json={"error": "Prompt or uploaded files required"}))
    with pytest.raises(StreamError) as exc:
        asyncio.run(consumer.consume({"prompt": ""}))
    assert str(exc.value) == "Failed to generate code: Prompt or uploaded files required"


def test_stream_ending_without_complete_is_an_error():
    frames = [_frame({"type": "file", "fileName": "/a.js", "content": "a"})]
    consumer = _consumer(lambda request: _sse_response(frames))
    with pytest.raises(StreamError, match="ended before"):
        asyncio.run(consumer.consume({"prompt": "x"}))


def test_abort_cancels_in_flight_stream():
    async def _run():
        hang = asyncio.Event()
        first_file = asyncio.Event()
        frames = [_frame({"type": "file", "fileName": "/a.js", "content": "a"})]
        consumer = _consumer(lambda request: _sse_response(frames, hang))
        events = []

        def on_event(event):
            events.append(event)
            first_file.set()

        task = asyncio.ensure_future(consumer.consume({"prompt": "x"}, on_event=on_event))
        await asyncio.wait_for(first_file.wait(), timeout=2.0)
        consumer.abort()
        with pytest.raises(StreamAborted):
            await task
        return consumer, events

    consumer, events = asyncio.run(_run())
    assert [e["type"] for e in events] == ["file"]
    assert consumer.baseline.files == {}
    assert consumer.baseline.prompt_history == []
