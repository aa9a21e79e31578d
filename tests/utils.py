from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Iterator, List, Optional


def provider_json(files: Dict[str, str], prose: bool = False) -> str:
    """Model output carrying ``files`` the way the provider usually returns it."""
    body = json.dumps(files)
    if prose:
        return f"Here is your project:\n```json\n{body}\n```\nEnjoy!"
    return body


class FakeGenerator:
    """Stands in for AnthropicClient in pipeline and API tests."""

    def __init__(self, text: str = "", deltas: Optional[Iterable[str]] = None, error: Optional[Exception] = None):
        self.text = text
        self.deltas = list(deltas) if deltas is not None else None
        self.error = error
        self.prompts: List[str] = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.text

    def stream(self, prompt: str) -> Iterator[str]:
        self.prompts.append(prompt)
        chunks = self.deltas if self.deltas is not None else _split(self.text, 3)
        for chunk in chunks:
            yield chunk
        if self.error is not None:
            raise self.error


def _split(text: str, parts: int) -> List[str]:
    if not text:
        return []
    size = max(1, len(text) // parts)
    return [text[i : i + size] for i in range(0, len(text), size)]


def sse_events(body: str) -> List[Dict[str, Any]]:
    events = []
    for frame in body.split("\n\n"):
        frame = frame.strip()
        if frame.startswith("data: "):
            events.append(json.loads(frame[len("data: ") :]))
    return events
