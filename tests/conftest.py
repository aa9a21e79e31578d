import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch):
    """Fresh in-memory store, no provider key and no event fan-out per test."""
    from src.spin.infrastructure import conversation_store, events

    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("SPIN_STORE_IMPL", raising=False)
    monkeypatch.setattr(events, "_publisher", None)
    conversation_store.reset_conversation_store(conversation_store.InMemoryConversationStore())
    yield
    conversation_store.reset_conversation_store()
