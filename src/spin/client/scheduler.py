"""Character-by-character reveal of generated files.

States::

    IDLE --load--> REVEALING --(file done, more files)--> ADVANCING --> REVEALING
    REVEALING --(last file done, input sealed)--> COMPLETE

Each tick reveals exactly one character, so a sealed set of files with
``L`` characters in total completes after exactly ``L`` ticks. Empty files
are passed over without consuming a tick. ``on_complete`` fires once per
``load``.

Inside a running event loop ticks are driven by ``loop.call_later``;
without one the owner calls ``step()`` directly.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Callable, Dict, List, Mapping, Optional


LOG = logging.getLogger("spin.client")

DEFAULT_DELAY_S = 0.01


class RevealState(str, enum.Enum):
    IDLE = "idle"
    REVEALING = "revealing"
    ADVANCING = "advancing_file"
    COMPLETE = "all_complete"


class RevealScheduler:
    def __init__(
        self,
        on_update: Optional[Callable[[str, str], None]] = None,
        on_complete: Optional[Callable[[], None]] = None,
        delay: float = DEFAULT_DELAY_S,
    ) -> None:
        self._on_update = on_update
        self._on_complete = on_complete
        self.delay = delay
        self._timer: Optional[asyncio.TimerHandle] = None
        self._generation = 0
        self._closed = False
        self._done: Optional[asyncio.Event] = None
        self._reset()

    def _reset(self) -> None:
        self.state = RevealState.IDLE
        self.names: List[str] = []
        self.contents: Dict[str, str] = {}
        self.displayed: Dict[str, str] = {}
        self.file_index = 0
        self.char_index = 0
        self.ticks = 0
        self.sealed = False
        self._completed = False

    def load(self, files: Mapping[str, str], sealed: bool = True) -> None:
        """Start revealing ``files`` from the beginning, dropping any prior run."""
        self._cancel_timer()
        self._generation += 1

        self._closed = False
        self._reset()
        self._done = None
        self.names = list(files)
        self.contents = {name: files[name] for name in self.names}
        self.sealed = sealed
        if self.names:
            self.state = RevealState.REVEALING
            self._settle()
        self._schedule()

    def extend(self, name: str, content: str) -> None:
        """Add a file or grow the content of one not yet fully revealed.

        Content may only grow: the new value must start with what is already
        known for ``name``.
        """
        if self.sealed:
            raise ValueError("input already sealed")
        if name in self.contents:
            old = self.contents[name]
            if len(content) < len(old) or not content.startswith(old):
                raise ValueError(f"content for {name} may only grow")
            index = self.names.index(name)
            if index < self.file_index or (index == self.file_index and self.state is RevealState.COMPLETE):
                if content != old:
                    raise ValueError(f"{name} has already been revealed")
                return
            self.contents[name] = content
        else:
            self.names.append(name)
            self.contents[name] = content
        if self.state is RevealState.IDLE:
            self.state = RevealState.REVEALING
        self._settle()
        self._schedule()

    def seal(self) -> None:
        """Mark the input final; completion can fire once everything is shown."""
        self.sealed = True
        if self.state is RevealState.IDLE and not self.names:
            return
        self._settle()
        self._schedule()

    def step(self) -> bool:
        """Reveal one character. Returns False when there is nothing to do."""
        if self._closed or self.state is not RevealState.REVEALING:
            return False
        name = self.names[self.file_index]
        content = self.contents[name]
        if self.char_index >= len(content):
            return False
        self.char_index += 1
        self.ticks += 1
        shown = content[: self.char_index]
        self.displayed[name] = shown
        if self._on_update is not None:
            self._on_update(name, shown)
        self._settle()
        return True

    def _settle(self) -> None:
        while self.state is RevealState.REVEALING:
            name = self.names[self.file_index]
            if self.char_index < len(self.contents[name]):
                return
            self.displayed.setdefault(name, self.contents[name])
            if self.file_index < len(self.names) - 1:
                self.state = RevealState.ADVANCING
                self.file_index += 1
                self.char_index = 0
                self.state = RevealState.REVEALING
                continue
            if self.sealed:
                self._complete()
            return

    def _complete(self) -> None:
        if self._completed:
            return
        self._completed = True
        self.state = RevealState.COMPLETE
        self._cancel_timer()
        LOG.debug("reveal_complete", extra={"files": len(self.names), "ticks": self.ticks})
        if self._done is not None:
            self._done.set()
        if self._on_complete is not None:
            self._on_complete()

    def _schedule(self) -> None:
        if self._closed or self._timer is not None or self.state is not RevealState.REVEALING:
            return
        name = self.names[self.file_index]
        if self.char_index >= len(self.contents[name]):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timer = loop.call_later(self.delay, self._on_timer, self._generation)

    def _on_timer(self, generation: int) -> None:
        if generation != self._generation or self._closed:
            return
        self._timer = None
        self.step()
        self._schedule()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def wait_complete(self) -> None:
        if self._completed:
            return
        if self._done is None:
            self._done = asyncio.Event()
        await self._done.wait()

    def close(self) -> None:
        """Stop all pending ticks. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._generation += 1
        self._cancel_timer()
