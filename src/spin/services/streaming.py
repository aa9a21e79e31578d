from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from typing import AsyncIterator, Callable, Iterable, Tuple, TypeVar, Any


T = TypeVar("T")

_ITEM = "item"
_ERROR = "error"
_DONE = "done"


async def iterate_in_thread(factory: Callable[[], Iterable[T]], maxsize: int = 64) -> AsyncIterator[T]:
    """Run a blocking iterator in a worker thread and consume it asynchronously.

    Items travel through a bounded ``asyncio.Queue`` so a slow consumer applies
    backpressure to the producer. Exceptions raised by the producer are
    re-raised in the consumer. When the consumer stops early (``aclose`` or
    task cancellation) the worker is told to stop and closes the iterator,
    which releases whatever resource it holds.
    """
    loop = asyncio.get_running_loop()
    queue: "asyncio.Queue[Tuple[str, Any]]" = asyncio.Queue(maxsize=max(1, maxsize))
    stop = threading.Event()

    def _put(entry: Tuple[str, Any]) -> bool:
        try:
            fut = asyncio.run_coroutine_threadsafe(queue.put(entry), loop)
        except RuntimeError:
            # loop already closed
            return False
        while True:
            try:
                fut.result(timeout=0.1)
                return True
            except concurrent.futures.TimeoutError:
                if stop.is_set():
                    fut.cancel()
                    return False

    def _worker() -> None:
        iterator = None
        try:
            iterator = iter(factory())
            for item in iterator:
                if stop.is_set() or not _put((_ITEM, item)):
                    break
            else:
                _put((_DONE, None))
        except Exception as exc:
            _put((_ERROR, exc))
        finally:
            close = getattr(iterator, "close", None)
            if callable(close):
                close()

    thread = threading.Thread(target=_worker, name="spin-stream-worker", daemon=True)
    thread.start()
    try:
        while True:
            kind, payload = await queue.get()
            if kind == _ITEM:
                yield payload
            elif kind == _ERROR:
                raise payload
            else:
                return
    finally:
        stop.set()
