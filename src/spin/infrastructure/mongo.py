from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Callable, Optional

from motor.motor_asyncio import AsyncIOMotorClient


LOG = logging.getLogger("spin.mongo")

ClientFactory = Callable[[str], Any]


def _default_client_factory(url: str) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url, serverSelectionTimeoutMS=2000)


class MongoConnection:
    """Process-wide, lazily initialised MongoDB database handle.

    The first caller of ``acquire`` starts initialisation; concurrent callers
    await the same future, so the client is created at most once. A failed
    initialisation is not cached and the next caller tries again.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        db_name: Optional[str] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.url = url or os.getenv("MONGO_URL", "mongodb://localhost:27017")
        self.db_name = db_name or os.getenv("MONGO_DB", "spin")
        self._client_factory = client_factory or _default_client_factory
        self._client: Any = None
        self._db: Any = None
        self._init: Optional["asyncio.Future[Any]"] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def acquire(self) -> Any:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            # Motor clients are bound to the loop they were first used on.
            self._reset()
            self._loop = loop
        if self._db is not None:
            return self._db
        if self._init is None:
            self._init = asyncio.ensure_future(self._initialize())
        init = self._init
        try:
            db = await asyncio.shield(init)
        except Exception:
            if self._init is init:
                self._init = None
            raise
        self._db = db
        return db

    async def _initialize(self) -> Any:
        LOG.info("mongo_connecting", extra={"url": self.url, "db": self.db_name})
        client = self._client_factory(self.url)
        try:
            await client.admin.command("ping")
        except Exception:
            client.close()
            raise
        self._client = client
        return client[self.db_name]

    def _reset(self) -> None:
        if self._client is not None:
            self._client.close()
        self._client = None
        self._db = None
        self._init = None

    def close(self) -> None:
        self._reset()
        self._loop = None


_connection: Optional[MongoConnection] = None


def get_mongo_connection() -> MongoConnection:
    global _connection
    if _connection is None:
        _connection = MongoConnection()
    return _connection
