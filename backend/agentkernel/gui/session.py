"""SessionHandle: an explicitly owned, lazily created actuator session.

GUI tools share one expensive resource (a browser, a remote desktop
connection). Instead of a module-level singleton, callers hold a handle and
``acquire`` / ``release`` it. The resource is created on first acquire,
recreated if it died, and closed when the last holder releases it (unless
``keep_alive`` is set).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class SessionHandle(Generic[T]):
    def __init__(
        self,
        factory: Callable[[], Awaitable[T]],
        closer: Callable[[T], Any] | None = None,
        health_check: Callable[[T], Any] | None = None,
        keep_alive: bool = False,
        name: str = "session",
    ) -> None:
        self._factory = factory
        self._closer = closer
        self._health_check = health_check
        self.keep_alive = keep_alive
        self.name = name
        self._resource: T | None = None
        self._holders = 0
        self._lock = asyncio.Lock()

    @property
    def holders(self) -> int:
        return self._holders

    async def is_alive(self) -> bool:
        if self._resource is None:
            return False
        if self._health_check is None:
            return True
        try:
            return bool(await _maybe_await(self._health_check(self._resource)))
        except Exception:
            logger.warning("%s health check failed", self.name, exc_info=True)
            return False

    async def acquire(self) -> T:
        async with self._lock:
            if self._resource is not None and not await self.is_alive():
                logger.info("%s is no longer alive, recreating", self.name)
                await self._close_resource()
            if self._resource is None:
                logger.info("creating %s", self.name)
                self._resource = await self._factory()
            self._holders += 1
            return self._resource

    async def release(self) -> None:
        async with self._lock:
            if self._holders == 0:
                return
            self._holders -= 1
            if self._holders == 0 and not self.keep_alive:
                await self._close_resource()

    async def close(self) -> None:
        """Close the resource regardless of holders."""
        async with self._lock:
            self._holders = 0
            await self._close_resource()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[T]:
        resource = await self.acquire()
        try:
            yield resource
        finally:
            await self.release()

    async def _close_resource(self) -> None:
        resource, self._resource = self._resource, None
        if resource is None or self._closer is None:
            return
        try:
            await _maybe_await(self._closer(resource))
        except Exception:
            logger.exception("closing %s failed", self.name)
