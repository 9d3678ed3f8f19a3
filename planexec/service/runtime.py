from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from planexec.config import StoreBackend, get_settings, reset_settings_cache
from planexec.logging import get_logger
from planexec.service.engine import ExecutionEngine
from planexec.service.tools import ToolRegistry
from planexec.storage.memory import MemoryStore
from planexec.storage.redis_store import RedisExecutionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store, tool registry and engine for one process."""

    def __init__(self):
        self.settings = get_settings()
        backend = self.settings.store_backend
        logger.info(
            "runtime_init_started",
            store_backend=backend.value,
            test_mode=self.settings.test_mode,
        )

        try:
            if backend is StoreBackend.REDIS:
                self.store: Union[MemoryStore, RedisExecutionStore] = RedisExecutionStore(
                    self.settings.redis_url
                )
            else:
                self.store = MemoryStore(state_dir=self.settings.state_dir)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_backend=backend.value,
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info(
            "runtime_store_initialized",
            store_backend=backend.value,
            redis_url=_mask_url_password(self.settings.redis_url)
            if backend is StoreBackend.REDIS
            else None,
        )

        self._close_task: Optional[asyncio.Task] = None
        self.tools = ToolRegistry(tool_workers=self.settings.tool_workers)
        self.engine = ExecutionEngine(
            self.store,
            self.tools,
            plans=self.store,
            defaults=self.settings.execution_defaults(),
        )

    async def verify_store(self) -> None:
        """Check the configured store is reachable; the memory store always is."""
        if not isinstance(self.store, RedisExecutionStore):
            return
        try:
            await self.store.verify_connection()
        except Exception as exc:
            logger.error(
                "runtime_store_unreachable",
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_verified", redis_url=_mask_url_password(self.settings.redis_url))

    async def aclose(self) -> None:
        self.tools.shutdown(wait=False)
        if isinstance(self.store, RedisExecutionStore):
            await self.store.close()

    def shutdown(self, wait: bool = True) -> None:
        self.tools.shutdown(wait=wait)
        if isinstance(self.store, RedisExecutionStore):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(self.store.close())
            else:
                self._close_task = loop.create_task(self.store.close())
                self._close_task.add_done_callback(_log_close_failure)


def _log_close_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("runtime_store_close_failed", error_type=type(exc).__name__, error=str(exc))


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment read; TEST_MODE only."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.shutdown(wait=False)
        runtime = Runtime()
        return runtime
