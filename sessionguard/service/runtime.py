from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionguard.config import StoreBackend, get_settings, reset_settings_cache
from sessionguard.logging import get_logger
from sessionguard.service.auth import AuthService
from sessionguard.service.guard import AuthGuard
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            store_backend=self.settings.store_backend.value,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.store_backend == StoreBackend.REDIS:
                store = RedisStore(self.settings.redis_url)
                store.verify_connection()
            else:
                store = MemoryStore(
                    fs_root=self.settings.data_dir,
                    persist=self.settings.persist_memory_store,
                )
            self.store = store
            logger.info(
                "runtime_store_initialized",
                store_type=self.settings.store_backend.value,
                redis_url=_mask_url_password(self.settings.redis_url)
                if self.settings.store_backend == StoreBackend.REDIS
                else None,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=self.settings.store_backend.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.auth = AuthService(self.store, self.settings)
        self.guard = AuthGuard(self.store, self.auth.issuer)
        logger.info("runtime_init_completed")

    def close(self) -> None:
        if isinstance(self.store, RedisStore):
            self.store.client.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
