from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from klearkarma.config import get_settings, reset_settings_cache
from klearkarma.logging import get_logger
from klearkarma.service.auth import AuthService
from klearkarma.service.marketplace import (
    AppointmentService,
    CatalogService,
    MessageService,
    PractitionerDirectory,
    ProductService,
    ReviewService,
)
from klearkarma.service.passwords import CredentialHasher
from klearkarma.service.tokens import TokenConfig, TokenService
from klearkarma.storage.kv import KeyValueBackend, MemoryKV
from klearkarma.storage.records import RecordStore
from klearkarma.storage.redis_kv import RedisKV

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
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.kv: KeyValueBackend = self._build_kv()
        self.records = RecordStore(
            self.kv,
            timeout_seconds=self.settings.store_timeout_seconds,
            scan_limit=self.settings.scan_limit,
        )
        self.tokens = TokenService(TokenConfig.from_settings(self.settings))
        self.hasher = CredentialHasher(
            self.settings.password_algo,
            pbkdf2_iterations=self.settings.pbkdf2_iterations,
        )
        self.auth = AuthService(self.records, self.tokens, self.hasher, self.settings)
        self.catalog = CatalogService(self.records)
        self.appointments = AppointmentService(self.records, self.catalog)
        self.reviews = ReviewService(self.records)
        self.messages = MessageService(self.records)
        self.practitioners = PractitionerDirectory(self.records, self.catalog, self.reviews)
        self.products = ProductService(self.records)

        logger.info(
            "runtime_initialized",
            kv_backend=type(self.kv).__name__,
            password_algo=self.settings.password_algo.value,
        )

    def _build_kv(self) -> KeyValueBackend:
        if self.settings.use_memory_store:
            logger.info("runtime_store_initialized", store_type="memory")
            return MemoryKV()

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                kv = RedisKV(
                    self.settings.redis_url,
                    socket_timeout=self.settings.store_timeout_seconds,
                )
                kv.verify_connection()
                logger.info("runtime_store_initialized", store_type="redis")
                return kv
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for persistence; start Redis or set "
                "USE_MEMORY_STORE=true / ALLOW_REDIS_FALLBACK_DEV=true for local use."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=f"Running on the in-process store under {fallback_mode}; data is not persisted.",
            mode=fallback_mode,
        )
        return MemoryKV()

    async def close(self) -> None:
        await self.kv.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
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
        if runtime is not None and isinstance(runtime.kv, RedisKV):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.close())
            else:
                loop.create_task(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
