from __future__ import annotations

from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

import httpx

from sessiongate.config import Settings, get_settings
from sessiongate.logging import get_logger
from sessiongate.service.gateway import AuthGateway
from sessiongate.service.ledger import SessionLedger
from sessiongate.service.providers import DirectoryClient, build_default_registry
from sessiongate.service.tokens import TokenIssuer
from sessiongate.storage.memory import MemoryStore
from sessiongate.storage.postgres import PostgresStore
from sessiongate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
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
    """Holds the store, cache and gateway components for one app instance.

    Every collaborator can be injected, so tests and embedders build their
    own runtime instead of sharing a process-wide one.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Union[MemoryStore, PostgresStore, None] = None,
        cache: Optional[RedisCache] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        directory_client: Optional[DirectoryClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()
        self.cache = cache if cache is not None else self._build_cache()

        self.issuer = TokenIssuer(self.settings)
        self.ledger = SessionLedger(self.store, page_size=self.settings.session_page_size)
        self.providers = build_default_registry(
            self.store,
            self.settings,
            cache=self.cache,
            transport=http_transport,
            directory_client=directory_client,
        )
        self.gateway = AuthGateway(
            self.store,
            self.settings,
            issuer=self.issuer,
            ledger=self.ledger,
            providers=self.providers,
        )

    def _build_store(self) -> Union[MemoryStore, PostgresStore]:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store = MemoryStore(fs_root=self.settings.shared_fs_root)
            else:
                store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self) -> Optional[RedisCache]:
        if not self.settings.redis_url:
            logger.info("redis_not_configured", message="verification codes use the store")
            return None
        cache = RedisCache(self.settings.redis_url)
        try:
            cache.verify_connection()
        except Exception as exc:
            if not self.settings.test_mode:
                logger.error(
                    "redis_unavailable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                raise RuntimeError(
                    "REDIS_URL is set but Redis is unreachable; unset it to keep "
                    "verification codes in the store."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
            )
            return None
        return cache

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        pool = getattr(self.store, "pool", None)
        if pool is not None:
            pool.close()
