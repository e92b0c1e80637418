from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from argon2 import PasswordHasher, Type

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.account import AccountService
from authcore.service.audit import StructlogAuditSink
from authcore.service.credentials import CredentialVerifier
from authcore.service.csrf import CsrfGuard
from authcore.service.email_change import EmailChangeWorkflow
from authcore.service.mfa import TwoFactorService
from authcore.service.notifier import EmailNotifier
from authcore.service.rate_limit import RateLimiter
from authcore.service.sessions import SessionStore
from authcore.service.step_up import StepUpGate
from authcore.service.totp import BackupCodeStore, TotpVerifier
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

# Link endpoints authenticated by their own unguessable token.
CSRF_EXEMPT_PATHS = (
    "/v1/auth/verify-email",
    "/v1/email-change/verify",
    "/v1/email-change/cancel",
)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """redis://:secret@host:6379 -> redis://:***@host:6379"""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def build_password_hasher(settings: Settings) -> PasswordHasher:
    return PasswordHasher(
        time_cost=settings.argon2_time_cost,
        memory_cost=settings.argon2_memory_cost_kib,
        type=Type.ID,
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(mfa_encryption_key=self.settings.mfa_secret_key)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    mfa_encryption_key=self.settings.mfa_secret_key,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: RedisCache | SyncRedisCache | None = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client under test so nothing binds to a short-lived loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        self.audit = StructlogAuditSink()
        hasher = build_password_hasher(self.settings)
        self.rate_limiter = RateLimiter(self.cache, audit=self.audit)
        self.credentials = CredentialVerifier(hasher)
        self.totp = TotpVerifier(
            window=self.settings.totp_window,
            interval=self.settings.totp_interval_seconds,
            issuer=self.settings.totp_issuer,
        )
        self.backup_codes = BackupCodeStore(
            self.store, count=self.settings.backup_code_count, hasher=hasher
        )
        self.csrf = CsrfGuard(
            cookie_name=self.settings.csrf_cookie_name,
            header_name=self.settings.csrf_header_name,
            max_age_seconds=self.settings.csrf_cookie_max_age_seconds,
            secure=self.settings.cookie_secure,
            exempt_paths=CSRF_EXEMPT_PATHS,
        )
        self.sessions = SessionStore(
            self.store,
            pending_ttl=timedelta(minutes=self.settings.pending_session_ttl_minutes),
            full_ttl=timedelta(days=self.settings.session_max_age_days),
            audit=self.audit,
        )
        self.step_up = StepUpGate(
            self.store,
            self.totp,
            self.backup_codes,
            self.rate_limiter,
            self.settings,
            audit=self.audit,
        )
        self.notifier = EmailNotifier(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.email_change = EmailChangeWorkflow(
            self.store,
            self.step_up,
            self.notifier,
            self.rate_limiter,
            self.settings,
            audit=self.audit,
        )
        self.two_factor = TwoFactorService(
            self.store,
            self.totp,
            self.backup_codes,
            self.credentials,
            self.step_up,
            self.rate_limiter,
            self.notifier,
            self.settings,
            audit=self.audit,
        )
        self.accounts = AccountService(
            self.store,
            self.credentials,
            self.step_up,
            self.rate_limiter,
            self.notifier,
            self.settings,
            audit=self.audit,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.notifier.is_configured,
        )

    def close(self) -> None:
        self.store.close()


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


def _close_cache(cache: RedisCache | SyncRedisCache) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
        return
    loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            if runtime.cache is not None:
                _close_cache(runtime.cache)
            runtime.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
