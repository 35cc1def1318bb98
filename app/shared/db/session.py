from dataclasses import dataclass
from threading import Lock
from typing import Any, AsyncGenerator

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from app.shared.core.config import get_settings

logger = structlog.get_logger()

# Ensure ORM mappings are registered for scripts/workers that import the DB layer
# without importing `app/main.py`.
import app.models  # noqa: F401, E402


@dataclass(slots=True)
class _DBRuntime:
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    effective_url: str


_db_runtime: _DBRuntime | None = None
_db_runtime_lock = Lock()


def _normalize_db_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def _resolve_effective_url(settings_obj: Any) -> str:
    db_url = _normalize_db_url(str(getattr(settings_obj, "DATABASE_URL", "") or ""))
    if bool(getattr(settings_obj, "TESTING", False)) and "sqlite" not in db_url:
        # Protect tests from accidental writes to real databases.
        return "sqlite+aiosqlite:///:memory:"
    return db_url


def _build_db_runtime() -> _DBRuntime:
    settings_obj = get_settings()
    effective_url = _resolve_effective_url(settings_obj)
    if not effective_url:
        raise ValueError("DATABASE_URL is not set. The application cannot start.")

    engine_kwargs: dict[str, Any] = {"echo": settings_obj.DB_ECHO, "pool_pre_ping": True}
    if "sqlite" in effective_url:
        engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs.update({"pool_size": 10, "max_overflow": 10, "pool_recycle": 3600})

    engine = create_async_engine(effective_url, **engine_kwargs)
    session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return _DBRuntime(
        engine=engine, session_maker=session_maker, effective_url=effective_url
    )


def _get_db_runtime() -> _DBRuntime:
    global _db_runtime
    runtime = _db_runtime
    if runtime is not None:
        return runtime
    with _db_runtime_lock:
        runtime = _db_runtime
        if runtime is None:
            runtime = _build_db_runtime()
            _db_runtime = runtime
    return runtime


def reset_db_runtime() -> None:
    """Test helper for forcing runtime re-initialization on next access."""
    global _db_runtime
    runtime = _db_runtime
    _db_runtime = None
    if runtime is not None:
        runtime.engine.sync_engine.dispose()


def get_engine() -> AsyncEngine:
    """Return the active async engine."""
    return _get_db_runtime().engine


def async_session_maker(*args: Any, **kwargs: Any) -> Any:
    """Return a new async session from the active session factory."""
    return _get_db_runtime().session_maker(*args, **kwargs)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request."""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()
