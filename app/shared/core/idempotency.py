"""
Idempotency ledger.

Deduplicates side-effecting requests keyed by (tenant, scope, caller key).
The unique constraint on ``idempotency_keys`` is the only cross-request
synchronisation: the loser of a concurrent insert re-reads the winner's row
instead of retrying the insert.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, AsyncGenerator, Callable, Optional

import structlog
from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.idempotency import IdempotencyKey
from app.shared.core.auth import CurrentUser, get_current_user
from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    IdempotencyConflictError,
    IdempotencyInProgressError,
    IdempotencyKeyError,
    IdempotentReplay,
    StorefrontException,
)
from app.shared.db.base import as_utc, utcnow
from app.shared.db.session import get_db

logger = structlog.get_logger()

IDEMPOTENCY_HEADER = "Idempotency-Key"
MIN_KEY_LENGTH = 8
MAX_KEY_LENGTH = 128


class IdempotencyState(str, Enum):
    NEW = "new"
    REPLAY = "replay"
    CONFLICT = "conflict"
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class IdempotencyOutcome:
    state: IdempotencyState
    record_id: str
    response_status: Optional[int] = None
    response_body: Any = None


def hash_request_body(body: Any) -> str:
    """Stable SHA-256 of the canonical JSON form of a request body."""
    canonical = json.dumps(
        body if body is not None else {},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def normalize_idempotency_key(raw: Optional[str]) -> str:
    key = (raw or "").strip()
    if not key:
        raise IdempotencyKeyError(f"{IDEMPOTENCY_HEADER} header is required")
    if not MIN_KEY_LENGTH <= len(key) <= MAX_KEY_LENGTH:
        raise IdempotencyKeyError(
            f"{IDEMPOTENCY_HEADER} must be between {MIN_KEY_LENGTH} and "
            f"{MAX_KEY_LENGTH} characters"
        )
    return key


class IdempotencyLedger:
    def __init__(self, db: AsyncSession, ttl_minutes: Optional[int] = None):
        self.db = db
        self.ttl = timedelta(
            minutes=ttl_minutes or get_settings().IDEMPOTENCY_TTL_MINUTES
        )

    async def _find(
        self, tenant_id: str, scope: str, key: str
    ) -> Optional[IdempotencyKey]:
        result = await self.db.execute(
            select(IdempotencyKey)
            .where(
                IdempotencyKey.tenant_id == tenant_id,
                IdempotencyKey.scope == scope,
                IdempotencyKey.key == key,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _classify(record: IdempotencyKey, request_hash: str) -> IdempotencyOutcome:
        if record.request_hash != request_hash:
            return IdempotencyOutcome(IdempotencyState.CONFLICT, record.id)
        if record.response_status is not None:
            body = json.loads(record.response_body) if record.response_body else None
            return IdempotencyOutcome(
                IdempotencyState.REPLAY, record.id, record.response_status, body
            )
        return IdempotencyOutcome(IdempotencyState.IN_PROGRESS, record.id)

    async def begin(
        self, *, tenant_id: str, scope: str, key: str, request_body: Any
    ) -> IdempotencyOutcome:
        request_hash = hash_request_body(request_body)
        now = utcnow()

        existing = await self._find(tenant_id, scope, key)
        if existing is not None and as_utc(existing.expires_at) <= now:
            # Expired: behave as if absent
            await self.db.execute(
                delete(IdempotencyKey).where(
                    IdempotencyKey.id == existing.id,
                    IdempotencyKey.expires_at <= now,
                )
            )
            await self.db.commit()
            self.db.expunge(existing)
            logger.info("idempotency_key_expired", scope=scope, tenant_id=tenant_id)
            existing = None

        if existing is not None:
            return self._classify(existing, request_hash)

        record = IdempotencyKey(
            tenant_id=tenant_id,
            scope=scope,
            key=key,
            request_hash=request_hash,
            expires_at=now + self.ttl,
        )
        self.db.add(record)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            winner = await self._find(tenant_id, scope, key)
            logger.info(
                "idempotency_insert_race_lost",
                scope=scope,
                tenant_id=tenant_id,
                winner_found=winner is not None,
            )
            if winner is None:
                # Winner expired and was purged between our insert and re-read
                return IdempotencyOutcome(IdempotencyState.IN_PROGRESS, "")
            return self._classify(winner, request_hash)

        return IdempotencyOutcome(IdempotencyState.NEW, record.id)

    async def complete(self, record_id: str, status_code: int, body: Any) -> None:
        """Persist the final response so duplicates replay it verbatim."""
        await self.db.execute(
            update(IdempotencyKey)
            .where(IdempotencyKey.id == record_id)
            .values(
                response_status=status_code,
                response_body=json.dumps(body, default=str),
                updated_at=utcnow(),
            )
        )
        await self.db.commit()


@dataclass
class IdempotencyContext:
    ledger: IdempotencyLedger
    record_id: str
    key: str
    completed: bool = False

    async def complete(self, status_code: int, body: Any) -> None:
        await self.ledger.complete(self.record_id, status_code, body)
        self.completed = True


async def read_json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace")


def _error_body(exc: Exception) -> tuple[int, dict[str, Any]]:
    if isinstance(exc, StorefrontException):
        return exc.status_code, {
            "error": {"message": exc.message, "code": exc.code, "details": exc.details or None}
        }
    if isinstance(exc, HTTPException):
        return exc.status_code, {
            "error": {"message": str(exc.detail), "code": "http_error", "details": None}
        }
    return 500, {
        "error": {
            "message": "An unexpected internal error occurred",
            "code": "internal_error",
            "details": None,
        }
    }


def requires_idempotency_key(
    scope: str,
) -> Callable[..., AsyncGenerator[IdempotencyContext, None]]:
    """
    FastAPI dependency: validates the Idempotency-Key header and claims the key.

    Duplicates never reach the endpoint: they are replayed, or rejected with 409.
    A failing first execution records its error response so a retry with the
    same key observes the same outcome.
    """

    async def dependency(
        request: Request,
        user: CurrentUser = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
        idempotency_key: Optional[str] = Header(None, alias=IDEMPOTENCY_HEADER),
    ) -> AsyncGenerator[IdempotencyContext, None]:
        key = normalize_idempotency_key(idempotency_key)
        ledger = IdempotencyLedger(db)
        outcome = await ledger.begin(
            tenant_id=str(user.tenant_id),
            scope=scope,
            key=key,
            # Path params are part of the request: one key cannot span two orders.
            request_body={
                "path_params": dict(request.path_params),
                "body": await read_json_body(request),
            },
        )
        if outcome.state is IdempotencyState.REPLAY:
            logger.info("idempotent_request_replayed", scope=scope)
            raise IdempotentReplay(outcome.response_status or 200, outcome.response_body)
        if outcome.state is IdempotencyState.CONFLICT:
            raise IdempotencyConflictError()
        if outcome.state is IdempotencyState.IN_PROGRESS:
            raise IdempotencyInProgressError()

        context = IdempotencyContext(ledger=ledger, record_id=outcome.record_id, key=key)
        try:
            yield context
        except Exception as exc:
            if not context.completed:
                await db.rollback()
                status_code, body = _error_body(exc)
                await context.complete(status_code, body)
            raise

    return dependency
