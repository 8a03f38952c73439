"""
creditgate/features/usage/service.py

Usage ledger: append-only audit trail of credit consumption.

Handles:
- Synchronous and fire-and-forget usage event writes
- Per-tenant audit queries

The ledger is observability, not the ledger of record. Balances always come
from the entitlement store and are never derived by summing these rows.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import select, insert, func

from creditgate.core.config import settings
from creditgate.core.database import get_db_session, usage_events
from creditgate.core.metrics import usage_ledger_failures_total
from creditgate.models.usage_event import UsageEvent


logger = logging.getLogger(__name__)


def _normalize(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


class UsageLedger:
    """
    Append-only usage ledger.

    record_async() hands the insert to a small thread pool and returns
    immediately. A failed write is logged and counted; it never reaches the
    caller.
    """

    def __init__(self, *, asynchronous: Optional[bool] = None, max_workers: Optional[int] = None):
        self.asynchronous = settings.LEDGER_ASYNC_ENABLED if asynchronous is None else asynchronous
        self._max_workers = max_workers or settings.LEDGER_MAX_WORKERS
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def record(
        self,
        tenant_id: str,
        action: str,
        credits_used: int,
        metadata: Optional[Dict[str, Any]] = None,
        occurred_at: Optional[datetime] = None,
    ) -> UsageEvent:
        """
        Insert a usage event.

        Raises:
            SQLAlchemyError: If the insert fails
        """
        occurred_at = _normalize(occurred_at) or datetime.now(timezone.utc)
        with get_db_session() as session:
            session.execute(
                insert(usage_events).values(
                    tenant_id=tenant_id,
                    action=action,
                    credits_used=credits_used,
                    metadata=metadata,
                    occurred_at=occurred_at,
                )
            )

        return UsageEvent(
            tenant_id=tenant_id,
            action=action,
            credits_used=credits_used,
            occurred_at=occurred_at,
            metadata=metadata,
        )

    def record_async(
        self,
        tenant_id: str,
        action: str,
        credits_used: int,
        metadata: Optional[Dict[str, Any]] = None,
        occurred_at: Optional[datetime] = None,
    ) -> Optional[Future]:
        """
        Record a usage event without blocking the caller.

        Returns the Future in asynchronous mode (None in synchronous mode).
        Failures are logged either way and never raised.
        """
        occurred_at = _normalize(occurred_at) or datetime.now(timezone.utc)

        if not self.asynchronous:
            self._record_quietly(tenant_id, action, credits_used, metadata, occurred_at)
            return None

        try:
            future = self._get_executor().submit(
                self._record_quietly, tenant_id, action, credits_used, metadata, occurred_at
            )
        except RuntimeError:
            # Executor already shut down
            self._log_failure(tenant_id, action)
            return None

        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def _record_quietly(
        self,
        tenant_id: str,
        action: str,
        credits_used: int,
        metadata: Optional[Dict[str, Any]],
        occurred_at: datetime,
    ) -> Optional[UsageEvent]:
        try:
            return self.record(tenant_id, action, credits_used, metadata, occurred_at)
        except Exception:
            self._log_failure(tenant_id, action)
            return None

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _log_failure(self, tenant_id: str, action: str) -> None:
        usage_ledger_failures_total.inc()
        logger.warning(
            "[usage] failed to record usage event",
            exc_info=True,
            extra={"tenant_id": tenant_id, "action": action},
        )

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers,
                    thread_name_prefix="usage-ledger",
                )
            return self._executor

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for pending writes. Returns True if none are left outstanding."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait_for_pending)

    def list_events(
        self,
        tenant_id: str,
        action: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> List[UsageEvent]:
        """
        Get usage events for a tenant, oldest first.

        Args:
            tenant_id: Tenant to query
            action: Optional filter by action label
            start_time: Optional start of time window (inclusive)
            end_time: Optional end of time window (inclusive)
        """
        with get_db_session() as session:
            query = select(usage_events).where(usage_events.c.tenant_id == tenant_id)

            if action:
                query = query.where(usage_events.c.action == action)
            if start_time:
                query = query.where(usage_events.c.occurred_at >= _normalize(start_time))
            if end_time:
                query = query.where(usage_events.c.occurred_at <= _normalize(end_time))

            rows = session.execute(
                query.order_by(usage_events.c.occurred_at, usage_events.c.id)
            ).all()

            return [
                UsageEvent(
                    tenant_id=row.tenant_id,
                    action=row.action,
                    credits_used=row.credits_used,
                    occurred_at=_normalize(row.occurred_at),
                    metadata=row._mapping["metadata"],
                )
                for row in rows
            ]

    def total_credits_used(
        self,
        tenant_id: str,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> int:
        """Sum of credits_used for analytics. Not a balance."""
        with get_db_session() as session:
            query = select(func.coalesce(func.sum(usage_events.c.credits_used), 0)).where(
                usage_events.c.tenant_id == tenant_id
            )
            if start_time:
                query = query.where(usage_events.c.occurred_at >= _normalize(start_time))
            if end_time:
                query = query.where(usage_events.c.occurred_at <= _normalize(end_time))
            return int(session.execute(query).scalar_one())
