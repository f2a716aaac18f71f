"""
Continuation Scheduler

Hands a partial run to the next batch. The default `queue` mode writes a
durable SyncContinuation row that a worker poll picks up; `http` mode
POSTs back into /sync/run with the service credential. Either way the
scheduling step itself is retried (1s, 2s, 4s) and a final failure only
leaves the run partial with its lease released.
"""
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Set

import httpx
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from outreach_sync.config import Settings, get_settings
from outreach_sync.models.base import SessionLocal
from outreach_sync.models.data_source import DataSource, SyncContinuation
from outreach_sync.utils.helpers import utcnow
from outreach_sync.utils.logger import log
from outreach_sync.utils.retry import RetryContext


@dataclass
class ContinuationRequest:
    """Everything the next batch needs to resume a run"""
    data_source_id: int
    client_id: str
    engagement_id: str
    run_id: str
    batch_number: int
    phase: str
    lease_token: str
    continuation_id: Optional[int] = None

    def to_payload(self) -> dict:
        """Body for POST /sync/run"""
        return {
            "client_id": self.client_id,
            "engagement_id": self.engagement_id,
            "data_source_id": self.data_source_id,
            "batch_number": self.batch_number,
            "current_phase": self.phase,
            "lease_token": self.lease_token,
            "internal_continuation": True,
            "auto_continue": True,
        }


class ContinuationScheduler:
    """Schedules, claims and settles continuation batches"""

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        now: Callable = utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.sleep = sleep
        self.http_transport = http_transport
        self.now = now
        self._tasks: Set[asyncio.Task] = set()

    def _retry(self, label: str, retryable) -> RetryContext:
        return RetryContext(
            max_retries=self.settings.continuation_max_retries,
            base_delay=self.settings.continuation_retry_base_seconds,
            jitter=False,
            retryable_exceptions=retryable,
            sleep=self.sleep,
            label=label,
        )

    async def schedule_next(self, request: ContinuationRequest) -> bool:
        """
        Schedule the next batch.

        Returns False when scheduling failed for good; the run has then
        already been left partial with its lease released.
        """
        if self.settings.continuation_mode == "http":
            task = asyncio.create_task(self._dispatch_http(request))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return True

        ctx = self._retry(f"Enqueue continuation for data source {request.data_source_id}", (SQLAlchemyError,))
        try:
            continuation_id = await ctx.execute(self._enqueue, request)
        except SQLAlchemyError as e:
            self._abandon(request, e)
            return False

        log.info(
            f"Queued continuation {continuation_id} for data source {request.data_source_id} "
            f"(run {request.run_id}, batch {request.batch_number})"
        )
        return True

    async def wait_for_dispatches(self):
        """Wait for in-flight http dispatches (shutdown and tests)"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _enqueue(self, request: ContinuationRequest) -> int:
        db = self.session_factory()
        try:
            # One pending continuation per data source
            db.query(SyncContinuation).filter(
                SyncContinuation.data_source_id == request.data_source_id,
                SyncContinuation.status == "pending",
            ).update({"status": "cancelled", "last_error": "Replaced by a newer continuation"}, synchronize_session=False)

            continuation = SyncContinuation(
                data_source_id=request.data_source_id,
                run_id=request.run_id,
                batch_number=request.batch_number,
                phase=request.phase,
                lease_token=request.lease_token,
                status="pending",
                due_at=self.now(),
            )
            db.add(continuation)
            db.commit()
            return continuation.id
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    async def _post(self, request: ContinuationRequest):
        async with httpx.AsyncClient(
            base_url=self.settings.public_base_url,
            transport=self.http_transport,
            timeout=30.0,
        ) as client:
            response = await client.post(
                "/sync/run",
                json=request.to_payload(),
                headers={"Authorization": f"Bearer {self.settings.service_role_key}"},
            )
            response.raise_for_status()
            return response.status_code

    async def _dispatch_http(self, request: ContinuationRequest) -> bool:
        ctx = self._retry(f"Continuation call for data source {request.data_source_id}", (httpx.HTTPError,))
        try:
            status = await ctx.execute(self._post, request)
        except httpx.HTTPError as e:
            self._abandon(request, e)
            return False
        log.info(f"Continuation accepted for data source {request.data_source_id} (status {status})")
        return True

    def _abandon(self, request: ContinuationRequest, error: Exception):
        """Leave the run partial and free the lease for a later retry"""
        log.error(
            f"Could not schedule continuation for data source {request.data_source_id} "
            f"(run {request.run_id}): {error}. Run left partial."
        )
        db = self.session_factory()
        try:
            db.execute(
                update(DataSource)
                .where(DataSource.id == request.data_source_id, DataSource.claim_token == request.lease_token)
                .values(
                    last_sync_status="partial",
                    last_sync_error=f"Continuation scheduling failed: {error}"[:500],
                    claimed_until=None,
                    claim_token=None,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            log.error(f"Could not release lease for data source {request.data_source_id}: {e}")
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def claim_due(self, limit: Optional[int] = None) -> List[ContinuationRequest]:
        """Claim due pending rows with a status compare-and-swap"""
        limit = limit or self.settings.continuation_batch_size
        db = self.session_factory()
        claimed: List[ContinuationRequest] = []
        try:
            due = (
                db.query(SyncContinuation, DataSource)
                .join(DataSource, DataSource.id == SyncContinuation.data_source_id)
                .filter(SyncContinuation.status == "pending", SyncContinuation.due_at <= self.now())
                .order_by(SyncContinuation.due_at, SyncContinuation.id)
                .limit(limit)
                .all()
            )
            for continuation, data_source in due:
                result = db.execute(
                    update(SyncContinuation)
                    .where(SyncContinuation.id == continuation.id, SyncContinuation.status == "pending")
                    .values(status="running", attempts=SyncContinuation.attempts + 1, updated_at=self.now())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue  # Another worker took it
                claimed.append(ContinuationRequest(
                    data_source_id=continuation.data_source_id,
                    client_id=data_source.client_id,
                    engagement_id=data_source.engagement_id,
                    run_id=continuation.run_id,
                    batch_number=continuation.batch_number,
                    phase=continuation.phase,
                    lease_token=continuation.lease_token,
                    continuation_id=continuation.id,
                ))
            db.commit()
        finally:
            db.close()
        return claimed

    def finish(self, continuation_id: int, status: str, error: Optional[str] = None):
        db = self.session_factory()
        try:
            db.query(SyncContinuation).filter(SyncContinuation.id == continuation_id).update(
                {"status": status, "last_error": error[:500] if error else None, "updated_at": self.now()},
                synchronize_session=False,
            )
            db.commit()
        finally:
            db.close()

    def cancel_pending(self, data_source_id: int, reason: str = "Cancelled") -> int:
        db = self.session_factory()
        try:
            count = db.query(SyncContinuation).filter(
                SyncContinuation.data_source_id == data_source_id,
                SyncContinuation.status == "pending",
            ).update({"status": "cancelled", "last_error": reason, "updated_at": self.now()}, synchronize_session=False)
            db.commit()
            return count
        finally:
            db.close()

    async def drain(self, runner: Callable[[ContinuationRequest], Awaitable]) -> int:
        """
        Run every due continuation through `runner` (the orchestrator entry).

        Returns the number of continuations processed.
        """
        processed = 0
        for request in self.claim_due():
            try:
                await runner(request)
                self.finish(request.continuation_id, "done")
            except Exception as e:
                log.error(f"Continuation {request.continuation_id} for data source {request.data_source_id} failed: {str(e)}")
                self.finish(request.continuation_id, "failed", str(e))
            processed += 1
        return processed
