"""
Operation Scheduler

Single-flight, single-executor queue for user-triggered work (quiz creation,
approval). Operations are keyed by a caller-chosen fingerprint: while an
operation with a fingerprint is queued or running, enqueuing the same
fingerprint returns the existing future instead of scheduling new work.

The executor runs one operation at a time in FIFO order. Cancellation is
cooperative: queued operations resolve as cancelled immediately, running
operations only see ``cancel_requested`` at their own checkpoints.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from config import SCHEDULER_CONFIG
from .errors import DuplicateOperationError, OperationCancelledError, QueueFullError
from .lease_store import LeaseStore
from .models import Operation, OperationResult, OperationStatus, utc_now

logger = logging.getLogger(__name__)

Work = Callable[[Operation], Awaitable[Any]]


def checkpoint(operation: Operation) -> None:
    """Safe point inside a running operation: stop here if cancellation was requested"""
    if operation.cancel_requested:
        raise OperationCancelledError(f"Operation {operation.id} cancelled at checkpoint", fingerprint=operation.id)


class OperationScheduler:
    """Serializes and deduplicates named operations, running at most one at a time"""

    def __init__(self, max_queue_size: Optional[int] = None, lease_ttl: Optional[float] = None):
        self.max_queue_size = max_queue_size if max_queue_size is not None else SCHEDULER_CONFIG['MAX_QUEUE_SIZE']
        self.lease_ttl = lease_ttl if lease_ttl is not None else SCHEDULER_CONFIG['LEASE_TTL_SECONDS']

        self._queue: Deque[Operation] = deque()
        self._active: Dict[str, Operation] = {}
        self._current: Optional[Operation] = None
        self._worker: Optional[asyncio.Task] = None
        self._stores: Dict[str, LeaseStore] = {}
        self.stats = {
            'enqueued': 0,
            'joined': 0,
            'succeeded': 0,
            'failed': 0,
            'cancelled': 0,
            'rejected': 0,
        }

        logger.info(f"🗂️ Operation scheduler initialized (max queue size {self.max_queue_size})")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def enqueue(self, fingerprint: str, work: Work, join_existing: bool = True) -> asyncio.Future:
        """
        Schedule ``work`` under ``fingerprint``.

        Args:
            fingerprint: Identifies the logical operation (e.g. "{creator}:{draft}")
            work: Async callable receiving the Operation, so it can check ``cancel_requested``
            join_existing: When False, an active duplicate raises DuplicateOperationError
                instead of returning the existing future

        Returns:
            Future resolving to an OperationResult. It never raises; failures are
            carried on the result.
        """
        existing = self._active.get(fingerprint)
        if existing is not None:
            if not join_existing:
                raise DuplicateOperationError(
                    f"Operation {fingerprint} is already {existing.status.value}",
                    fingerprint=fingerprint,
                )
            self.stats['joined'] += 1
            logger.info(f"🔁 Operation {fingerprint} already {existing.status.value}, returning existing future")
            return existing.future

        if len(self._queue) >= self.max_queue_size:
            self.stats['rejected'] += 1
            logger.warning(f"⚠️ Operation queue full ({len(self._queue)}/{self.max_queue_size}), rejecting {fingerprint}")
            raise QueueFullError(f"Queue full, cannot enqueue {fingerprint}", fingerprint=fingerprint)

        loop = asyncio.get_running_loop()
        operation = Operation(id=fingerprint, work=work, future=loop.create_future())
        self._active[fingerprint] = operation
        self._queue.append(operation)
        self.stats['enqueued'] += 1

        logger.info(f"➕ Added operation {fingerprint} to queue. Queue length: {len(self._queue)}")
        self._ensure_worker()
        return operation.future

    async def run(self, fingerprint: str, work: Work) -> Any:
        """Enqueue (or join) and wait; returns the value or raises the operation's error"""
        result = await self.enqueue(fingerprint, work)
        return result.unwrap()

    def cancel(self, fingerprint_prefix: str) -> List[str]:
        """
        Request cancellation of every active operation whose fingerprint starts with the prefix.

        Queued operations resolve as cancelled right away. Running operations are only
        flagged; their in-flight work completes and its result is discarded.

        Returns:
            Fingerprints that were marked
        """
        marked = []
        for fingerprint, operation in list(self._active.items()):
            if not fingerprint.startswith(fingerprint_prefix):
                continue

            operation.cancel_requested = True
            marked.append(fingerprint)

            if operation.status == OperationStatus.QUEUED:
                try:
                    self._queue.remove(operation)
                except ValueError:
                    pass
                self._finish(operation, OperationResult(fingerprint, OperationStatus.CANCELLED))
                logger.info(f"🛑 Cancelled queued operation: {fingerprint}")
            else:
                logger.info(f"🛑 Marked running operation as cancelled: {fingerprint}")

        if not marked:
            logger.info(f"ℹ️ No active operation matches {fingerprint_prefix}")
        return marked

    def get_operation(self, fingerprint: str) -> Optional[Operation]:
        return self._active.get(fingerprint)

    def is_active(self, fingerprint: str) -> bool:
        return fingerprint in self._active

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    @property
    def current_operation(self) -> Optional[Operation]:
        return self._current

    def active_operations(self) -> List[Dict[str, Any]]:
        return [
            {
                'id': op.id,
                'status': op.status.value,
                'enqueued_at': op.enqueued_at.isoformat(),
                'started_at': op.started_at.isoformat() if op.started_at else None,
                'cancel_requested': op.cancel_requested,
            }
            for op in self._active.values()
        ]

    def lease_store(self, name: str, ttl: Optional[float] = None) -> LeaseStore:
        """Named TTL store owned by the scheduler, for state keyed by operation fingerprint"""
        store = self._stores.get(name)
        if store is None:
            store = LeaseStore(name, default_ttl=ttl if ttl is not None else self.lease_ttl)
            self._stores[name] = store
        return store

    def purge_expired(self) -> int:
        return sum(store.cleanup() for store in self._stores.values())

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'pending': len(self._queue),
            'active': len(self._active),
            'current': self._current.id if self._current else None,
            'stores': [store.get_stats() for store in self._stores.values()],
        }

    async def wait_idle(self) -> None:
        while self._worker is not None and not self._worker.done():
            await asyncio.shield(self._worker)

    async def shutdown(self) -> None:
        """Stop the executor; anything still queued resolves as cancelled"""
        while self._queue:
            operation = self._queue.popleft()
            operation.cancel_requested = True
            self._finish(operation, OperationResult(operation.id, OperationStatus.CANCELLED))

        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None

    # ------------------------------------------------------------------
    # Executor
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._process_queue())

    async def _process_queue(self) -> None:
        while self._queue:
            operation = self._queue.popleft()
            if operation.future.done():
                continue
            await self._execute(operation)

    async def _execute(self, operation: Operation) -> None:
        operation.status = OperationStatus.RUNNING
        operation.started_at = utc_now()
        self._current = operation
        logger.info(f"⚙️ Processing operation {operation.id}")

        try:
            value = await operation.work(operation)
        except asyncio.CancelledError:
            self._finish(operation, OperationResult(operation.id, OperationStatus.CANCELLED))
            raise
        except Exception as e:
            if operation.cancel_requested:
                result = OperationResult(operation.id, OperationStatus.CANCELLED, error=e)
            else:
                logger.error(f"❌ Error processing operation {operation.id}: {e}")
                result = OperationResult(operation.id, OperationStatus.FAILED, error=e)
        else:
            if operation.cancel_requested:
                logger.warning(f"⚠️ Operation {operation.id} finished after cancellation, discarding its result")
                result = OperationResult(operation.id, OperationStatus.CANCELLED, value=value)
            else:
                result = OperationResult(operation.id, OperationStatus.SUCCEEDED, value=value)
        finally:
            self._current = None

        self._finish(operation, result)

    def _finish(self, operation: Operation, result: OperationResult) -> None:
        operation.status = result.status
        operation.finished_at = utc_now()

        if self._active.get(operation.id) is operation:
            del self._active[operation.id]

        self.stats[result.status.value] += 1

        if not operation.future.done():
            operation.future.set_result(result)

        if operation.started_at:
            elapsed = (operation.finished_at - operation.started_at).total_seconds()
            logger.info(f"🏁 Operation {operation.id} {result.status.value} in {elapsed:.2f}s")
