"""
Sync Loop: one invoice sync cycle per wake.

Cycle states:

    IDLE -> FETCHING -> RECONCILING -> ADVANCING -> IDLE
                             |
                             +-- failure --> IDLE (watermark untouched)

    STOPPED once the stop signal is seen at the top of an iteration.

The watermark saved after a successful pass is the wall-clock time taken
*before* the report request, so rows created while a cycle runs fall inside
the next cycle's window.

Usage:
    worker = SyncWorker.from_settings(settings)
    worker.run_forever(stop_event)    # long-lived process
    worker.run_cycle()                # single cycle (Airflow task, --once)
"""
import logging
import threading
import time
from collections import deque
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any, Callable, Deque, Dict, Iterator, Optional

from invoice_sync.client_db import invoice_db_cursor
from invoice_sync.config import Settings
from invoice_sync.engine import ReconcileResult, reconcile
from invoice_sync.errors import SyncError, WatermarkUnavailable
from invoice_sync.gateway import InvoiceGateway, WatermarkStore
from invoice_sync.record_source import ReportClient, load_records

logger = logging.getLogger(__name__)


class SyncState(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    RECONCILING = "reconciling"
    ADVANCING = "advancing"
    STOPPED = "stopped"


@dataclass
class CycleResult:
    """What one cycle did.

    Attributes:
        success: Reconcile succeeded (the watermark save may still have failed)
        advanced: The watermark was saved
        watermark: Lower bound used for the fetch
        fetch_started_at: Wall-clock time captured before the fetch (the new watermark)
        reconcile: Reconcile outcome, if the cycle got that far
        error: Failure description
    """
    success: bool = False
    advanced: bool = False
    watermark: Optional[datetime] = None
    fetch_started_at: Optional[datetime] = None
    reconcile: Optional[ReconcileResult] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'advanced': self.advanced,
            'watermark': self.watermark.isoformat() if self.watermark else None,
            'fetch_started_at': self.fetch_started_at.isoformat() if self.fetch_started_at else None,
            'reconcile': self.reconcile.to_dict() if self.reconcile else None,
            'error': self.error,
            'duration_seconds': round(self.duration_seconds, 2),
        }


class SyncWorker:
    """
    Drives fetch, reconcile and watermark advance.

    Args:
        watermark_store: object with load() -> datetime and save(datetime) -> int
        fetch: callable(since) -> report text
        gateway_factory: callable returning a context manager that yields an
                         InvoiceGateway for the duration of one pass
        poll_interval_seconds: Wait between cycles
        clock: Wall-clock source (default: datetime.now)
    """

    def __init__(
        self,
        watermark_store,
        fetch: Callable[[datetime], str],
        gateway_factory: Callable[[], AbstractContextManager],
        poll_interval_seconds: float = 7200,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.watermark_store = watermark_store
        self.fetch = fetch
        self.gateway_factory = gateway_factory
        self.poll_interval_seconds = poll_interval_seconds
        self.clock = clock
        self.state = SyncState.IDLE
        self.history: Deque[SyncState] = deque(maxlen=32)

    @classmethod
    def from_settings(cls, settings: Settings) -> 'SyncWorker':
        """Wire the worker to SQL Server and the report service."""
        cursor_factory = partial(invoice_db_cursor, settings)
        client = ReportClient.from_settings(settings)
        return cls(
            watermark_store=WatermarkStore(cursor_factory, job_name=settings.job_name),
            fetch=client.fetch,
            gateway_factory=partial(gateway_session, cursor_factory),
            poll_interval_seconds=settings.poll_interval_seconds,
        )

    def _enter(self, state: SyncState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug("Sync state -> %s", state.value)

    def run_cycle(self) -> CycleResult:
        """
        Run one fetch / reconcile / advance cycle.

        Never raises for failures of the cycle itself: every error is logged
        and recorded on the returned CycleResult.
        """
        start_time = time.time()
        result = CycleResult()
        try:
            self._run_cycle(result)
        except WatermarkUnavailable as e:
            result.error = str(e)
            logger.error("Cycle skipped: %s", e)
        except SyncError as e:
            result.error = str(e)
            logger.error("Cycle failed (%s): %s", type(e).__name__, e)
        except Exception as e:
            result.error = f"{type(e).__name__}: {e}"
            logger.exception("Unexpected error in sync cycle")
        finally:
            self._enter(SyncState.IDLE)
            result.duration_seconds = time.time() - start_time
        return result

    def _run_cycle(self, result: CycleResult) -> None:
        self._enter(SyncState.FETCHING)
        result.watermark = self.watermark_store.load()
        result.fetch_started_at = self.clock()
        payload = self.fetch(result.watermark)
        records = load_records(payload)

        self._enter(SyncState.RECONCILING)
        if records:
            with self.gateway_factory() as gateway:
                result.reconcile = reconcile(records, gateway, now=result.fetch_started_at)
        else:
            result.reconcile = ReconcileResult(started_at=result.fetch_started_at)
        result.success = result.reconcile.success

        if not result.success:
            result.error = result.reconcile.error
            logger.error(
                "Watermark left at %s: reconcile failed at TrxNumber=%s",
                result.watermark, result.reconcile.failed_trx_number,
            )
            return

        self._enter(SyncState.ADVANCING)
        try:
            self.watermark_store.save(result.fetch_started_at)
            result.advanced = True
            logger.info(
                "Watermark advanced %s -> %s (%d row(s) processed)",
                result.watermark, result.fetch_started_at, result.reconcile.rows_processed,
            )
        except SyncError as e:
            result.error = f"Watermark save failed: {e}"
            logger.error(result.error)

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """
        Run cycles until stop_event is set.

        The first cycle starts immediately. The stop signal is checked before
        each cycle and interrupts the wait between cycles; a running cycle is
        always allowed to finish.
        """
        stop_event = stop_event or threading.Event()
        logger.info("Invoice sync worker started (poll interval %ss)", self.poll_interval_seconds)

        while not stop_event.is_set():
            logger.info("Worker running at: %s", self.clock().isoformat())
            self.run_cycle()
            stop_event.wait(self.poll_interval_seconds)

        self._enter(SyncState.STOPPED)
        logger.info("Invoice sync worker stopped")


@contextmanager
def gateway_session(cursor_factory: Callable[[], AbstractContextManager]) -> Iterator[InvoiceGateway]:
    """One cursor, one InvoiceGateway, for one reconciliation pass."""
    with cursor_factory() as cursor:
        yield InvoiceGateway(cursor)
