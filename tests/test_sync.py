"""Sync loop tests: watermark handling, failure isolation and stop behaviour."""
import threading
from contextlib import nullcontext
from datetime import datetime

import pytest

from invoice_sync.config import Settings
from invoice_sync.errors import MalformedPayload, SourceUnavailable
from invoice_sync.gateway import WatermarkStore
from invoice_sync.sync import SyncState, SyncWorker

from fakes import FakeWatermarkStore, make_row, report_text

FETCH_TIME = datetime(2024, 5, 1, 10, 0)


class RecordingFetch:
    """Report source double: returns queued payloads or raises queued errors."""

    def __init__(self, *responses, events=None):
        self.responses = list(responses)
        self.calls = []
        self.events = events if events is not None else []

    def __call__(self, since):
        self.calls.append(since)
        self.events.append('fetch')
        response = self.responses.pop(0) if self.responses else ''
        if isinstance(response, Exception):
            raise response
        return response


def no_gateway():
    raise AssertionError("gateway opened for an empty batch")


def make_worker(watermark, fetch, store=None, events=None, **kwargs):
    events = events if events is not None else []

    def clock():
        events.append('clock')
        return FETCH_TIME

    gateway_factory = (lambda: nullcontext(store)) if store is not None else no_gateway
    return SyncWorker(
        watermark_store=watermark,
        fetch=fetch,
        gateway_factory=gateway_factory,
        poll_interval_seconds=kwargs.pop('poll_interval_seconds', 0),
        clock=clock,
        **kwargs,
    )


class TestRunCycle:

    def test_successful_cycle_advances_to_pre_fetch_time(self, watermark, store):
        events = []
        fetch = RecordingFetch(report_text([make_row(100, 1), make_row(100, 2)]), events=events)
        worker = make_worker(watermark, fetch, store, events=events)

        result = worker.run_cycle()

        assert result.success
        assert result.advanced
        assert fetch.calls == [datetime(2024, 5, 1, 8, 0)]
        assert events[:2] == ['clock', 'fetch']
        assert watermark.saved == [FETCH_TIME]
        assert sorted(store.lines_of(100)) == [1, 2]
        assert result.reconcile.rows_processed == 2
        assert result.reconcile.started_at == FETCH_TIME

    def test_empty_payload_still_advances(self, watermark):
        worker = make_worker(watermark, RecordingFetch(''))

        result = worker.run_cycle()

        assert result.success
        assert watermark.saved == [FETCH_TIME]
        assert result.reconcile.rows_processed == 0
        assert result.reconcile.started_at == FETCH_TIME

    def test_degenerate_payload_still_advances(self, watermark):
        worker = make_worker(watermark, RecordingFetch('TRX\r\n'))

        result = worker.run_cycle()

        assert result.advanced
        assert watermark.saved == [FETCH_TIME]

    def test_reconcile_failure_keeps_watermark(self, watermark, store):
        store.fail_trx.add(200)
        rows = [make_row(100, 1), make_row(200, 1)]
        worker = make_worker(watermark, RecordingFetch(report_text(rows)), store)

        result = worker.run_cycle()

        assert not result.success
        assert not result.advanced
        assert watermark.saved == []
        assert result.reconcile.failed_trx_number == 200
        assert 100 in store.headers

    @pytest.mark.parametrize("error", [
        SourceUnavailable("API request failed. Status code: 503", status_code=503),
        MalformedPayload("Report response is not valid XML"),
    ])
    def test_source_errors_write_nothing(self, watermark, store, error):
        worker = make_worker(watermark, RecordingFetch(error), store)

        result = worker.run_cycle()

        assert not result.success
        assert str(error) in result.error
        assert watermark.saved == []
        assert store.calls == []
        assert worker.state == SyncState.IDLE

    def test_missing_watermark_skips_fetch(self, store):
        watermark = FakeWatermarkStore(value=None)
        fetch = RecordingFetch(report_text([make_row()]))
        worker = make_worker(watermark, fetch, store)

        result = worker.run_cycle()

        assert not result.success
        assert "Invoice" in result.error
        assert fetch.calls == []
        assert store.calls == []

    def test_watermark_save_failure_is_reported_not_raised(self, watermark):
        watermark.fail_save = True
        worker = make_worker(watermark, RecordingFetch(''))

        result = worker.run_cycle()

        assert result.success
        assert not result.advanced
        assert "Watermark save failed" in result.error

    def test_unexpected_error_is_contained(self, watermark):
        worker = make_worker(watermark, RecordingFetch(RuntimeError("boom")))

        result = worker.run_cycle()

        assert not result.success
        assert result.error == "RuntimeError: boom"
        assert worker.state == SyncState.IDLE

    def test_state_history_of_successful_cycle(self, watermark):
        worker = make_worker(watermark, RecordingFetch(''))

        worker.run_cycle()

        assert list(worker.history) == [
            SyncState.FETCHING,
            SyncState.RECONCILING,
            SyncState.ADVANCING,
            SyncState.IDLE,
        ]

    def test_state_history_of_failed_cycle(self, watermark):
        worker = make_worker(watermark, RecordingFetch(SourceUnavailable("down")))

        worker.run_cycle()

        assert list(worker.history) == [SyncState.FETCHING, SyncState.IDLE]

    def test_to_dict(self, watermark):
        result = make_worker(watermark, RecordingFetch('')).run_cycle()

        data = result.to_dict()

        assert data['advanced'] is True
        assert data['fetch_started_at'] == FETCH_TIME.isoformat()
        assert data['reconcile']['success'] is True


class TestRunForever:

    def test_stop_before_start_runs_no_cycle(self, watermark):
        fetch = RecordingFetch('')
        worker = make_worker(watermark, fetch)
        stop = threading.Event()
        stop.set()

        worker.run_forever(stop)

        assert fetch.calls == []
        assert worker.state == SyncState.STOPPED

    def test_stop_during_cycle_lets_it_finish(self, watermark):
        stop = threading.Event()

        def fetch(since):
            stop.set()
            return ''

        worker = make_worker(watermark, fetch, poll_interval_seconds=3600)

        worker.run_forever(stop)

        assert watermark.saved == [FETCH_TIME]
        assert worker.state == SyncState.STOPPED

    def test_failed_cycle_does_not_stop_the_loop(self, watermark):
        stop = threading.Event()
        calls = []

        def fetch(since):
            calls.append(since)
            if len(calls) == 1:
                raise SourceUnavailable("timed out")
            stop.set()
            return ''

        worker = make_worker(watermark, fetch)

        worker.run_forever(stop)

        assert len(calls) == 2
        assert calls[0] == calls[1]
        assert watermark.saved == [FETCH_TIME]


def test_from_settings_wires_watermark_job():
    settings = Settings(
        connection_string="Server=db01;Database=Sales;User Id=svc;Password=pw",
        source_endpoint="https://bi.example.com",
        source_user="svc_report",
        source_password="secret",
        job_name="InvoiceTest",
        poll_interval_seconds=60,
    )

    worker = SyncWorker.from_settings(settings)

    assert isinstance(worker.watermark_store, WatermarkStore)
    assert worker.watermark_store.job_name == "InvoiceTest"
    assert worker.poll_interval_seconds == 60
    assert worker.state == SyncState.IDLE
