"""
Invoice Sync Worker

Incrementally copies AR invoices from the BI Publisher invoice report into
the SQL Server invoice store.

Usage:
    from invoice_sync import SyncWorker, load_settings

    worker = SyncWorker.from_settings(load_settings())
    worker.run_cycle()
"""
from invoice_sync.config import Settings, load_settings
from invoice_sync.engine import ReconcileResult, group_records, reconcile
from invoice_sync.errors import (
    ConfigurationError,
    MalformedPayload,
    PersistenceError,
    SourceUnavailable,
    SyncError,
    WatermarkUnavailable,
)
from invoice_sync.gateway import InvoiceGateway, WatermarkStore
from invoice_sync.record_source import ReportClient, load_records, parse_report
from invoice_sync.sync import CycleResult, SyncState, SyncWorker

__version__ = "1.0.0"
