"""
Persistence Gateway and Watermark Store.

InvoiceGateway runs the per-group statements of a reconciliation pass on one
cursor. WatermarkStore reads and writes the SchedulerLastRunTime row of one
sync job. Both wrap pymssql errors into PersistenceError so callers only deal
with the worker's own error kinds.

Statements are rendered from templates/sqlserver/; values are always bound as
pymssql parameters.
"""
import logging
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import pymssql

from invoice_sync.errors import PersistenceError, WatermarkUnavailable
from invoice_sync.models import (
    HEADER_COLUMNS,
    HEADER_UPDATE_COLUMNS,
    LINE_COLUMNS,
    LINE_UPDATE_COLUMNS,
    InvoiceHeader,
    InvoiceLine,
)
from invoice_sync.sql_templates import render_sql

logger = logging.getLogger(__name__)

HEADER_TABLE = "Invoice"
LINE_TABLE = "InvoiceLineItem"
WATERMARK_TABLE = "SchedulerLastRunTime"

LINE_INSERTED = "INSERT"
LINE_UPDATED = "UPDATE"


def _execute(cursor, sql: str, params: Dict[str, Any], operation: str) -> None:
    try:
        cursor.execute(sql, params)
    except pymssql.Error as e:
        raise PersistenceError(f"{operation} failed: {e}") from e


def _fetchone(cursor, operation: str) -> Optional[Dict[str, Any]]:
    try:
        return cursor.fetchone()
    except pymssql.Error as e:
        raise PersistenceError(f"{operation} failed: {e}") from e


class InvoiceGateway:
    """
    Invoice header and line statements bound to one cursor.

    The cursor must return rows as dicts (pymssql as_dict=True) and belong to
    an autocommit connection.

    Usage:
        with invoice_db_cursor(settings) as cursor:
            gateway = InvoiceGateway(cursor)
            invoice_id = gateway.find_header_id(100)
    """

    def __init__(self, cursor, schema: str = "dbo"):
        self.cursor = cursor
        self.schema = schema
        self._sql = {
            'find_header': render_sql(
                'sqlserver/invoice/find_header.sql.j2',
                schema=schema, table=HEADER_TABLE,
            ),
            'insert_header': render_sql(
                'sqlserver/invoice/insert_header.sql.j2',
                schema=schema, table=HEADER_TABLE,
                columns=[column.name for column in HEADER_COLUMNS],
            ),
            'update_header': render_sql(
                'sqlserver/invoice/update_header.sql.j2',
                schema=schema, table=HEADER_TABLE,
                columns=HEADER_UPDATE_COLUMNS,
            ),
            'insert_line': render_sql(
                'sqlserver/invoice/insert_line.sql.j2',
                schema=schema, table=LINE_TABLE,
                columns=LINE_COLUMNS,
            ),
            'upsert_line': render_sql(
                'sqlserver/invoice/upsert_line.sql.j2',
                schema=schema, table=LINE_TABLE,
                insert_columns=LINE_COLUMNS,
                update_columns=LINE_UPDATE_COLUMNS,
            ),
        }

    def find_header_id(self, trx_number: int) -> Optional[int]:
        """Id of the Invoice row with this TrxNumber, or None."""
        _execute(self.cursor, self._sql['find_header'], {'TrxNumber': trx_number}, 'find_header_id')
        row = _fetchone(self.cursor, 'find_header_id')
        if not row or row.get('Id') is None:
            return None
        return int(row['Id'])

    def insert_header(self, header: InvoiceHeader) -> Optional[int]:
        """
        Insert a new Invoice row.

        Returns:
            The new Id, or None if the server returned no identity
        """
        _execute(self.cursor, self._sql['insert_header'], header.insert_params(), 'insert_header')
        row = _fetchone(self.cursor, 'insert_header')
        if not row or row.get('Id') is None:
            return None
        return int(row['Id'])

    def update_header(self, invoice_id: int, header: InvoiceHeader) -> bool:
        """Refresh status and amounts of an existing Invoice row."""
        params = header.update_params()
        params['InvoiceId'] = invoice_id
        _execute(self.cursor, self._sql['update_header'], params, 'update_header')
        return self.cursor.rowcount != 0

    def insert_line(self, invoice_id: int, line: InvoiceLine) -> None:
        """Insert a line under a header created in this pass."""
        params = line.params()
        params['InvoiceId'] = invoice_id
        _execute(self.cursor, self._sql['insert_line'], params, 'insert_line')

    def upsert_line(self, invoice_id: int, line: InvoiceLine) -> str:
        """
        Update the line with this LineNumber under the header, or insert it.

        Returns:
            LINE_INSERTED or LINE_UPDATED
        """
        params = line.params()
        params['InvoiceId'] = invoice_id
        _execute(self.cursor, self._sql['upsert_line'], params, 'upsert_line')
        row = _fetchone(self.cursor, 'upsert_line')
        action = (row or {}).get('MergeAction')
        if action not in (LINE_INSERTED, LINE_UPDATED):
            raise PersistenceError(
                f"upsert_line returned no action for invoice {invoice_id} line {line.line_number}"
            )
        return action


class WatermarkStore:
    """
    Last-run timestamp of one sync job.

    Each call opens its own connection through cursor_factory, so the
    watermark can be read before and written after the cycle's main
    connection is used.

    Args:
        cursor_factory: Callable returning a cursor context manager
                        (e.g. functools.partial(invoice_db_cursor, settings))
        job_name: SchedulerName of the row (e.g. 'Invoice')
        schema: Schema of SchedulerLastRunTime
    """

    def __init__(
        self,
        cursor_factory: Callable[[], AbstractContextManager],
        job_name: str = "Invoice",
        schema: str = "dbo",
    ):
        self.cursor_factory = cursor_factory
        self.job_name = job_name
        self._load_sql = render_sql('sqlserver/watermark/load.sql.j2', schema=schema, table=WATERMARK_TABLE)
        self._save_sql = render_sql('sqlserver/watermark/save.sql.j2', schema=schema, table=WATERMARK_TABLE)

    def load(self) -> datetime:
        """
        Read the watermark.

        Raises:
            WatermarkUnavailable: If no row exists for the job
            PersistenceError: If the query fails
        """
        with self.cursor_factory() as cursor:
            _execute(cursor, self._load_sql, {'SchedulerName': self.job_name}, 'load_watermark')
            row = _fetchone(cursor, 'load_watermark')

        if not row or row.get('LastRun') is None:
            raise WatermarkUnavailable(self.job_name)
        return row['LastRun']

    def save(self, last_run: datetime) -> int:
        """
        Write the watermark.

        Returns:
            Rows affected (0 means the row has disappeared)

        Raises:
            PersistenceError: If the update fails
        """
        with self.cursor_factory() as cursor:
            _execute(
                cursor, self._save_sql,
                {'SchedulerName': self.job_name, 'LastRun': last_run},
                'save_watermark',
            )
            rows_affected = cursor.rowcount

        if rows_affected == 0:
            logger.warning("Watermark row for '%s' not found while saving", self.job_name)
        return rows_affected
