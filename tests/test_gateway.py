"""InvoiceGateway and WatermarkStore tests against a mocked pymssql cursor."""
from contextlib import nullcontext
from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock

import pymssql
import pytest

from invoice_sync.errors import PersistenceError, WatermarkUnavailable
from invoice_sync.gateway import LINE_INSERTED, LINE_UPDATED, InvoiceGateway, WatermarkStore
from invoice_sync.models import HEADER_UPDATE_COLUMNS, InvoiceHeader, InvoiceLine

from fakes import make_row


@pytest.fixture
def cursor():
    cursor = MagicMock()
    cursor.rowcount = 1
    return cursor


@pytest.fixture
def gateway(cursor):
    return InvoiceGateway(cursor)


def executed(cursor):
    sql, params = cursor.execute.call_args[0]
    return sql, params


class TestInvoiceGateway:

    def test_find_header_id(self, gateway, cursor):
        cursor.fetchone.return_value = {'Id': 7}

        assert gateway.find_header_id(100) == 7
        sql, params = executed(cursor)
        assert "FROM [dbo].[Invoice]" in sql
        assert params == {'TrxNumber': 100}

    def test_find_header_id_not_found(self, gateway, cursor):
        cursor.fetchone.return_value = None

        assert gateway.find_header_id(100) is None

    def test_insert_header_returns_new_id(self, gateway, cursor):
        cursor.fetchone.return_value = {'Id': 12}
        header = InvoiceHeader.from_row(make_row(100, 1))

        assert gateway.insert_header(header) == 12
        sql, params = executed(cursor)
        assert "OUTPUT INSERTED.Id" in sql
        assert "%(TrxNumber)s" in sql
        assert params['TrxNumber'] == 100
        assert params['TotalAmount'] == Decimal('105.00')

    def test_insert_header_without_identity(self, gateway, cursor):
        cursor.fetchone.return_value = None

        assert gateway.insert_header(InvoiceHeader.from_row(make_row())) is None

    def test_update_header_binds_invoice_id(self, gateway, cursor):
        header = InvoiceHeader.from_row(make_row(100, 1, STATUS='CL'))

        assert gateway.update_header(12, header) is True
        sql, params = executed(cursor)
        assert sql.startswith("UPDATE [dbo].[Invoice]")
        assert "WHERE Id = %(InvoiceId)s" in sql
        assert set(params) == set(HEADER_UPDATE_COLUMNS) | {'InvoiceId'}
        assert params['Status'] == 'CL'

    def test_update_header_reports_missing_row(self, gateway, cursor):
        cursor.rowcount = 0

        assert gateway.update_header(12, InvoiceHeader.from_row(make_row())) is False

    def test_insert_line(self, gateway, cursor):
        gateway.insert_line(12, InvoiceLine.from_row(make_row(100, 2)))

        sql, params = executed(cursor)
        assert "INSERT INTO [dbo].[InvoiceLineItem]" in sql
        assert params['InvoiceId'] == 12
        assert params['LineNumber'] == 2
        assert params['CfPacking'] == '12x1L'

    @pytest.mark.parametrize("action", [LINE_INSERTED, LINE_UPDATED])
    def test_upsert_line_returns_merge_action(self, gateway, cursor, action):
        cursor.fetchone.return_value = {'MergeAction': action}

        assert gateway.upsert_line(12, InvoiceLine.from_row(make_row())) == action
        sql, _ = executed(cursor)
        assert "MERGE [dbo].[InvoiceLineItem] WITH (HOLDLOCK)" in sql

    def test_upsert_line_without_action_raises(self, gateway, cursor):
        cursor.fetchone.return_value = None

        with pytest.raises(PersistenceError, match="no action"):
            gateway.upsert_line(12, InvoiceLine.from_row(make_row()))

    def test_upsert_does_not_update_packing(self, gateway):
        sql = gateway._sql['upsert_line']
        update_part = sql.split("WHEN NOT MATCHED")[0]

        assert "[CfPacking]" not in update_part
        assert "[CfPacking]" in sql

    def test_driver_errors_become_persistence_errors(self, gateway, cursor):
        cursor.execute.side_effect = pymssql.OperationalError("connection reset")

        with pytest.raises(PersistenceError, match="insert_line failed"):
            gateway.insert_line(12, InvoiceLine.from_row(make_row()))

    def test_custom_schema(self, cursor):
        gateway = InvoiceGateway(cursor, schema="sales")
        cursor.fetchone.return_value = None

        gateway.find_header_id(1)

        sql, _ = executed(cursor)
        assert "[sales].[Invoice]" in sql


class TestWatermarkStore:

    @pytest.fixture
    def store(self, cursor):
        return WatermarkStore(lambda: nullcontext(cursor), job_name="Invoice")

    def test_load(self, store, cursor):
        cursor.fetchone.return_value = {'LastRun': datetime(2024, 5, 1, 8, 0)}

        assert store.load() == datetime(2024, 5, 1, 8, 0)
        sql, params = executed(cursor)
        assert "FROM [dbo].[SchedulerLastRunTime]" in sql
        assert params == {'SchedulerName': 'Invoice'}

    @pytest.mark.parametrize("row", [None, {'LastRun': None}])
    def test_load_without_row_raises(self, store, cursor, row):
        cursor.fetchone.return_value = row

        with pytest.raises(WatermarkUnavailable, match="Invoice"):
            store.load()

    def test_save(self, store, cursor):
        assert store.save(datetime(2024, 5, 1, 10, 0)) == 1

        sql, params = executed(cursor)
        assert sql.startswith("UPDATE [dbo].[SchedulerLastRunTime]")
        assert params == {'SchedulerName': 'Invoice', 'LastRun': datetime(2024, 5, 1, 10, 0)}

    def test_save_missing_row_returns_zero(self, store, cursor):
        cursor.rowcount = 0

        assert store.save(datetime(2024, 5, 1)) == 0

    def test_save_error_is_persistence_error(self, store, cursor):
        cursor.execute.side_effect = pymssql.DatabaseError("deadlock victim")

        with pytest.raises(PersistenceError, match="save_watermark failed"):
            store.save(datetime(2024, 5, 1))
