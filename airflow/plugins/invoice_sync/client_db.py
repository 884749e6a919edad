"""
Invoice Store SQL Server Connection Utilities

Connections are opened in autocommit mode: every header or line write is its
own single-statement transaction, so a failure part way through a batch leaves
the groups written before it committed.
"""
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator

import pymssql

from invoice_sync.config import Settings
from invoice_sync.errors import PersistenceError

logger = logging.getLogger(__name__)


def get_invoice_db_connection(settings: Settings) -> pymssql.Connection:
    """
    Create connection to the invoice store.

    Args:
        settings: Worker settings (connection_string)

    Returns:
        pymssql.Connection: Active autocommit connection

    Raises:
        PersistenceError: If the server cannot be reached or login fails
    """
    params: Dict[str, Any] = settings.connection_params()
    login_timeout = params.pop('login_timeout', 30)

    try:
        return pymssql.connect(
            server=params['server'],
            port=params['port'],
            user=params.get('user'),
            password=params.get('password'),
            database=params.get('database'),
            login_timeout=login_timeout,
            timeout=60,
            autocommit=True,
        )
    except pymssql.Error as e:
        raise PersistenceError(
            f"Could not connect to {params['server']}:{params['port']}/{params.get('database')}: {e}"
        ) from e


@contextmanager
def invoice_db_cursor(settings: Settings, as_dict: bool = True) -> Iterator[pymssql.Cursor]:
    """
    Context manager for safe cursor handling.

    Opens one connection, yields one cursor and closes both on exit.

    Args:
        settings: Worker settings
        as_dict: If True, return rows as dictionaries

    Yields:
        pymssql.Cursor: Database cursor

    Example:
        >>> with invoice_db_cursor(settings) as cursor:
        ...     gateway = InvoiceGateway(cursor)
        ...     gateway.find_header_id(100)
    """
    conn = get_invoice_db_connection(settings)
    cursor = None
    try:
        cursor = conn.cursor(as_dict=as_dict)
        yield cursor
    finally:
        if cursor is not None:
            cursor.close()
        conn.close()
