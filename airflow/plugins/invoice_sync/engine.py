"""
Reconciliation Engine.

Turns one batch of report rows into invoice header and line writes:

1. Rows with a blank SALES_ORDER are dropped (header-only or blank report lines).
2. The remaining rows are grouped by TRX_NUMBER. Grouping is an explicit
   stable group-by: ids keep their first-appearance order, rows keep input
   order inside a group, and rows for one id need not be contiguous.
3. Per group: a new TrxNumber gets a header insert followed by one insert per
   line; a known TrxNumber gets a header update followed by one upsert per
   line, keyed by LineNumber.

Groups are committed one by one. The first error aborts the pass; groups
written before it stay written and the caller must not advance the watermark.
Re-running the same batch is a no-op update, which is what makes retrying
an overlapping window safe.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from invoice_sync.errors import SyncError
from invoice_sync.gateway import LINE_INSERTED
from invoice_sync.models import InvoiceHeader, InvoiceLine, is_blank, to_int

logger = logging.getLogger(__name__)

Row = Mapping[str, Any]

TRX_FIELD = "TRX_NUMBER"
SALES_ORDER_FIELD = "SALES_ORDER"


@dataclass
class RecordGroup:
    """All substantive rows of one transaction id, in input order."""
    trx_number: int
    rows: List[Row] = field(default_factory=list)


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass.

    rows_processed counts the rows of groups that were fully handled; on
    failure it stops at the last group before the error.
    """
    success: bool = True
    rows_processed: int = 0
    rows_skipped: int = 0
    groups: int = 0
    groups_skipped: int = 0
    headers_inserted: int = 0
    headers_updated: int = 0
    lines_inserted: int = 0
    lines_updated: int = 0
    failed_trx_number: Optional[int] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'rows_processed': self.rows_processed,
            'rows_skipped': self.rows_skipped,
            'groups': self.groups,
            'groups_skipped': self.groups_skipped,
            'headers_inserted': self.headers_inserted,
            'headers_updated': self.headers_updated,
            'lines_inserted': self.lines_inserted,
            'lines_updated': self.lines_updated,
            'failed_trx_number': self.failed_trx_number,
            'error': self.error,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'duration_seconds': round(self.duration_seconds, 2),
        }


def is_substantive(row: Row) -> bool:
    """A row takes part in reconciliation only if it names a sales order."""
    return not is_blank(row.get(SALES_ORDER_FIELD))


def group_records(records: Iterable[Row]) -> Tuple[List[RecordGroup], int]:
    """
    Group substantive rows by transaction id.

    Args:
        records: Report rows in source order

    Returns:
        Tuple of (groups, rows_skipped)

    Raises:
        ValueError: If a substantive row has a blank or non-integer TRX_NUMBER
    """
    groups: Dict[int, RecordGroup] = {}
    skipped = 0

    for row in records:
        if not is_substantive(row):
            skipped += 1
            continue
        trx_number = to_int(row.get(TRX_FIELD), TRX_FIELD)
        group = groups.get(trx_number)
        if group is None:
            group = groups[trx_number] = RecordGroup(trx_number=trx_number)
        group.rows.append(row)

    return list(groups.values()), skipped


def _apply_group(gateway, group: RecordGroup, result: ReconcileResult) -> bool:
    """Write one group. Returns False if the group was skipped; raises on the first failing statement."""
    # Convert everything before the first write so a bad value cannot leave
    # a header without its lines
    header = InvoiceHeader.from_row(group.rows[0])
    lines = [InvoiceLine.from_row(row) for row in group.rows]

    invoice_id = gateway.find_header_id(group.trx_number)

    if invoice_id is None:
        new_id = gateway.insert_header(header)
        if new_id is None:
            logger.error(
                "Invoice insert for TrxNumber=%s returned no id; %d line(s) not written",
                group.trx_number, len(lines),
            )
            result.groups_skipped += 1
            return False
        result.headers_inserted += 1
        for line in lines:
            gateway.insert_line(new_id, line)
            result.lines_inserted += 1
        logger.debug("Inserted invoice %s (id=%s) with %d line(s)", group.trx_number, new_id, len(lines))
        return True

    gateway.update_header(invoice_id, header)
    result.headers_updated += 1
    for line in lines:
        if gateway.upsert_line(invoice_id, line) == LINE_INSERTED:
            result.lines_inserted += 1
        else:
            result.lines_updated += 1
    logger.debug(
        "Updated invoice %s (id=%s, status=%s) with %d line(s)",
        group.trx_number, invoice_id, header.status, len(lines),
    )
    return True


def reconcile(records: Iterable[Row], gateway, now: Optional[datetime] = None) -> ReconcileResult:
    """
    Reconcile one batch of report rows into the invoice store.

    Args:
        records: Report rows (field name -> raw text)
        gateway: InvoiceGateway (or any object with the same methods)
        now: Time the batch was requested (default: current time). Recorded
             on the result and in the pass log; it does not affect any write.

    Returns:
        ReconcileResult. success is False if any group failed; the error and
        the failing TrxNumber are recorded on the result, never raised.
    """
    start_time = time.time()
    result = ReconcileResult(started_at=now or datetime.now())

    try:
        groups, result.rows_skipped = group_records(records)
    except ValueError as e:
        result.success = False
        result.error = f"Could not group records: {e}"
        logger.error(result.error)
        return result

    result.groups = len(groups)
    if not groups:
        logger.info("Nothing to reconcile (%d non-substantive row(s) skipped)", result.rows_skipped)
        result.duration_seconds = time.time() - start_time
        return result

    logger.info(
        "Reconciling %d invoice(s) from %d row(s) requested at %s",
        len(groups), sum(len(g.rows) for g in groups), result.started_at.isoformat(),
    )

    for group in groups:
        try:
            written = _apply_group(gateway, group, result)
        except (SyncError, ValueError) as e:
            result.success = False
            result.failed_trx_number = group.trx_number
            result.error = str(e)
            logger.error(
                "Error storing invoice TrxNumber=%s: %s. Pass aborted, remaining groups left for the next cycle",
                group.trx_number, e,
            )
            break
        if written:
            result.rows_processed += len(group.rows)

    result.duration_seconds = time.time() - start_time
    logger.info(
        "Reconcile %s: %d row(s), headers +%d/~%d, lines +%d/~%d, %d group(s) skipped in %.2fs",
        "complete" if result.success else "FAILED",
        result.rows_processed,
        result.headers_inserted, result.headers_updated,
        result.lines_inserted, result.lines_updated,
        result.groups_skipped,
        result.duration_seconds,
    )
    return result
