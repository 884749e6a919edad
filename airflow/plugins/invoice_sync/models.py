"""
Invoice header and line models built from report rows.

Report rows arrive as raw text (field name -> str). Conversion rules:
- transaction id and line number are integers and required
- sales order is kept as text; rows without one are dropped before conversion
- optional numeric identifiers (party, site, location ids) default to 0
- text fields default to ''
- money fields are decimals, blank -> 0; line quantity, unit price and
  extended amount are quantized to 2 places
- dates are parsed without reference to the host locale
"""
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Mapping, NamedTuple, Optional

__all__ = [
    'Column',
    'HEADER_COLUMNS',
    'HEADER_UPDATE_COLUMNS',
    'LINE_COLUMNS',
    'LINE_UPDATE_COLUMNS',
    'InvoiceHeader',
    'InvoiceLine',
    'to_text',
    'to_int',
    'to_decimal',
    'to_datetime',
    'is_blank',
]

Row = Mapping[str, Any]

TWO_PLACES = Decimal('0.01')


# =============================================================================
# FIELD COERCION
# =============================================================================

def is_blank(value: Any) -> bool:
    """True for None and whitespace-only strings."""
    return value is None or (isinstance(value, str) and not value.strip())


def to_text(value: Any) -> str:
    """Raw text value, '' when missing."""
    if value is None:
        return ''
    return str(value)


def to_int(value: Any, field_name: str, default: Optional[int] = None) -> int:
    """
    Parse an integer field.

    Args:
        value: Raw field value
        field_name: Source field name (for error messages)
        default: Value for blank input; None makes the field required

    Raises:
        ValueError: If the value is blank and required, or not an integer
    """
    if is_blank(value):
        if default is None:
            raise ValueError(f"{field_name} is required")
        return default
    text = str(value).strip().replace(',', '')
    try:
        number = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"{field_name} is not a number: '{value}'") from None
    if not number.is_finite():
        raise ValueError(f"{field_name} is not a finite number: '{value}'")
    if number != number.to_integral_value():
        raise ValueError(f"{field_name} is not an integer: '{value}'")
    return int(number)


def to_decimal(
    value: Any,
    field_name: str,
    places: Optional[Decimal] = None,
    default: Decimal = Decimal('0'),
) -> Decimal:
    """
    Parse a fixed-point decimal field.

    Args:
        value: Raw field value
        field_name: Source field name (for error messages)
        places: Quantize to this exponent (e.g. Decimal('0.01')), half-up
        default: Value for blank input

    Raises:
        ValueError: If the value is not a finite number, or does not fit in the requested places
    """
    if is_blank(value):
        number = default
    else:
        text = str(value).strip().replace(',', '')
        try:
            number = Decimal(text)
        except InvalidOperation:
            raise ValueError(f"{field_name} is not a number: '{value}'") from None
        if not number.is_finite():
            raise ValueError(f"{field_name} is not a finite number: '{value}'")
    if places is not None:
        try:
            number = number.quantize(places, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            raise ValueError(f"{field_name} is out of range: '{value}'") from None
    return number


_MONTHS = {
    'JAN': 1, 'FEB': 2, 'MAR': 3, 'APR': 4, 'MAY': 5, 'JUN': 6,
    'JUL': 7, 'AUG': 8, 'SEP': 9, 'OCT': 10, 'NOV': 11, 'DEC': 12,
}

_TIME = r'(?:[ T](\d{1,2}):(\d{2})(?::(\d{2}))?)?'

# DD-MON-YYYY (Oracle default), YYYY/MM/DD, MM/DD/YYYY
_DAY_MON_YEAR = re.compile(r'^(\d{1,2})-([A-Za-z]{3})-(\d{4}|\d{2})' + _TIME + r'$')
_YEAR_MONTH_DAY = re.compile(r'^(\d{4})/(\d{1,2})/(\d{1,2})' + _TIME + r'$')
_MONTH_DAY_YEAR = re.compile(r'^(\d{1,2})/(\d{1,2})/(\d{4})' + _TIME + r'$')


def _build(year: int, month: int, day: int, hh, mm, ss) -> datetime:
    return datetime(year, month, day, int(hh or 0), int(mm or 0), int(ss or 0))


def to_datetime(value: Any, field_name: str, required: bool = True) -> Optional[datetime]:
    """
    Parse a timestamp field.

    Accepts ISO 8601 (offsets are dropped, the wall time is kept as reported),
    DD-MON-YYYY, YYYY/MM/DD and MM/DD/YYYY, each with optional HH:MM[:SS].

    Args:
        value: Raw field value
        field_name: Source field name (for error messages)
        required: If False, blank input returns None

    Raises:
        ValueError: If the value is blank and required, or not a recognised date
    """
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if is_blank(value):
        if required:
            raise ValueError(f"{field_name} is required")
        return None

    text = str(value).strip()
    iso_text = text[:-1] + '+00:00' if text.endswith(('Z', 'z')) else text
    try:
        return datetime.fromisoformat(iso_text).replace(tzinfo=None)
    except ValueError:
        pass

    try:
        match = _DAY_MON_YEAR.match(text)
        if match:
            day, mon, year, hh, mm, ss = match.groups()
            month = _MONTHS.get(mon.upper())
            if month is None:
                raise ValueError(f"unknown month '{mon}'")
            year_num = int(year)
            if len(year) == 2:
                year_num += 2000
            return _build(year_num, month, int(day), hh, mm, ss)

        match = _YEAR_MONTH_DAY.match(text)
        if match:
            year, month, day, hh, mm, ss = match.groups()
            return _build(int(year), int(month), int(day), hh, mm, ss)

        match = _MONTH_DAY_YEAR.match(text)
        if match:
            month, day, year, hh, mm, ss = match.groups()
            return _build(int(year), int(month), int(day), hh, mm, ss)
    except ValueError as e:
        raise ValueError(f"{field_name} is not a valid date: '{value}' ({e})") from None

    raise ValueError(f"{field_name} is not a recognised date: '{value}'")


# =============================================================================
# COLUMN MAPPINGS
# =============================================================================

class Column(NamedTuple):
    """Store column, report field it is read from, and conversion kind.

    Kinds: text, id (bigint, blank -> 0), int (required), money,
    date (required), date_opt (blank -> NULL).
    """
    name: str
    source: str
    kind: str = 'text'


HEADER_COLUMNS: List[Column] = [
    Column('BillToPartyId', 'BILL_TO_PARTY_ID', 'id'),
    Column('BillToCustomerName', 'BILL_TO_CUSTOMER_NAME'),
    Column('CfBillToSiteName', 'CF_BILL_TO_SITE_NAME'),
    Column('BillToLocationId', 'BILL_TO_LOCATION_ID', 'id'),
    Column('BillToAddress1', 'BILL_TO_ADDRESS1'),
    Column('BillToAddress2', 'BILL_TO_ADDRESS2'),
    Column('BillToAddress3', 'BILL_TO_ADDRESS3'),
    Column('BillToAddress4', 'BILL_TO_ADDRESS4'),
    Column('BillToCity', 'BILL_TO_CITY'),
    Column('BillToState', 'BILL_TO_STATE'),
    Column('BillToPostalCode', 'BILL_TO_POSTAL_CODE'),
    Column('BillToCountry', 'BILL_TO_COUNTRY'),
    Column('ShipToPartyId', 'SHIP_TO_PARTY_ID', 'id'),
    Column('ShipToPartySiteId', 'SHIP_TO_PARTY_SITE_ID', 'id'),
    Column('ShipToCustomerName', 'SHIP_TO_CUSTOMER_NAME'),
    Column('ShipCustSiteName', 'SHIP_CUST_SITE_NAME'),
    Column('ShipToLocationId', 'SHIP_TO_LOCATION_ID', 'id'),
    Column('ShipToAddress1', 'SHIP_TO_ADDRESS1'),
    Column('ShipToAddress2', 'SHIP_TO_ADDRESS2'),
    Column('ShipToAddress3', 'SHIP_TO_ADDRESS3'),
    Column('ShipToAddress4', 'SHIP_TO_ADDRESS4'),
    Column('ShipToCity', 'SHIP_TO_CITY'),
    Column('ShipToState', 'SHIP_TO_STATE'),
    Column('ShipToPostalCode', 'SHIP_TO_POSTAL_CODE'),
    Column('ShipToCountry', 'SHIP_TO_COUNTRY'),
    Column('TrxNumber', 'TRX_NUMBER', 'int'),
    Column('TrxDate', 'TRX_DATE', 'date'),
    Column('TermName', 'TERM_NAME'),
    Column('ShipDateActual', 'SHIP_DATE_ACTUAL', 'date_opt'),
    Column('SalesOrder', 'SALES_ORDER'),
    Column('PrimarySalesRepName', 'PRIMARY_SALESREP_NAME'),
    Column('ShipVia', 'SHIP_VIA1'),
    Column('PurchaseOrderNumber', 'PURCHASE_ORDER_NUMBER'),
    Column('BillToCustomerNumber', 'BILL_TO_CUSTOMER_NUMBER'),
    Column('InternalNotes', 'INTERNAL_NOTES'),
    Column('TaxAmount', 'TAX_AMOUNT', 'money'),
    Column('FreightAmount', 'FREIGHT_AMOUNT', 'money'),
    Column('TotalAmount', 'TOTAL_AMOUNT', 'money'),
    Column('DiscountTakenEarned', 'DISCOUNT_TAKEN_EARNED', 'money'),
    Column('AmountApplied', 'AMOUNT_APPLIED', 'money'),
    Column('AmountDueRemaining', 'AMOUNT_DUE_REMAINING', 'money'),
    Column('Status', 'STATUS'),
    Column('DueDate', 'DUE_DATE', 'date'),
    Column('CfFromDate', 'CF_FROM_DATE', 'date_opt'),
    Column('CfToDate', 'CF_TO_DATE', 'date_opt'),
    Column('TrxType', 'TRX_TYPE'),
    Column('TotalNet', 'LINE_AMOUNT', 'money'),
    Column('CreatedDate', 'TRX_DATE', 'date'),
]

# Columns refreshed when an invoice is seen again
HEADER_UPDATE_COLUMNS = (
    'Status',
    'TaxAmount',
    'FreightAmount',
    'TotalAmount',
    'DiscountTakenEarned',
    'AmountApplied',
    'AmountDueRemaining',
)

LINE_COLUMNS = (
    'LineNumber',
    'ItemNumber',
    'CfPacking',
    'LineDescription',
    'UnitOfMeasureName',
    'Quantity',
    'UnitPrice',
    'ExtendedAmount',
)

# CfPacking is written once, on insert
LINE_UPDATE_COLUMNS = (
    'ItemNumber',
    'LineDescription',
    'UnitOfMeasureName',
    'Quantity',
    'UnitPrice',
    'ExtendedAmount',
)


def _convert(column: Column, row: Row) -> Any:
    value = row.get(column.source)
    if column.kind == 'id':
        return to_int(value, column.source, default=0)
    if column.kind == 'int':
        return to_int(value, column.source)
    if column.kind == 'money':
        return to_decimal(value, column.source)
    if column.kind == 'date':
        return to_datetime(value, column.source)
    if column.kind == 'date_opt':
        return to_datetime(value, column.source, required=False)
    return to_text(value)


# =============================================================================
# MODELS
# =============================================================================

@dataclass
class InvoiceHeader:
    """One Invoice row, keyed by TrxNumber.

    Attributes:
        trx_number: Business transaction id (unique in the store)
        values: Column name -> converted value, for every column in HEADER_COLUMNS
    """
    trx_number: int
    values: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Row) -> 'InvoiceHeader':
        """Build a header from the first row of a transaction group."""
        values = {column.name: _convert(column, row) for column in HEADER_COLUMNS}
        return cls(trx_number=values['TrxNumber'], values=values)

    @property
    def status(self) -> str:
        return self.values['Status']

    def insert_params(self) -> Dict[str, Any]:
        return dict(self.values)

    def update_params(self) -> Dict[str, Any]:
        return {name: self.values[name] for name in HEADER_UPDATE_COLUMNS}


@dataclass
class InvoiceLine:
    """One InvoiceLineItem row, keyed by (InvoiceId, LineNumber)."""
    line_number: int
    item_number: str = ''
    packing: str = ''
    description: str = ''
    unit_of_measure: str = ''
    quantity: Decimal = Decimal('0.00')
    unit_price: Decimal = Decimal('0.00')
    extended_amount: Decimal = Decimal('0.00')

    @classmethod
    def from_row(cls, row: Row) -> 'InvoiceLine':
        return cls(
            line_number=to_int(row.get('LINE_NUMBER'), 'LINE_NUMBER'),
            item_number=to_text(row.get('ITEM_NUMBER')),
            packing=to_text(row.get('CF_PACKING')),
            description=to_text(row.get('LINE_DESCRIPTION')),
            unit_of_measure=to_text(row.get('UNIT_OF_MEASURE_NAME')),
            quantity=to_decimal(row.get('QUANTITY'), 'QUANTITY', TWO_PLACES),
            unit_price=to_decimal(row.get('UNIT_PRICE'), 'UNIT_PRICE', TWO_PLACES),
            extended_amount=to_decimal(row.get('EXTENDED_AMOUNT'), 'EXTENDED_AMOUNT', TWO_PLACES),
        )

    def params(self) -> Dict[str, Any]:
        """Column name -> value, for every column in LINE_COLUMNS."""
        return {
            'LineNumber': self.line_number,
            'ItemNumber': self.item_number,
            'CfPacking': self.packing,
            'LineDescription': self.description,
            'UnitOfMeasureName': self.unit_of_measure,
            'Quantity': self.quantity,
            'UnitPrice': self.unit_price,
            'ExtendedAmount': self.extended_amount,
        }
