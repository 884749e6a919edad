"""
Record Source: BI Publisher report client and CSV decoding.

The invoice extract is a BI Publisher report run through the
PublicReportService SOAP endpoint with `p_last_rundate` set to the watermark.
The response carries the CSV output base64-encoded in `reportBytes`.

Usage:
    from invoice_sync.record_source import ReportClient, load_records

    client = ReportClient.from_settings(settings)
    payload = client.fetch(since=watermark)
    rows = load_records(payload)    # [] for an empty or degenerate payload
"""
import base64
import binascii
import io
import logging
import xml.etree.ElementTree as ET
from datetime import datetime
from typing import Dict, List, Optional

import pandas as pd
import requests

from invoice_sync.config import Settings
from invoice_sync.errors import MalformedPayload, SourceUnavailable
from invoice_sync.sql_templates import get_templates

logger = logging.getLogger(__name__)

REPORT_SERVICE_PATH = "/xmlpserver/services/PublicReportService"
REPORT_NS = "http://xmlns.oracle.com/oxp/service/PublicReportService"
SOAP_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SOAP_CONTENT_TYPE = "application/soap+xml; charset=utf-8"

# Payloads shorter than this carry no rows (header line at most)
MIN_PAYLOAD_LENGTH = 10

# Format of p_last_rundate expected by the report
LAST_RUN_FORMAT = "%Y-%m-%d %H:%M"


def build_report_request(since: datetime, user: str, password: str, report_path: str) -> str:
    """Render the runReport SOAP envelope. Values are XML-escaped."""
    return get_templates().render(
        'soap/run_report.xml.j2',
        last_run=since.strftime(LAST_RUN_FORMAT),
        user=user,
        password=password,
        report_path=report_path,
    )


def _soap_fault(root: ET.Element) -> Optional[str]:
    fault = root.find(f".//{{{SOAP_NS}}}Fault")
    if fault is None:
        return None
    return (fault.findtext("faultstring") or fault.findtext(".//faultstring") or "SOAP fault").strip()


def extract_report_text(response_xml: str) -> str:
    """
    Pull the report output out of a runReport response.

    Args:
        response_xml: SOAP response body

    Returns:
        Decoded report text, or '' if the response carries no reportBytes

    Raises:
        SourceUnavailable: If the response is a SOAP fault
        MalformedPayload: If the XML, the base64 or the text encoding is invalid,
                          or the report content type is not text
    """
    try:
        root = ET.fromstring(response_xml)
    except ET.ParseError as e:
        raise MalformedPayload(f"Report response is not valid XML: {e}") from e

    fault = _soap_fault(root)
    if fault:
        raise SourceUnavailable(f"Report service returned a fault: {fault}")

    report_bytes = root.findtext(f".//{{{REPORT_NS}}}reportBytes")
    content_type = root.findtext(f".//{{{REPORT_NS}}}reportContentType") or ""

    if not report_bytes or not report_bytes.strip():
        logger.warning("No reportBytes found in the report response")
        return ""

    if not content_type.strip().lower().startswith("text/"):
        raise MalformedPayload(f"Report content is not text (reportContentType='{content_type}')")

    try:
        raw = base64.b64decode(report_bytes.strip(), validate=False)
        return raw.decode("utf-8-sig")
    except (binascii.Error, ValueError) as e:
        raise MalformedPayload(f"Could not decode reportBytes: {e}") from e


def is_degenerate(payload: Optional[str]) -> bool:
    """True if the payload is too short to hold any rows."""
    return payload is None or len(payload.strip()) < MIN_PAYLOAD_LENGTH


def parse_report(text: str) -> List[Dict[str, str]]:
    """
    Decode CSV report text into rows.

    The header line defines the column set. Every value stays text; missing
    trailing fields become ''. Lines with more fields than the header are
    skipped.

    Args:
        text: CSV text

    Returns:
        List of dicts (column name -> text)

    Raises:
        MalformedPayload: If the text cannot be tokenised at all (e.g. an unclosed quote)
    """
    if is_degenerate(text):
        return []

    try:
        df = pd.read_csv(
            io.StringIO(text),
            dtype=str,
            keep_default_na=False,
            na_filter=False,
            skip_blank_lines=True,
            on_bad_lines='skip',
        )
    except pd.errors.EmptyDataError:
        return []
    except pd.errors.ParserError as e:
        raise MalformedPayload(f"Could not parse report CSV: {e}") from e

    df.columns = [str(c).strip() for c in df.columns]
    df = df.fillna('')
    return df.to_dict(orient='records')


def load_records(payload: Optional[str]) -> List[Dict[str, str]]:
    """Rows of a payload; an empty or degenerate payload yields no rows."""
    if is_degenerate(payload):
        logger.warning("Empty data set found: %r", (payload or "").replace("\n", ""))
        return []
    return parse_report(payload)


class ReportClient:
    """
    HTTP client for the BI Publisher PublicReportService.

    Args:
        endpoint: Base URL of the BI Publisher server
        user: Report service user
        password: Report service password
        report_path: Absolute catalog path of the report
        timeout_seconds: Deadline for one request
        session: requests.Session to reuse (one is created if omitted)
    """

    def __init__(
        self,
        endpoint: str,
        user: str,
        password: str,
        report_path: str,
        timeout_seconds: float = 300,
        session: Optional[requests.Session] = None,
    ):
        self.url = endpoint.rstrip('/') + REPORT_SERVICE_PATH
        self.user = user
        self.password = password
        self.report_path = report_path
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings, session: Optional[requests.Session] = None) -> 'ReportClient':
        return cls(
            endpoint=settings.source_endpoint,
            user=settings.source_user,
            password=settings.source_password,
            report_path=settings.report_path,
            timeout_seconds=settings.source_timeout_seconds,
            session=session,
        )

    def fetch(self, since: datetime) -> str:
        """
        Run the report for rows changed since the given time.

        Returns:
            Report text ('' when the service returned no report bytes)

        Raises:
            SourceUnavailable: On network errors, timeout, HTTP errors or SOAP faults
            MalformedPayload: If the response cannot be decoded
        """
        body = build_report_request(since, self.user, self.password, self.report_path)
        logger.info("Requesting invoice report since %s", since.strftime(LAST_RUN_FORMAT))

        try:
            response = self.session.post(
                self.url,
                data=body.encode("utf-8"),
                headers={"Content-Type": SOAP_CONTENT_TYPE},
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as e:
            raise SourceUnavailable(f"Report request timed out after {self.timeout_seconds}s") from e
        except requests.RequestException as e:
            raise SourceUnavailable(f"Report request failed: {e}") from e

        if not response.ok:
            detail = ""
            try:
                detail = _soap_fault(ET.fromstring(response.text)) or ""
            except ET.ParseError:
                pass
            raise SourceUnavailable(
                f"API request failed. Status code: {response.status_code} {detail}".rstrip(),
                status_code=response.status_code,
            )

        text = extract_report_text(response.text)
        logger.info("Received %d character(s) of report data", len(text))
        return text
