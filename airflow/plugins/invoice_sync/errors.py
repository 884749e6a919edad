"""
Error kinds raised by the invoice sync worker.

Every failure a cycle can run into maps onto one of these. The sync loop
catches them, logs them and leaves the watermark alone; none of them escape
to the process host.
"""


class SyncError(Exception):
    """Base class for invoice sync failures."""


class ConfigurationError(SyncError):
    """Required setting missing or invalid (fatal at startup)."""


class SourceUnavailable(SyncError):
    """Network error, timeout or HTTP failure talking to the report service."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class MalformedPayload(SyncError):
    """Report content present but not decodable into rows."""


class PersistenceError(SyncError):
    """Any database failure: connectivity, constraint or conversion."""


class WatermarkUnavailable(SyncError):
    """No watermark row provisioned for the sync job."""

    def __init__(self, job_name: str):
        super().__init__(
            f"No watermark row found for scheduler '{job_name}'. "
            "Provision it with the INSERT at the end of templates/sqlserver/schema.sql"
        )
        self.job_name = job_name
