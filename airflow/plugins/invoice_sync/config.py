"""
Worker Configuration

Settings are read from environment variables (the host injects them, e.g.
from /opt/airflow/.env or the service manager's unit file).

Variables:
    INVOICE_SYNC_CONNECTION_STRING     SQL Server connection string (ADO style)
    INVOICE_SYNC_SOURCE_ENDPOINT       Base URL of the BI Publisher server
    INVOICE_SYNC_SOURCE_USER           Report service user
    INVOICE_SYNC_SOURCE_PASSWORD       Report service password
    INVOICE_SYNC_POLL_INTERVAL_SECONDS Wait between cycles (default: 7200)
    INVOICE_SYNC_LOG_DIR               Operational log directory (default: logs)
    INVOICE_SYNC_REPORT_PATH           Absolute path of the report on the server
    INVOICE_SYNC_JOB_NAME              Watermark row name (default: Invoice)
    INVOICE_SYNC_SOURCE_TIMEOUT        Report request deadline in seconds (default: 300)
    INVOICE_SYNC_LOG_LEVEL             Logging level (default: INFO)
"""
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from invoice_sync.errors import ConfigurationError


ENV_PREFIX = "INVOICE_SYNC_"

DEFAULT_POLL_INTERVAL_SECONDS = 2 * 60 * 60
DEFAULT_SOURCE_TIMEOUT_SECONDS = 300
DEFAULT_REPORT_PATH = "/Custom/Integrations/JBM AR Invoice Print.xdo"
DEFAULT_JOB_NAME = "Invoice"
DEFAULT_SQLSERVER_PORT = 1433

# ADO.NET keyword aliases -> pymssql.connect() argument
_CONNECTION_KEYWORDS = {
    'server': 'server',
    'data source': 'server',
    'address': 'server',
    'addr': 'server',
    'database': 'database',
    'initial catalog': 'database',
    'user id': 'user',
    'uid': 'user',
    'user': 'user',
    'password': 'password',
    'pwd': 'password',
    'connect timeout': 'login_timeout',
    'connection timeout': 'login_timeout',
}


@dataclass(frozen=True)
class Settings:
    """Operational settings for one invoice sync worker.

    Attributes:
        connection_string: Where invoice headers, lines and the watermark live
        source_endpoint: Base URL of the reporting service
        source_user: Report service user
        source_password: Report service password
        poll_interval_seconds: Wait between cycles
        log_directory: Where operational logs are written
        report_path: Absolute catalog path of the invoice report
        job_name: Scheduler name of the watermark row
        source_timeout_seconds: Deadline for one report request
        log_level: Logging level name
    """
    connection_string: str
    source_endpoint: str
    source_user: str
    source_password: str
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    log_directory: str = "logs"
    report_path: str = DEFAULT_REPORT_PATH
    job_name: str = DEFAULT_JOB_NAME
    source_timeout_seconds: float = DEFAULT_SOURCE_TIMEOUT_SECONDS
    log_level: str = "INFO"

    def connection_params(self) -> Dict[str, Any]:
        """pymssql.connect() keyword arguments for the invoice store."""
        return parse_connection_string(self.connection_string)

    def describe(self) -> Dict[str, Any]:
        """Settings safe for logging (no passwords)."""
        params = self.connection_params()
        return {
            'server': params.get('server'),
            'port': params.get('port'),
            'database': params.get('database'),
            'source_endpoint': self.source_endpoint,
            'source_user': self.source_user,
            'report_path': self.report_path,
            'job_name': self.job_name,
            'poll_interval_seconds': self.poll_interval_seconds,
            'log_directory': self.log_directory,
        }


def parse_connection_string(connection_string: str) -> Dict[str, Any]:
    """
    Translate an ADO-style SQL Server connection string for pymssql.

    Args:
        connection_string: e.g. 'Server=tcp:db01,1433;Database=Sales;User Id=svc;Password=...'

    Returns:
        dict with server, port, database, user, password (and login_timeout if given)

    Raises:
        ConfigurationError: If the string is empty or names no server
    """
    if not connection_string or not connection_string.strip():
        raise ConfigurationError("Connection string is empty")

    params: Dict[str, Any] = {}
    for part in connection_string.split(';'):
        if not part.strip():
            continue
        if '=' not in part:
            raise ConfigurationError(f"Malformed connection string segment: '{part.strip()}'")
        key, value = part.split('=', 1)
        target = _CONNECTION_KEYWORDS.get(key.strip().lower())
        if target:
            params[target] = value.strip()

    server = params.get('server')
    if not server:
        raise ConfigurationError("Connection string does not name a server")

    if server.lower().startswith('tcp:'):
        server = server[4:]
    port = DEFAULT_SQLSERVER_PORT
    if ',' in server:
        server, port_text = server.split(',', 1)
        try:
            port = int(port_text)
        except ValueError as e:
            raise ConfigurationError(f"Invalid port in connection string: '{port_text}'") from e
    params['server'] = server
    params['port'] = port

    if 'login_timeout' in params:
        try:
            params['login_timeout'] = int(params['login_timeout'])
        except ValueError as e:
            raise ConfigurationError("Connect Timeout must be an integer") from e

    return params


def _require(env: Mapping[str, str], name: str) -> str:
    value = env.get(ENV_PREFIX + name, '').strip()
    if not value:
        raise ConfigurationError(f"Missing {ENV_PREFIX}{name}")
    return value


def _number(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(ENV_PREFIX + name, '').strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got '{raw}'") from e
    if value <= 0:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be positive")
    return value


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        environ: Mapping to read from (default: os.environ)

    Returns:
        Settings

    Raises:
        ConfigurationError: If a required variable is missing or a value is invalid
    """
    env = os.environ if environ is None else environ

    settings = Settings(
        connection_string=_require(env, 'CONNECTION_STRING'),
        source_endpoint=_require(env, 'SOURCE_ENDPOINT').rstrip('/'),
        source_user=_require(env, 'SOURCE_USER'),
        source_password=_require(env, 'SOURCE_PASSWORD'),
        poll_interval_seconds=_number(env, 'POLL_INTERVAL_SECONDS', DEFAULT_POLL_INTERVAL_SECONDS),
        log_directory=env.get(ENV_PREFIX + 'LOG_DIR', '').strip() or 'logs',
        report_path=env.get(ENV_PREFIX + 'REPORT_PATH', '').strip() or DEFAULT_REPORT_PATH,
        job_name=env.get(ENV_PREFIX + 'JOB_NAME', '').strip() or DEFAULT_JOB_NAME,
        source_timeout_seconds=_number(env, 'SOURCE_TIMEOUT', DEFAULT_SOURCE_TIMEOUT_SECONDS),
        log_level=(env.get(ENV_PREFIX + 'LOG_LEVEL', '').strip() or 'INFO').upper(),
    )

    # Fail at startup rather than on the first cycle
    settings.connection_params()
    return settings
