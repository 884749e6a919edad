"""
Statement Templates Loader for the invoice sync worker.

Jinja2-based templating for the SQL Server statements the gateway runs and
the SOAP envelope the report client posts, with identifier validation so
only table and column names are ever rendered into statement text.

Usage Examples:
--------------

1. Basic template rendering:

    from invoice_sync.sql_templates import render_sql

    sql = render_sql('sqlserver/invoice/find_header.sql.j2',
                     schema='dbo',
                     table='Invoice')

2. Using custom filters in templates:

    -- SQL Server identifier quoting with brackets
    SELECT Id FROM {{ schema | q }}.{{ table | q }}

3. Values are never rendered. They stay pymssql placeholders:

    WHERE TrxNumber = %(TrxNumber)s

4. Template variables with StrictUndefined:

    -- All variables must be provided, or an error is raised
    SELECT Id FROM {{ schema | q }}.{{ tabel | q }}  -- Raises UndefinedError for 'tabel'
"""
import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

logger = logging.getLogger(__name__)

# Templates shipped inside the package (invoice_sync/templates/)
TEMPLATES_DIR = Path(__file__).parent / "templates"


class IdentifierFilter:
    """
    SQL identifier validator.

    Only letters, digits and underscores are allowed, and the first character
    must not be a digit.
    """

    VALID_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

    @classmethod
    def validate(cls, identifier: str) -> str:
        """
        Validate that an identifier contains only safe characters.

        Args:
            identifier: The SQL identifier to validate

        Returns:
            The validated identifier (unchanged if valid)

        Raises:
            ValueError: If the identifier is empty, not a string or contains invalid characters
        """
        if not isinstance(identifier, str):
            raise ValueError(f"Identifier must be a string, got {type(identifier).__name__}")

        if not identifier:
            raise ValueError("Identifier cannot be empty")

        if not cls.VALID_PATTERN.match(identifier):
            raise ValueError(
                f"Invalid SQL identifier: '{identifier}'. "
                f"Only letters, digits and underscores are allowed."
            )

        return identifier


def quote_sqlserver(identifier: str) -> str:
    """
    Quote an identifier for SQL Server using brackets.

    Example:
        {{ table | quote_sqlserver }}  ->  [Invoice]
    """
    validated = IdentifierFilter.validate(identifier)
    return f'[{validated}]'


def validate_id(identifier: str) -> str:
    """
    Validate an identifier without quoting.

    Used for placeholder names:
        %({{ column | validate_id }})s  ->  %(TrxNumber)s
    """
    return IdentifierFilter.validate(identifier)


class StatementTemplates:
    """
    Template loader with a Jinja2 environment configured for statements.

    - identifier validation and SQL Server quoting filters
    - strict undefined variable checking
    - XML autoescaping for *.xml.j2 templates only
    - LRU caching of loaded templates

    Attributes:
        env: The Jinja2 Environment
        templates_dir: Path to the templates directory
    """

    def __init__(self, templates_dir: Optional[Path] = None):
        """
        Args:
            templates_dir: Path to templates directory. Defaults to invoice_sync/templates/
        """
        self.templates_dir = templates_dir or TEMPLATES_DIR

        if not self.templates_dir.exists():
            logger.warning("Templates directory does not exist: %s", self.templates_dir)

        self.env = Environment(
            loader=FileSystemLoader(str(self.templates_dir)),
            undefined=StrictUndefined,
            autoescape=select_autoescape(enabled_extensions=('xml.j2',), default=False),
            trim_blocks=True,
            lstrip_blocks=True,
        )

        self.env.filters['quote_sqlserver'] = quote_sqlserver
        self.env.filters['validate_id'] = validate_id
        self.env.filters['q'] = quote_sqlserver

    @lru_cache(maxsize=64)
    def _load_template(self, template_path: str):
        return self.env.get_template(template_path)

    def render(self, template_path: str, **kwargs: Any) -> str:
        """
        Render a template with the given variables.

        Args:
            template_path: Path relative to templates_dir
                           (e.g., 'sqlserver/invoice/update_header.sql.j2')
            **kwargs: Template variables

        Raises:
            TemplateNotFound: If the template file doesn't exist
            jinja2.UndefinedError: If a required variable is missing
            ValueError: If an identifier validation fails
        """
        template = self._load_template(template_path)
        return template.render(**kwargs)

    def clear_cache(self) -> None:
        """Clear the template loading cache."""
        self._load_template.cache_clear()


_templates_instance: Optional[StatementTemplates] = None


def get_templates() -> StatementTemplates:
    """Shared StatementTemplates instance (template cache is shared by all callers)."""
    global _templates_instance
    if _templates_instance is None:
        _templates_instance = StatementTemplates()
    return _templates_instance


def render_sql(template_path: str, **kwargs: Any) -> str:
    """
    Convenience function to render a statement template.

    Example:
        from invoice_sync.sql_templates import render_sql

        sql = render_sql('sqlserver/watermark/load.sql.j2',
                         schema='dbo',
                         table='SchedulerLastRunTime')
    """
    return get_templates().render(template_path, **kwargs)
