"""
Operator-owned SQL configuration fragments.

Fragments are `string.Template` files. They are rendered per database and
executed batch by batch (batches are separated by `GO` lines) over an ODBC
connection authenticated with an Entra ID access token.
"""

import logging
import re
import struct
from pathlib import Path
from string import Template
from typing import Callable, Dict, List, Optional

from errors import FragmentError
from models import ServerTopology

logger = logging.getLogger(__name__)

CLEAN_DESTINATION_CONFIG = "clean_destination_config.sql"
REVERT_SOURCE_ACCESS = "revert_source_access.sql"
ADJUST_DESTINATION_RESOURCES = "adjust_destination_resources.sql"
RECONFIGURE_DESTINATION_ACCESS = "reconfigure_destination_access.sql"

DEFAULT_DRIVER = "ODBC Driver 18 for SQL Server"
SQL_COPT_SS_ACCESS_TOKEN = 1256

_BATCH_SEPARATOR = re.compile(r"^\s*GO\s*;?\s*$", re.IGNORECASE | re.MULTILINE)


def token_struct(token: str) -> bytes:
    """Pack an access token the way the SQL Server ODBC driver expects it."""
    encoded = token.encode("utf-16-le")
    return struct.pack(f"<I{len(encoded)}s", len(encoded), encoded)


def split_batches(sql: str) -> List[str]:
    return [b.strip() for b in _BATCH_SEPARATOR.split(sql) if b.strip()]


class SqlFragmentRunner:
    """Renders and applies SQL fragments against copied databases."""

    def __init__(
        self,
        fragments_dir: str,
        credential=None,
        sql_scope: str = "https://database.windows.net/.default",
        driver: str = DEFAULT_DRIVER,
        connect: Optional[Callable] = None,
    ):
        """
        Args:
            fragments_dir: Directory holding the fragment files
            credential: azure-identity credential used for the SQL access token
            sql_scope: Token scope of the SQL endpoint for the active cloud
            driver: ODBC driver name
            connect: Connection factory `(server, database) -> connection`
        """
        self.fragments_dir = Path(fragments_dir)
        self.credential = credential
        self.sql_scope = sql_scope
        self.driver = driver
        self.connect = connect or self._pyodbc_connect

    def _pyodbc_connect(self, server: str, database: str):
        import pyodbc

        token = self.credential.get_token(self.sql_scope).token
        conn_str = (
            f"DRIVER={{{self.driver}}};SERVER=tcp:{server},1433;DATABASE={database};"
            "Encrypt=yes;TrustServerCertificate=no;"
        )
        return pyodbc.connect(
            conn_str, attrs_before={SQL_COPT_SS_ACCESS_TOKEN: token_struct(token)}
        )

    def load(self, fragment: str) -> Template:
        path = self.fragments_dir / fragment
        if not path.is_file():
            raise FragmentError(f"SQL fragment not found: {path}")
        return Template(path.read_text(encoding="utf-8"))

    def render(self, fragment: str, params: Dict[str, Optional[str]]) -> List[str]:
        """
        Render a fragment into executable batches.

        Raises:
            FragmentError: If the file is missing or a placeholder is unknown
        """
        template = self.load(fragment)
        values = {k: ("" if v is None else str(v)) for k, v in params.items()}
        try:
            sql = template.substitute(values)
        except (KeyError, ValueError) as e:
            raise FragmentError(f"Cannot render {fragment}: bad placeholder {e}") from e
        return split_batches(sql)

    def apply(
        self,
        fragment: str,
        server: ServerTopology,
        database: str,
        params: Dict[str, Optional[str]],
        dry_run: bool = True,
    ) -> int:
        """
        Render and (unless dry run) execute a fragment against one database.

        Returns:
            Number of batches rendered (dry run) or executed

        Raises:
            FragmentError: On render or execution failure
        """
        batches = self.render(fragment, {**params, "DatabaseName": database})
        if dry_run:
            logger.info(
                f"DRY RUN: Would apply {fragment} ({len(batches)} batch(es)) to {database}"
            )
            return len(batches)

        logger.info(f"Applying {fragment} to {server.name}/{database}")
        conn = None
        try:
            conn = self.connect(server.endpoint_address, database)
            cursor = conn.cursor()
            for batch in batches:
                cursor.execute(batch)
            conn.commit()
        except FragmentError:
            raise
        except Exception as e:
            raise FragmentError(f"{fragment} failed on {database}: {e}") from e
        finally:
            if conn is not None:
                conn.close()
        return len(batches)
