"""Legacy database connector using SQLAlchemy.

Reads resident tables straight out of the SQL database behind a legacy care
management system, in primary-key order, one page at a time.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator

from sqlalchemy import MetaData, Table, create_engine, select, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import ArgumentError, NoSuchTableError, SQLAlchemyError

from errors import ConnectionError
from fileimport.parsers import flatten_record
from records import ExtractedRecord, Provenance

from ..base import BaseConnector
from ..models import (
    ConnectionHandle,
    ConnectorType,
    Credentials,
    ExtractionSelector,
    SourceSystemDescriptor,
    SourceSystemType,
)

logger = logging.getLogger(__name__)

# Driver messages that indicate bad credentials rather than an unreachable host
AUTH_FAILURE_MARKERS = (
    "authentication failed",
    "access denied",
    "login failed",
    "password",
)


class LegacyDatabaseConnector(BaseConnector):
    """Connector for legacy SQL databases.

    Descriptor ``connection`` keys:
        - url: SQLAlchemy database URL
        - table: Default table when the selector names none
        - schema_name: Optional schema
    """

    connector_type = ConnectorType.DATABASE
    system_types = (
        SourceSystemType.PERSON_CENTRED_SOFTWARE,
        SourceSystemType.CARE_SYSTEMS_UK,
        SourceSystemType.GENERIC_DATABASE,
    )

    def _build_url(self, descriptor: SourceSystemDescriptor, credentials: Credentials) -> Any:
        url_value = descriptor.connection.get("url")
        if not url_value:
            raise ConnectionError(
                "Database connector requires a 'url'", self.connector_id
            )
        try:
            url = make_url(url_value)
        except ArgumentError as e:
            raise ConnectionError(
                f"Invalid database URL: {e}", self.connector_id
            ) from e
        if credentials.username:
            url = url.set(username=credentials.username)
        if credentials.password:
            url = url.set(password=credentials.password.get_secret_value())
        return url

    def _open(
        self, descriptor: SourceSystemDescriptor, credentials: Credentials
    ) -> ConnectionHandle:
        url = self._build_url(descriptor, credentials)
        try:
            engine = create_engine(url, pool_pre_ping=True)
            # Test the connection
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            message = str(e).lower()
            reason = (
                "Authentication failed"
                if any(marker in message for marker in AUTH_FAILURE_MARKERS)
                else "Database unreachable"
            )
            raise ConnectionError(
                f"{reason}: {str(e)[:200]}", self.connector_id
            ) from e

        return ConnectionHandle(
            connector_id=self.connector_id,
            descriptor=descriptor,
            session=engine,
            details={"driver": url.drivername},
        )

    def _reflect(self, engine: Engine, table_name: str, schema: str | None) -> Table:
        try:
            return Table(table_name, MetaData(), schema=schema, autoload_with=engine)
        except NoSuchTableError as e:
            raise ConnectionError(
                f"Table not found: {table_name}", self.connector_id
            ) from e
        except SQLAlchemyError as e:
            raise ConnectionError(
                f"Could not inspect table {table_name}: {e}",
                self.connector_id,
                transient=True,
            ) from e

    def _iter_rows(
        self, handle: ConnectionHandle, selector: ExtractionSelector, offset: int
    ) -> Iterator[ExtractedRecord]:
        engine: Engine = handle.session
        table_name = selector.entity or handle.descriptor.connection.get("table")
        if not table_name:
            raise ValueError("Either selector.entity or connection 'table' is required")

        table = self._reflect(
            engine, table_name, handle.descriptor.connection.get("schema_name")
        )
        order_by = list(table.primary_key.columns) or list(table.columns)
        columns = (
            [table.c[name] for name in selector.fields if name in table.c]
            if selector.fields
            else list(table.columns)
        )

        position = offset
        remaining = selector.limit
        while remaining is None or remaining > 0:
            page_size = selector.batch_size if remaining is None else min(selector.batch_size, remaining)
            query = select(*columns).order_by(*order_by).offset(position).limit(page_size)
            try:
                with engine.connect() as conn:
                    rows = [dict(row._mapping) for row in conn.execute(query)]
            except SQLAlchemyError as e:
                raise ConnectionError(
                    f"Data extraction failed at offset {position}: {e}",
                    self.connector_id,
                    transient=True,
                ) from e

            for row in rows:
                yield ExtractedRecord.from_raw(
                    flatten_record(row),
                    Provenance(
                        connector_id=self.connector_id,
                        source_row_index=position,
                        source_name=table_name,
                    ),
                )
                position += 1

            if remaining is not None:
                remaining -= len(rows)
            if len(rows) < page_size:
                break

    def _close(self, handle: ConnectionHandle) -> None:
        engine: Engine | None = handle.session
        if engine is not None:
            engine.dispose()
