"""Legacy REST API connector with retry.

Provides:
- HTTP client with configurable timeout
- Exponential backoff retry on rate limits, server errors and transport errors
- Authentication header injection
- Offset/limit paging over record endpoints
"""

from __future__ import annotations

import base64
import logging
import time
from typing import Any, Iterator

import httpx

from errors import ConnectionError
from fileimport.parsers import JSON_RECORD_KEYS, flatten_record
from records import ExtractedRecord, Provenance

from ..base import BaseConnector
from ..models import (
    AuthType,
    ConnectionHandle,
    ConnectorType,
    Credentials,
    ExtractionSelector,
    SourceSystemDescriptor,
    SourceSystemType,
)

logger = logging.getLogger(__name__)


class LegacyApiConnector(BaseConnector):
    """Connector for REST APIs exposed by legacy systems.

    Descriptor ``connection`` keys:
        - base_url: API base URL
        - endpoint: Default record endpoint (default: /records)
        - health_endpoint: Endpoint checked on connect (default: /)
        - timeout: Request timeout in seconds (default: 30)
        - offset_param / limit_param: Paging parameter names
    """

    connector_type = ConnectorType.API
    system_types = (
        SourceSystemType.NHS_SPINE,
        SourceSystemType.SOCIAL_SERVICES,
        SourceSystemType.GENERIC_API,
    )

    def __init__(
        self,
        connector_id: str,
        name: str | None = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize API connector.

        Args:
            connector_id: Unique identifier
            name: Human-readable name
            max_retries: Retries after the first attempt for transient failures
            retry_delay: Initial retry delay in seconds
            transport: Optional httpx transport (used to stub the network)
        """
        super().__init__(connector_id, name)
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._transport = transport

    def _get_auth_headers(self, credentials: Credentials) -> dict[str, str]:
        """Get authentication headers for the credential type."""
        headers: dict[str, str] = {}

        if credentials.auth_type == AuthType.API_KEY and credentials.api_key:
            headers[credentials.api_key_header] = credentials.api_key.get_secret_value()

        elif credentials.auth_type == AuthType.BASIC:
            password = (
                credentials.password.get_secret_value() if credentials.password else ""
            )
            encoded = base64.b64encode(
                f"{credentials.username or ''}:{password}".encode()
            ).decode()
            headers["Authorization"] = f"Basic {encoded}"

        elif credentials.auth_type == AuthType.BEARER and credentials.token:
            headers["Authorization"] = f"Bearer {credentials.token.get_secret_value()}"

        return headers

    def _open(
        self, descriptor: SourceSystemDescriptor, credentials: Credentials
    ) -> ConnectionHandle:
        connection = descriptor.connection
        base_url = connection.get("base_url")
        if not base_url:
            raise ConnectionError("API connector requires a 'base_url'", self.connector_id)

        client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(connection.get("timeout", 30), connect=10.0),
            headers=self._get_auth_headers(credentials),
            follow_redirects=True,
            transport=self._transport,
        )
        try:
            response = self._request(client, "GET", connection.get("health_endpoint", "/"))
        except ConnectionError:
            client.close()
            raise

        server_version = response.headers.get("X-API-Version")
        supported = self.capabilities(descriptor.system_type).supported_versions
        if server_version and supported and server_version not in supported:
            client.close()
            raise ConnectionError(
                f"Unsupported API version {server_version}", self.connector_id
            )

        return ConnectionHandle(
            connector_id=self.connector_id,
            descriptor=descriptor,
            session=client,
            details={"base_url": base_url, "server_version": server_version},
        )

    def _request(
        self,
        client: httpx.Client,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Make an HTTP request with retry logic.

        Args:
            client: Open httpx client
            method: HTTP method
            endpoint: API endpoint path
            params: Query parameters

        Returns:
            HTTP response

        Raises:
            ConnectionError: On auth failure, a client error, or when retries
                are exhausted (marked transient)
        """
        last_error: str | None = None

        for attempt in range(self._max_retries + 1):
            try:
                response = client.request(method=method, url=endpoint, params=params)

                if response.status_code in (401, 403):
                    raise ConnectionError(
                        f"Authentication failed: {response.status_code}",
                        self.connector_id,
                    )

                # Rate limits and server errors are retried
                if response.status_code == 429 or response.status_code >= 500:
                    last_error = f"status {response.status_code}"
                elif response.status_code >= 400:
                    raise ConnectionError(
                        f"Client error: {response.status_code} - {response.text[:200]}",
                        self.connector_id,
                    )
                else:
                    return response

            except (httpx.ConnectError, httpx.TimeoutException) as e:
                last_error = f"{type(e).__name__}: {e}"

            # Exponential backoff
            if attempt < self._max_retries:
                delay = self._retry_delay * (2**attempt)
                self._log(
                    "warning", f"Request failed, retrying in {delay}s: {last_error}"
                )
                time.sleep(delay)

        raise ConnectionError(
            f"Request failed after {self._max_retries + 1} attempts: {last_error}",
            self.connector_id,
            transient=True,
        )

    @staticmethod
    def _page_records(payload: Any) -> list[dict[str, Any]]:
        if isinstance(payload, list):
            return payload
        if isinstance(payload, dict):
            for key in JSON_RECORD_KEYS:
                if isinstance(payload.get(key), list):
                    return payload[key]
        raise ConnectionError("Unexpected API response shape: no record array found")

    def _iter_rows(
        self, handle: ConnectionHandle, selector: ExtractionSelector, offset: int
    ) -> Iterator[ExtractedRecord]:
        client: httpx.Client = handle.session
        connection = handle.descriptor.connection
        endpoint = selector.entity or connection.get("endpoint", "/records")
        offset_param = connection.get("offset_param", "offset")
        limit_param = connection.get("limit_param", "limit")

        position = offset
        remaining = selector.limit
        while remaining is None or remaining > 0:
            page_size = selector.batch_size if remaining is None else min(selector.batch_size, remaining)
            response = self._request(
                client,
                "GET",
                endpoint,
                params={offset_param: position, limit_param: page_size},
            )
            page = self._page_records(response.json())

            for item in page:
                values = flatten_record(item) if isinstance(item, dict) else {"value": item}
                if selector.fields:
                    values = {k: v for k, v in values.items() if k in selector.fields}
                yield ExtractedRecord.from_raw(
                    values,
                    Provenance(
                        connector_id=self.connector_id,
                        source_row_index=position,
                        source_name=endpoint,
                    ),
                )
                position += 1

            if remaining is not None:
                remaining -= len(page)
            if len(page) < page_size:
                break

    def _close(self, handle: ConnectionHandle) -> None:
        client: httpx.Client | None = handle.session
        if client is not None:
            client.close()
