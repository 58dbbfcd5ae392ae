"""Connector registry mapping legacy system types to connector classes.

The registry pattern allows dynamic registration of connector implementations
and provides factory methods for instantiating connectors by system type.
"""

from __future__ import annotations

import logging
from typing import Any, Type

from .api import LegacyApiConnector
from .base import BaseConnector
from .capabilities import SYSTEM_CAPABILITIES
from .database import LegacyDatabaseConnector
from .file import FileConnector
from .models import ConnectorCapabilities, SourceSystemType

logger = logging.getLogger(__name__)


class ConnectorRegistry:
    """Registry for connector implementations.

    Maintains a mapping of system types to their implementation classes and
    provides factory methods for creating connector instances.
    """

    def __init__(self) -> None:
        self._connectors: dict[SourceSystemType, Type[BaseConnector]] = {}
        self._options: dict[SourceSystemType, dict[str, Any]] = {}

    def register(
        self,
        connector_class: Type[BaseConnector],
        system_types: tuple[SourceSystemType, ...] | None = None,
        **options: Any,
    ) -> None:
        """Register a connector implementation.

        Args:
            connector_class: The connector class to register
            system_types: System types it serves (defaults to the class's own)
            **options: Extra constructor arguments used by ``create_connector``
        """
        for system_type in system_types or connector_class.system_types:
            if system_type in self._connectors:
                logger.warning(f"Overwriting existing connector for {system_type.value}")
            self._connectors[system_type] = connector_class
            self._options[system_type] = options
            logger.debug(f"Registered connector for {system_type.value}")

    def get_connector_class(
        self, system_type: SourceSystemType
    ) -> Type[BaseConnector] | None:
        return self._connectors.get(system_type)

    def create_connector(
        self, system_type: SourceSystemType | str, connector_id: str, name: str | None = None
    ) -> BaseConnector:
        """Create a connector instance.

        Args:
            system_type: The legacy system type
            connector_id: Unique identifier recorded in provenance
            name: Human-readable name

        Returns:
            Instantiated connector

        Raises:
            ValueError: If the system type is not registered
        """
        system_type = SourceSystemType(system_type)
        connector_class = self._connectors.get(system_type)
        if connector_class is None:
            raise ValueError(f"No connector registered for system type: {system_type.value}")
        return connector_class(connector_id, name, **self._options.get(system_type, {}))

    def capabilities(self, system_type: SourceSystemType | str) -> ConnectorCapabilities:
        """Get the capabilities of a registered system type.

        Raises:
            ValueError: If the system type is not registered
        """
        system_type = SourceSystemType(system_type)
        connector_class = self._connectors.get(system_type)
        if connector_class is None:
            raise ValueError(f"No connector registered for system type: {system_type.value}")
        return connector_class.capabilities(system_type)

    def list_system_types(self) -> list[SourceSystemType]:
        return list(self._connectors)


def build_default_registry() -> ConnectorRegistry:
    """Create a registry with the built-in connectors."""
    registry = ConnectorRegistry()
    registry.register(FileConnector)
    registry.register(LegacyDatabaseConnector)
    registry.register(LegacyApiConnector)
    return registry


def capabilities(system_type: SourceSystemType | str) -> ConnectorCapabilities:
    """Report the capabilities of a legacy system type."""
    return SYSTEM_CAPABILITIES[SourceSystemType(system_type)]
