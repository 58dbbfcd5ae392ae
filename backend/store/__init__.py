"""Target record store for migrated resident records."""

from .target_store import TargetStore, state_checksum

__all__ = ["TargetStore", "state_checksum"]
