"""Shared configuration for the care records migration backend.

This module centralizes environment variable access and default values
to prevent drift between modules.
"""

import os

# Database configuration (pipelines, mapping history, target store)
DB_PATH = os.getenv("DB_PATH", "./data/migration.db")

# Snapshot storage
BACKUP_DIR = os.getenv("BACKUP_DIR", "./data/backups")
BACKUP_RETENTION_DAYS = int(os.getenv("BACKUP_RETENTION_DAYS", "30"))
BACKUP_MIN_FREE_BYTES = int(os.getenv("BACKUP_MIN_FREE_BYTES", str(50 * 1024 * 1024)))
# Fernet key for snapshot blobs; unset stores them unencrypted
BACKUP_ENCRYPTION_KEY = os.getenv("BACKUP_ENCRYPTION_KEY")

# File import limits
MAX_IMPORT_BYTES = int(os.getenv("MAX_IMPORT_BYTES", str(100 * 1024 * 1024)))
TYPE_INFERENCE_SAMPLE_SIZE = int(os.getenv("TYPE_INFERENCE_SAMPLE_SIZE", "100"))

# Migration defaults
DEFAULT_BATCH_SIZE = int(os.getenv("DEFAULT_BATCH_SIZE", "100"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
