"""Configuration file loader for migration pipelines.

Supports loading pipeline configurations from YAML and JSON files so
migrations can be reviewed and versioned alongside other infrastructure.
Values of the form ``${NAME}`` are replaced from the environment, which keeps
legacy system credentials out of the files themselves.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from .models import PipelineConfig

logger = logging.getLogger(__name__)

ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []


def substitute_env(value: Any, source: str = "<config>") -> Any:
    """Replace ``${NAME}`` references with environment values, recursively.

    Raises:
        ConfigValidationError: If a referenced variable is not set
    """
    if isinstance(value, dict):
        return {k: substitute_env(v, source) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_env(v, source) for v in value]
    if not isinstance(value, str):
        return value

    missing = [name for name in ENV_PATTERN.findall(value) if name not in os.environ]
    if missing:
        raise ConfigValidationError(
            f"Undefined environment variable(s) in {source}",
            errors=[{"file": source, "error": f"{name} is not set"} for name in missing],
        )
    return ENV_PATTERN.sub(lambda m: os.environ[m.group(1)], value)


class PipelineConfigLoader:
    """Loads and validates pipeline configurations from files."""

    def __init__(self, config_dir: str | Path | None = None):
        """Initialize the config loader.

        Args:
            config_dir: Directory containing config files.
                        Defaults to ./config/pipelines/
        """
        self.config_dir = Path(config_dir) if config_dir else Path("config/pipelines")

    def load_file(self, file_path: str | Path) -> list[PipelineConfig]:
        """Load pipeline configurations from a single file.

        A file holds either one pipeline, a list of pipelines, or a mapping
        with a ``pipelines`` list.

        Raises:
            ConfigValidationError: If validation fails
            FileNotFoundError: If file doesn't exist
            ValueError: If the file extension is not YAML or JSON
        """
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        suffix = path.suffix.lower()
        with open(path, encoding="utf-8") as f:
            if suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            elif suffix == ".json":
                data = json.load(f)
            else:
                raise ValueError(f"Unsupported config format: {suffix}")

        return self.parse(data, str(path))

    def load_directory(self, directory: str | Path | None = None) -> list[PipelineConfig]:
        """Load all pipeline configurations from a directory.

        Raises:
            ConfigValidationError: If any file fails validation
        """
        config_dir = Path(directory) if directory else self.config_dir
        if not config_dir.exists():
            logger.warning(f"Config directory does not exist: {config_dir}")
            return []

        configs: list[PipelineConfig] = []
        errors: list[dict[str, Any]] = []
        for pattern in ("*.yaml", "*.yml", "*.json"):
            for file_path in sorted(config_dir.glob(pattern)):
                try:
                    loaded = self.load_file(file_path)
                except ConfigValidationError as e:
                    errors.extend(e.errors)
                    continue
                except (OSError, ValueError, yaml.YAMLError) as e:
                    errors.append({"file": str(file_path), "error": str(e)})
                    continue
                configs.extend(loaded)
                logger.info(f"Loaded {len(loaded)} pipeline(s) from {file_path.name}")

        if errors:
            raise ConfigValidationError(
                f"Validation failed for {len(errors)} item(s)", errors=errors
            )
        return configs

    def parse(self, data: Any, source: str = "<config>") -> list[PipelineConfig]:
        """Validate already-parsed configuration data.

        Raises:
            ConfigValidationError: If validation fails
        """
        if isinstance(data, dict):
            items = data["pipelines"] if "pipelines" in data else [data]
        elif isinstance(data, list):
            items = data
        else:
            raise ConfigValidationError(
                f"Invalid config format in {source}",
                errors=[{"file": source, "error": "Expected dict or list"}],
            )

        configs = []
        errors: list[dict[str, Any]] = []
        for idx, item in enumerate(items):
            try:
                configs.append(PipelineConfig.model_validate(substitute_env(item, source)))
            except ConfigValidationError as e:
                errors.extend({**err, "index": idx} for err in e.errors)
            except PydanticValidationError as e:
                for err in e.errors():
                    errors.append(
                        {
                            "file": source,
                            "index": idx,
                            "field": ".".join(str(p) for p in err["loc"]),
                            "error": err["msg"],
                        }
                    )

        if errors:
            raise ConfigValidationError(
                f"Validation failed for {len(errors)} field(s) in {source}",
                errors=errors,
            )
        return configs


EXAMPLE_PIPELINE_CONFIG = """
# Migration from a legacy CSV export plus a resident API
name: oakwood_house_cutover
jurisdiction: england
batch_size: 200
requirements:
  quality_threshold: 75
  downtime_allowance_minutes: 120
source_systems:
  - system:
      system_type: generic_file_import
      name: Resident export
      connection:
        path: /data/exports/residents.csv
  - system:
      system_type: generic_api
      name: GP link
      connection:
        base_url: https://gp-link.example.org/api
    credentials:
      auth_type: bearer
      token: "${GP_LINK_TOKEN}"  # Use environment variable
    selector:
      entity: /residents
"""
