"""
Loading of the collector configuration file.
"""

import json
import logging
from pathlib import Path
from typing import Union

from pydantic import ValidationError

from .schema import CollectorConfig
from ..utils.config import ConfigurationError


logger = logging.getLogger(__name__)


def load_collector_config(path: Union[str, Path]) -> CollectorConfig:
    """
    Read and validate the collector JSON file.

    Args:
        path: Path to the JSON file

    Returns:
        CollectorConfig: Validated configuration

    Raises:
        ConfigurationError: If the file is missing, unreadable, not JSON
            or fails validation
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Configuration file {path} not found")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {path}: {e}")
    except OSError as e:
        raise ConfigurationError(f"Could not read {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a JSON object")

    try:
        config = CollectorConfig(**data)
    except ValidationError as e:
        errors = "\n".join(
            f"- {'.'.join(str(part) for part in error['loc']) or 'config'}: {error['msg']}"
            for error in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration in {path}:\n{errors}")

    logger.info(f"Loaded collector configuration from {path} with {len(config.tags)} devices")
    return config
