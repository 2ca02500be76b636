"""
Configuration parser for the phase harness.

This module reads the optional harness-config.yaml file, validates it against
the JSON schema and applies overrides from environment variables.
"""

import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from jsonschema import validate, ValidationError as SchemaValidationError

from harness_errors import ConfigurationError, ValidationError
from result_publisher import DEFAULT_LOCK_TIMEOUT, DEFAULT_RESULTS_FILE
from status_vocabulary import StatusVocabulary


ENV_RESULTS_DIR = "HARNESS_RESULTS_DIR"
ENV_RESULTS_FILE = "HARNESS_RESULTS_FILE"
ENV_LEGACY_DIR = "HARNESS_LEGACY_DIR"
ENV_LOCK_TIMEOUT = "HARNESS_LOCK_TIMEOUT"

_VALUE_LIST = {
    "type": "array",
    "items": {"type": "string", "minLength": 1},
    "minItems": 1,
    "uniqueItems": True,
}

HARNESS_CONFIG_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {
        "results_dir": {"type": "string", "minLength": 1},
        "results_file": {"type": "string", "minLength": 1, "pattern": "^[^/]+$"},
        "legacy_dir": {"type": "string", "minLength": 1},
        "lock_timeout": {"type": ["number", "null"], "minimum": 0},
        "vocabulary": {
            "type": "object",
            "properties": {
                "test_case_statuses": _VALUE_LIST,
                "test_case_results": _VALUE_LIST,
                "test_statuses": _VALUE_LIST,
                "test_results": _VALUE_LIST,
            },
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
}


@dataclass
class HarnessConfig:
    """Complete phase harness configuration."""
    results_dir: Optional[str] = None
    results_file: str = DEFAULT_RESULTS_FILE
    legacy_dir: Optional[str] = None
    lock_timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT
    vocabulary: StatusVocabulary = field(default_factory=StatusVocabulary)


class ConfigParser:
    """Parser for phase harness configuration files."""

    def __init__(self, schema: Optional[dict] = None):
        self.schema = schema or HARNESS_CONFIG_SCHEMA

    def parse(self, config_path: str) -> HarnessConfig:
        """
        Parse and validate a configuration file.

        Args:
            config_path: Path to the harness-config.yaml file

        Returns:
            Parsed and validated HarnessConfig object

        Raises:
            FileNotFoundError: If config file doesn't exist
            ConfigurationError: If the YAML is malformed or doesn't match the schema
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_file, 'r') as f:
            try:
                config_data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {config_path}: {str(e)}") from e

        # An empty file is an empty configuration
        if config_data is None:
            config_data = {}

        return self.parse_data(config_data)

    def parse_data(self, config_data: Any) -> HarnessConfig:
        """Validate raw config data and convert it into a HarnessConfig object."""
        try:
            validate(instance=config_data, schema=self.schema)
        except SchemaValidationError as e:
            raise ConfigurationError(f"Invalid harness configuration: {e.message}") from e

        try:
            vocabulary = StatusVocabulary(**config_data.get('vocabulary', {}))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid harness vocabulary: {str(e)}") from e

        return HarnessConfig(
            results_dir=config_data.get('results_dir'),
            results_file=config_data.get('results_file', DEFAULT_RESULTS_FILE),
            legacy_dir=config_data.get('legacy_dir'),
            lock_timeout=check_lock_timeout(config_data.get('lock_timeout', DEFAULT_LOCK_TIMEOUT)),
            vocabulary=vocabulary
        )


def apply_environment(config: HarnessConfig, environ: Mapping[str, str]) -> HarnessConfig:
    """
    Override configuration values from environment variables.

    An empty or "none" HARNESS_LOCK_TIMEOUT means waiting for the lock forever.

    Raises:
        ConfigurationError: If an environment value is invalid
    """
    if environ.get(ENV_RESULTS_DIR):
        config.results_dir = environ[ENV_RESULTS_DIR]
    if environ.get(ENV_RESULTS_FILE):
        config.results_file = environ[ENV_RESULTS_FILE]
    if environ.get(ENV_LEGACY_DIR):
        config.legacy_dir = environ[ENV_LEGACY_DIR]
    if ENV_LOCK_TIMEOUT in environ:
        config.lock_timeout = parse_lock_timeout(environ[ENV_LOCK_TIMEOUT])
    return config


def parse_lock_timeout(value: str) -> Optional[float]:
    """Parse a lock timeout given as text, "none" or empty meaning no timeout."""
    if value.strip().lower() in ("", "none", "null"):
        return None
    try:
        timeout = float(value)
    except ValueError as e:
        raise ConfigurationError(f"Invalid lock timeout: {value}") from e
    return check_lock_timeout(timeout)


def check_lock_timeout(timeout: Optional[float]) -> Optional[float]:
    """
    Check a lock timeout. Use None, not infinity, to wait forever.

    Raises:
        ConfigurationError: If the timeout is negative, NaN or infinite
    """
    if timeout is None:
        return None
    if not math.isfinite(timeout):
        raise ConfigurationError(f"Lock timeout must be a finite number, use none to wait forever: {timeout}")
    if timeout < 0:
        raise ConfigurationError(f"Lock timeout must not be negative: {timeout}")
    return timeout


def load_config(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None
) -> HarnessConfig:
    """
    Convenience function to build the harness configuration.

    Args:
        config_path: Optional path to a harness-config.yaml file
        environ: Environment to read overrides from, defaults to os.environ

    Returns:
        HarnessConfig with file values overridden by the environment
    """
    if config_path:
        config = ConfigParser().parse(config_path)
    else:
        config = HarnessConfig()

    return apply_environment(config, os.environ if environ is None else environ)


def config_to_dict(config: HarnessConfig) -> Dict[str, Any]:
    """Convert a HarnessConfig back into its file form."""
    data: Dict[str, Any] = {
        'results_file': config.results_file,
        'lock_timeout': config.lock_timeout,
        'vocabulary': {
            'test_case_statuses': list(config.vocabulary.test_case_statuses),
            'test_case_results': list(config.vocabulary.test_case_results),
            'test_statuses': list(config.vocabulary.test_statuses),
            'test_results': list(config.vocabulary.test_results),
        },
    }
    if config.results_dir:
        data['results_dir'] = config.results_dir
    if config.legacy_dir:
        data['legacy_dir'] = config.legacy_dir
    return data
