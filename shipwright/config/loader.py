#!/usr/bin/env python3
"""
Configuration loading - YAML files with optional local overrides.
"""

import os
from pathlib import Path

import yaml

from ..errors import ConfigurationError

DEFAULT_CONFIG_FILE = 'deploy.yaml'
LOCAL_OVERRIDE_FILE = 'deploy.local.yaml'


def load_yaml(file_path):
    with open(file_path, 'r') as f:
        return yaml.safe_load(f)


def deep_merge(base, override):
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_config(config_path=None, environ=None):
    """
    Load configuration with optional local overrides.
    - Default: deploy.yaml in the working directory
    - SHIPWRIGHT_ENV=local: merges deploy.local.yaml (same directory) over it
    """
    environ = os.environ if environ is None else environ
    path = Path(config_path or environ.get('SHIPWRIGHT_CONFIG', DEFAULT_CONFIG_FILE))

    if not path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {path}",
            guidance='Create deploy.yaml (see examples/deploy.yaml) or pass --config.'
        )

    try:
        config = load_yaml(path) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"YAML syntax error in {path}: {e}") from e

    if environ.get('SHIPWRIGHT_ENV', '').strip() == 'local':
        override_path = path.parent / LOCAL_OVERRIDE_FILE
        if override_path.exists():
            config = deep_merge(config, load_yaml(override_path) or {})

    return config
