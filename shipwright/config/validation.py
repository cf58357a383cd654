#!/usr/bin/env python3
"""
Configuration validation.

Two layers: the deploy config is validated against a JSON schema, and every
value that ends up inside a shell command (domains, database names, user
names, deploy paths) is checked against a strict pattern first.
"""

import json
import re
from pathlib import Path

import jsonschema

from ..errors import ConfigurationError

SCHEMA_FILE = Path(__file__).parent / 'schemas' / 'deploy-config-schema.json'

DOMAIN_PATTERN = r'^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$'
DB_NAME_PATTERN = r'^[a-zA-Z_][a-zA-Z0-9_]{0,62}$'
USERNAME_PATTERN = r'^[a-z_][a-z0-9_-]{0,31}$'
DEPLOY_PATH_PATTERN = r'^[~/][a-zA-Z0-9._/-]+$'
DEFAULT_PATTERN = r'^[a-zA-Z0-9._-]+$'


def load_schema():
    with open(SCHEMA_FILE, 'r') as f:
        return json.load(f)


def validate_config(config):
    """
    Validate the deploy config against the JSON schema.
    Returns (is_valid, errors_list)
    """
    if not config:
        return False, ["Configuration is empty"]

    try:
        schema = load_schema()
    except Exception as e:
        return False, [f"Error loading schema file: {e}"]

    validator = jsonschema.Draft7Validator(schema)
    errors = []
    for error in sorted(validator.iter_errors(config), key=lambda e: list(e.path)):
        error_path = ' -> '.join(str(p) for p in error.path) if error.path else 'root'
        errors.append(f"Schema validation failed at '{error_path}': {error.message}")

    if 'environments' in config and not config['environments']:
        errors.append("At least one environment must be defined under 'environments'")

    return len(errors) == 0, errors


def validate_config_or_raise(config):
    is_valid, errors = validate_config(config)
    if not is_valid:
        raise ConfigurationError(
            "Invalid configuration:\n" + '\n'.join(f"  - {error}" for error in errors)
        )
    return config


def validate_shell_input(value, context, pattern=DEFAULT_PATTERN):
    """Validate a value that will be interpolated into a shell command."""
    if value is None or value == '':
        raise ConfigurationError(f"Empty {context} is not allowed")

    value = str(value)
    if not re.match(pattern, value):
        raise ConfigurationError(f"Invalid {context}: '{value}'. Must match pattern: {pattern}")

    return value


def validate_domain(domain):
    # example.com, sub.example.com, localhost, example.test
    if domain is not None and len(str(domain)) > 253:
        raise ConfigurationError(f"Invalid domain: '{domain}'. Domain name too long (max 253 characters)")

    return validate_shell_input(domain, 'domain', DOMAIN_PATTERN)


def validate_db_name(name):
    # PostgreSQL limit is 63 chars, MySQL 64
    return validate_shell_input(name, 'database name', DB_NAME_PATTERN)


def validate_username(username):
    return validate_shell_input(username, 'username', USERNAME_PATTERN)


def validate_deploy_path(path):
    if path is not None and '..' in str(path):
        raise ConfigurationError(f"Invalid deploy path: '{path}'. Path traversal (..) is not allowed")

    return validate_shell_input(path, 'deploy path', DEPLOY_PATH_PATTERN)
