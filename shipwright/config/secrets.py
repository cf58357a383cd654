#!/usr/bin/env python3
"""
Secret resolution and environment file materialization.

Secrets come from environment variables (exported by the caller or loaded
from a secrets file). Configuration values of the exact form {secret_key}
are replaced by the matching secret when the application .env is built.
"""

import os
import re

from ..errors import MissingSecret, MissingRequiredValue, UnresolvedPlaceholder

PLACEHOLDER_PATTERN = re.compile(r'^\{(\w+)\}$')
NEEDS_QUOTING = re.compile(r'[\s#"\'$]')
SECRET_PREFIXES = ('DEPLOYER_', 'SHIPWRIGHT_')


class SecretMap(dict):
    """dict of resolved secrets that never prints its values."""

    def __repr__(self):
        return 'SecretMap(' + ', '.join(f"{key}=***" for key in sorted(self)) + ')'

    __str__ = __repr__


def secret_key(var_name):
    """DEPLOYER_DB_PASSWORD -> db_password"""
    for prefix in SECRET_PREFIXES:
        if var_name.startswith(prefix):
            var_name = var_name[len(prefix):]
            break
    return var_name.lower()


def resolve_secrets(required, optional=None, environ=None):
    """
    Build the secret map for one run.

    Args:
        required: Environment variable names that must be set and non-empty
        optional: Mapping of variable name -> default value
        environ: Source mapping (defaults to os.environ)

    Returns:
        SecretMap keyed by normalized name

    Raises:
        MissingSecret naming every absent required variable
    """
    environ = os.environ if environ is None else environ
    secrets = SecretMap()
    missing = []

    for var in required:
        value = environ.get(var)
        if value is None or value == '':
            missing.append(var)
        else:
            secrets[secret_key(var)] = value

    if missing:
        raise MissingSecret(missing)

    for var, default in (optional or {}).items():
        value = environ.get(var)
        secrets[secret_key(var)] = value if value not in (None, '') else default

    return secrets


def is_placeholder(value):
    return isinstance(value, str) and PLACEHOLDER_PATTERN.match(value) is not None


def unresolved_secret_keys(secrets):
    """Secret keys whose value is itself still a {placeholder}."""
    return [key for key, value in secrets.items() if is_placeholder(value)]


def format_env_value(value):
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def resolve_placeholders(env, secrets):
    """
    Replace whole-value {key} placeholders with secrets.
    Returns (resolved_env, unresolved_keys). Unknown keys keep the literal.
    """
    resolved = {}
    unresolved = []

    for key, value in env.items():
        value = format_env_value(value)
        match = PLACEHOLDER_PATTERN.match(value)
        if match:
            name = match.group(1)
            secret = secrets.get(name)
            if secret not in (None, ''):
                value = str(secret)
            else:
                unresolved.append(name)
        resolved[key] = value

    return resolved, unresolved


def build_environment(base, shared_overrides, env_overrides, secrets, strict=False, required_keys=()):
    """
    Merge the application environment and resolve secret placeholders.

    Precedence: env_overrides > shared_overrides > base.

    Raises (strict mode only):
        UnresolvedPlaceholder: any value is still a {placeholder}
        MissingRequiredValue: a required key is empty or unresolved
    """
    merged = dict(base)
    merged.update(shared_overrides or {})
    merged.update(env_overrides or {})

    resolved, unresolved = resolve_placeholders(merged, secrets)

    if strict:
        missing_required = [
            key for key in required_keys
            if resolved.get(key, '') == '' or is_placeholder(resolved.get(key))
        ]
        if unresolved:
            raise UnresolvedPlaceholder(unresolved, missing_required)
        if missing_required:
            raise MissingRequiredValue(missing_required)
    elif unresolved:
        print("WARNING: Unresolved secret placeholders written as-is: {" + '}, {'.join(unresolved) + '}')

    return resolved


def env_to_string(env):
    """Serialize to KEY=value lines. Values that need it are double-quoted with backslash escapes."""
    content = ''

    for key, value in env.items():
        value = format_env_value(value)

        if value == '' or NEEDS_QUOTING.search(value):
            escaped = value.replace('\\', '\\\\').replace('"', '\\"').replace("'", "\\'").replace('\0', '\\0')
            value = f'"{escaped}"'

        content += f"{key}={value}\n"

    return content


def parse_env_string(content):
    """Parse the output of env_to_string back into a dict."""
    env = {}
    i = 0
    length = len(content)

    while i < length:
        if content[i] == '\n':
            i += 1
            continue

        if content[i] == '#':
            end = content.find('\n', i)
            i = length if end == -1 else end + 1
            continue

        eq = content.find('=', i)
        if eq == -1:
            raise ValueError(f"Malformed env line: {content[i:].splitlines()[0]!r}")
        key = content[i:eq].strip()
        i = eq + 1

        if i < length and content[i] == '"':
            i += 1
            chars = []
            while i < length and content[i] != '"':
                if content[i] == '\\' and i + 1 < length:
                    i += 1
                chars.append(content[i])
                i += 1
            if i >= length:
                raise ValueError(f"Unterminated quoted value for {key}")
            value = ''.join(chars)
            end = content.find('\n', i)
            i = length if end == -1 else end + 1
        else:
            end = content.find('\n', i)
            end = length if end == -1 else end
            value = content[i:end]
            i = end + 1

        env[key] = value

    return env
