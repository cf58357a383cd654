"""
Configuration package: YAML loading, schema validation, secrets and the
per-run configuration context.
"""

from .context import ConfigContext
from .environments import build_context, environment, env_base
from .loader import deep_merge, load_config, load_yaml
from .secrets import (
    SecretMap, build_environment, env_to_string, parse_env_string, resolve_secrets
)
from .settings import (
    BackupSettings, DatabaseSettings, MigrateSettings, NpmSettings, PreflightSettings,
    ReleaseSettings, RollbackSettings, ServiceSettings, StorageSettings, VerifySettings
)
from .validation import (
    validate_config, validate_db_name, validate_deploy_path, validate_domain, validate_username
)

__all__ = [
    'ConfigContext', 'build_context', 'environment', 'env_base',
    'deep_merge', 'load_config', 'load_yaml',
    'SecretMap', 'build_environment', 'env_to_string', 'parse_env_string', 'resolve_secrets',
    'BackupSettings', 'DatabaseSettings', 'MigrateSettings', 'NpmSettings', 'PreflightSettings',
    'ReleaseSettings', 'RollbackSettings', 'ServiceSettings', 'StorageSettings', 'VerifySettings',
    'validate_config', 'validate_db_name', 'validate_deploy_path', 'validate_domain', 'validate_username',
]
