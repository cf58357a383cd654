#!/usr/bin/env python3
"""
Environment (stage) definitions and per-run context construction.
"""

import os

from .context import ConfigContext
from .secrets import resolve_secrets
from .validation import (
    validate_config_or_raise, validate_deploy_path, validate_domain,
    validate_db_name, validate_username
)
from ..errors import ConfigurationError

DB_PORTS = {'pgsql': 5432, 'mysql': 3306, 'sqlite': None}
DB_LABELS = {'sqlite': 'SQLite', 'pgsql': 'PostgreSQL', 'mysql': 'MySQL'}
SECTION_OVERRIDES = ('verify', 'npm', 'migrate', 'backup', 'preflight', 'rollback', 'services')


def environment(name, env_config, config):
    """
    Build the stage-level values for one environment, applying defaults.

    Every value that later reaches a shell command is validated here.
    """
    defaults = {
        'app_env': 'production' if name == 'prod' else name,
        'app_debug': False,
        'log_level': 'error',
    }
    env_config = {**defaults, **env_config}

    hostname = env_config.get('hostname') or config.get('server_hostname') or os.environ.get('SHIPWRIGHT_HOST')
    if not hostname:
        raise ConfigurationError(
            f"No hostname for environment '{name}'",
            guidance="Set 'hostname' on the environment, 'server_hostname' globally, or export SHIPWRIGHT_HOST."
        )

    domain = env_config.get('domain')
    values = {
        'stage': name,
        'hostname': hostname,
        'remote_user': validate_username(env_config.get('remote_user') or config.get('remote_user', 'deployer')),
        'ssh_port': env_config.get('ssh_port', 22),
        'ssh_options': env_config.get('ssh_options', []),
        'ssh_env_vars': env_config.get('ssh_env_vars', {}),
        'deploy_path': validate_deploy_path(env_config['deploy_path']).rstrip('/'),
        'domain': validate_domain(domain) if domain else '',
        'url': f"https://{domain}" if domain else '',
        'redis_db': env_config.get('redis_db', 0),
        'app_env': env_config['app_env'],
        'app_debug': env_config['app_debug'],
        'log_level': env_config['log_level'],
        'env_overrides': env_config.get('env', {}),
    }

    if env_config.get('db_name'):
        values['db_name'] = validate_db_name(env_config['db_name'])

    if env_config.get('branch'):
        values['branch'] = env_config['branch']

    for section in SECTION_OVERRIDES:
        if section in env_config:
            values[section] = env_config[section]

    return values


def env_base(ctx):
    """Base application environment derived from configuration and secrets."""
    secrets = ctx.get('secrets')
    connection = ctx.get('db_connection', 'sqlite')

    env = {
        'APP_NAME': ctx.get('application', 'Laravel'),
        'APP_ENV': ctx.get('app_env', 'production'),
        'APP_KEY': secrets.get('app_key', ''),
        'APP_DEBUG': ctx.get('app_debug', False),
        'APP_TIMEZONE': ctx.get('app_timezone', 'UTC'),
        'APP_URL': ctx.get('url'),
        'APP_LOCALE': 'en',
        'APP_FALLBACK_LOCALE': 'en',
        'APP_FAKER_LOCALE': 'en_US',
        'APP_MAINTENANCE_DRIVER': 'file',

        'BCRYPT_ROUNDS': '12',

        'LOG_CHANNEL': 'stack',
        'LOG_STACK': 'single',
        'LOG_DEPRECATIONS_CHANNEL': 'null',
        'LOG_LEVEL': ctx.get('log_level', 'error'),

        'DB_CONNECTION': connection,
    }

    if connection == 'sqlite':
        env['DB_DATABASE'] = f"{ctx.get('deploy_path')}/shared/database/database.sqlite"
    else:
        env.update({
            'DB_HOST': '127.0.0.1',
            'DB_PORT': str(DB_PORTS[connection]),
            'DB_DATABASE': ctx.get('db_name'),
            'DB_USERNAME': ctx.get('db_username', 'deployer'),
            'DB_PASSWORD': secrets.get('db_password', ''),
        })

    env.update({
        'SESSION_DRIVER': 'redis',
        'SESSION_LIFETIME': '120',
        'SESSION_ENCRYPT': 'false',
        'SESSION_PATH': '/',
        'SESSION_DOMAIN': 'null',

        'BROADCAST_CONNECTION': 'log',
        'QUEUE_CONNECTION': 'redis',
        'CACHE_STORE': 'redis',
        'FILESYSTEM_DISK': 'local',

        'REDIS_CLIENT': 'predis',
        'REDIS_HOST': '127.0.0.1',
        'REDIS_PASSWORD': 'null',
        'REDIS_PORT': '6379',
        'REDIS_DB': str(ctx.get('redis_db', 0)),

        'VITE_APP_NAME': '${APP_NAME}',
    })

    return env


def build_context(config, stage, environ=None):
    """
    Validate config and build the ConfigContext for one stage of one run.

    Secrets and the base environment are lazy: they resolve on first use and
    only for this context.
    """
    validate_config_or_raise(config)

    environments = config.get('environments', {})
    if stage not in environments:
        raise ConfigurationError(
            f"Unknown environment '{stage}'. Available: {', '.join(sorted(environments)) or 'none'}"
        )

    connection = config.get('db_connection', 'sqlite')
    if connection != 'sqlite' and not environments[stage].get('db_name'):
        raise ConfigurationError(f"db_name is required for {DB_LABELS[connection]} (environment '{stage}')")

    global_values = {key: value for key, value in config.items() if key != 'environments'}
    ctx = ConfigContext(global_values, environment(stage, environments[stage], config), stage=stage)

    secrets_config = config.get('secrets', {})
    ctx.set('secrets', lambda c: resolve_secrets(
        secrets_config.get('required', []),
        secrets_config.get('optional', {}),
        environ
    ))
    ctx.set('env_base', env_base)

    return ctx
