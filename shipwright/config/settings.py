#!/usr/bin/env python3
"""
Per-component settings with documented defaults.

Each struct is resolved once from the ConfigContext at pipeline start;
components never read ad hoc keys from the raw configuration.
"""

import re
from dataclasses import dataclass, field, fields

DEFAULT_VALID_CODES = ['200', '301', '302', '303', '307', '308']

DEFAULT_ERROR_PATTERNS = [
    'Fatal error:',
    'Parse error:',
    'syntax error,',
    'Uncaught Exception',
    'Stack trace:',
    'vendor/laravel/framework',
    '500 Internal Server Error',
    '503 Service Unavailable',
    'Whoops, looks like something went wrong',
    'The stream or file',
    'SQLSTATE[',
]

DEFAULT_ASSET_PATTERNS = [
    'package-lock.json',
    'vite.config.*',
    'tailwind.config.*',
    'postcss.config.*',
    'resources/**/*.js',
    'resources/**/*.ts',
    'resources/**/*.vue',
    'resources/**/*.css',
    'resources/**/*.scss',
    'resources/**/*.blade.php',
]


def _known(cls, section):
    names = {f.name for f in fields(cls)}
    return {key: value for key, value in (section or {}).items() if key in names}


def slugify(value):
    return re.sub(r'[^a-z0-9]+', '-', str(value).lower()).strip('-') or 'app'


@dataclass
class ReleaseSettings:
    """Release layout. Releases live in {deploy_path}/releases, the live one is {deploy_path}/current."""
    deploy_path: str
    keep_releases: int = 5
    repository: str = None
    branch: str = 'main'
    shared_dirs: list = field(default_factory=lambda: ['storage'])
    shared_files: list = field(default_factory=lambda: ['.env'])
    name_format: str = '%Y%m%d%H%M%S'
    git_timeout: int = 300
    composer_timeout: int = 600
    composer_options: str = '--no-dev --prefer-dist --no-interaction --optimize-autoloader --no-progress'

    @property
    def releases_path(self):
        return f"{self.deploy_path}/releases"

    @property
    def current_path(self):
        return f"{self.deploy_path}/current"

    @property
    def shared_path(self):
        return f"{self.deploy_path}/shared"

    @property
    def lock_file(self):
        return f"{self.deploy_path}/.dep/deploy.lock"

    @classmethod
    def from_context(cls, ctx):
        values = {
            'deploy_path': ctx.get('deploy_path'),
            'keep_releases': ctx.get('keep_releases', 5),
            'repository': ctx.get('repository'),
            'branch': ctx.get('branch', 'main'),
        }
        for key in ('shared_dirs', 'shared_files'):
            if ctx.has(key):
                values[key] = ctx.get(key)
        return cls(**values)


@dataclass
class PreflightSettings:
    enabled: bool = True
    disk_threshold_mb: int = 1024
    memory_threshold_mb: int = 512
    timeout: int = 60

    @classmethod
    def from_context(cls, ctx):
        return cls(**_known(cls, ctx.section('preflight')))


@dataclass
class NpmSettings:
    """node_modules and asset build caching. Paths default under {deploy_path}/shared."""
    enabled: bool = True
    cache_enabled: bool = True
    skip_build_enabled: bool = True
    cache_dir: str = None
    lockfile_hash_file: str = None
    assets_hash_file: str = None
    build_output_dir: str = 'public/build'
    cache_keep: int = 3
    install_timeout: int = 900
    build_timeout: int = 900
    asset_patterns: list = field(default_factory=lambda: list(DEFAULT_ASSET_PATTERNS))

    @classmethod
    def from_context(cls, ctx):
        settings = cls(**_known(cls, ctx.section('npm')))
        shared = f"{ctx.get('deploy_path')}/shared"
        settings.cache_dir = settings.cache_dir or f"{shared}/.npm-cache"
        settings.lockfile_hash_file = settings.lockfile_hash_file or f"{shared}/.npm-lockfile-hash"
        settings.assets_hash_file = settings.assets_hash_file or f"{shared}/.assets-hash"
        return settings


@dataclass
class DatabaseSettings:
    connection: str = 'sqlite'
    name: str = None
    username: str = 'deployer'
    password: str = ''
    host: str = '127.0.0.1'
    sqlite_path: str = None

    @property
    def backup_name(self):
        """Name used in backup file names ('database' for SQLite)."""
        return 'database' if self.connection == 'sqlite' else self.name

    @property
    def requires_server(self):
        return self.connection != 'sqlite'

    @classmethod
    def from_context(cls, ctx):
        connection = ctx.get('db_connection', 'sqlite')
        return cls(
            connection=connection,
            name=ctx.get('db_name'),
            username=ctx.get('db_username', 'deployer'),
            password=ctx.get('secrets').get('db_password', '') or '',
            sqlite_path=f"{ctx.get('deploy_path')}/shared/database/database.sqlite",
        )


@dataclass
class BackupSettings:
    path: str = None
    keep: int = 5
    min_size_bytes: int = 100
    timeout: int = 600
    timestamp_format: str = '%Y-%m-%d-%H%M%S'

    @classmethod
    def from_context(cls, ctx):
        settings = cls(**_known(cls, ctx.section('backup')))
        settings.path = settings.path or f"{ctx.get('deploy_path')}/shared/backups"
        return settings


@dataclass
class MigrateSettings:
    enabled: bool = True
    backup_enabled: bool = True
    timeout: int = 300
    force: bool = True

    @classmethod
    def from_context(cls, ctx):
        return cls(**_known(cls, ctx.section('migrate')))


@dataclass
class VerifySettings:
    """HTTP health check. url defaults to https://{domain}."""
    enabled: bool = True
    url: str = ''
    health_path: str = '/'
    valid_codes: list = field(default_factory=lambda: list(DEFAULT_VALID_CODES))
    timeout: int = 15
    wait: float = 2
    retries: int = 10
    retry_delay: float = 2
    insecure: bool = True
    check_body: bool = True
    error_patterns: list = field(default_factory=lambda: list(DEFAULT_ERROR_PATTERNS))
    deep: bool = False
    auto_rollback: bool = True
    log_file: str = None
    log_lines: int = 30

    @property
    def check_url(self):
        return self.url.rstrip('/') + '/' + self.health_path.lstrip('/')

    @classmethod
    def from_context(cls, ctx):
        settings = cls(**_known(cls, ctx.section('verify')))
        settings.url = settings.url or ctx.get('url') or ''
        settings.valid_codes = [str(code) for code in settings.valid_codes]
        settings.log_file = settings.log_file or f"{ctx.get('deploy_path')}/shared/storage/logs/laravel.log"
        return settings


@dataclass
class RollbackSettings:
    auto_rollback_on_failure: bool = False
    verify_after_rollback: bool = True

    @classmethod
    def from_context(cls, ctx):
        return cls(**_known(cls, ctx.section('rollback')))


@dataclass
class ServiceSettings:
    """Dependent services restarted on activation. The queue worker name derives from the stage."""
    php_version: str = '8.4'
    php_binary: str = 'php'
    queue_worker_name: str = None
    horizon_enabled: bool = False
    maintenance_mode: bool = True
    fpm_ready_checks: int = 10
    fpm_ready_delay: float = 0.5
    restart_attempts: int = 3

    @property
    def fpm_service(self):
        return f"php{self.php_version}-fpm"

    @classmethod
    def from_context(cls, ctx):
        settings = cls(**_known(cls, ctx.section('services')))
        settings.php_version = str(ctx.get('php_version', settings.php_version))
        if not settings.queue_worker_name:
            settings.queue_worker_name = f"{slugify(ctx.get('application', 'app'))}-{ctx.stage}-worker"
        return settings


@dataclass
class StorageSettings:
    """Off-host copies of database backups. backend: none, local or s3."""
    backend: str = 'none'
    local_dir: str = './backups'
    bucket_name: str = None
    region: str = 'us-east-1'
    endpoint_url: str = None
    prefix: str = 'backups/'

    @classmethod
    def from_context(cls, ctx):
        return cls(**_known(cls, ctx.section('storage')))
