"""Tests for the migration safety controller."""

import pytest

from shipwright.config import BackupSettings, DatabaseSettings, MigrateSettings
from shipwright.deployment.backup import BackupManager
from shipwright.deployment.migrate import MigrationController, MigrationState
from shipwright.errors import BackupFailure, MigrationFailure

from .conftest import NOW, RELEASE

RELEASE_PATH = f'/srv/app/releases/{RELEASE}'
BACKUP_PATH = '/srv/app/shared/backups/app_prod_prod_2025-01-02-030405.sql.gz'
PENDING = '  2025_01_01_000000_create_orders_table ........ Pending\n'


def controller(ctx, fake, confirm=lambda prompt: False, **settings):
    backups = BackupManager(
        fake, BackupSettings.from_context(ctx), DatabaseSettings.from_context(ctx), clock=lambda: NOW
    )
    return MigrationController(fake, MigrateSettings(**settings), backups, 'prod', confirm=confirm)


@pytest.fixture
def pending(fake):
    fake.when('migrate:status --pending', PENDING)
    fake.when('stat -c%s', '20480')


def test_nothing_pending(ctx, fake):
    fake.when('migrate:status --pending', 'INFO  Nothing to migrate.')
    migrations = controller(ctx, fake)

    assert migrations.run(RELEASE_PATH) == MigrationState.NO_PENDING
    assert not fake.ran('pg_dump')
    assert not fake.ran('artisan migrate --force')


def test_backup_then_migrate(ctx, fake, pending):
    migrations = controller(ctx, fake)

    assert migrations.run(RELEASE_PATH) == MigrationState.MIGRATION_DONE
    assert migrations.history == [
        MigrationState.CHECK_PENDING, MigrationState.BACKUP_REQUESTED, MigrationState.BACKUP_DONE,
        MigrationState.MIGRATING, MigrationState.MIGRATION_DONE,
    ]
    assert migrations.backup.path == BACKUP_PATH

    dump = next(i for i, c in enumerate(fake.commands) if 'pg_dump' in c)
    migrate = next(i for i, c in enumerate(fake.commands) if 'artisan migrate --force' in c)
    assert dump < migrate
    assert fake.ran(f'cd {RELEASE_PATH} && php artisan migrate --force 2>&1')


def test_failure_after_backup_points_at_restore(ctx, fake, pending):
    fake.when('artisan migrate --force', 'SQLSTATE[42P07]: Duplicate table', returncode=1)
    migrations = controller(ctx, fake)

    with pytest.raises(MigrationFailure) as exc:
        migrations.run(RELEASE_PATH)

    error = exc.value
    assert error.backup_path == BACKUP_PATH
    assert error.restore_command == 'shipwright db:restore prod'
    assert BACKUP_PATH in str(error)
    assert 'shipwright db:restore prod' in str(error)
    assert migrations.state == MigrationState.MIGRATION_FAILED
    # never restored automatically
    assert not fake.ran('gunzip -c')


def test_backup_failure_aborts_without_confirmation(ctx, fake, pending):
    fake.when('pg_dump', returncode=1, stderr='permission denied')
    migrations = controller(ctx, fake)

    with pytest.raises(BackupFailure) as exc:
        migrations.run(RELEASE_PATH)

    assert exc.value.message == 'Migration aborted: backup failed'
    assert migrations.history[-2:] == [MigrationState.BACKUP_FAILED, MigrationState.ABORTED]
    assert not fake.ran('artisan migrate --force')


def test_backup_failure_continues_when_confirmed(ctx, fake, pending):
    fake.when('pg_dump', returncode=1, stderr='permission denied')
    prompts = []

    def confirm(prompt):
        prompts.append(prompt)
        return True

    migrations = controller(ctx, fake, confirm=confirm)

    assert migrations.run(RELEASE_PATH) == MigrationState.MIGRATION_DONE
    assert prompts == ['Continue without backup?']
    assert migrations.backup is None


def test_failure_without_backup(ctx, fake, pending):
    fake.when('artisan migrate --force', returncode=1)
    migrations = controller(ctx, fake, backup_enabled=False)

    with pytest.raises(MigrationFailure) as exc:
        migrations.run(RELEASE_PATH)
    assert exc.value.backup_path is None
    assert 'No backup was taken' in exc.value.guidance


def test_disabled(ctx, fake):
    assert controller(ctx, fake, enabled=False).run(RELEASE_PATH) == MigrationState.NO_PENDING
    assert fake.commands == []


def test_ensure_sqlite_creates_missing_file(ctx, fake):
    migrations = controller(ctx, fake)
    assert migrations.ensure_sqlite('/srv/app/shared/database/database.sqlite') is True
    assert fake.ran('touch /srv/app/shared/database/database.sqlite')

    fake.when('[ -f /srv/app/shared/database/database.sqlite ]', 'true')
    assert migrations.ensure_sqlite('/srv/app/shared/database/database.sqlite') is False


def test_pretend(ctx, fake):
    fake.when('--pretend', 'CreateOrdersTable: create table "orders" ...\n')
    assert controller(ctx, fake).pretend('/srv/app/current').startswith('CreateOrdersTable')
