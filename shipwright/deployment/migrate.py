#!/usr/bin/env python3
"""
Migration safety controller.

Pending migrations are backed up before they run. A failed migration is
never restored automatically: it may be partially applied, so the error
carries the backup location and the restore command instead.
"""

from enum import Enum

from .utils import quote_path
from ..errors import BackupFailure, CommandError, MigrationFailure

NO_PENDING_MARKERS = ('NO_PENDING', 'Nothing to migrate', 'No pending migrations')


class MigrationState(Enum):
    CHECK_PENDING = 'check_pending'
    NO_PENDING = 'no_pending'
    BACKUP_REQUESTED = 'backup_requested'
    BACKUP_DONE = 'backup_done'
    BACKUP_FAILED = 'backup_failed'
    MIGRATING = 'migrating'
    MIGRATION_DONE = 'migration_done'
    MIGRATION_FAILED = 'migration_failed'
    ABORTED = 'aborted'


def _never(prompt):
    return False


class MigrationController:
    """Runs `artisan migrate` for one release behind a backup."""

    def __init__(self, executor, settings, backups, stage, php_binary='php', confirm=_never):
        self.executor = executor
        self.settings = settings
        self.backups = backups
        self.stage = stage
        self.php_binary = php_binary
        self.confirm = confirm
        self.state = None
        self.history = []
        self.backup = None

    def _transition(self, state):
        self.state = state
        self.history.append(state)

    def _artisan(self, release_path, args):
        return f"cd {quote_path(release_path)} && {self.php_binary} artisan {args}"

    @property
    def _force(self):
        return ' --force' if self.settings.force else ''

    def pending(self, release_path):
        """Returns the pending-migration listing, or None when nothing is pending."""
        stdout, _, _ = self.executor.run(
            self._artisan(release_path, 'migrate:status --pending 2>&1 || echo NO_PENDING')
        )
        if any(marker in stdout for marker in NO_PENDING_MARKERS):
            return None
        return stdout.strip()

    def run(self, release_path):
        """
        Drive the state machine for one release.

        Returns:
            Final MigrationState (NO_PENDING or MIGRATION_DONE)

        Raises:
            BackupFailure: backup failed and the operator did not confirm
            MigrationFailure: artisan migrate failed or timed out
        """
        self.history = []
        self.backup = None

        if not self.settings.enabled:
            print("Migrations disabled, skipping...")
            self._transition(MigrationState.NO_PENDING)
            return self.state

        self._transition(MigrationState.CHECK_PENDING)
        listing = self.pending(release_path)
        if listing is None:
            print("No pending migrations")
            self._transition(MigrationState.NO_PENDING)
            return self.state

        print("Pending migrations detected:")
        print(listing)

        if self.settings.backup_enabled:
            self._transition(MigrationState.BACKUP_REQUESTED)
            try:
                self.backup = self.backups.backup(stage=self.stage)
                self._transition(MigrationState.BACKUP_DONE)
            except BackupFailure as e:
                self._transition(MigrationState.BACKUP_FAILED)
                print(f"WARNING: Failed to create backup: {e.message}")
                if not self.confirm('Continue without backup?'):
                    self._transition(MigrationState.ABORTED)
                    raise BackupFailure(
                        'Migration aborted: backup failed',
                        guidance='Fix the backup problem, or re-run with --yes to migrate without a backup.'
                    ) from e

        self._transition(MigrationState.MIGRATING)
        print("Running migrations...")
        try:
            output = self.executor.run_check(
                self._artisan(release_path, f"migrate{self._force} 2>&1"),
                timeout=self.settings.timeout
            )
        except CommandError as e:
            self._transition(MigrationState.MIGRATION_FAILED)
            raise MigrationFailure(
                f"Migration failed: {e.message}",
                backup_path=self.backup.path if self.backup else None,
                restore_command=f"shipwright db:restore {self.stage}"
            ) from e

        if output.strip():
            print(output.strip())
        print("✓ Migrations completed successfully")
        self._transition(MigrationState.MIGRATION_DONE)
        return self.state

    def ensure_sqlite(self, sqlite_path):
        """Create the SQLite database file when it does not exist yet."""
        path = quote_path(sqlite_path)
        if self.executor.test(f"[ -f {path} ]"):
            return False
        print(f"Creating SQLite database file: {sqlite_path}")
        self.executor.run_check(f"mkdir -p $(dirname {path}) && touch {path} && chmod 664 {path}")
        return True

    def status(self, current_path):
        return self.executor.run_check(self._artisan(current_path, 'migrate:status 2>&1'))

    def pretend(self, release_path):
        """Dry run. Returns the SQL that would run ('' when nothing is pending)."""
        output = self.executor.run_check(self._artisan(release_path, f"migrate{self._force} --pretend 2>&1"))
        return output.strip()
