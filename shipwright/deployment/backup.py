#!/usr/bin/env python3
"""
Database backup and restore.

Backups are named {name}_{stage}_{Y-m-d-His}.{sqlite|sql.gz} so that lexical
and chronological order agree. A backup is kept only once its size has been
verified; retention keeps the newest N per (name, stage).
"""

import shlex
from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePosixPath
from typing import Optional

from .utils import format_size, quote_path
from ..errors import BackupFailure, CommandError, DeployError

EXTENSIONS = {'sqlite': '.sqlite', 'pgsql': '.sql.gz', 'mysql': '.sql.gz'}


@dataclass
class BackupHandle:
    kind: str
    name: str
    stage: str
    path: str
    size: int = 0
    timestamp: str = ''
    offsite: Optional[dict] = None

    @property
    def filename(self):
        return PurePosixPath(self.path).name


def backup_filename(name, stage, timestamp, kind):
    return f"{name}_{stage}_{timestamp}{EXTENSIONS[kind]}"


def parse_backup_path(path, name, stage, kind):
    """Build a handle from an existing backup path; the timestamp is taken from the name."""
    filename = PurePosixPath(path).name
    prefix = f"{name}_{stage}_"
    timestamp = filename[len(prefix):-len(EXTENSIONS[kind])] if filename.startswith(prefix) else ''
    return BackupHandle(kind=kind, name=name, stage=stage, path=path, timestamp=timestamp)


class BackupManager:
    """Creates, lists, prunes and restores database backups on the host."""

    def __init__(self, executor, settings, db, services=None, storage=None, clock=datetime.now):
        self.executor = executor
        self.settings = settings
        self.db = db
        self.services = services
        self.storage = storage
        self.clock = clock

    def _dump_command(self, kind, target):
        db = self.db
        host = shlex.quote(db.host)
        user = shlex.quote(db.username)
        name = shlex.quote(db.name)
        if kind == 'pgsql':
            dump = f"PGPASSWORD=%secret% pg_dump -h {host} -U {user} {name}"
        else:
            dump = f"MYSQL_PWD=%secret% mysqldump -h {host} -u {user} --single-transaction {name}"
        return f"set -o pipefail; {dump} | gzip > {quote_path(target)}"

    def file_size(self, path):
        p = quote_path(path)
        stdout, _, _ = self.executor.run(f"stat -c%s {p} 2>/dev/null || stat -f%z {p} 2>/dev/null || echo 0")
        try:
            return int(stdout.strip().splitlines()[-1])
        except (ValueError, IndexError):
            return 0

    def backup(self, kind=None, name=None, stage=None):
        """
        Create a verified backup.

        Args:
            kind: sqlite, pgsql or mysql (defaults to the configured connection)
            name: Database name used in the file name
            stage: Stage label used in the file name

        Returns:
            BackupHandle

        Raises:
            BackupFailure: the copy/dump failed or produced an implausibly small file
        """
        kind = kind or self.db.connection
        name = name or self.db.backup_name
        if kind not in EXTENSIONS:
            raise BackupFailure(f"Unsupported database kind: {kind}")

        timestamp = self.clock().strftime(self.settings.timestamp_format)
        path = f"{self.settings.path}/{backup_filename(name, stage, timestamp, kind)}"

        self.executor.run_check(f"mkdir -p {quote_path(self.settings.path)}")
        print(f"Creating {kind} backup: {path}")

        if kind == 'sqlite':
            command = f"cp {quote_path(self.db.sqlite_path)} {quote_path(path)}"
            secret = None
        else:
            if not self.db.password:
                raise BackupFailure(f"Database password not configured for {name}")
            command = self._dump_command(kind, path)
            secret = self.db.password

        try:
            self.executor.run_check(command, timeout=self.settings.timeout, secret=secret)
        except CommandError as e:
            self.executor.run(f"rm -f {quote_path(path)}")
            raise BackupFailure(f"Database backup failed: {e.message}") from e

        size = self.file_size(path)
        if size < self.settings.min_size_bytes:
            self.executor.run(f"rm -f {quote_path(path)}")
            raise BackupFailure(
                f"Backup file is empty or too small ({size} bytes, minimum {self.settings.min_size_bytes})"
            )

        handle = BackupHandle(kind=kind, name=name, stage=stage, path=path, size=size, timestamp=timestamp)
        print(f"✓ Backup created: {path} ({format_size(size)})")

        if self.storage is not None:
            handle.offsite = self._copy_off_host(handle)

        removed = self.prune(name, stage, kind)
        if removed:
            print(f"Cleaned up {len(removed)} old backup(s)")

        return handle

    def _copy_off_host(self, handle):
        """Off-host copy of a verified backup. A failure leaves the local backup in place."""
        try:
            return self.storage.upload_from_host(self.executor, handle.path, f"{handle.stage}/{handle.filename}")
        except (DeployError, OSError) as e:
            print(f"WARNING: Off-host copy of {handle.filename} failed: {getattr(e, 'message', e)}")
            return None

    def list_backups(self, name=None, stage=None, kind=None):
        """
        Backups for (name, stage), newest first.

        The glob also matches neighbouring pairs such as stage prod_eu when
        listing prod, so only names whose remainder is exactly a timestamp
        are kept.
        """
        kind = kind or self.db.connection
        name = name or self.db.backup_name
        pattern = f"{quote_path(self.settings.path)}/{shlex.quote(f'{name}_{stage}_')}*{EXTENSIONS[kind]}"
        stdout, _, _ = self.executor.run(f"ls -1 {pattern} 2>/dev/null || true")
        paths = sorted((line.strip() for line in stdout.splitlines() if line.strip()), reverse=True)
        handles = [parse_backup_path(path, name, stage, kind) for path in paths]
        return [handle for handle in handles if self._is_timestamp(handle.timestamp)]

    def _is_timestamp(self, value):
        try:
            datetime.strptime(value, self.settings.timestamp_format)
        except ValueError:
            return False
        return True

    def prune(self, name, stage, kind):
        """Delete everything beyond the newest `keep` backups. Returns removed handles."""
        backups = self.list_backups(name, stage, kind)
        removed = backups[self.settings.keep:]
        if removed:
            self.executor.run_check('rm -f ' + ' '.join(quote_path(handle.path) for handle in removed))
        return removed

    def _restore_command(self, handle):
        db = self.db
        source = quote_path(handle.path)
        if handle.kind == 'sqlite':
            return f"cp {source} {quote_path(db.sqlite_path)}", None
        if not db.name or not db.password:
            raise DeployError('Database credentials not configured')
        host = shlex.quote(db.host)
        user = shlex.quote(db.username)
        name = shlex.quote(db.name)
        if handle.kind == 'pgsql':
            client = f"PGPASSWORD=%secret% psql -q -v ON_ERROR_STOP=1 -h {host} -U {user} {name}"
        else:
            client = f"MYSQL_PWD=%secret% mysql -h {host} -u {user} {name}"
        return f"set -o pipefail; gunzip -c {source} | {client}", db.password

    def restore(self, handle):
        """
        Replace the live database with a backup.

        The application is put into maintenance mode first and always brought
        back up. Failures are reported, not raised. Returns True on success.
        """
        down = False
        try:
            if self.services is not None:
                down = self.services.maintenance_down()

            print(f"Restoring from: {handle.filename}")
            command, secret = self._restore_command(handle)
            self.executor.run_check(command, timeout=self.settings.timeout, secret=secret)
            print(f"✓ Database restored from {handle.filename}")
            return True
        except DeployError as e:
            print(f"WARNING: Restore may have encountered issues: {e.message}")
            return False
        finally:
            if down:
                try:
                    self.services.maintenance_up()
                except CommandError as e:
                    print(f"WARNING: Could not bring the application back up: {e.message}")
