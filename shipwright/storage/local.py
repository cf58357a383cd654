#!/usr/bin/env python3
"""
Local storage backend: mirrors backups into a directory on the orchestrating machine.
"""

from pathlib import Path

from .base import StorageBackend


class LocalStorage(StorageBackend):
    """Mirror directory on the machine running shipwright."""

    name = 'local'

    def __init__(self, settings):
        self.backup_dir = Path(settings.local_dir)

    def _local_path(self, storage_key):
        return self.backup_dir / storage_key

    def upload_from_host(self, executor, remote_path, storage_key):
        local_path = self._local_path(storage_key)
        local_path.parent.mkdir(parents=True, exist_ok=True)

        print(f"Copying {remote_path} to {local_path}...")
        executor.download(remote_path, str(local_path))
        print("[OK] Copied")

        return {
            'storage_mode': 'local',
            'local_path': str(local_path),
            'filename': Path(remote_path).name
        }
