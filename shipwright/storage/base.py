#!/usr/bin/env python3
"""
Base storage backend interface for off-host backup copies.
"""


class StorageBackend:
    """Base interface for storage backends."""

    name = 'base'

    def upload_from_host(self, executor, remote_path, storage_key):
        """Copy a file from the deploy host into storage. Returns metadata dict."""
        raise NotImplementedError
