"""
Storage backend abstraction package.

Verified database backups can be copied off the deploy host into a local
mirror directory or an S3 bucket.
"""

from .base import StorageBackend
from .local import LocalStorage
from .s3 import S3Storage
from ..errors import ConfigurationError


def get_storage_backend(settings):
    """Factory function to get the configured storage backend (None when disabled)."""
    backend = settings.backend or 'none'

    if backend == 'none':
        return None
    elif backend == 'local':
        return LocalStorage(settings)
    elif backend == 's3':
        return S3Storage(settings)
    else:
        raise ConfigurationError(f"Unknown storage backend: {backend}")


__all__ = ['StorageBackend', 'LocalStorage', 'S3Storage', 'get_storage_backend']
