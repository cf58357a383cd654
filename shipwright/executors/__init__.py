#!/usr/bin/env python3
"""
Executor factory and package exports.
"""

from .base import BaseExecutor
from .local import LocalExecutor
from .ssh import RemoteExecutor

LOCAL_HOSTNAMES = ('local', 'localhost', '127.0.0.1')


def is_local_host(host_config):
    """Check if the host config points at the orchestrating machine."""
    return host_config.get('hostname') in LOCAL_HOSTNAMES


def get_executor(host_config, verbose=False):
    """
    Factory function to create appropriate executor.

    Args:
        host_config: Host dict built by config.environments.environment()
        verbose: Echo (redacted) commands before running them

    Returns:
        LocalExecutor or RemoteExecutor instance
    """
    if is_local_host(host_config):
        return LocalExecutor(verbose=verbose)
    return RemoteExecutor(host_config, verbose=verbose)


__all__ = ['BaseExecutor', 'LocalExecutor', 'RemoteExecutor', 'get_executor', 'is_local_host']
