"""
shipwright - release orchestration for PHP/Node applications.

Ships a release to a host, verifies it, and rolls back when it is unhealthy.
"""

__version__ = '0.4.0'

__all__ = ['config', 'deployment', 'executors', 'storage', 'errors']
