"""
Deployment package: the per-stage pipeline and the components it drives.
"""

from .backup import BackupHandle, BackupManager
from .cache import CacheDomain, CacheKeyedBuilder, NpmCache, Outcome, combine_fingerprint
from .migrate import MigrationController, MigrationState
from .pipeline import DeployPipeline, Deployment, PipelineResult, RunState
from .preflight import Check, PreflightEngine
from .releases import ReleaseManager
from .services import ServiceManager
from .verify import HealthCheckResult, HealthVerifier, VerifyResult

__all__ = [
    'BackupHandle', 'BackupManager',
    'CacheDomain', 'CacheKeyedBuilder', 'NpmCache', 'Outcome', 'combine_fingerprint',
    'MigrationController', 'MigrationState',
    'DeployPipeline', 'Deployment', 'PipelineResult', 'RunState',
    'Check', 'PreflightEngine',
    'ReleaseManager',
    'ServiceManager',
    'HealthCheckResult', 'HealthVerifier', 'VerifyResult',
]
