#!/usr/bin/env python3
"""
Deployment pipeline for one stage.

Phases run strictly in order. Cleanup is registered before the first phase
runs: failure hooks (rollback) run only when a phase raises, and the
always hooks (unlock) run no matter how the pipeline ends.
"""

import getpass
import shlex
import socket
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .backup import BackupManager
from .cache import NpmCache
from .env import write_env
from .migrate import MigrationController
from .preflight import PreflightEngine, default_checks
from .releases import ReleaseManager
from .services import ServiceManager
from .utils import print_phase, quote_path
from .verify import HealthVerifier
from ..config.settings import (
    BackupSettings, DatabaseSettings, MigrateSettings, NpmSettings, PreflightSettings,
    ReleaseSettings, RollbackSettings, ServiceSettings, StorageSettings, VerifySettings
)
from ..errors import ConfigurationError, DeployError, DeployLocked, VerificationFailure
from ..executors import LocalExecutor, get_executor
from ..storage import get_storage_backend


def _never(prompt):
    return False


@dataclass
class RunState:
    """Mutable state of one pipeline run."""
    stage: str
    release: Optional[str] = None
    release_path: Optional[str] = None
    previous_release: Optional[str] = None
    locked: bool = False
    activated: bool = False
    health_check_failed: bool = False
    backup: object = None
    verify_result: object = None
    rolled_back_to: Optional[str] = None


@dataclass
class PipelineResult:
    stage: str
    status: str
    release: Optional[str] = None
    error: Optional[Exception] = None
    rolled_back_to: Optional[str] = None

    @property
    def ok(self):
        return self.status == 'success'


class Deployment:
    """The components for one stage, wired from its ConfigContext."""

    def __init__(self, ctx, executor, local_executor=None, storage=None, confirm=_never,
                 sleep=time.sleep, clock=datetime.now):
        self.ctx = ctx
        self.stage = ctx.stage
        self.executor = executor
        self.local_executor = local_executor or LocalExecutor(verbose=executor.verbose)
        self.confirm = confirm
        self.clock = clock

        # resolves secrets: a missing required secret aborts here, before any remote command
        self.secrets = ctx.get('secrets')

        self.release_settings = ReleaseSettings.from_context(ctx)
        self.preflight_settings = PreflightSettings.from_context(ctx)
        self.npm_settings = NpmSettings.from_context(ctx)
        self.db = DatabaseSettings.from_context(ctx)
        self.backup_settings = BackupSettings.from_context(ctx)
        self.migrate_settings = MigrateSettings.from_context(ctx)
        self.verify_settings = VerifySettings.from_context(ctx)
        self.rollback_settings = RollbackSettings.from_context(ctx)
        self.service_settings = ServiceSettings.from_context(ctx)

        self.run_state = RunState(stage=self.stage)

        self.services = ServiceManager(
            executor, self.service_settings, self.release_settings.deploy_path,
            sudo_password=self.secrets.get('sudo_pass'), sleep=sleep
        )
        self.backups = BackupManager(
            executor, self.backup_settings, self.db, services=self.services, storage=storage, clock=clock
        )
        self.migrations = MigrationController(
            executor, self.migrate_settings, self.backups, self.stage,
            php_binary=self.service_settings.php_binary, confirm=confirm
        )
        self.verifier = HealthVerifier(
            executor, self.local_executor, run_state=self.run_state,
            php_binary=self.service_settings.php_binary,
            log_file=self.verify_settings.log_file, log_lines=self.verify_settings.log_lines, sleep=sleep
        )
        self.releases = ReleaseManager(
            executor, self.release_settings, services=self.services,
            quick_verify=self.quick_verify if self.rollback_settings.verify_after_rollback else None,
            clock=clock
        )

    @classmethod
    def from_context(cls, ctx, verbose=False, **kwargs):
        executor = get_executor(ctx.stage_values, verbose=verbose)
        if 'storage' not in kwargs:
            kwargs['storage'] = get_storage_backend(StorageSettings.from_context(ctx))
        return cls(ctx, executor, local_executor=LocalExecutor(verbose=verbose), **kwargs)

    @property
    def deploy_path(self):
        return self.release_settings.deploy_path

    def npm_cache(self, release_path=None, previous_release=None):
        previous_path = self.releases.release_path(previous_release) if previous_release else None
        return NpmCache(
            self.executor, self.npm_settings,
            release_path or self.release_settings.current_path, previous_path
        )

    def verify_health(self, deep=None, quick=False):
        """Health check the live release. Returns None when no URL is configured."""
        s = self.verify_settings
        if not s.url:
            print("WARNING: No URL configured for verification (set verify.url or domain)")
            return None

        return self.verifier.verify(
            s.check_url,
            s.valid_codes,
            retries=1 if quick else s.retries,
            retry_delay=s.retry_delay,
            check_body=False if quick else s.check_body,
            error_signatures=s.error_patterns,
            deep=False if quick else (s.deep if deep is None else deep),
            timeout=s.timeout,
            insecure=s.insecure,
            wait=0 if quick else s.wait,
            release_path=self.release_settings.current_path
        )

    def quick_verify(self):
        return self.verify_health(quick=True)

    def lock(self):
        lock_file = self.release_settings.lock_file
        holder = f"{getpass.getuser()}@{socket.gethostname()} {self.stage} {self.clock().isoformat(timespec='seconds')}"
        _, _, returncode = self.executor.run(
            f"mkdir -p {quote_path(self.deploy_path)}/.dep && "
            f"( set -o noclobber; echo {shlex.quote(holder)} > {quote_path(lock_file)} ) 2>/dev/null"
        )
        if returncode != 0:
            current = self.executor.read_file(lock_file)
            raise DeployLocked(f"Deploy to {self.stage} is locked by: {current or 'unknown'}")
        print(f"Acquired deploy lock ({lock_file})")

    def unlock(self):
        self.executor.run_check(f"rm -f {quote_path(self.release_settings.lock_file)}")
        print("Deploy lock released")


class Phase:
    """One pipeline step. run() raises to abort the pipeline."""

    title = ''

    def __init__(self, deployment):
        self.d = deployment

    def run(self, state):
        raise NotImplementedError("Subclasses must implement run()")


class PreflightPhase(Phase):
    title = 'PREFLIGHT'

    def run(self, state):
        settings = self.d.preflight_settings
        if not settings.enabled:
            print("Pre-flight checks disabled, skipping...")
            return
        checks = default_checks(
            self.d.executor, self.d.ctx, settings, self.d.db, self.d.secrets,
            self.d.service_settings.php_version
        )
        PreflightEngine(self.d.executor, timeout=settings.timeout).run_batch(checks)
        print(f"✓ All pre-flight checks passed for {state.stage}")


class LockPhase(Phase):
    title = 'LOCK'

    def run(self, state):
        self.d.lock()
        state.locked = True


class ReleasePhase(Phase):
    """Create the release directory, check out the code and link shared paths."""

    title = 'PREPARE RELEASE'

    def run(self, state):
        settings = self.d.release_settings
        if not settings.repository:
            raise ConfigurationError("No repository configured", guidance="Set 'repository' in deploy.yaml.")

        executor = self.d.executor
        shared = settings.shared_path

        state.previous_release = self.d.releases.active_release()
        state.release = self.d.releases.create_release()
        state.release_path = self.d.releases.release_path(state.release)
        release_path = state.release_path

        print(f"Cloning {settings.repository} ({settings.branch})...")
        executor.run_check(
            f"git clone --depth 1 --branch {shlex.quote(settings.branch)} "
            f"{shlex.quote(settings.repository)} {quote_path(release_path)}",
            timeout=settings.git_timeout
        )

        for directory in settings.shared_dirs:
            source = quote_path(f"{shared}/{directory}")
            target = quote_path(f"{release_path}/{directory}")
            executor.run_check(
                f"mkdir -p {source} && rm -rf {target} && mkdir -p $(dirname {target}) && ln -sfn {source} {target}"
            )

        for name in settings.shared_files:
            source = quote_path(f"{shared}/{name}")
            target = quote_path(f"{release_path}/{name}")
            executor.run_check(
                f"mkdir -p $(dirname {source}) && touch {source} && rm -f {target} && ln -sfn {source} {target}"
            )

        print(f"✓ Release {state.release} prepared")


class EnvPhase(Phase):
    title = 'ENVIRONMENT'

    def run(self, state):
        write_env(self.d.executor, self.d.ctx)


class VendorsPhase(Phase):
    title = 'VENDORS'

    def run(self, state):
        settings = self.d.release_settings
        self.d.executor.run_check(
            f"cd {quote_path(state.release_path)} && composer install {settings.composer_options}",
            timeout=settings.composer_timeout
        )
        print("✓ Composer dependencies installed")


class NpmInstallPhase(Phase):
    title = 'NPM INSTALL'

    def run(self, state):
        if not self.d.npm_settings.enabled:
            print("npm disabled, skipping...")
            return
        self.d.npm_cache(state.release_path, state.previous_release).install_dependencies()


class NpmBuildPhase(Phase):
    title = 'NPM BUILD'

    def run(self, state):
        if not self.d.npm_settings.enabled:
            print("npm disabled, skipping...")
            return
        self.d.npm_cache(state.release_path, state.previous_release).build_assets()


class MigratePhase(Phase):
    title = 'MIGRATE'

    def run(self, state):
        if self.d.db.connection == 'sqlite':
            self.d.migrations.ensure_sqlite(self.d.db.sqlite_path)
        self.d.migrations.run(state.release_path)
        state.backup = self.d.migrations.backup


class ActivatePhase(Phase):
    title = 'ACTIVATE'

    def run(self, state):
        # web server must be able to traverse the deploy user's home
        self.d.executor.run_check('chmod 755 "$HOME"')
        self.d.releases.activate(state.release)
        state.activated = True


class VerifyPhase(Phase):
    title = 'VERIFY'

    def run(self, state):
        if not self.d.verify_settings.enabled:
            print("Verification disabled, skipping...")
            return
        result = self.d.verify_health()
        state.verify_result = result
        if result is not None and not result.passed:
            raise VerificationFailure(f"Deployment verification failed: HTTP {result.status_code}", result=result)


class PruneReleasesPhase(Phase):
    title = 'CLEANUP'

    def run(self, state):
        self.d.releases.prune_releases()


DEFAULT_PHASES = [
    PreflightPhase,
    LockPhase,
    ReleasePhase,
    EnvPhase,
    VendorsPhase,
    NpmInstallPhase,
    NpmBuildPhase,
    MigratePhase,
    ActivatePhase,
    VerifyPhase,
    PruneReleasesPhase,
]


class DeployPipeline:
    """Ordered phases plus deferred cleanup hooks."""

    def __init__(self, deployment, phases=None):
        self.d = deployment
        self.phases = phases if phases is not None else [phase(deployment) for phase in DEFAULT_PHASES]
        self.on_failure = []
        self.always = []

    def run(self):
        """
        Run every phase for the stage.

        Returns PipelineResult. DeployErrors are captured on the result
        ('failed', or 'rolled_back' when a rollback consumed the failure);
        anything else propagates after cleanup.
        """
        state = self.d.run_state
        self.on_failure.append(self._rollback_hook)
        self.always.append(self._unlock_hook)

        status = 'success'
        error = None
        try:
            for number, phase in enumerate(self.phases, 1):
                print_phase(number, phase.title, state.stage)
                phase.run(state)
        except Exception as e:
            error = e
            print(f"\n✗ {type(e).__name__} during deployment of {state.stage}: {getattr(e, 'message', e)}")
            status, error = self._run_failure_hooks(state, e)
            if not isinstance(e, DeployError):
                raise
        finally:
            self._run_always_hooks(state)

        if status == 'success':
            print(f"\n✓ Deployed {state.release} to {state.stage}")
        return PipelineResult(state.stage, status, state.release, error, state.rolled_back_to)

    def _run_failure_hooks(self, state, error):
        status = 'failed'
        for hook in reversed(self.on_failure):
            try:
                if hook(state, error):
                    status = 'rolled_back'
            except DeployError as hook_error:
                print(f"✗ Cleanup failed: {hook_error.message}")
                return 'failed', hook_error
        return status, error

    def _run_always_hooks(self, state):
        for hook in reversed(self.always):
            try:
                hook(state)
            except DeployError as e:
                print(f"WARNING: Cleanup step failed: {e.message}")

    def _rollback_hook(self, state, error):
        activated = state.activated or (
            state.release is not None and self.d.releases.active_release() == state.release
        )
        if not activated:
            print("Release was not activated; the active release is unchanged.")
            if state.release is not None:
                self._discard_unfinished(state.release)
            return False

        unhealthy = state.health_check_failed and self.d.verify_settings.auto_rollback
        if unhealthy:
            print("WARNING: Health check failed, initiating automatic rollback...")
        target = self.d.releases.rollback(
            unhealthy=unhealthy,
            auto_rollback=self.d.rollback_settings.auto_rollback_on_failure
        )
        state.rolled_back_to = target
        return target is not None

    def _discard_unfinished(self, release):
        try:
            self.d.releases.discard(release)
        except DeployError as e:
            print(f"WARNING: Could not remove unfinished release {release}: {e.message}")

    def _unlock_hook(self, state):
        if state.locked:
            self.d.unlock()
            state.locked = False
