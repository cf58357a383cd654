#!/usr/bin/env python3
"""
Release and rollback management.

Releases are timestamp-named directories under {deploy_path}/releases; the
`current` symlink names the active one and is only ever replaced atomically
(a temp link renamed over it).
"""

import re
from datetime import datetime

from .utils import quote_path
from ..errors import DeployError, RollbackFailure

RELEASE_NAME = re.compile(r'^[0-9][0-9A-Za-z._-]*$')


class ReleaseManager:
    """Ordered release list (newest first) and the active pointer."""

    def __init__(self, executor, settings, services=None, quick_verify=None, clock=datetime.now):
        self.executor = executor
        self.settings = settings
        self.services = services
        self.quick_verify = quick_verify
        self.clock = clock

    def release_path(self, release):
        return f"{self.settings.releases_path}/{release}"

    def list_releases(self):
        stdout, _, _ = self.executor.run(f"ls -1 {quote_path(self.settings.releases_path)} 2>/dev/null || true")
        names = [line.strip() for line in stdout.splitlines() if RELEASE_NAME.match(line.strip())]
        return sorted(names, reverse=True)

    def active_release(self):
        stdout, _, _ = self.executor.run(f"readlink {quote_path(self.settings.current_path)} 2>/dev/null || true")
        target = stdout.strip().rstrip('/')
        return target.rsplit('/', 1)[-1] if target else None

    def previous_release(self, release):
        """The release immediately older than `release`, or None."""
        releases = self.list_releases()
        if release not in releases:
            return None
        index = releases.index(release)
        return releases[index + 1] if index + 1 < len(releases) else None

    def create_release(self):
        name = self.clock().strftime(self.settings.name_format)
        path = self.release_path(name)
        if self.executor.test(f"[ -e {quote_path(path)} ]"):
            raise DeployError(
                f"Release {name} already exists",
                guidance='Wait a second and re-run, or remove the stale release directory.'
            )
        self.executor.run_check(f"mkdir -p {quote_path(path)}")
        print(f"Created release {name}")
        return name

    def swap(self, release):
        """Point `current` at the release in a single rename."""
        self.executor.run_check(
            f"cd {quote_path(self.settings.deploy_path)} && "
            f"ln -sfn {quote_path('releases/' + release)} current.tmp && mv -fT current.tmp current"
        )

    def activate(self, release):
        """Pause services, swap the active pointer, restart services, resume."""
        if not self.executor.test(f"[ -d {quote_path(self.release_path(release))} ]"):
            raise DeployError(f"Release {release} does not exist")

        paused = False
        if self.services is not None:
            self.services.pause()
            paused = True
        try:
            self.swap(release)
            print(f"✓ Release {release} is now active")
            if self.services is not None:
                self.services.restart()
        finally:
            if paused:
                self.services.resume()

    def rollback(self, unhealthy=False, auto_rollback=False):
        """
        Re-activate the release immediately prior to the active one.

        Unconditional when unhealthy, otherwise only with the auto_rollback
        policy. Returns the release rolled back to, or None for a no-op.

        Raises:
            RollbackFailure: activation or the post-rollback check failed
        """
        releases = self.list_releases()
        if len(releases) < 2:
            print("WARNING: No previous release available to rollback to")
            return None

        if not unhealthy and not auto_rollback:
            print("Auto-rollback disabled. Run `shipwright rollback <stage>` manually if needed.")
            return None

        active = self.active_release()
        if active in releases:
            index = releases.index(active)
            if index + 1 >= len(releases):
                print(f"WARNING: {active} is the oldest release, nothing to rollback to")
                return None
            target = releases[index + 1]
        else:
            target = releases[1]

        print(f"Rolling back from {active or 'none'} to {target}...")
        try:
            self.activate(target)
        except DeployError as e:
            raise RollbackFailure(f"Rollback to {target} failed: {e.message}") from e

        self._verify_rollback(target)
        return target

    def _verify_rollback(self, target):
        if self.quick_verify is None:
            return
        print("Verifying rollback...")
        result = self.quick_verify()
        if result is None:
            return
        if not result.passed:
            raise RollbackFailure(
                f"Rolled back to {target}, but it failed its health check (HTTP {result.status_code})",
                release=target
            )
        print("✓ Rollback verification passed")

    def rollback_to(self, release):
        releases = self.list_releases()
        if release not in releases:
            raise DeployError(
                f"Unknown release: {release}",
                guidance='Run rollback:list to see available releases.'
            )
        if release == self.active_release():
            print(f"WARNING: {release} is already the active release")
            return None

        try:
            self.activate(release)
        except DeployError as e:
            raise RollbackFailure(f"Rollback to {release} failed: {e.message}") from e

        self._verify_rollback(release)
        return release

    def cleanup(self):
        """Roll back, then delete the release that was active."""
        if len(self.list_releases()) < 2:
            print("WARNING: Only one release exists, cannot cleanup")
            return None

        failed = self.active_release()
        target = self.rollback(auto_rollback=True)
        if target is None or not failed:
            return None

        self.executor.run_check(f"rm -rf {quote_path(self.release_path(failed))}")
        print(f"Removed failed release: {failed}")
        return failed

    def discard(self, release):
        """Delete a release directory that never became active."""
        self.executor.run_check(f"rm -rf {quote_path(self.release_path(release))}")
        print(f"Removed unfinished release: {release}")

    def prune_releases(self, keep=None):
        """Delete releases beyond the newest `keep`. The active release is never deleted."""
        keep = self.settings.keep_releases if keep is None else keep
        releases = self.list_releases()
        active = self.active_release()

        removed = [release for release in releases[keep:] if release != active]
        for release in removed:
            self.executor.run_check(f"rm -rf {quote_path(self.release_path(release))}")

        if removed:
            print(f"Pruned {len(removed)} old release(s)")
        return removed
