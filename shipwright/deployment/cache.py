#!/usr/bin/env python3
"""
Cache-keyed builder.

A domain (npm install, asset build) is keyed by a fingerprint over the files
that determine its output. When the stored fingerprint matches and the cached
artifact restores cleanly, the expensive step is skipped; otherwise it is
rebuilt and the new fingerprint is published only once the artifact is
confirmed written.
"""

import hashlib
import shlex
from dataclasses import dataclass
from enum import Enum

from .utils import quote_path
from ..errors import CacheIntegrityError, CommandError

LOCKFILE = 'package-lock.json'


class Outcome(Enum):
    REUSED = 'reused'
    REBUILT = 'rebuilt'


@dataclass
class CacheDomain:
    name: str
    hash_file: str


def combine_fingerprint(lines):
    """
    Combine per-file hash lines ("<sha256>  <path>") into one fingerprint.
    Order-independent; returns None when there are no files.
    """
    entries = sorted(line.strip() for line in lines if line.strip())
    if not entries:
        return None
    return hashlib.sha256('\n'.join(entries).encode('utf-8')).hexdigest()


def fingerprint_script(root, patterns):
    """Shell snippet printing one sha256sum line per file matched by patterns."""
    parts = []
    for pattern in patterns:
        if '/**/' in pattern:
            base, _, name = pattern.partition('/**/')
            parts.append(
                f"find {shlex.quote(base)} -type f -name {shlex.quote(name)} -exec sha256sum {{}} \\; 2>/dev/null"
            )
        else:
            # left unquoted so the remote shell expands the glob
            parts.append(f"sha256sum {pattern} 2>/dev/null")
    return f"cd {quote_path(root)} && {{ " + '; '.join(parts) + "; } || true"


def fingerprint(executor, root, patterns):
    """Fingerprint the files under root that match patterns."""
    stdout, _, _ = executor.run(fingerprint_script(root, patterns))
    return combine_fingerprint(stdout.splitlines())


class CacheKeyedBuilder:
    """Decides between replaying a cached artifact and rebuilding it."""

    def __init__(self, executor):
        self.executor = executor

    def stored_fingerprint(self, domain):
        return self.executor.read_file(domain.hash_file) or None

    def ensure(self, domain, fingerprint, rebuild, restore, store=None, verify=None):
        """
        Args:
            domain: CacheDomain naming the hash file
            fingerprint: Current fingerprint, or None when nothing can be fingerprinted
            rebuild: Runs the full step; failures propagate
            restore: Replays the cached artifact; raises CacheIntegrityError on a miss
            store: Persists the freshly built artifact, returns True once confirmed
            verify: Lightweight check after a restore

        Returns:
            Outcome.REUSED or Outcome.REBUILT
        """
        stored = self.stored_fingerprint(domain)

        if fingerprint and stored == fingerprint:
            try:
                restore()
                if verify:
                    verify()
                print(f"✓ {domain.name}: fingerprint unchanged, reused cached artifact")
                return Outcome.REUSED
            except CacheIntegrityError as e:
                print(f"WARNING: {domain.name}: cached artifact unusable ({e.message}), rebuilding")
            except CommandError as e:
                print(f"WARNING: {domain.name}: restore failed (exit {e.returncode}), rebuilding")
        elif fingerprint is None:
            print(f"WARNING: {domain.name}: nothing to fingerprint, running without cache")
        else:
            print(f"{domain.name}: fingerprint changed, rebuilding")

        rebuild()

        if fingerprint is None:
            return Outcome.REBUILT

        confirmed = store() if store else True
        if confirmed:
            self.executor.write_file(domain.hash_file, fingerprint + '\n')
        else:
            print(f"WARNING: {domain.name}: artifact not confirmed, fingerprint not stored")

        return Outcome.REBUILT


class NpmCache:
    """npm install and asset build, each behind its own cache domain."""

    def __init__(self, executor, settings, release_path, previous_release_path=None):
        self.executor = executor
        self.settings = settings
        self.release_path = release_path
        self.previous_release_path = previous_release_path
        self.builder = CacheKeyedBuilder(executor)
        self.install_domain = CacheDomain('npm install', settings.lockfile_hash_file)
        self.build_domain = CacheDomain('npm build', settings.assets_hash_file)

    def _in_release(self, command):
        return f"cd {quote_path(self.release_path)} && {command}"

    def _archive(self, fingerprint):
        return f"{self.settings.cache_dir}/node_modules-{fingerprint}.tar.gz"

    def lockfile_fingerprint(self):
        return fingerprint(self.executor, self.release_path, [LOCKFILE])

    def assets_fingerprint(self):
        return fingerprint(self.executor, self.release_path, self.settings.asset_patterns)

    def install_dependencies(self):
        """npm ci, replaying node_modules from the archive keyed by the lockfile."""
        ci = self._in_release('npm ci --no-audit --no-fund')
        timeout = self.settings.install_timeout

        if not self.settings.cache_enabled:
            self.executor.run_check(ci, timeout=timeout)
            return Outcome.REBUILT

        self.executor.run_check(f"mkdir -p {quote_path(self.settings.cache_dir)}")
        current = self.lockfile_fingerprint()
        archive = self._archive(current) if current else None

        def restore():
            if not self.executor.test(f"[ -s {quote_path(archive)} ]"):
                raise CacheIntegrityError(f"archive {archive} is missing")
            self.executor.run_check(self._in_release(f"tar -xzf {quote_path(archive)}"), timeout=timeout)

        def verify():
            self.executor.run_check(self._in_release('npm ci --no-audit --no-fund --prefer-offline'), timeout=timeout)

        def rebuild():
            self.executor.run_check(ci, timeout=timeout)

        def store():
            tmp = quote_path(f"{archive}.tmp")
            self.executor.run_check(
                self._in_release(f"tar -czf {tmp} node_modules && mv -f {tmp} {quote_path(archive)}"),
                timeout=timeout
            )
            if not self.executor.test(f"[ -s {quote_path(archive)} ]"):
                return False
            self.prune_archives()
            return True

        return self.builder.ensure(self.install_domain, current, rebuild, restore, store=store, verify=verify)

    def build_assets(self):
        """npm run build, copying the previous release's output when sources are unchanged."""
        build = self._in_release('npm run build')
        output_dir = self.settings.build_output_dir
        timeout = self.settings.build_timeout

        if not self.settings.skip_build_enabled:
            self.executor.run_check(build, timeout=timeout)
            return Outcome.REBUILT

        current = self.assets_fingerprint()
        target = f"{self.release_path}/{output_dir}"

        def restore():
            if not self.previous_release_path:
                raise CacheIntegrityError('no previous release to copy the build from')
            source = f"{self.previous_release_path}/{output_dir}"
            if not self.executor.test(f"[ -d {quote_path(source)} ]"):
                raise CacheIntegrityError(f"{source} does not exist")
            self.executor.run_check(
                f"mkdir -p {quote_path(target)} && cp -r {quote_path(source)}/. {quote_path(target)}/"
            )

        def rebuild():
            self.executor.run_check(build, timeout=timeout)

        def store():
            return self.executor.test(f"[ -d {quote_path(target)} ]")

        return self.builder.ensure(self.build_domain, current, rebuild, restore, store=store)

    def prune_archives(self):
        keep = self.settings.cache_keep
        self.executor.run(
            f"cd {quote_path(self.settings.cache_dir)} && "
            f"ls -t node_modules-*.tar.gz 2>/dev/null | tail -n +{keep + 1} | xargs -r rm -f --"
        )

    def status(self):
        """Current vs stored fingerprints for both domains, plus cached archives."""
        current_lock = self.lockfile_fingerprint()
        stored_lock = self.builder.stored_fingerprint(self.install_domain)
        current_assets = self.assets_fingerprint()
        stored_assets = self.builder.stored_fingerprint(self.build_domain)
        archives, _, _ = self.executor.run(
            f"ls -1t {quote_path(self.settings.cache_dir)}/node_modules-*.tar.gz 2>/dev/null || true"
        )

        return {
            'lockfile': {'current': current_lock, 'stored': stored_lock,
                         'match': bool(current_lock) and current_lock == stored_lock},
            'assets': {'current': current_assets, 'stored': stored_assets,
                       'match': bool(current_assets) and current_assets == stored_assets},
            'archives': [line.strip() for line in archives.splitlines() if line.strip()],
        }

    def clear(self):
        self.executor.run_check(
            f"rm -rf {quote_path(self.settings.cache_dir)}/* && "
            f"rm -f {quote_path(self.settings.lockfile_hash_file)} {quote_path(self.settings.assets_hash_file)}"
        )
        print("✓ npm cache cleared")
