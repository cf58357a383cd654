#!/usr/bin/env python3
"""
Preflight check engine.

Scripted checks run on the host in a single round-trip, each printing one
NAME|STATUS|MESSAGE line. Local checks run on this machine. Results are then
evaluated in the order the checks were declared, failing on the first FAIL.
"""

import re
import shlex
from dataclasses import dataclass
from typing import Callable, Optional

from .utils import quote_path
from ..config.secrets import unresolved_secret_keys
from ..errors import PreflightFailure

RESULT_PATTERN = re.compile(r'^([^|]+)\|(PASS|FAIL)\|(.*)$')

DB_SERVICES = {'pgsql': ('PostgreSQL', 'postgresql'), 'mysql': ('MySQL', 'mysql')}


@dataclass
class Check:
    """
    A preflight check. Exactly one of script/evaluate is set.

    script: bash snippet run on the host, must echo "NAME|PASS|msg" or "NAME|FAIL|msg"
    evaluate: local callable returning (passed, message)
    """
    name: str
    script: Optional[str] = None
    evaluate: Optional[Callable] = None
    hint: Optional[str] = None


def parse_results(output):
    """Parse NAME|STATUS|MESSAGE lines. Unrecognized lines are ignored."""
    results = {}
    for line in output.splitlines():
        match = RESULT_PATTERN.match(line.strip())
        if match:
            results[match.group(1)] = (match.group(2), match.group(3))
    return results


def service_check(name, service, hint=None):
    svc = shlex.quote(service)
    script = (
        f"if [ \"$(systemctl is-active {svc} 2>/dev/null)\" = active ]; "
        f"then echo '{name}|PASS|{service} is running'; "
        f"else echo '{name}|FAIL|{service} is not running'; fi"
    )
    return Check(name, script=script, hint=hint or f"Start it with: sudo systemctl start {service}")


def disk_check(deploy_path, threshold_mb):
    path = quote_path(deploy_path)
    script = (
        f"target={path}; while [ ! -d \"$target\" ]; do target=$(dirname \"$target\"); done; "
        f"avail=$(df -BM \"$target\" 2>/dev/null | tail -1 | awk '{{print $4}}' | tr -d M); avail=${{avail:-0}}; "
        f"if [ \"$avail\" -ge {int(threshold_mb)} ]; "
        f"then echo \"Disk Space|PASS|Available: ${{avail}}MB (threshold: {int(threshold_mb)}MB)\"; "
        f"else echo \"Disk Space|FAIL|Only ${{avail}}MB available, need at least {int(threshold_mb)}MB\"; fi"
    )
    return Check('Disk Space', script=script, hint='Free disk space, e.g. run rollback:cleanup or prune old backups.')


def memory_check(threshold_mb):
    script = (
        "avail=$(free -m 2>/dev/null | awk '/^Mem:/ {print $7}'); avail=${avail:-0}; "
        f"if [ \"$avail\" -ge {int(threshold_mb)} ]; "
        f"then echo \"Memory|PASS|Available: ${{avail}}MB (threshold: {int(threshold_mb)}MB)\"; "
        f"else echo \"Memory|FAIL|Only ${{avail}}MB available, need at least {int(threshold_mb)}MB\"; fi"
    )
    return Check('Memory', script=script, hint='Stop unused processes or add swap before deploying.')


def deploy_path_check(deploy_path):
    path = quote_path(deploy_path)
    script = (
        f"p={path}; parent=$(dirname \"$p\"); "
        "if [ -d \"$p\" ]; then "
        "if [ -w \"$p\" ]; then echo \"Deploy Path|PASS|Deploy path $p is writable\"; "
        "else echo \"Deploy Path|FAIL|Deploy path $p is not writable\"; fi; "
        "elif [ -w \"$parent\" ]; then echo \"Deploy Path|PASS|Deploy path will be created in $parent\"; "
        "else echo \"Deploy Path|FAIL|Cannot create deploy path - parent $parent is not writable\"; fi"
    )
    return Check('Deploy Path', script=script, hint='Fix ownership of the deploy path for the deploy user.')


def redis_ping_check():
    script = (
        "if [ \"$(redis-cli ping 2>/dev/null)\" = PONG ]; "
        "then echo 'Redis Connection|PASS|Redis responding to ping'; "
        "else echo 'Redis Connection|FAIL|Redis not responding'; fi"
    )
    return Check('Redis Connection', script=script, hint='Check redis-server logs: journalctl -u redis-server')


def secrets_check(secrets):
    def evaluate():
        unresolved = unresolved_secret_keys(secrets)
        if unresolved:
            return False, f"Unresolved secret placeholders: {', '.join(unresolved)}"
        return True, 'All secrets are resolved'

    return Check('Secrets', evaluate=evaluate, hint='Check the exported environment variables.')


def database_check(executor, db):
    """Connect with the database password passed through the secret side channel."""
    if db.connection == 'pgsql':
        probe = (
            f"PGPASSWORD=%secret% psql -h {shlex.quote(db.host)} -U {shlex.quote(db.username)} "
            f"-d {shlex.quote(db.name)} -tAc 'SELECT 1'"
        )
    else:
        probe = (
            f"MYSQL_PWD=%secret% mysql -h {shlex.quote(db.host)} -u {shlex.quote(db.username)} "
            f"-N -e 'SELECT 1' {shlex.quote(db.name)}"
        )

    def evaluate():
        stdout, _, returncode = executor.run(f"{probe} 2>/dev/null", timeout=30, secret=db.password)
        if returncode == 0 and stdout.strip() == '1':
            return True, f"Connected to database {db.name}"
        return False, f"Cannot connect to database {db.name}"

    return Check('Database', evaluate=evaluate, hint='Check credentials and that the database exists.')


def default_checks(executor, ctx, settings, db, secrets, php_version):
    """The standard check list for a stage, in evaluation order."""
    checks = [
        service_check('PHP-FPM', f"php{php_version}-fpm"),
        service_check('Redis', 'redis-server'),
    ]
    if db.connection in DB_SERVICES:
        checks.append(service_check(*DB_SERVICES[db.connection]))

    checks += [
        disk_check(ctx.get('deploy_path'), settings.disk_threshold_mb),
        memory_check(settings.memory_threshold_mb),
        deploy_path_check(ctx.get('deploy_path')),
        redis_ping_check(),
    ]
    if ctx.get('domain'):
        checks.append(service_check('Caddy', 'caddy'))

    checks.append(secrets_check(secrets))
    if db.requires_server and db.name and db.password:
        checks.append(database_check(executor, db))

    return checks


class PreflightEngine:
    """Runs a batch of checks with a fail-fast contract."""

    def __init__(self, executor, timeout=60):
        self.executor = executor
        self.timeout = timeout

    def collect(self, checks):
        """Run every check. Returns {name: (status, message)}."""
        scripted = [check.script for check in checks if check.script]
        results = {}

        if scripted:
            stdout, _, _ = self.executor.run('\n'.join(scripted), timeout=self.timeout)
            results.update(parse_results(stdout))

        for check in checks:
            if check.evaluate is not None:
                passed, message = check.evaluate()
                results[check.name] = ('PASS' if passed else 'FAIL', message)

        return results

    def run_batch(self, checks):
        """Raise PreflightFailure on the first failing or missing check."""
        results = self.collect(checks)

        for check in checks:
            if check.name not in results:
                raise PreflightFailure(check.name, 'Check did not return a result', check.hint)

            status, message = results[check.name]
            if status != 'PASS':
                print(f"[FAIL] {check.name}: {message}")
                raise PreflightFailure(check.name, message, check.hint)

            print(f"[PASS] {check.name}: {message}")

        return results
