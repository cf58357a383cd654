#!/usr/bin/env python3
"""
Health verification of a live release.

The HTTP check runs from the orchestrating machine (curl on the local
executor). Deep probes run on the host inside the release. The verifier only
detects: an exhausted check marks the run unhealthy, and the rollback
decision is left to the release manager.
"""

import shlex
import time
from dataclasses import dataclass, field
from typing import List, Optional

from .utils import quote_path
from ..errors import VerificationFailure

BODY_SNIPPET_LENGTH = 500


@dataclass
class HealthCheckResult:
    attempt: int
    status_code: str
    body_snippet: str
    passed: bool
    reason: str = ''


@dataclass
class VerifyResult:
    passed: bool
    attempts: List[HealthCheckResult] = field(default_factory=list)
    status_code: str = '000'
    body: str = ''
    deep_checked: bool = False

    @property
    def last(self) -> Optional[HealthCheckResult]:
        return self.attempts[-1] if self.attempts else None


def curl_command(url, timeout, insecure):
    insecure_flag = ' --insecure' if insecure else ''
    return (
        f"curl -s -w '\\n%{{http_code}}' -L --max-time {int(timeout)}{insecure_flag} {shlex.quote(url)} "
        f"2>/dev/null || printf '\\n000'"
    )


def split_response(output):
    """curl output is the body followed by a final line holding the status code."""
    body, _, status = output.rstrip('\n').rpartition('\n')
    status = status.strip()
    # curl prints 000 itself on connection failure, before the fallback appends another
    if body.endswith('000') and status == '000':
        body = body[:-3].rstrip('\n')
    return status or '000', body


def find_error_signature(body, signatures):
    lowered = body.lower()
    for signature in signatures:
        if signature.lower() in lowered:
            return signature
    return None


class HealthVerifier:
    """HTTP health check with retries, body inspection and optional deep probes."""

    def __init__(self, executor, local_executor, run_state=None, php_binary='php',
                 log_file=None, log_lines=30, sleep=time.sleep):
        self.executor = executor
        self.local_executor = local_executor
        self.run_state = run_state
        self.php_binary = php_binary
        self.log_file = log_file
        self.log_lines = log_lines
        self.sleep = sleep

    def check_once(self, attempt, url, valid_codes, check_body, error_signatures, timeout, insecure):
        stdout, _, _ = self.local_executor.run(curl_command(url, timeout, insecure), timeout=timeout + 5)
        status, body = split_response(stdout)
        snippet = body[:BODY_SNIPPET_LENGTH]

        if status not in valid_codes:
            return HealthCheckResult(attempt, status, snippet, False, f"HTTP {status}"), body

        if check_body and error_signatures:
            signature = find_error_signature(body, error_signatures)
            if signature:
                return HealthCheckResult(
                    attempt, status, snippet, False, f"Response contains error pattern: {signature}"
                ), body

        return HealthCheckResult(attempt, status, snippet, True), body

    def verify(self, url, valid_codes, retries=10, retry_delay=2, check_body=True, error_signatures=(),
               deep=False, timeout=15, insecure=True, wait=0, release_path=None):
        """
        Poll url until an attempt passes or the retry budget is spent.

        Returns:
            VerifyResult; on failure it carries the last attempt's status and body

        Raises:
            VerificationFailure: a deep probe failed
        """
        valid_codes = [str(code) for code in valid_codes]
        retries = max(1, int(retries))

        if wait:
            print(f"Waiting {wait}s for services to stabilize...")
            self.sleep(wait)

        result = VerifyResult(passed=False)
        for attempt in range(1, retries + 1):
            print(f"Health check attempt {attempt}/{retries}...")
            check, body = self.check_once(attempt, url, valid_codes, check_body, error_signatures, timeout, insecure)
            result.attempts.append(check)
            result.status_code = check.status_code
            result.body = body

            if check.passed:
                result.passed = True
                break

            print(f"WARNING: Attempt {attempt}: {check.reason}")
            if attempt < retries:
                self.sleep(retry_delay)

        if not result.passed:
            print(f"WARNING: Health check failed after {retries} attempts (last: HTTP {result.status_code})")
            self.mark_unhealthy()
            self.show_recent_log()
            return result

        print(f"✓ Health check passed (HTTP {result.status_code})")

        if deep:
            self.deep_checks(release_path)
            result.deep_checked = True

        return result

    def mark_unhealthy(self):
        if self.run_state is not None:
            self.run_state.health_check_failed = True

    def show_recent_log(self):
        """Best-effort tail of the application log."""
        if not self.log_file or not self.log_lines:
            return
        stdout, _, _ = self.executor.run(
            f"tail -n {int(self.log_lines)} {quote_path(self.log_file)} 2>/dev/null || echo 'No logs available'"
        )
        print("\nRecent application log:")
        print(stdout.rstrip())

    def _tinker(self, release_path, code):
        return (
            f"cd {quote_path(release_path)} && {self.php_binary} artisan tinker "
            f"--execute={shlex.quote(code)} 2>&1"
        )

    def deep_checks(self, release_path):
        """Database, Redis and cache round-trips inside the release; each must succeed."""
        print("Running deep health checks...")
        probes = [
            ('Database', 'DB::select("SELECT 1"); echo "ok";'),
            ('Redis', 'Redis::ping(); echo "ok";'),
            ('Cache', 'Cache::put("health_check", "ok", 60); echo Cache::get("health_check");'),
        ]
        for name, code in probes:
            stdout, _, returncode = self.executor.run(self._tinker(release_path, code), timeout=60)
            lines = stdout.strip().splitlines()
            if returncode != 0 or not lines or lines[-1].strip() != 'ok':
                self.mark_unhealthy()
                raise VerificationFailure(
                    f"Deep health check failed: {name} round-trip error",
                    probe=name, output=stdout.strip()
                )
            print(f"[OK] {name}")

        print("✓ Deep health checks passed")
