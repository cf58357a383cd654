#!/usr/bin/env python3
"""
Base executor interface for host commands.

Commands may reference a secret with the %secret% token. The token is
replaced by the shell-quoted secret only in the command that is executed;
anything echoed or attached to an error carries a masked value instead.
"""

import shlex
import subprocess
import time

from ..errors import CommandError, CommandTimeout

SECRET_TOKEN = '%secret%'
MASK = "'********'"


def render_command(command, secret=None):
    """Returns (command_to_execute, command_to_display)."""
    if secret is None or SECRET_TOKEN not in command:
        return command, command
    return command.replace(SECRET_TOKEN, shlex.quote(str(secret))), command.replace(SECRET_TOKEN, MASK)


def quote_path(path):
    """shlex.quote a path, leaving a leading ~/ unquoted so the remote shell expands it."""
    path = str(path)
    if path == '~':
        return path
    if path.startswith('~/'):
        return '~/' + shlex.quote(path[2:])
    return shlex.quote(path)


def sudo_command(command):
    """sudo invocation that reads the password (passed as the secret) from stdin."""
    return f"printf '%s\\n' {SECRET_TOKEN} | sudo -S -p '' {command}"


class BaseExecutor:
    """Interface for executors (local shell or remote host over SSH)."""

    name = 'base'

    def __init__(self, verbose=False):
        self.verbose = verbose

    def _execute(self, command, timeout=None):
        """Run a fully rendered command. Returns (stdout, stderr, returncode)."""
        raise NotImplementedError("Subclasses must implement _execute()")

    def download(self, remote_path, local_path):
        """Copy a file from the host to the orchestrating machine."""
        raise NotImplementedError("Subclasses must implement download()")

    def run(self, command, timeout=None, secret=None):
        """Execute command. Returns (stdout, stderr, returncode); raises CommandTimeout."""
        actual, display = render_command(command, secret)
        if self.verbose:
            print(f"[{self.name}] $ {display}")
        try:
            return self._execute(actual, timeout)
        except subprocess.TimeoutExpired:
            raise CommandTimeout(display, timeout) from None

    def run_check(self, command, timeout=None, secret=None):
        """Execute command and raise CommandError if it fails."""
        stdout, stderr, returncode = self.run(command, timeout=timeout, secret=secret)
        if returncode != 0:
            _, display = render_command(command, secret)
            raise CommandError(display, returncode, stderr=stderr, stdout=stdout)
        return stdout

    def test(self, condition):
        """Evaluate a shell condition (e.g. '[ -f /path ]') on the host."""
        stdout, _, _ = self.run(f"if {condition}; then echo true; else echo false; fi")
        return stdout.strip() == 'true'

    def sudo(self, command, password, timeout=None):
        """Run command through sudo, feeding the password on stdin."""
        if not password:
            raise CommandError(f"sudo {command}", 1, stderr='No sudo password configured. Set the sudo_pass secret.')
        return self.run_check(sudo_command(command), timeout=timeout, secret=password)

    def read_file(self, path):
        """Return the stripped content of a file, or '' when it does not exist."""
        stdout, _, _ = self.run(f"cat {quote_path(path)} 2>/dev/null || true")
        return stdout.strip()

    def write_file(self, path, content, mode=None, sensitive=False):
        """
        Write content to path through a temp file and a rename, so readers never
        observe a partially written file.

        Args:
            path: Destination path on the host
            content: File content
            mode: Optional chmod mode (e.g. '640'), applied before the rename
            sensitive: Pass content through the secret channel so it is never echoed
        """
        target = quote_path(path)
        tmp = quote_path(f"{path}.tmp")
        if sensitive:
            command = f"printf '%s' {SECRET_TOKEN} > {tmp}"
            secret = content
        else:
            command = f"printf '%s' {shlex.quote(content)} > {tmp}"
            secret = None
        if mode:
            command += f" && chmod {mode} {tmp}"
        command += f" && mv -f {tmp} {target}"
        self.run_check(command, secret=secret)

    def run_with_retry(self, command, attempts=3, delay=2, timeout=None, secret=None, sleep=time.sleep):
        """Run a command, retrying on failure. Raises the last CommandError."""
        last_error = None
        for attempt in range(1, attempts + 1):
            try:
                return self.run_check(command, timeout=timeout, secret=secret)
            except CommandError as e:
                last_error = e
                if attempt < attempts:
                    print(f"WARNING: Attempt {attempt}/{attempts} failed, retrying in {delay}s...")
                    sleep(delay)
        raise last_error
