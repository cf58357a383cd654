#!/usr/bin/env python3
"""
Remote execution over SSH.
Uses key-based authentication by default; falls back to sshpass when the
host config names a password environment variable.
"""

import os
import subprocess

from .base import BaseExecutor
from ..errors import CommandError, MissingSecret


class RemoteExecutor(BaseExecutor):
    """SSH remote executor with connection multiplexing."""

    def __init__(self, host_config, verbose=False):
        super().__init__(verbose=verbose)
        self.host_config = host_config
        self.name = host_config.get('stage', 'ssh')

    def _get_password(self):
        """Returns (password, password_env_name) when sshpass is configured."""
        password_env = self.host_config.get('ssh_env_vars', {}).get('password')
        if not password_env:
            return None, None
        return os.environ.get(password_env), password_env

    def _ssh_options(self):
        options = [
            '-o', 'StrictHostKeyChecking=accept-new',
            '-o', 'ControlMaster=auto',
            '-o', 'ControlPath=~/.ssh/shipwright-%r@%h:%p',
            '-o', 'ControlPersist=60',
        ]
        for option in self.host_config.get('ssh_options', []):
            options.extend(['-o', option])
        return options

    def _target(self):
        return f"{self.host_config.get('remote_user', 'deployer')}@{self.host_config['hostname']}"

    def _wrap(self, program, argv):
        """Prefix argv with the program (and sshpass when configured). Returns (cmd, env)."""
        password, password_env = self._get_password()
        if password_env is None:
            return [program, '-o', 'BatchMode=yes'] + argv, None

        if not password:
            raise MissingSecret([password_env])

        env = os.environ.copy()
        env['SSHPASS'] = password
        return ['sshpass', '-e', program] + argv, env

    def build_ssh_cmd(self, remote_command):
        """Build the ssh argv for a remote command. Returns (cmd, env)."""
        argv = self._ssh_options() + ['-p', str(self.host_config.get('ssh_port', 22)), self._target(), remote_command]
        return self._wrap('ssh', argv)

    def _execute(self, command, timeout=None):
        cmd, env = self.build_ssh_cmd(command)
        result = subprocess.run(cmd, env=env, capture_output=True, text=True, timeout=timeout)
        return result.stdout, result.stderr, result.returncode

    def download(self, remote_path, local_path):
        """Download file from remote host via SCP."""
        argv = self._ssh_options() + [
            '-P', str(self.host_config.get('ssh_port', 22)),
            f"{self._target()}:{remote_path}",
            str(local_path)
        ]
        cmd, env = self._wrap('scp', argv)
        result = subprocess.run(cmd, env=env, capture_output=True, text=True)
        if result.returncode != 0:
            raise CommandError(f"scp {remote_path}", result.returncode, stderr=result.stderr)
        return str(local_path)
