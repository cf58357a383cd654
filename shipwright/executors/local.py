#!/usr/bin/env python3
"""
Local executor - runs commands on the orchestrating machine.
"""

import shutil
import subprocess

from .base import BaseExecutor


class LocalExecutor(BaseExecutor):
    """Executes commands with bash on this machine (the 'local' pseudo-host)."""

    name = 'local'

    def _execute(self, command, timeout=None):
        result = subprocess.run(['bash', '-c', command], capture_output=True, text=True, timeout=timeout)
        return result.stdout, result.stderr, result.returncode

    def download(self, remote_path, local_path):
        shutil.copy(remote_path, local_path)
        return str(local_path)
