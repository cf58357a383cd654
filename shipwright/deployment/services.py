#!/usr/bin/env python3
"""
Dependent services around a release switch: maintenance mode, PHP-FPM,
Supervisor queue workers and Horizon.
"""

import shlex
import time

from .utils import quote_path
from ..errors import CommandError, DeployError
from ..executors.base import sudo_command

SUPERVISORCTL = '/usr/bin/supervisorctl'


class ServiceManager:
    """Pause/restart/resume hooks used by release activation."""

    def __init__(self, executor, settings, deploy_path, sudo_password=None, sleep=time.sleep):
        self.executor = executor
        self.settings = settings
        self.deploy_path = deploy_path
        self.sudo_password = sudo_password
        self.sleep = sleep

    @property
    def current_path(self):
        return f"{self.deploy_path}/current"

    def artisan(self, args, path=None, timeout=None):
        path = path or self.current_path
        return self.executor.run_check(
            f"cd {quote_path(path)} && {self.settings.php_binary} artisan {args}", timeout=timeout
        )

    def has_current(self):
        return self.executor.test(f"[ -f {quote_path(self.current_path)}/artisan ]")

    def _sudo(self, command):
        return self.executor.sudo(command, self.sudo_password)

    # Maintenance mode

    def maintenance_down(self):
        if not self.settings.maintenance_mode or not self.has_current():
            return False
        self.artisan('down --retry=60')
        print("Maintenance mode enabled")
        return True

    def maintenance_up(self):
        if not self.settings.maintenance_mode or not self.has_current():
            return False
        self.artisan('up')
        print("✓ Application is live")
        return True

    # PHP-FPM

    def restart_fpm(self):
        """Restart PHP-FPM (retrying transient sudo failures) and wait until it is active."""
        service = shlex.quote(self.settings.fpm_service)
        if not self.sudo_password:
            raise CommandError(
                f"sudo systemctl restart {service}", 1,
                stderr='No sudo password configured. Set the sudo_pass secret.'
            )

        self.executor.run_with_retry(
            sudo_command(f"systemctl restart {service}"),
            attempts=self.settings.restart_attempts,
            secret=self.sudo_password,
            sleep=self.sleep
        )

        checks = self.settings.fpm_ready_checks
        for attempt in range(1, checks + 1):
            stdout, _, _ = self.executor.run(f"systemctl is-active {service} 2>/dev/null || echo inactive")
            if stdout.strip() == 'active':
                print(f"✓ Restarted {self.settings.fpm_service} (ready after {attempt} check(s))")
                return attempt
            if attempt < checks:
                self.sleep(self.settings.fpm_ready_delay)

        raise DeployError(
            f"{self.settings.fpm_service} failed to become active after restart",
            guidance=f"Check the service log: journalctl -u {self.settings.fpm_service}"
        )

    # Queue workers

    def restart_queue(self):
        name = self.settings.queue_worker_name
        if not name:
            return False

        if not self.executor.test(f"[ -x {SUPERVISORCTL} ]"):
            print("WARNING: Supervisor not installed, skipping queue restart")
            return False

        group = shlex.quote(f"{name}:*")
        status, _, _ = self.executor.run(f"supervisorctl status {group} 2>&1 || echo NOT_FOUND")
        if 'NOT_FOUND' in status or 'no such' in status.lower():
            print(f"Queue worker {name} not configured yet, reloading supervisor config...")
            self._sudo('supervisorctl reread')
            self._sudo('supervisorctl update')
            return False

        self._sudo(f"supervisorctl restart {group}")
        status, _, _ = self.executor.run(f"supervisorctl status {group} 2>&1")
        if 'RUNNING' in status:
            print("✓ Queue workers restarted")
        else:
            print(f"WARNING: Queue workers may not be running correctly: {status.strip()}")
        return True

    def terminate_horizon(self):
        """Best-effort: Horizon may simply not be running."""
        if not self.settings.horizon_enabled or not self.has_current():
            return False
        stdout, stderr, returncode = self.executor.run(
            f"cd {quote_path(self.current_path)} && {self.settings.php_binary} artisan horizon:terminate 2>&1"
        )
        if returncode != 0 or 'Exception' in stdout:
            print(f"WARNING: Horizon terminate returned: {(stdout or stderr).strip()}")
            return False
        print("Horizon workers terminating...")
        return True

    # Activation hooks

    def pause(self):
        self.terminate_horizon()
        self.maintenance_down()

    def restart(self):
        self.restart_fpm()
        self.restart_queue()

    def resume(self):
        self.maintenance_up()

    def status(self):
        """Informational display; probe failures are reported, never raised."""
        sections = [
            ('Current Release', f"ls -la {quote_path(self.current_path)}"),
            ('Releases', f"ls -la {quote_path(self.deploy_path)}/releases"),
            ('Disk Usage', f"df -h {quote_path(self.deploy_path)}"),
            ('PHP-FPM', f"systemctl is-active {shlex.quote(self.settings.fpm_service)}"),
        ]
        output = {}
        for title, command in sections:
            stdout, stderr, returncode = self.executor.run(command)
            output[title] = stdout.strip() if returncode == 0 else f"unavailable: {(stderr or stdout).strip()}"
            print(f"\n{title}:")
            print(output[title])
        return output
