"""Shared fixtures: a scripted executor and a two-stage configuration."""

import copy
from datetime import datetime

import pytest

from shipwright.config.environments import build_context
from shipwright.deployment.pipeline import Deployment
from shipwright.executors.base import BaseExecutor

NOW = datetime(2025, 1, 2, 3, 4, 5)
RELEASE = '20250102030405'
PREVIOUS = '20250101000000'

ENVIRON = {
    'DEPLOYER_SUDO_PASS': 'sudo-pw',
    'DEPLOYER_APP_KEY': 'base64:appkey',
    'DEPLOYER_DB_PASSWORD': 's3cr3t pw',
}

BASE_CONFIG = {
    'application': 'My App',
    'repository': 'git@example.com:acme/app.git',
    'keep_releases': 3,
    'db_connection': 'pgsql',
    'secrets': {
        'required': ['DEPLOYER_SUDO_PASS', 'DEPLOYER_APP_KEY'],
        'optional': {'DEPLOYER_DB_PASSWORD': ''},
    },
    'shared_env': {'MAIL_MAILER': 'smtp', 'MAIL_PASSWORD': '{db_password}'},
    'preflight': {'enabled': False},
    'environments': {
        'prod': {
            'hostname': 'app.example.com',
            'deploy_path': '/srv/app',
            'domain': 'example.com',
            'db_name': 'app_prod',
        },
        'staging': {
            'hostname': 'staging.example.com',
            'deploy_path': '/srv/staging',
            'domain': 'staging.example.com',
            'db_name': 'app_staging',
            'redis_db': 1,
            'env': {'APP_DEBUG': True},
        },
    },
}


class FakeExecutor(BaseExecutor):
    """
    Executor that records commands and answers them from scripted rules.

    A rule matches when its pattern is a substring of the executed command.
    The most recently added matching rule wins. A rule with several responses
    returns them in order and then keeps repeating the last one. Unmatched
    commands succeed with empty output.
    """

    name = 'fake'

    def __init__(self, verbose=False):
        super().__init__(verbose=verbose)
        self.rules = []
        self.commands = []
        self.files = {}
        self.downloads = []

    def when(self, pattern, stdout='', returncode=0, stderr=''):
        return self.when_sequence(pattern, [(stdout, returncode, stderr)])

    def when_sequence(self, pattern, responses):
        normalized = [r if isinstance(r, tuple) else (r, 0, '') for r in responses]
        self.rules.insert(0, (pattern, normalized))
        return self

    def _execute(self, command, timeout=None):
        self.commands.append(command)
        for pattern, responses in self.rules:
            if pattern in command:
                stdout, returncode, stderr = responses.pop(0) if len(responses) > 1 else responses[0]
                if callable(stdout):
                    stdout = stdout(command)
                return stdout, stderr, returncode
        return '', '', 0

    def download(self, remote_path, local_path):
        self.downloads.append((remote_path, local_path))
        return str(local_path)

    def read_file(self, path):
        self.commands.append(f"read_file {path}")
        return self.files.get(path, '').strip()

    def write_file(self, path, content, mode=None, sensitive=False):
        self.commands.append(f"write_file {path}")
        self.files[path] = content

    def ran(self, pattern):
        return any(pattern in command for command in self.commands)

    def count(self, pattern):
        return sum(1 for command in self.commands if pattern in command)


@pytest.fixture
def config():
    return copy.deepcopy(BASE_CONFIG)


@pytest.fixture
def environ():
    return dict(ENVIRON)


@pytest.fixture
def ctx(config, environ):
    return build_context(config, 'prod', environ=environ)


@pytest.fixture
def fake():
    return FakeExecutor()


@pytest.fixture
def local_fake():
    return FakeExecutor()


@pytest.fixture
def no_sleep():
    calls = []
    return calls.append


@pytest.fixture
def make_deployment(fake, local_fake, no_sleep):
    def factory(ctx, confirm=lambda prompt: False, storage=None):
        return Deployment(
            ctx, fake, local_executor=local_fake, storage=storage,
            confirm=confirm, sleep=no_sleep, clock=lambda: NOW
        )
    return factory
