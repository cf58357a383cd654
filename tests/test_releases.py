"""Tests for release activation, rollback and pruning."""

import pytest

from shipwright.config import ReleaseSettings, ServiceSettings
from shipwright.deployment.releases import ReleaseManager
from shipwright.deployment.services import ServiceManager
from shipwright.deployment.verify import VerifyResult
from shipwright.errors import DeployError, RollbackFailure

from .conftest import NOW, PREVIOUS, RELEASE

OLDEST = '20241231000000'


def releases_listing(*names):
    return '\n'.join(names) + '\n'


@pytest.fixture
def settings():
    return ReleaseSettings(deploy_path='/srv/app', keep_releases=2)


@pytest.fixture
def manager(fake, settings):
    fake.when('[ -d /srv/app/releases/', 'true')
    return ReleaseManager(fake, settings, clock=lambda: NOW)


def active(fake, release):
    fake.when('readlink /srv/app/current', f"/srv/app/releases/{release}\n")


def test_list_releases_newest_first_and_ignores_noise(manager, fake):
    fake.when('ls -1 /srv/app/releases', releases_listing(PREVIOUS, 'lost+found', RELEASE, OLDEST))
    assert manager.list_releases() == [RELEASE, PREVIOUS, OLDEST]


def test_active_release(manager, fake):
    assert manager.active_release() is None
    active(fake, RELEASE)
    assert manager.active_release() == RELEASE


def test_create_release(manager, fake):
    assert manager.create_release() == RELEASE
    assert fake.ran(f'mkdir -p /srv/app/releases/{RELEASE}')


def test_create_release_refuses_existing(manager, fake):
    fake.when(f'[ -e /srv/app/releases/{RELEASE} ]', 'true')
    with pytest.raises(DeployError):
        manager.create_release()


def test_swap_is_a_single_rename(manager, fake):
    manager.swap(RELEASE)
    assert fake.commands[-1] == (
        f"cd /srv/app && ln -sfn releases/{RELEASE} current.tmp && mv -fT current.tmp current"
    )


class TestActivate:

    def services(self, fake):
        fake.when('[ -f /srv/app/current/artisan ]', 'true')
        fake.when('|| echo inactive', 'active')
        return ServiceManager(fake, ServiceSettings(), '/srv/app', sudo_password='sudo-pw', sleep=lambda s: None)

    def test_services_wrap_the_swap(self, fake, settings):
        manager = ReleaseManager(fake, settings, services=self.services(fake))
        fake.when('[ -d /srv/app/releases/', 'true')

        manager.activate(RELEASE)

        order = [
            next(i for i, c in enumerate(fake.commands) if marker in c)
            for marker in ('artisan down', 'mv -fT current.tmp current', 'systemctl restart', 'artisan up')
        ]
        assert order == sorted(order)
        restart = [c for c in fake.commands if 'systemctl restart' in c][0]
        assert "printf '%s\\n' sudo-pw | sudo -S" in restart

    def test_resume_runs_when_restart_fails(self, fake, settings):
        manager = ReleaseManager(fake, settings, services=self.services(fake))
        fake.when('[ -d /srv/app/releases/', 'true')
        fake.when('systemctl restart', returncode=1, stderr='Job failed')

        with pytest.raises(DeployError):
            manager.activate(RELEASE)
        assert fake.ran('artisan up')

    def test_missing_release(self, fake, settings):
        with pytest.raises(DeployError):
            ReleaseManager(fake, settings).activate('19990101000000')
        assert not fake.ran('ln -sfn')


class TestRollback:

    def test_single_release_is_a_noop(self, manager, fake, capsys):
        fake.when('ls -1 /srv/app/releases', releases_listing(RELEASE))
        active(fake, RELEASE)

        assert manager.rollback(unhealthy=True) is None
        assert not fake.ran('ln -sfn')
        assert 'No previous release' in capsys.readouterr().out

    def test_policy_gates_healthy_rollback(self, manager, fake):
        fake.when('ls -1 /srv/app/releases', releases_listing(RELEASE, PREVIOUS))
        active(fake, RELEASE)

        assert manager.rollback(unhealthy=False, auto_rollback=False) is None
        assert not fake.ran('ln -sfn')

    def test_unhealthy_rolls_back_to_release_before_active(self, manager, fake):
        fake.when('ls -1 /srv/app/releases', releases_listing(RELEASE, PREVIOUS, OLDEST))
        active(fake, RELEASE)

        assert manager.rollback(unhealthy=True) == PREVIOUS
        assert fake.ran(f'ln -sfn releases/{PREVIOUS} current.tmp')

    def test_target_is_relative_to_active_release(self, manager, fake):
        # the newest release was never activated
        fake.when('ls -1 /srv/app/releases', releases_listing(RELEASE, PREVIOUS, OLDEST))
        active(fake, PREVIOUS)

        assert manager.rollback(auto_rollback=True) == OLDEST

    def test_oldest_active_release_is_a_noop(self, manager, fake):
        fake.when('ls -1 /srv/app/releases', releases_listing(RELEASE, PREVIOUS))
        active(fake, PREVIOUS)

        assert manager.rollback(unhealthy=True) is None

    def test_failed_post_rollback_check(self, fake, settings):
        fake.when('[ -d /srv/app/releases/', 'true')
        fake.when('ls -1 /srv/app/releases', releases_listing(RELEASE, PREVIOUS))
        active(fake, RELEASE)
        manager = ReleaseManager(fake, settings, quick_verify=lambda: VerifyResult(passed=False, status_code='500'))

        with pytest.raises(RollbackFailure) as exc:
            manager.rollback(unhealthy=True)
        assert 'HTTP 500' in exc.value.message
        assert exc.value.context['release'] == PREVIOUS

    def test_failed_activation_is_a_rollback_failure(self, fake, settings):
        fake.when('ls -1 /srv/app/releases', releases_listing(RELEASE, PREVIOUS))
        active(fake, RELEASE)

        with pytest.raises(RollbackFailure):
            ReleaseManager(fake, settings).rollback(unhealthy=True)

    def test_rollback_to_unknown_release(self, manager, fake):
        fake.when('ls -1 /srv/app/releases', releases_listing(RELEASE, PREVIOUS))
        with pytest.raises(DeployError) as exc:
            manager.rollback_to('20200101000000')
        assert 'rollback:list' in exc.value.guidance

    def test_rollback_to_specific_release(self, manager, fake):
        fake.when('ls -1 /srv/app/releases', releases_listing(RELEASE, PREVIOUS, OLDEST))
        active(fake, RELEASE)
        assert manager.rollback_to(OLDEST) == OLDEST
        assert fake.ran(f'ln -sfn releases/{OLDEST} current.tmp')

    def test_cleanup_removes_failed_release(self, manager, fake):
        fake.when('ls -1 /srv/app/releases', releases_listing(RELEASE, PREVIOUS))
        active(fake, RELEASE)

        assert manager.cleanup() == RELEASE
        assert fake.ran(f'rm -rf /srv/app/releases/{RELEASE}')

    def test_discard_removes_only_that_release(self, manager, fake):
        manager.discard(RELEASE)
        assert fake.commands == [f'rm -rf /srv/app/releases/{RELEASE}']


class TestPrune:

    def test_keeps_newest(self, manager, fake):
        fake.when('ls -1 /srv/app/releases', releases_listing(RELEASE, PREVIOUS, OLDEST, '20241230000000'))
        active(fake, RELEASE)

        assert manager.prune_releases() == [OLDEST, '20241230000000']

    def test_never_removes_active_release(self, manager, fake):
        fake.when('ls -1 /srv/app/releases', releases_listing(RELEASE, PREVIOUS, OLDEST))
        active(fake, OLDEST)

        removed = manager.prune_releases(keep=1)

        assert OLDEST not in removed
        assert removed == [PREVIOUS]
        assert not fake.ran(f'rm -rf /srv/app/releases/{OLDEST}')
