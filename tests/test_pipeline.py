"""End-to-end pipeline runs against a scripted host."""

import pytest

from shipwright.config import build_context
from shipwright.deployment.pipeline import DeployPipeline, LockPhase, Phase
from shipwright.errors import (
    CommandError, DeployLocked, MigrationFailure, MissingSecret, PreflightFailure, RollbackFailure, VerificationFailure
)

from .conftest import PREVIOUS, RELEASE


def script_host(fake, local_fake, active=PREVIOUS):
    fake.when('ls -1 /srv/app/releases', f"{RELEASE}\n{PREVIOUS}\n")
    fake.when('readlink /srv/app/current', f"/srv/app/releases/{active}\n")
    fake.when('[ -d /srv/app/releases/', 'true')
    fake.when('[ -f /srv/app/current/artisan ]', 'true')
    fake.when('|| echo inactive', 'active')
    fake.when('migrate:status --pending', 'INFO  Nothing to migrate.')
    local_fake.when('curl', '<html>ok</html>\n200')


def first_index(commands, marker):
    return next(i for i, command in enumerate(commands) if marker in command)


class TestSuccessfulDeploy:

    def test_phases_run_in_order(self, ctx, fake, local_fake, make_deployment):
        script_host(fake, local_fake)

        result = DeployPipeline(make_deployment(ctx)).run()

        assert result.ok
        assert result.release == RELEASE
        markers = [
            'set -o noclobber', 'git clone', 'write_file /srv/app/shared/.env', 'composer install',
            'npm ci', 'npm run build', 'migrate:status --pending', 'mv -fT current.tmp current',
            'rm -f /srv/app/.dep/deploy.lock',
        ]
        positions = [first_index(fake.commands, marker) for marker in markers]
        assert positions == sorted(positions)
        assert local_fake.count('curl') == 1

    def test_env_file_is_written_with_secrets(self, ctx, fake, local_fake, make_deployment, capsys):
        script_host(fake, local_fake)

        DeployPipeline(make_deployment(ctx)).run()

        env = fake.files['/srv/app/shared/.env']
        assert 'APP_KEY=base64:appkey\n' in env
        assert 'DB_PASSWORD="s3cr3t pw"\n' in env
        assert 'APP_URL=https://example.com\n' in env
        assert 's3cr3t' not in capsys.readouterr().out

    def test_release_checkout(self, ctx, fake, local_fake, make_deployment):
        script_host(fake, local_fake)

        DeployPipeline(make_deployment(ctx)).run()

        assert fake.ran(
            f"git clone --depth 1 --branch main git@example.com:acme/app.git /srv/app/releases/{RELEASE}"
        )
        assert fake.ran(f"ln -sfn /srv/app/shared/storage /srv/app/releases/{RELEASE}/storage")
        assert fake.ran(f"ln -sfn /srv/app/shared/.env /srv/app/releases/{RELEASE}/.env")


class TestFailedDeploy:

    def test_unhealthy_release_is_rolled_back(self, ctx, fake, local_fake, make_deployment):
        script_host(fake, local_fake, active=RELEASE)
        # the full check inspects the body; the post-rollback quick check does not
        local_fake.when('curl', '<b>Fatal error:</b> Class not found\n200')

        result = DeployPipeline(make_deployment(ctx)).run()

        assert result.status == 'rolled_back'
        assert result.rolled_back_to == PREVIOUS
        assert isinstance(result.error, VerificationFailure)
        assert fake.ran(f"ln -sfn releases/{PREVIOUS} current.tmp")
        assert fake.ran('rm -f /srv/app/.dep/deploy.lock')

    def test_rollback_that_also_fails_needs_manual_intervention(self, ctx, fake, local_fake, make_deployment):
        script_host(fake, local_fake, active=RELEASE)
        local_fake.when('curl', 'Server Error\n500')

        result = DeployPipeline(make_deployment(ctx)).run()

        assert result.status == 'failed'
        assert isinstance(result.error, RollbackFailure)
        assert 'Manual intervention' in result.error.guidance
        assert fake.ran('rm -f /srv/app/.dep/deploy.lock')

    def test_health_rollback_can_be_disabled(self, config, environ, fake, local_fake, make_deployment):
        config['verify'] = {'auto_rollback': False}
        ctx = build_context(config, 'prod', environ=environ)
        script_host(fake, local_fake, active=RELEASE)
        local_fake.when('curl', 'Server Error\n500')

        result = DeployPipeline(make_deployment(ctx)).run()

        assert result.status == 'failed'
        assert result.rolled_back_to is None
        assert not fake.ran(f"ln -sfn releases/{PREVIOUS}")

    def test_migration_failure_leaves_active_release_untouched(self, ctx, fake, local_fake, make_deployment):
        script_host(fake, local_fake)
        fake.when('migrate:status --pending', '2025_01_01_000000_add_index ... Pending')
        fake.when('stat -c%s', '20480')
        fake.when('artisan migrate --force', 'SQLSTATE[HY000]', returncode=1)

        result = DeployPipeline(make_deployment(ctx)).run()

        assert result.status == 'failed'
        assert isinstance(result.error, MigrationFailure)
        assert result.error.backup_path.endswith('app_prod_prod_2025-01-02-030405.sql.gz')
        assert not fake.ran('ln -sfn releases/')
        assert not fake.ran('gunzip')
        assert fake.ran('rm -f /srv/app/.dep/deploy.lock')

    def test_unfinished_release_is_removed(self, ctx, fake, local_fake, make_deployment):
        script_host(fake, local_fake)
        fake.when('composer install', returncode=1, stderr='Your requirements could not be resolved')

        result = DeployPipeline(make_deployment(ctx)).run()

        discard = f'rm -rf /srv/app/releases/{RELEASE}'
        assert result.status == 'failed'
        assert discard in fake.commands
        assert not fake.ran(f'rm -rf /srv/app/releases/{PREVIOUS}')
        assert not fake.ran('ln -sfn releases/')
        assert fake.commands.index(discard) < first_index(fake.commands, 'rm -f /srv/app/.dep/deploy.lock')

    def test_failure_removing_unfinished_release_is_only_a_warning(self, ctx, fake, local_fake, make_deployment, capsys):
        script_host(fake, local_fake)
        fake.when('composer install', returncode=1)
        d = make_deployment(ctx)

        def refuse(release):
            raise CommandError(f'rm -rf /srv/app/releases/{release}', 1, stderr='Permission denied')

        d.releases.discard = refuse

        result = DeployPipeline(d).run()

        assert result.status == 'failed'
        assert 'WARNING: Could not remove unfinished release' in capsys.readouterr().out
        assert fake.ran('rm -f /srv/app/.dep/deploy.lock')

    def test_preflight_failure_touches_nothing(self, config, environ, fake, local_fake, make_deployment):
        config['preflight'] = {'enabled': True}
        ctx = build_context(config, 'prod', environ=environ)
        script_host(fake, local_fake)

        result = DeployPipeline(make_deployment(ctx)).run()

        assert isinstance(result.error, PreflightFailure)
        assert str(result.error) == 'PHP-FPM: Check did not return a result'
        assert not fake.ran('noclobber')
        assert not fake.ran('git clone')
        assert not fake.ran('deploy.lock')

    def test_locked_stage(self, ctx, fake, local_fake, make_deployment):
        script_host(fake, local_fake)
        fake.when('set -o noclobber', returncode=1)
        fake.files['/srv/app/.dep/deploy.lock'] = 'alice@laptop prod 2025-01-02T03:00:00\n'

        result = DeployPipeline(make_deployment(ctx)).run()

        assert isinstance(result.error, DeployLocked)
        assert 'alice@laptop' in result.error.message
        assert not fake.ran('rm -f /srv/app/.dep/deploy.lock')
        assert not fake.ran('git clone')

    def test_missing_secrets_abort_before_any_command(self, config, fake, make_deployment):
        ctx = build_context(config, 'prod', environ={'DEPLOYER_APP_KEY': 'k'})
        with pytest.raises(MissingSecret) as exc:
            make_deployment(ctx)
        assert exc.value.missing == ['DEPLOYER_SUDO_PASS']
        assert fake.commands == []

    def test_unexpected_errors_propagate_after_cleanup(self, ctx, fake, local_fake, make_deployment):
        script_host(fake, local_fake)
        d = make_deployment(ctx)

        class Boom(Phase):
            title = 'BOOM'

            def run(self, state):
                raise RuntimeError('unexpected')

        with pytest.raises(RuntimeError):
            DeployPipeline(d, phases=[LockPhase(d), Boom(d)]).run()
        assert fake.ran('rm -f /srv/app/.dep/deploy.lock')


def test_verify_health_without_url(config, environ, fake, local_fake, make_deployment):
    del config['environments']['prod']['domain']
    d = make_deployment(build_context(config, 'prod', environ=environ))
    assert d.verify_health() is None
    assert local_fake.commands == []
