"""Tests for HTTP health verification and deep probes."""

import pytest

from shipwright.deployment.pipeline import RunState
from shipwright.deployment.verify import HealthVerifier, curl_command, find_error_signature, split_response
from shipwright.config.settings import DEFAULT_ERROR_PATTERNS
from shipwright.errors import VerificationFailure

URL = 'https://example.com/'
CODES = ['200', '301', '302']


@pytest.fixture
def state():
    return RunState(stage='prod')


@pytest.fixture
def verifier(fake, local_fake, state, no_sleep):
    return HealthVerifier(
        fake, local_fake, run_state=state, log_file='/srv/app/shared/storage/logs/laravel.log',
        log_lines=5, sleep=no_sleep
    )


def verify(verifier, **kwargs):
    options = dict(retries=3, retry_delay=0, error_signatures=DEFAULT_ERROR_PATTERNS)
    options.update(kwargs)
    return verifier.verify(URL, CODES, **options)


class TestResponseParsing:

    def test_split_response(self):
        assert split_response('<html>ok</html>\n200') == ('200', '<html>ok</html>')
        assert split_response('line one\nline two\n302\n') == ('302', 'line one\nline two')

    def test_connection_failure(self):
        assert split_response('000\n000') == ('000', '')
        assert split_response('') == ('000', '')

    def test_error_signature_is_case_insensitive(self):
        assert find_error_signature('PHP FATAL ERROR: boom', ['Fatal error:']) == 'Fatal error:'
        assert find_error_signature('all good', ['Fatal error:']) is None

    def test_curl_command(self):
        command = curl_command(URL, 15, insecure=True)
        assert '--max-time 15' in command
        assert '--insecure' in command
        assert "%{http_code}" in command
        assert '--insecure' not in curl_command(URL, 15, insecure=False)


def test_passes_on_first_good_response(verifier, local_fake, state):
    local_fake.when('curl', '<html>Welcome</html>\n200')

    result = verify(verifier)

    assert result.passed
    assert len(result.attempts) == 1
    assert result.status_code == '200'
    assert not state.health_check_failed
    assert local_fake.count('curl') == 1


def test_200_with_error_signature_fails(verifier, local_fake, state):
    local_fake.when('curl', '<b>Fatal error:</b> Uncaught Error in /var/www\n200')

    result = verify(verifier)

    assert not result.passed
    assert len(result.attempts) == 3
    assert result.last.reason == 'Response contains error pattern: Fatal error:'
    assert state.health_check_failed


def test_body_check_can_be_disabled(verifier, local_fake):
    local_fake.when('curl', 'Fatal error: but ignored\n200')
    assert verify(verifier, check_body=False).passed


def test_retries_until_healthy(verifier, local_fake, no_sleep):
    local_fake.when_sequence('curl', ['\n502', 'Whoops, looks like something went wrong\n500', 'ok\n200'])

    result = verify(verifier, retry_delay=2)

    assert result.passed
    assert [attempt.status_code for attempt in result.attempts] == ['502', '500', '200']


def test_exhausted_retries_report_last_attempt(verifier, local_fake, fake, state, capsys):
    local_fake.when_sequence('curl', ['\n502', 'maintenance\n503'])
    fake.when('tail -n 5', '[2025-01-02] production.ERROR: boom')

    result = verify(verifier, retries=2)

    assert not result.passed
    assert result.status_code == '503'
    assert result.body == 'maintenance'
    assert result.last.reason == 'HTTP 503'
    assert state.health_check_failed
    out = capsys.readouterr().out
    assert 'production.ERROR: boom' in out


def test_wait_before_first_attempt(fake, local_fake):
    delays = []
    verifier = HealthVerifier(fake, local_fake, sleep=delays.append)
    local_fake.when('curl', 'ok\n200')

    verifier.verify(URL, CODES, wait=5, retries=1)

    assert delays == [5]


class TestDeepChecks:

    @pytest.fixture(autouse=True)
    def healthy_http(self, local_fake):
        local_fake.when('curl', 'ok\n200')

    def test_all_probes_pass(self, verifier, fake):
        fake.when('artisan tinker', 'ok')

        result = verify(verifier, deep=True, release_path='/srv/app/current')

        assert result.passed and result.deep_checked
        assert fake.count('artisan tinker') == 3

    @pytest.mark.parametrize('failing', ['Redis::ping', 'Cache::put'])
    def test_any_probe_failure_is_fatal(self, verifier, fake, state, failing):
        fake.when('artisan tinker', 'ok')
        fake.when(failing, 'Connection refused', returncode=1)

        with pytest.raises(VerificationFailure) as exc:
            verify(verifier, deep=True, release_path='/srv/app/current')

        assert state.health_check_failed
        assert exc.value.context['probe'] in ('Redis', 'Cache')

    def test_probe_must_print_ok(self, verifier, fake):
        fake.when('artisan tinker', 'Psy Shell v0.12\nnull')
        with pytest.raises(VerificationFailure):
            verify(verifier, deep=True, release_path='/srv/app/current')
