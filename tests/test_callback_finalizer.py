from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from spendsense.auth.callback import CallbackFinalizer, CallbackState, parse_callback_params
from spendsense.auth.codec import ReturnPathCodec
from spendsense.auth.errors import ConfigurationError, MalformedStateError, ProviderError, RetryExhausted
from spendsense.auth.models import SessionResponse
from spendsense.auth.signin import SignInInitiator
from spendsense.auth.storage import MemoryStorage, ReturnPathBackup

CALLBACK = "https://app.example.test/auth/callback"


async def _settle() -> None:
    # Lets zero-delay timers (failure redirect) fire.
    await asyncio.sleep(0.01)


def _finalizer(provider, navigator, cfg, backup=None) -> CallbackFinalizer:
    return CallbackFinalizer(provider, navigator, config=cfg, backup=backup or ReturnPathBackup(MemoryStorage()))


def test_parse_callback_params_reads_query_and_fragment() -> None:
    params = parse_callback_params(f"{CALLBACK}?state=abc&code=xyz#error=server_error&state=frag")
    assert params == {"state": "abc", "code": "xyz", "error": "server_error"}


@pytest.mark.asyncio
async def test_sign_in_round_trip_navigates_to_return_path(auth_config, fake_provider, navigator, user_session) -> None:
    storage = MemoryStorage()
    backup = ReturnPathBackup(storage)
    initiator = SignInInitiator(fake_provider, config=auth_config, backup=backup)
    await initiator.sign_in(return_to="/insights")
    redirect_url, state = fake_provider.redirects[0]

    fake_provider.session = user_session
    finalizer = _finalizer(fake_provider, navigator, auth_config, backup)
    outcome = await finalizer.run(f"{redirect_url}?state={state}&code=abc")

    assert outcome.state is CallbackState.RESOLVED
    assert outcome.resolved is True
    assert outcome.destination == "/insights"
    assert navigator.calls == [("/insights", True)]
    assert backup.load() is None
    assert len(storage) == 0


@pytest.mark.asyncio
async def test_provider_error_params_fail_without_session_request(auth_config, fake_provider, navigator) -> None:
    backup = ReturnPathBackup(MemoryStorage())
    backup.save("/alerts")
    finalizer = _finalizer(fake_provider, navigator, auth_config, backup)

    outcome = await finalizer.run(
        f"{CALLBACK}?error=access_denied&error_code=403&error_description=User+denied+access"
    )

    assert outcome.state is CallbackState.FAILED
    assert outcome.message == "User denied access"
    assert isinstance(outcome.error, ProviderError)
    assert fake_provider.session_calls == 0
    assert backup.load() is None
    assert navigator.calls == []

    await _settle()
    assert navigator.calls == [("/", True)]


@pytest.mark.asyncio
async def test_error_in_fragment_is_detected(auth_config, fake_provider, navigator) -> None:
    outcome = await _finalizer(fake_provider, navigator, auth_config).run(f"{CALLBACK}#error=server_error")
    assert outcome.state is CallbackState.FAILED
    assert outcome.message == "server_error"
    assert fake_provider.session_calls == 0


@pytest.mark.asyncio
async def test_corrupted_state_falls_back_to_backup(auth_config, fake_provider, navigator, user_session) -> None:
    backup = ReturnPathBackup(MemoryStorage())
    backup.save("/settings")
    fake_provider.session = user_session

    finalizer = _finalizer(fake_provider, navigator, auth_config, backup)
    outcome = await finalizer.run(f"{CALLBACK}?state=corrupted")

    assert outcome.state is CallbackState.RESOLVED
    assert navigator.calls == [("/settings", True)]
    assert backup.load() is None
    assert isinstance(finalizer.state_error, MalformedStateError)


@pytest.mark.asyncio
async def test_state_wins_over_backup(auth_config, fake_provider, navigator, user_session) -> None:
    backup = ReturnPathBackup(MemoryStorage())
    backup.save("/settings")
    fake_provider.session = user_session
    state = ReturnPathCodec("test-state-secret").encode("/alerts")

    await _finalizer(fake_provider, navigator, auth_config, backup).run(f"{CALLBACK}?state={state}")
    assert navigator.calls == [("/alerts", True)]


@pytest.mark.asyncio
async def test_stale_state_falls_back_to_backup(auth_config, fake_provider, navigator, user_session) -> None:
    backup = ReturnPathBackup(MemoryStorage())
    backup.save("/settings")
    fake_provider.session = user_session
    state = ReturnPathCodec("test-state-secret").encode("/alerts", issued_at=0)

    await _finalizer(fake_provider, navigator, auth_config, backup).run(f"{CALLBACK}?state={state}")
    assert navigator.calls == [("/settings", True)]


@pytest.mark.asyncio
async def test_no_state_and_no_backup_defaults_to_dashboard(auth_config, fake_provider, navigator, user_session) -> None:
    fake_provider.session = user_session
    await _finalizer(fake_provider, navigator, auth_config).run(CALLBACK)
    assert navigator.calls == [("/dashboard", True)]


@pytest.mark.asyncio
async def test_retries_exactly_once_then_fails(auth_config, fake_provider, navigator) -> None:
    backup = ReturnPathBackup(MemoryStorage())
    backup.save("/insights")
    finalizer = _finalizer(fake_provider, navigator, auth_config, backup)

    outcome = await finalizer.run(CALLBACK)

    assert fake_provider.session_calls == 2
    assert outcome.session_requests == 2
    assert outcome.state is CallbackState.FAILED
    assert isinstance(outcome.error, RetryExhausted)
    assert backup.load() is None

    await _settle()
    assert navigator.calls == [("/", True)]


@pytest.mark.asyncio
async def test_session_on_retry_resolves(auth_config, fake_provider, navigator, user_session) -> None:
    fake_provider.responses = [SessionResponse(), SessionResponse(session=user_session)]
    finalizer = _finalizer(fake_provider, navigator, auth_config)

    outcome = await finalizer.run(CALLBACK)

    assert outcome.state is CallbackState.RESOLVED
    assert fake_provider.session_calls == 2
    assert navigator.calls == [("/dashboard", True)]


@pytest.mark.asyncio
async def test_error_on_retry_fails(auth_config, fake_provider, navigator) -> None:
    fake_provider.responses = [SessionResponse(), SessionResponse(error=ProviderError("boom"))]
    outcome = await _finalizer(fake_provider, navigator, auth_config).run(CALLBACK)
    assert outcome.state is CallbackState.FAILED
    assert isinstance(outcome.error, ProviderError)
    assert fake_provider.session_calls == 2


@pytest.mark.asyncio
async def test_provider_error_fails_without_retry(auth_config, fake_provider, navigator) -> None:
    fake_provider.responses = [SessionResponse(error=ProviderError("service unavailable"))]
    outcome = await _finalizer(fake_provider, navigator, auth_config).run(CALLBACK)

    assert outcome.state is CallbackState.FAILED
    assert outcome.message == "Sign-in failed. Redirecting…"
    assert fake_provider.session_calls == 1
    await _settle()
    assert navigator.calls == [("/", True)]


@pytest.mark.asyncio
async def test_provider_exception_is_treated_as_failure(auth_config, fake_provider, navigator) -> None:
    fake_provider.responses = [RuntimeError("unexpected")]
    outcome = await _finalizer(fake_provider, navigator, auth_config).run(CALLBACK)
    assert outcome.state is CallbackState.FAILED
    assert isinstance(outcome.error, ProviderError)


@pytest.mark.asyncio
async def test_unexpected_exception_is_treated_as_failure(auth_config, fake_provider, navigator) -> None:
    class _ExplodingBackup(ReturnPathBackup):
        def load(self):  # type: ignore[no-untyped-def]
            raise RuntimeError("bug")

    backup = _ExplodingBackup(MemoryStorage())
    outcome = await _finalizer(fake_provider, navigator, auth_config, backup).run(CALLBACK)

    assert outcome.state is CallbackState.FAILED
    assert outcome.message == "Unexpected error. Redirecting…"
    await _settle()
    assert navigator.calls == [("/", True)]


@pytest.mark.asyncio
async def test_unconfigured_provider_fails(auth_config, navigator) -> None:
    outcome = await _finalizer(None, navigator, auth_config).run(f"{CALLBACK}?code=abc")
    assert outcome.state is CallbackState.FAILED
    assert outcome.resolved is False
    assert isinstance(outcome.error, ConfigurationError)
    assert outcome.session_requests == 0
    assert outcome.message == "Sign-in is not configured. Redirecting…"
    await _settle()
    assert navigator.calls == [("/", True)]


@pytest.mark.asyncio
async def test_runs_only_once(auth_config, fake_provider, navigator, user_session) -> None:
    fake_provider.session = user_session
    finalizer = _finalizer(fake_provider, navigator, auth_config)
    await finalizer.run(CALLBACK)
    with pytest.raises(RuntimeError):
        await finalizer.run(CALLBACK)


@pytest.mark.asyncio
async def test_teardown_during_session_request_discards_result(
    auth_config, fake_provider, navigator, user_session
) -> None:
    fake_provider.session = user_session
    fake_provider.gate = asyncio.Event()
    backup = ReturnPathBackup(MemoryStorage())
    backup.save("/insights")
    finalizer = _finalizer(fake_provider, navigator, auth_config, backup)

    task = asyncio.create_task(finalizer.run(CALLBACK))
    await asyncio.sleep(0)
    assert finalizer.state is CallbackState.AWAITING_SESSION

    finalizer.close()
    fake_provider.gate.set()
    outcome = await task
    await _settle()

    assert outcome.state is CallbackState.AWAITING_SESSION
    assert navigator.calls == []
    assert backup.load() == "/insights"


@pytest.mark.asyncio
async def test_teardown_during_retry_delay_cancels_retry(auth_config, fake_provider, navigator) -> None:
    cfg = replace(auth_config, callback_retry_delay_ms=5_000)
    finalizer = _finalizer(fake_provider, navigator, cfg)

    task = asyncio.create_task(finalizer.run(CALLBACK))
    for _ in range(10):
        await asyncio.sleep(0)
        if finalizer.state is CallbackState.RETRYING:
            break
    assert finalizer.state is CallbackState.RETRYING
    assert finalizer.message == "Finishing up…"

    finalizer.close()
    outcome = await asyncio.wait_for(task, timeout=1)

    assert outcome.state is CallbackState.RETRYING
    assert fake_provider.session_calls == 1
    assert navigator.calls == []


@pytest.mark.asyncio
async def test_teardown_cancels_delayed_failure_redirect(auth_config, fake_provider, navigator) -> None:
    cfg = replace(auth_config, failure_redirect_delay_ms=50)
    finalizer = _finalizer(fake_provider, navigator, cfg)
    outcome = await finalizer.run(f"{CALLBACK}?error=access_denied")
    assert outcome.state is CallbackState.FAILED

    finalizer.close()
    await asyncio.sleep(0.1)
    assert navigator.calls == []
