"""Session token lifecycle against the in-memory session store.

Time is driven by the fake clock shared between validator and store, so
expiry scenarios run without sleeping.
"""

import itertools
from datetime import timedelta

import pytest

from userservice.service.errors import (
    ForbiddenError,
    TooManySessionsError,
    ValidationError,
)
from userservice.service.sessions import SessionValidator
from userservice.storage.memory import MemorySessionStore


@pytest.fixture
def kv(clock):
    return MemorySessionStore(clock=clock)


@pytest.fixture
def validator(kv, settings, reporter, clock):
    counter = itertools.count(1)
    return SessionValidator(
        kv,
        settings,
        reporter=reporter,
        clock=clock,
        token_factory=lambda: f"t{next(counter)}",
    )


class TestIssueAndValidate:
    async def test_issue_then_validate(self, validator, kv, clock):
        grant = await validator.login("u1", "10.0.0.1")
        assert grant.user_id == "u1"
        assert grant.expires_at == clock.now + timedelta(minutes=15)
        assert await kv.hgetall(f"token:{grant.token}") == {"userid": "u1", "remote": "10.0.0.1"}
        assert await kv.smembers("logins:u1") == [f"token:{grant.token}"]

        refreshed = await validator.valid(grant.token)
        assert refreshed.token == grant.token
        assert refreshed.ttl_seconds == 15 * 60

    async def test_never_issued_token(self, validator, reporter):
        with pytest.raises(ForbiddenError):
            await validator.valid("made-up")
        with pytest.raises(ForbiddenError):
            await validator.valid("")
        assert reporter.count("validate_session", "forbidden") == 2

    async def test_expired_after_ttl(self, validator, clock):
        grant = await validator.login("u1", "10.0.0.1")
        clock.advance(minutes=16)
        with pytest.raises(ForbiddenError):
            await validator.valid(grant.token)

    async def test_validation_slides_expiry(self, validator, clock):
        grant = await validator.login("u1", "10.0.0.1")
        clock.advance(minutes=10)
        refreshed = await validator.valid(grant.token)
        assert refreshed.expires_at == clock.now + timedelta(minutes=15)
        clock.advance(minutes=10)
        await validator.valid(grant.token)
        clock.advance(minutes=15)
        with pytest.raises(ForbiddenError):
            await validator.valid(grant.token)

    async def test_empty_user_id(self, validator):
        with pytest.raises(ValidationError):
            await validator.login("", "10.0.0.1")


class TestLogout:
    async def test_logout_revokes(self, validator, kv, reporter):
        grant = await validator.login("u1", "10.0.0.1")
        await validator.logout(grant.token)
        with pytest.raises(ForbiddenError):
            await validator.valid(grant.token)
        assert not await kv.exists(f"token:{grant.token}")
        assert await kv.smembers("logins:u1") == []
        assert reporter.count("revoke_session", "none") == 1

    async def test_logout_unknown_token(self, validator):
        with pytest.raises(ForbiddenError):
            await validator.logout("made-up")

    async def test_logout_twice(self, validator):
        grant = await validator.login("u1", "10.0.0.1")
        await validator.logout(grant.token)
        with pytest.raises(ForbiddenError):
            await validator.logout(grant.token)

    async def test_logout_leaves_other_sessions(self, validator):
        first = await validator.login("u1", "10.0.0.1")
        second = await validator.login("u1", "10.0.0.2")
        await validator.logout(first.token)
        await validator.valid(second.token)


class TestConcurrencyCap:
    async def test_cap_without_stale_sessions(self, validator, kv, reporter, settings):
        for _ in range(settings.max_concurrent_sessions):
            await validator.login("u1", "10.0.0.1")
        with pytest.raises(TooManySessionsError) as exc:
            await validator.login("u1", "10.0.0.1")
        assert exc.value.status_code == 429
        assert len(await kv.smembers("logins:u1")) == settings.max_concurrent_sessions
        # No sixth token was written
        assert not await kv.exists("token:t6")
        assert reporter.count("issue_session", "too_many_sessions") == 1

    async def test_cap_is_per_user(self, validator, settings):
        for _ in range(settings.max_concurrent_sessions):
            await validator.login("u1", "10.0.0.1")
        await validator.login("u2", "10.0.0.1")

    async def test_stale_session_is_reclaimed(self, validator, kv, clock, settings):
        oldest = await validator.login("u1", "10.0.0.1")
        clock.advance(minutes=10)
        for _ in range(settings.max_concurrent_sessions - 1):
            await validator.login("u1", "10.0.0.1")
        clock.advance(minutes=6)

        fresh = await validator.login("u1", "10.0.0.1")
        members = await kv.smembers("logins:u1")
        assert len(members) <= settings.max_concurrent_sessions
        assert f"token:{oldest.token}" not in members
        assert f"token:{fresh.token}" in members

    async def test_logout_frees_capacity(self, validator, settings):
        grants = [
            await validator.login("u1", "10.0.0.1")
            for _ in range(settings.max_concurrent_sessions)
        ]
        await validator.logout(grants[0].token)
        await validator.login("u1", "10.0.0.1")


class TestPads:
    async def test_issue_and_redeem(self, validator, kv):
        pad = await validator.issue_pad("u1", "10.0.0.1", "/reset")
        assert await kv.hgetall(f"pad:{pad}") == {
            "userid": "u1",
            "remote": "10.0.0.1",
            "redirect": "/reset",
        }
        assert f"pad:{pad}" in await kv.smembers("logins:u1")
        assert await validator.redeem_pad(pad) == "/reset"

    async def test_unknown_pad(self, validator):
        with pytest.raises(ForbiddenError):
            await validator.redeem_pad("made-up")
        with pytest.raises(ForbiddenError):
            await validator.complete_pad("made-up")

    async def test_pad_expires(self, validator, clock):
        pad = await validator.issue_pad("u1", "10.0.0.1", "/reset")
        clock.advance(minutes=16)
        with pytest.raises(ForbiddenError):
            await validator.redeem_pad(pad)

    async def test_pad_counts_against_cap(self, validator, settings):
        for _ in range(settings.max_concurrent_sessions - 1):
            await validator.login("u1", "10.0.0.1")
        await validator.issue_pad("u1", "10.0.0.1", "/reset")
        with pytest.raises(TooManySessionsError):
            await validator.login("u1", "10.0.0.1")

    async def test_complete_revokes_everything(self, validator, kv):
        sessions = [await validator.login("u1", "10.0.0.1") for _ in range(2)]
        other = await validator.login("u2", "10.0.0.1")
        pad = await validator.issue_pad("u1", "10.0.0.1", "/reset")

        assert await validator.complete_pad(pad) == "u1"
        for grant in sessions:
            with pytest.raises(ForbiddenError):
                await validator.valid(grant.token)
        with pytest.raises(ForbiddenError):
            await validator.redeem_pad(pad)
        assert await kv.smembers("logins:u1") == []
        await validator.valid(other.token)

    async def test_complete_for_wrong_owner(self, validator):
        grant = await validator.login("u1", "10.0.0.1")
        pad = await validator.issue_pad("u1", "10.0.0.1", "/reset")
        with pytest.raises(ForbiddenError):
            await validator.complete_pad(pad, owner="u2")
        await validator.valid(grant.token)
        assert await validator.redeem_pad(pad) == "/reset"

    async def test_clear_logins_counts(self, validator):
        await validator.login("u1", "10.0.0.1")
        await validator.issue_pad("u1", "10.0.0.1", "/reset")
        assert await validator.clear_logins("u1") == 2
        assert await validator.clear_logins("u1") == 0
