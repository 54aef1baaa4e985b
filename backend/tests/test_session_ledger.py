"""Tests for the session ledger on a throwaway SQLite database."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from sessionguard.models.session import UserSession
from sessionguard.models.user import User
from sessionguard.services.credentials import CredentialStore
from sessionguard.services.session_ledger import SessionLedger, hash_session_token


async def _user(session, email="ledger@test.com"):
    user = await CredentialStore(session).create_user(email, "Str0ng!Secret#42")
    await session.commit()
    return user.id


def _later(**kwargs):
    return datetime.now(timezone.utc) + timedelta(**kwargs)


@pytest.mark.asyncio
async def test_create_and_find(session_maker):
    async with session_maker() as session:
        uid = await _user(session)
        ledger = SessionLedger(session)
        record = await ledger.create_session(uid, "refresh-1", _later(days=7), "10.0.0.1", "pytest")
        await session.commit()
        assert record.token_hash == hash_session_token("refresh-1")
        found = await ledger.find_by_session_token("refresh-1")
        assert found is not None
        assert found.subject_id == uid
        assert found.source_ip == "10.0.0.1"
        assert found.expires_at.tzinfo is not None
        assert await ledger.find_by_session_token("unknown") is None


@pytest.mark.asyncio
async def test_expired_record_is_not_found(session_maker):
    async with session_maker() as session:
        uid = await _user(session)
        ledger = SessionLedger(session)
        await ledger.create_session(uid, "old", _later(seconds=-1))
        await session.commit()
        assert await ledger.find_by_session_token("old") is None
        assert await ledger.count_for_subject(uid) == 0


@pytest.mark.asyncio
async def test_rotate_consumes_old_token_once(session_maker):
    async with session_maker() as session:
        uid = await _user(session)
        ledger = SessionLedger(session)
        await ledger.create_session(uid, "r1", _later(days=7))
        await session.commit()

        rotated = await ledger.rotate("r1", "r2", _later(days=7), subject_id=uid)
        await session.commit()
        assert rotated is not None
        assert rotated.subject_id == uid
        assert await ledger.find_by_session_token("r1") is None
        assert await ledger.find_by_session_token("r2") is not None

        assert await ledger.rotate("r1", "r3", _later(days=7), subject_id=uid) is None
        await session.commit()
        assert await ledger.find_by_session_token("r3") is None
        assert await ledger.count_for_subject(uid) == 1


@pytest.mark.asyncio
async def test_rotate_looks_up_owner_and_refuses_foreign_subject(session_maker):
    async with session_maker() as session:
        uid = await _user(session)
        other = await _user(session, "other@test.com")
        ledger = SessionLedger(session)
        await ledger.create_session(uid, "r1", _later(days=7))
        await session.commit()

        assert await ledger.rotate("r1", "r2", _later(days=7), subject_id=other) is None
        rotated = await ledger.rotate("r1", "r2", _later(days=7))
        await session.commit()
        assert rotated is not None and rotated.subject_id == uid
        assert await ledger.rotate("missing", "r9", _later(days=7)) is None


@pytest.mark.asyncio
async def test_concurrent_rotations_have_one_winner(session_maker):
    """Two connections race to rotate the same token: exactly one rotation lands."""
    async with session_maker() as setup:
        uid = await _user(setup)
        await SessionLedger(setup).create_session(uid, "r1", _later(days=7))
        await setup.commit()

    async def rotate_to(new_token):
        async with session_maker() as session:
            rotated = await SessionLedger(session).rotate("r1", new_token, _later(days=7), subject_id=uid)
            await session.commit()
            return rotated

    results = await asyncio.gather(rotate_to("a"), rotate_to("b"))
    assert sum(r is not None for r in results) == 1
    async with session_maker() as session:
        assert await SessionLedger(session).count_for_subject(uid) == 1


@pytest.mark.asyncio
async def test_invalidate_and_delete(session_maker):
    async with session_maker() as session:
        uid = await _user(session)
        ledger = SessionLedger(session)
        for token in ("a", "b", "c"):
            await ledger.create_session(uid, token, _later(days=7))
        await session.commit()
        assert await ledger.count_for_subject(uid) == 3

        assert await ledger.delete_by_session_token("a") == 1
        assert await ledger.delete_by_session_token("a") == 0
        assert await ledger.invalidate_all_for_subject(uid) == 2
        await session.commit()
        assert await ledger.count_for_subject(uid) == 0


@pytest.mark.asyncio
async def test_purge_expired(session_maker):
    async with session_maker() as session:
        uid = await _user(session)
        ledger = SessionLedger(session)
        await ledger.create_session(uid, "live", _later(days=1))
        await ledger.create_session(uid, "dead", _later(seconds=-10))
        await session.commit()
        assert await ledger.purge_expired() == 1
        await session.commit()
        assert await ledger.find_by_session_token("live") is not None
        assert await ledger.purge_expired() == 0


@pytest.mark.asyncio
async def test_sweep_job_purges_expired(session_maker, monkeypatch):
    from sessionguard import main

    monkeypatch.setattr(main, "async_session_maker", session_maker)
    async with session_maker() as session:
        uid = await _user(session)
        await SessionLedger(session).create_session(uid, "dead", _later(seconds=-10))
        await session.commit()

    await main.sweep_expired_sessions()

    async with session_maker() as session:
        assert await SessionLedger(session).purge_expired() == 0


@pytest.mark.asyncio
async def test_created_at_defaults_are_utc_aware(session_maker):
    async with session_maker() as session:
        user = User(email="defaults@test.com", password_hash="not-a-real-hash")
        session.add(user)
        await session.flush()
        row = UserSession(user_id=user.id, token_hash=hash_session_token("defaults"), expires_at=_later(days=1))
        session.add(row)
        await session.flush()
        for value in (user.created_at, row.created_at):
            assert value.tzinfo is not None
            assert value.utcoffset() == timedelta(0)
