"""Tests for idempotent identity persistence."""

import asyncio
import uuid
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from docklytask.auth.identity import ResolvedIdentity, UserRole
from docklytask.db.models import Customer, User
from docklytask.services import identity_repository
from docklytask.services.identity_repository import (
    IdentityPersistenceError,
    upsert_identity,
)


def _identity(**overrides) -> ResolvedIdentity:
    values = {
        "email": "jane@acme.de",
        "tenant_id": "acme",
        "display_name": "Jane Doe",
        "avatar_url": "https://cdn.example.com/jane.png",
        "customer_name": "ACME",
    }
    values.update(overrides)
    return ResolvedIdentity(**values)


async def _count(db, model, *where) -> int:
    result = await db.execute(select(func.count()).select_from(model).where(*where))
    return result.scalar_one()


class TestUpsertIdentity:
    async def test_creates_customer_and_user(self, db):
        persisted = await upsert_identity(db, _identity())

        user = await db.get(User, persisted.user_id)
        assert user.email == "jane@acme.de"
        assert user.tenant_id == "acme"
        assert user.name == "Jane Doe"
        assert user.role == "USER"
        assert user.customer_id == persisted.customer_id
        assert user.last_login_at is not None
        assert persisted.customer_name == "ACME"

    async def test_is_idempotent(self, db):
        first = await upsert_identity(db, _identity())
        second = await upsert_identity(db, _identity())

        assert first.user_id == second.user_id
        assert first.customer_id == second.customer_id
        assert await _count(db, User) == 1
        assert await _count(db, Customer) == 1

    async def test_customer_lookup_ignores_case(self, db):
        first = await upsert_identity(db, _identity(customer_name="ACME"))
        second = await upsert_identity(db, _identity(email="max@acme.de", customer_name="acme"))

        assert first.customer_id == second.customer_id
        assert second.customer_name == "ACME"
        assert await _count(db, Customer) == 1

    async def test_same_customer_name_in_other_tenant(self, db):
        first = await upsert_identity(db, _identity(tenant_id="acme"))
        second = await upsert_identity(db, _identity(tenant_id="beta"))

        assert first.customer_id != second.customer_id
        assert first.user_id != second.user_id
        assert await _count(db, User, User.email == "jane@acme.de") == 2

    async def test_no_customer_name(self, db):
        persisted = await upsert_identity(db, _identity(customer_name=None))

        assert persisted.customer_id is None
        assert await _count(db, Customer) == 0

    async def test_pinned_customer_id(self, db):
        pinned = await upsert_identity(db, _identity(customer_name="Pinned Ltd"))
        persisted = await upsert_identity(
            db,
            _identity(email="max@acme.de", customer_id=str(pinned.customer_id), customer_name="X"),
        )

        assert persisted.customer_id == pinned.customer_id
        assert await _count(db, Customer, Customer.name == "X") == 0

    async def test_unknown_pinned_id_falls_back_to_name(self, db):
        persisted = await upsert_identity(
            db, _identity(customer_id=str(uuid.uuid4()), customer_name="ACME")
        )
        assert persisted.customer_name == "ACME"

    async def test_pinned_customer_of_other_tenant_is_ignored(self, db):
        beta = await upsert_identity(
            db, _identity(email="max@beta.de", tenant_id="beta", customer_name="Beta")
        )
        persisted = await upsert_identity(
            db, _identity(customer_id=str(beta.customer_id), customer_name="ACME")
        )

        assert persisted.customer_id != beta.customer_id
        assert persisted.customer_name == "ACME"
        customer = await db.get(Customer, persisted.customer_id)
        assert customer.tenant_id == "acme"

    async def test_updates_mutable_fields(self, db):
        await upsert_identity(db, _identity())
        persisted = await upsert_identity(
            db, _identity(display_name="Jane Smith", avatar_url=None)
        )

        user = await db.get(User, persisted.user_id)
        assert user.name == "Jane Smith"
        assert user.avatar == "https://cdn.example.com/jane.png"

    async def test_admin_is_promoted_never_demoted(self, db):
        await upsert_identity(db, _identity())
        promoted = await upsert_identity(db, _identity(role=UserRole.ADMIN))
        again = await upsert_identity(db, _identity(role=None))

        assert promoted.role == "ADMIN"
        assert again.role == "ADMIN"

    async def test_new_user_gets_default_role(self, db):
        persisted = await upsert_identity(db, _identity(), default_role="VIEWER")
        assert persisted.role == "VIEWER"


class TestConcurrentSignIns:
    async def test_user_created_concurrently(self, db, monkeypatch):
        await upsert_identity(db, _identity())

        real_find_user = identity_repository._find_user
        calls = []

        async def stale_find_user(session, tenant_id, email):
            # First lookup misses the row another sign-in just committed
            calls.append(email)
            if len(calls) == 1:
                return None
            return await real_find_user(session, tenant_id, email)

        monkeypatch.setattr(identity_repository, "_find_user", stale_find_user)
        persisted = await upsert_identity(db, _identity(display_name="Jane Racing"))

        assert len(calls) == 2
        assert await _count(db, User) == 1
        user = await db.get(User, persisted.user_id)
        assert user.name == "Jane Racing"

    async def test_customer_created_concurrently(self, db, monkeypatch):
        first = await upsert_identity(db, _identity())

        real_find_customer = identity_repository._find_customer
        calls = []

        async def stale_find_customer(session, tenant_id, name):
            calls.append(name)
            if len(calls) == 1:
                return None
            return await real_find_customer(session, tenant_id, name)

        monkeypatch.setattr(identity_repository, "_find_customer", stale_find_customer)
        second = await upsert_identity(db, _identity(email="max@acme.de", customer_name="acme"))

        assert second.customer_id == first.customer_id
        assert await _count(db, Customer) == 1
        assert await _count(db, User) == 2


    async def test_two_sessions_both_miss_then_create(self, session_factory, monkeypatch):
        real_find_customer = identity_repository._find_customer
        real_find_user = identity_repository._find_user
        seen: set[tuple[int, str]] = set()
        both_missed = asyncio.Event()

        async def racing_find_customer(session, tenant_id, name):
            key = (id(session), "customer")
            if key in seen:
                return await real_find_customer(session, tenant_id, name)
            seen.add(key)
            if len(seen) == 2:
                both_missed.set()
            # hold each sign-in until the other has also missed
            await both_missed.wait()
            return None

        async def racing_find_user(session, tenant_id, email):
            key = (id(session), "user")
            if key in seen:
                return await real_find_user(session, tenant_id, email)
            seen.add(key)
            return None

        monkeypatch.setattr(identity_repository, "_find_customer", racing_find_customer)
        monkeypatch.setattr(identity_repository, "_find_user", racing_find_user)

        async def sign_in(display_name):
            async with session_factory() as session:
                return await upsert_identity(session, _identity(display_name=display_name))

        first, second = await asyncio.gather(sign_in("Jane One"), sign_in("Jane Two"))

        assert first.user_id == second.user_id
        assert first.customer_id == second.customer_id
        async with session_factory() as session:
            assert await _count(session, User) == 1
            assert await _count(session, Customer) == 1

class TestPersistenceFailure:
    async def test_store_error_is_wrapped(self):
        db = AsyncMock()
        db.execute.side_effect = OperationalError("SELECT 1", {}, Exception("connection lost"))

        with pytest.raises(IdentityPersistenceError) as exc_info:
            await upsert_identity(db, _identity())

        assert isinstance(exc_info.value.__cause__, OperationalError)
        db.rollback.assert_awaited_once()

    async def test_rollback_failure_still_wraps(self):
        db = AsyncMock()
        db.execute.side_effect = OperationalError("SELECT 1", {}, Exception("connection lost"))
        db.rollback.side_effect = OSError("socket closed")

        with pytest.raises(IdentityPersistenceError):
            await upsert_identity(db, _identity())
