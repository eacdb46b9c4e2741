"""Idempotent persistence of resolved identities.

Maps a ResolvedIdentity onto a Customer row and a User row with
find-or-create semantics:

1. Customer: pinned id if it exists, else case-insensitive lookup on
   (tenant_id, name), else create.
2. User: lookup on (tenant_id, email); update mutable fields, or create.

(tenant_id, email) is a compound key, so this is find-then-create rather
than a native upsert. Each create runs in a SAVEPOINT; a uniqueness
violation means a concurrent sign-in created the row first, so the
savepoint is rolled back and the row is re-fetched and updated instead.
"""

import uuid
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from docklytask.auth.identity import ResolvedIdentity, UserRole
from docklytask.db.models import Customer, User, utc_now
from docklytask.logging_config import get_logger

logger = get_logger(__name__)


class IdentityPersistenceError(Exception):
    """The identity could not be written to the database."""


@dataclass
class PersistedIdentity:
    """Database ids linked to a sign-in."""

    user_id: uuid.UUID
    role: str
    customer_id: uuid.UUID | None = None
    customer_name: str | None = None


def _parse_uuid(value: str | None) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


async def _find_customer(db: AsyncSession, tenant_id: str, name: str) -> Customer | None:
    result = await db.execute(
        select(Customer).where(
            Customer.tenant_id == tenant_id,
            func.lower(Customer.name) == name.lower(),
        )
    )
    return result.scalars().first()


async def _find_user(db: AsyncSession, tenant_id: str, email: str) -> User | None:
    result = await db.execute(
        select(User).where(User.tenant_id == tenant_id, User.email == email)
    )
    return result.scalar_one_or_none()


async def resolve_customer(db: AsyncSession, identity: ResolvedIdentity) -> Customer | None:
    """Find or create the customer for an identity.

    Returns None when the identity names no customer at all.
    """
    pinned_id = _parse_uuid(identity.customer_id)
    if pinned_id is not None:
        customer = await db.get(Customer, pinned_id)
        if customer is None:
            logger.info("Pinned customer id not found", customer_id=identity.customer_id)
        elif customer.tenant_id != identity.tenant_id:
            logger.warning(
                "Pinned customer belongs to another tenant",
                customer_id=identity.customer_id,
                tenant=identity.tenant_id,
                customer_tenant=customer.tenant_id,
            )
        else:
            return customer

    name = (identity.customer_name or "").strip()
    if not name:
        return None

    customer = await _find_customer(db, identity.tenant_id, name)
    if customer is not None:
        return customer

    try:
        async with db.begin_nested():
            customer = Customer(name=name, tenant_id=identity.tenant_id)
            db.add(customer)
    except IntegrityError:
        logger.info(
            "Customer created concurrently, re-fetching",
            tenant=identity.tenant_id,
            customer=name,
        )
        customer = await _find_customer(db, identity.tenant_id, name)
        if customer is None:
            raise
        return customer

    logger.info("Customer created", tenant=identity.tenant_id, customer=name)
    return customer


def _apply_updates(user: User, identity: ResolvedIdentity, customer: Customer | None) -> None:
    """Update mutable fields. Role is only ever promoted, never demoted."""
    if identity.display_name:
        user.name = identity.display_name
    if identity.avatar_url:
        user.avatar = identity.avatar_url
    if identity.role == UserRole.ADMIN and user.role != UserRole.ADMIN:
        logger.info("Promoting user to ADMIN", email=user.email, tenant=user.tenant_id)
        user.role = UserRole.ADMIN.value
    if customer is not None and user.customer_id != customer.id:
        user.customer_id = customer.id
    user.last_login_at = utc_now()


async def upsert_user(
    db: AsyncSession,
    identity: ResolvedIdentity,
    customer: Customer | None,
    default_role: str,
) -> User:
    """Find the user by (tenant_id, email) and update it, or create it."""
    user = await _find_user(db, identity.tenant_id, identity.email)
    if user is not None:
        _apply_updates(user, identity, customer)
        return user

    try:
        async with db.begin_nested():
            user = User(
                email=identity.email,
                name=identity.display_name,
                avatar=identity.avatar_url,
                role=(identity.role or default_role),
                tenant_id=identity.tenant_id,
                customer_id=customer.id if customer is not None else None,
                last_login_at=utc_now(),
            )
            db.add(user)
    except IntegrityError:
        logger.info(
            "User created concurrently, updating instead",
            tenant=identity.tenant_id,
            email=identity.email,
        )
        user = await _find_user(db, identity.tenant_id, identity.email)
        if user is None:
            raise
        _apply_updates(user, identity, customer)
        return user

    logger.info("User created", tenant=identity.tenant_id, email=identity.email)
    return user


async def _rollback_quietly(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except (SQLAlchemyError, OSError):
        logger.warning("Rollback after failed identity write also failed", exc_info=True)


async def upsert_identity(
    db: AsyncSession,
    identity: ResolvedIdentity,
    default_role: str = UserRole.USER.value,
) -> PersistedIdentity:
    """Persist a resolved identity and commit.

    Raises:
        IdentityPersistenceError: the store rejected the write for a reason
            other than a resolvable uniqueness conflict.
    """
    try:
        customer = await resolve_customer(db, identity)
        user = await upsert_user(db, identity, customer, default_role)
        persisted = PersistedIdentity(
            user_id=user.id,
            role=user.role,
            customer_id=customer.id if customer is not None else None,
            customer_name=customer.name if customer is not None else None,
        )
        await db.commit()
    except (SQLAlchemyError, OSError) as e:
        await _rollback_quietly(db)
        raise IdentityPersistenceError(
            f"Failed to persist identity for {identity.email} in tenant {identity.tenant_id}"
        ) from e

    return persisted
