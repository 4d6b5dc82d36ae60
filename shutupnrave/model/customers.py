"""Users and ticket types.

Both helpers run inside a transaction owned by the caller.
"""

from __future__ import annotations
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import TicketType, User


async def find_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    return (await db.execute(
        select(User).where(User.email == email)
    )).scalar_one_or_none()


async def upsert_user(
    db: AsyncSession, *, email: str,
    full_name: Optional[str] = None, phone_number: Optional[str] = None,
) -> User:
    """Create the user for `email`, or refresh name/phone if present."""
    user = await find_user_by_email(db, email)
    if user is None:
        user = User(
            email=email,
            full_name=full_name or email.split("@")[0],
            phone_number=phone_number or "",
        )
        db.add(user)
    else:
        if full_name:
            user.full_name = full_name
        if phone_number:
            user.phone_number = phone_number
    await db.flush()
    return user


async def find_ticket_type(
    db: AsyncSession, name: str
) -> Optional[TicketType]:
    return (await db.execute(
        select(TicketType).where(TicketType.name == name)
    )).scalar_one_or_none()


async def get_or_create_ticket_type(
    db: AsyncSession, name: str, price: int, event_name: str
) -> TicketType:
    # first purchase of a name fixes its price for good
    tt = await find_ticket_type(db, name)
    if tt is not None:
        return tt
    tt = TicketType(
        name=name,
        price=price,
        description=f"{name} ticket for {event_name}",
    )
    db.add(tt)
    await db.flush()
    return tt
