"""Caller identity resolved from headers forwarded by the gateway."""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from citycircle_api.db.session import get_session
from citycircle_api.models.account import Account, Store


def _parse_identifier(raw: str | None, *, label: str) -> int:
    if not raw:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing session {label} context",
        )
    try:
        identifier = int(raw)
    except ValueError as error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid session {label} identifier",
        ) from error
    if identifier <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid session {label} identifier",
        )
    return identifier


async def require_account(
    session_user: str | None = Header(None, alias="X-Session-User"),
    db: AsyncSession = Depends(get_session),
) -> Account:
    """Resolve the customer account acting on this request."""

    account = await db.get(Account, _parse_identifier(session_user, label="user"))
    if account is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session user not found",
        )
    return account


async def require_store(
    session_store: str | None = Header(None, alias="X-Session-Store"),
    db: AsyncSession = Depends(get_session),
) -> Store:
    """Resolve the store terminal acting on this request."""

    store = await db.get(Store, _parse_identifier(session_store, label="store"))
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session store not found",
        )
    return store
