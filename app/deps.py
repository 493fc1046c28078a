"""Shared FastAPI dependencies."""

from fastapi import Depends, Request

from app.core.exceptions import ForbiddenError, UnauthorizedError
from app.core.logging import bind_account_id
from app.core.security import load_session_token
from app.models.account import Account
from app.services.container import Services

SESSION_COOKIE_NAME = "dropstrike_session"


def get_services(request: Request) -> Services:
    return request.app.state.services


def _session_token(request: Request) -> str | None:
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if cookie:
        return cookie
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token:
        return token.strip()
    return None


async def get_current_account(request: Request, services: Services = Depends(get_services)) -> Account:
    """Dependency: session from cookie or Bearer header; returns the Account."""
    token = _session_token(request)
    if not token:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_token(token)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    account = await services.accounts.resolve_session(payload)
    bind_account_id(account.id)
    return account


async def get_optional_account(request: Request, services: Services = Depends(get_services)) -> Account | None:
    """Like get_current_account but anonymous callers get None."""
    token = _session_token(request)
    if not token:
        return None
    payload = load_session_token(token)
    if not payload:
        return None
    try:
        account = await services.accounts.resolve_session(payload)
    except UnauthorizedError:
        return None
    bind_account_id(account.id)
    return account


async def require_admin(account: Account = Depends(get_current_account)) -> Account:
    """Dependency: require current account to have role admin."""
    if account.role != "admin":
        raise ForbiddenError("Admin only")
    return account
