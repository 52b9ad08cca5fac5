"""FastAPI dependencies: services from app.state, current user from bearer access token."""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from authcore.config import Settings
from authcore.core.errors import unauthorized
from authcore.core.rate_limit import RateLimitGuard
from authcore.db.session import get_db
from authcore.models.user import User
from authcore.services.auth import AuthService


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_rate_limit_guard(request: Request) -> RateLimitGuard:
    return request.app.state.rate_limit_guard


async def get_current_user(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_db)],
    auth: Annotated[AuthService, Depends(get_auth_service)],
) -> User:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise unauthorized("Access token is required")
    token = auth_header[7:].strip()
    if not token:
        raise unauthorized("Access token is required")
    return await auth.get_user_from_access_token(session, token)
