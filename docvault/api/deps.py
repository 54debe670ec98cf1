# docvault/api/deps.py

import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from pydantic import ValidationError

from docvault.bootstrap import Services
from docvault.core.config import settings
from docvault.core.security import decode_access_token
from docvault.domain.schemas import TokenPayload
from docvault.services.security.identity import ANONYMOUS, Identity
from docvault.services.user.user_service import UserService

logger = logging.getLogger(__name__)

# 不带 token 的请求按匿名调用方处理，因此 auto_error=False
reusable_oauth2 = OAuth2PasswordBearer(
    tokenUrl="/auth/access-token",
    auto_error=False
)


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services not initialized in app state")
    return services


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_identity(
    token: Optional[str] = Depends(reusable_oauth2),
    services: Services = Depends(get_services),
) -> Identity:
    if not token:
        return ANONYMOUS
    try:
        token_data = TokenPayload(**decode_access_token(token))
    except (JWTError, ValidationError):
        raise _unauthorized("Could not validate credentials")

    if not token_data.sub:
        raise _unauthorized("User identifier not found in token")

    # 首次出现的用户自动登记
    try:
        async with services.session_maker() as db:
            await UserService.register(db, token_data.sub)
    except ValueError as e:
        raise _unauthorized(str(e))

    return Identity(username=token_data.sub, is_admin=settings.ADMIN_ROLE in token_data.roles)


def get_authenticated_identity(identity: Identity = Depends(get_identity)) -> Identity:
    if identity.is_anonymous:
        raise _unauthorized("Not authenticated")
    return identity
