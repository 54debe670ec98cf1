from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union
from jose import jwt

from docvault.core.config import settings


def create_access_token(
    subject: Union[str, Any],
    roles: Optional[List[str]] = None,
    expires_delta: Union[timedelta, None] = None,
) -> str:
    """
    生成 JWT Access Token
    :param subject: Token 的主体（用户名）
    :param roles: 角色列表，包含 settings.ADMIN_ROLE 时视为管理员
    :param expires_delta: 可选的过期时间增量
    """
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode: Dict[str, Any] = {"exp": expire, "sub": str(subject), "roles": roles or []}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    解码并校验签名 / 过期时间，失败时抛出 jose.JWTError
    """
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
