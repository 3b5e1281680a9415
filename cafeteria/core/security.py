"""
安全相关功能
签发和校验 JWT，并把声明转换为 UserProfile

声明格式：
    sub       用户ID
    role      guardian | staff
    email     邮箱
    name      显示名
    children  [{"id": ..., "name": ...}]
    is_admin  是否为管理员
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .exceptions import AuthenticationError, PermissionDeniedError
from ..config.settings import Settings, settings
from ..models.user import ChildRef, UserProfile, UserRole


class SecurityManager:
    """安全管理器"""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or settings

    def create_jwt_token(self, profile: UserProfile, expires_in: Optional[timedelta] = None) -> str:
        """根据用户档案签发JWT token"""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": profile.user_id,
            "role": profile.role.value,
            "email": profile.email,
            "name": profile.name,
            "children": [{"id": c.child_id, "name": c.name} for c in profile.children],
            "is_admin": profile.is_admin,
            "iat": now,
            "exp": now + (expires_in or timedelta(hours=self.config.jwt_expire_hours)),
        }
        return jwt.encode(payload, self.config.jwt_secret_key, algorithm=self.config.jwt_algorithm)

    def decode_jwt_token(self, token: str) -> Dict[str, Any]:
        """解码JWT token"""
        try:
            return jwt.decode(token, self.config.jwt_secret_key, algorithms=[self.config.jwt_algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired")
        except jwt.InvalidTokenError as e:
            raise AuthenticationError(f"Invalid token: {e}")

    def profile_from_token(self, token: str) -> UserProfile:
        """从token声明构造用户档案"""
        claims = self.decode_jwt_token(token)
        user_id = claims.get("sub")
        if not user_id:
            raise AuthenticationError("Token missing subject")
        try:
            role = UserRole(claims.get("role") or UserRole.GUARDIAN.value)
        except ValueError:
            raise AuthenticationError(f"Token has unknown role: {claims.get('role')}")

        children = []
        for child in claims.get("children") or []:
            if isinstance(child, dict) and child.get("id"):
                children.append(ChildRef(child_id=str(child["id"]), name=child.get("name") or ""))

        return UserProfile(
            user_id=str(user_id),
            role=role,
            email=claims.get("email"),
            name=claims.get("name"),
            children=children,
            is_admin=bool(claims.get("is_admin")),
        )


# 全局安全管理器实例
security_manager = SecurityManager()

_bearer = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> UserProfile:
    """从Authorization header中解析当前用户"""
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Missing bearer token")
    return security_manager.profile_from_token(credentials.credentials)


def require_admin(user: UserProfile = Depends(get_current_user)) -> UserProfile:
    """检查管理员权限"""
    if not user.is_admin:
        raise PermissionDeniedError("admin privileges required")
    return user
