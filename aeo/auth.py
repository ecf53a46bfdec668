"""
认证与授权边界
- 身份认证由外部系统完成，本服务只校验 JWT（python-jose）
- Token 中的 sub 为调用方 ID，role 为其在组织内的角色
- 只向抓取核心输出布尔结果：能否操作抓取 / 能否查看
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import Request
from jose import JWTError, jwt

from .config import settings
from .constants import ROLE_EDITOR, ROLE_RANK, ROLE_VIEWER
from .utils.time_utils import aware_now


@dataclass(frozen=True)
class Caller:
    subject: str
    role: str

    def has_role(self, minimum: str) -> bool:
        return ROLE_RANK.get(self.role, 0) >= ROLE_RANK[minimum]

    @property
    def may_operate_crawls(self) -> bool:
        return self.has_role(ROLE_EDITOR)

    @property
    def may_view(self) -> bool:
        return self.has_role(ROLE_VIEWER)


def create_access_token(subject: str, role: str, expires_minutes: int = 60) -> str:
    """签发 JWT（仅供测试与受信任的内部工具使用）"""
    expire = aware_now() + timedelta(minutes=expires_minutes)
    payload: Dict[str, Any] = {"sub": str(subject), "role": role, "exp": expire}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """解码 JWT，返回完整 payload；无效或过期返回 None"""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None


def get_token_from_request(request: Request) -> Optional[str]:
    """优先读取 Authorization: Bearer，其次 Cookie"""
    header = request.headers.get("Authorization") or ""
    if header.lower().startswith("bearer "):
        token = header[7:].strip()
        if token:
            return token
    return request.cookies.get("access_token") or None


def caller_from_token(token: Optional[str]) -> Optional[Caller]:
    if not token:
        return None
    payload = decode_token(token)
    if not payload or not payload.get("sub"):
        return None
    return Caller(subject=str(payload["sub"]), role=str(payload.get("role") or ""))
