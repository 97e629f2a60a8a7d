import logging
import secrets
from typing import Optional

from fastapi import Request

from .utils import AuthenticationError, format_log_message

logger = logging.getLogger('gemini_relay')

BEARER_PREFIX = "Bearer "


def bearer_token(auth_header: Optional[str]) -> Optional[str]:
    """去掉 "Bearer " 前缀；头部缺失、前缀不符或令牌为空时返回 None。"""
    if not auth_header or not auth_header.startswith(BEARER_PREFIX):
        return None
    return auth_header[len(BEARER_PREFIX):] or None


class AccessGate:
    """用进程内唯一的访问密钥校验客户端请求。"""

    def __init__(self, access_key: str):
        self.access_key = access_key

    def check(self, auth_header: Optional[str]) -> bool:
        token = bearer_token(auth_header)
        if token is None:
            return False
        return secrets.compare_digest(token.encode('utf-8'), self.access_key.encode('utf-8'))


async def verify_access_key(request: Request):
    gate: AccessGate = request.app.state.access_gate
    if not gate.check(request.headers.get("Authorization")):
        client_host = request.client.host if request.client else 'unknown'
        logger.warning(format_log_message('WARNING', f"身份验证失败: {client_host}", extra={'request_type': 'auth', 'status_code': 401}))
        raise AuthenticationError()
    return True
