import random
import string
import logging
import sys
from threading import Lock
from typing import List, Optional, Tuple

logger = logging.getLogger("gemini_relay")

LOG_FIELDS = ('key', 'upstream', 'attempt', 'request_type', 'status_code', 'error_message')


def setup_logging(level: str = "INFO"):
    """配置项目 logger，只在启动时调用一次。"""
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(asctime)s %(message)s", "%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True
    logging.getLogger("uvicorn").setLevel(logging.WARNING)


def format_log_message(level: str, message: str, extra: Optional[dict] = None) -> str:
    extra = extra or {}
    fields = [f"{name}={extra[name]}" for name in LOG_FIELDS if extra.get(name) not in (None, '')]
    log_msg = f"[{level}] {message}"
    if fields:
        log_msg += " | " + " ".join(fields)
    return log_msg


def mask_key(key: str) -> str:
    if len(key) <= 12:
        return "..." + key[-4:]
    return f"{key[:8]}...{key[-4:]}"


def generate_random_alphanumeric(length: int = 12) -> str:
    # 仅用作关联标识，不要求密码学安全
    chars = string.ascii_letters + string.digits
    return ''.join(random.choice(chars) for _ in range(length))


class ConfigError(Exception):
    pass


class AuthenticationError(Exception):
    def __init__(self, message: str = "无效的身份验证。"):
        super().__init__(message)
        self.message = message


class GeminiAPIError(Exception):
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class RotationPool:
    """
    Gemini 密钥与上游地址的轮换池。

    两个游标互相独立，失败时由调用方决定推进哪一个；游标跨请求保留，
    后续请求从上次停下的位置继续轮换。每次读取或推进都在锁内完成。
    """

    def __init__(self, api_keys: List[str], upstreams: List[str]):
        if not api_keys:
            raise ValueError("api_keys must not be empty")
        if not upstreams:
            raise ValueError("upstreams must not be empty")
        self.api_keys = list(api_keys)
        self.upstreams = list(upstreams)
        self._key_index = 0
        self._upstream_index = 0
        self._lock = Lock()

    @property
    def key_index(self) -> int:
        return self._key_index

    @property
    def upstream_index(self) -> int:
        return self._upstream_index

    def current(self) -> Tuple[str, str]:
        with self._lock:
            return self.api_keys[self._key_index], self.upstreams[self._upstream_index]

    def advance_key(self) -> str:
        with self._lock:
            self._key_index = (self._key_index + 1) % len(self.api_keys)
            return self.api_keys[self._key_index]

    def advance_upstream(self) -> str:
        with self._lock:
            self._upstream_index = (self._upstream_index + 1) % len(self.upstreams)
            return self.upstreams[self._upstream_index]

    def show_all(self):
        logger.info(format_log_message('INFO', f"当前可用 API key 个数: {len(self.api_keys)}", extra={'request_type': 'startup'}))
        for i, api_key in enumerate(self.api_keys):
            logger.info(format_log_message('INFO', f"API Key{i}: {mask_key(api_key)}", extra={'request_type': 'startup'}))
        logger.info(format_log_message('INFO', f"当前可用上游服务个数: {len(self.upstreams)}", extra={'request_type': 'startup'}))
        for i, upstream in enumerate(self.upstreams):
            logger.info(format_log_message('INFO', f"Upstream{i}: {upstream}", extra={'request_type': 'startup'}))
