import os
import logging
import secrets
from typing import List, Tuple

from dotenv import load_dotenv

from .utils import ConfigError, format_log_message

# 加载.env文件中的环境变量
load_dotenv()

logger = logging.getLogger('gemini_relay')

KEY_FILE = os.environ.get("KEY_FILE", "key.txt")
UPSTREAMS_FILE = os.environ.get("UPSTREAMS_FILE", "upstreams.txt")
ACCESS_KEY_FILE = os.environ.get("ACCESS_KEY_FILE", "access_key.txt")

HOST = os.environ.get("HOST", "::")
PORT = int(os.environ.get("PORT", "7777"))
GATEWAY_HOST = os.environ.get("GATEWAY_HOST", "0.0.0.0")
GATEWAY_PORT = int(os.environ.get("GATEWAY_PORT", "8787"))

MAX_RETRIES = int(os.environ.get("MAX_RETRIES", "5").strip() or "5")
UPSTREAM_TIMEOUT = float(os.environ.get("UPSTREAM_TIMEOUT", "600"))

GEMINI_API_ENDPOINT = os.environ.get("GEMINI_API_ENDPOINT") or "https://generativelanguage.googleapis.com/v1beta/models/"
DEFAULT_MODEL = os.environ.get("DEFAULT_MODEL", "gemini-1.5-flash")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


def read_list_file(file_path: str) -> List[str]:
    """按行读取列表文件，忽略空行以及 // 或 # 开头的注释行。"""
    file_name = os.path.basename(file_path)
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            lines = f.read().splitlines()
    except FileNotFoundError:
        raise ConfigError(f"配置文件 {file_name} 未找到。请复制 {file_name}.example 并重命名为 {file_name}，填入您的内容。")

    entries = [line.strip() for line in lines]
    entries = [line for line in entries if line and not line.startswith('//') and not line.startswith('#')]
    if not entries:
        raise ConfigError(f"配置文件 {file_name} 为空或只包含注释。")
    return entries


def load_pool_config(key_file: str = KEY_FILE, upstreams_file: str = UPSTREAMS_FILE) -> Tuple[List[str], List[str]]:
    """从配置文件加载 Gemini API 密钥和上游服务地址"""
    api_keys = read_list_file(key_file)
    logger.info(format_log_message('INFO', f"成功加载 {len(api_keys)} 个有效的 Gemini API 密钥。", extra={'request_type': 'startup'}))
    upstreams = read_list_file(upstreams_file)
    logger.info(format_log_message('INFO', f"成功加载 {len(upstreams)} 个有效的上游服务地址。", extra={'request_type': 'startup'}))
    return api_keys, upstreams


def generate_access_key() -> str:
    return f"sk-{secrets.token_hex(24)}"


def init_access_key(file_path: str = ACCESS_KEY_FILE) -> str:
    """
    读取客户端使用的固定访问密钥，文件不存在时生成新密钥并保存。
    """
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            access_key = f.read().strip()
        if access_key:
            logger.info(format_log_message('INFO', "已从文件加载固定访问密钥。", extra={'request_type': 'startup'}))
            return access_key
    except FileNotFoundError:
        logger.info(format_log_message('INFO', "未找到访问密钥文件，正在生成新的密钥...", extra={'request_type': 'startup'}))
    except OSError as e:
        raise ConfigError(f"读取访问密钥文件时发生错误: {e}")

    access_key = generate_access_key()
    try:
        with open(file_path, 'w', encoding='utf-8') as f:
            f.write(access_key)
    except OSError as e:
        raise ConfigError(f"无法写入新的访问密钥文件: {e}")
    logger.info(format_log_message('INFO', f"新的访问密钥已生成并保存至 {os.path.basename(file_path)}。", extra={'request_type': 'startup'}))
    return access_key
