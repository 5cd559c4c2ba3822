"""
JWT 工具：Bearer 前缀处理与 payload 解码（不校验签名）。
"""

import base64
import binascii
import json
import re

from bubo.errors import ParseError

from .endpoints import BEARER_PREFIX

_BEARER_RE = re.compile(r"^\s*Bearer\s+", re.IGNORECASE)


def strip_bearer(token: str) -> str:
    """移除所有 Bearer 前缀。"""
    token = token.strip()
    while _BEARER_RE.match(token):
        token = _BEARER_RE.sub("", token, count=1).strip()
    return token


def normalize_bearer(token: str) -> str:
    """保证只有一个 "Bearer " 前缀。"""
    return f"{BEARER_PREFIX}{strip_bearer(token)}"


def parse_jwt(token: str) -> dict:
    """
    解码 JWT payload。

    Raises:
        ParseError: token 不是合法的 JWT
    """
    parts = strip_bearer(token).split(".")
    if len(parts) != 3:
        raise ParseError("Token 不是合法的 JWT")

    payload = parts[1]
    # Base64URL 需要补齐 padding
    payload += "=" * (-len(payload) % 4)
    try:
        decoded = base64.urlsafe_b64decode(payload.encode("ascii"))
        data = json.loads(decoded)
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise ParseError(f"JWT payload 解码失败: {e}") from e

    if not isinstance(data, dict):
        raise ParseError("JWT payload 必须是 JSON 对象")
    return data
