"""
ThingsBoard 鉴权相关端点与状态定义。
"""

from enum import Enum


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    VALID = "valid"
    REFRESHING = "refreshing"


# 标准端点常量
class AuthEndpoints:
    CURRENT_USER = "/api/auth/user"
    REFRESH_TOKEN = "/api/auth/token"
    LOGIN = "/api/auth/login"
    USER_TOKEN = "/api/user/{user_id}/token"


# 不需要 Authorization Header 的端点
PUBLIC_ENDPOINTS = frozenset({AuthEndpoints.LOGIN, AuthEndpoints.REFRESH_TOKEN})

AUTH_HEADER = "Authorization"
BEARER_PREFIX = "Bearer "
