"""
Token 生命周期管理：校验、刷新（合并并发请求）、登录与清除。
"""

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

from bubo.errors import AuthError, ParseError, TransientIOError
from bubo.session_store import SessionStore

from .endpoints import AuthEndpoints, AuthState
from .jwt import normalize_bearer, parse_jwt

if TYPE_CHECKING:
    from bubo.client import ApiClient

logger = logging.getLogger(__name__)


class TokenManager:
    """
    管理 ThingsBoard JWT 的状态机：UNAUTHENTICATED / VALID / REFRESHING。

    并发的 401 只会触发一次刷新：第一个调用者创建刷新任务，
    其余调用者等待同一个任务。任务结束后下一次调用重新开始。
    """

    def __init__(self, api: "ApiClient", session: SessionStore):
        self._api = api
        self.session = session
        self.state = AuthState.VALID if session.token else AuthState.UNAUTHENTICATED
        self._inflight: asyncio.Task | None = None

    # ── 校验 ──────────────────────────────────────────

    async def check_status(self, token: str | None = None) -> bool:
        """调用 /api/auth/user 检查 token 是否有效。没有 token 或 host 时不发请求。"""
        token = token or self.session.token
        if not token or not self._api.host:
            logger.debug("没有 token 或 host，跳过校验")
            return False

        try:
            response = await self._api.request(
                "GET",
                AuthEndpoints.CURRENT_USER,
                token=normalize_bearer(token),
                retry_auth=False,
            )
        except AuthError:
            logger.info("Token 校验: 401 未授权")
            return False
        except TransientIOError as e:
            logger.error(f"Token 校验失败: {e}")
            return False

        logger.info(f"Token 校验: {response.status_code}")
        return response.status_code == 200

    async def ensure_valid_token(self) -> bool:
        """确保 Token 有效，必要时刷新。刷新失败时返回 False。"""
        if await self.check_status():
            self.state = AuthState.VALID
            return True
        if not self.session.token or not self._api.host:
            return False
        logger.info("Token 校验失败，尝试刷新")
        try:
            await self.refresh_expired()
        except AuthError as e:
            logger.warning(f"Token 刷新失败: {e}")
            return False
        return True

    # ── 刷新 ──────────────────────────────────────────

    async def refresh_expired(self) -> str:
        """
        刷新过期的 token。并发调用共享同一次请求，返回新的 token。

        Raises:
            AuthError: 没有 refresh token 或刷新被拒绝
        """
        if self._inflight is None:
            logger.info("创建新的 Token 刷新请求")
            self.state = AuthState.REFRESHING
            self._inflight = asyncio.ensure_future(self._run_refresh())
        else:
            logger.info("等待进行中的 Token 刷新请求")
        # shield: 单个调用者被取消时不影响其他等待者
        return await asyncio.shield(self._inflight)

    async def _run_refresh(self) -> str:
        try:
            token = await self._refresh_user_token()
            self.state = AuthState.VALID
            return token
        except Exception:
            self.state = AuthState.UNAUTHENTICATED
            raise
        finally:
            self._inflight = None

    async def _refresh_user_token(self) -> str:
        refresh_token = self.session.refresh_token
        if not refresh_token:
            raise AuthError("Token 已过期且没有 refresh token，请重新登录")

        logger.info("正在刷新 Token...")
        # 刷新端点返回 401 时 ApiClient 会直接清除凭据
        response = await self._api.request(
            "POST",
            AuthEndpoints.REFRESH_TOKEN,
            json={"refreshToken": refresh_token},
            retry_auth=False,
        )
        data = self._json(response)
        token = data.get("token")
        if not token:
            raise AuthError("刷新响应中没有 token")

        new_token = self.store_tokens(token, data.get("refreshToken"))
        logger.info("Token 已刷新")
        return new_token

    # ── 登录 ──────────────────────────────────────────

    def store_tokens(self, token: str, refresh_token: str | None = None) -> str:
        """保存 token（统一为单个 Bearer 前缀）并同步到默认请求头。"""
        normalized = normalize_bearer(token)
        self.session.token = normalized
        if refresh_token:
            self.session.refresh_token = refresh_token
        self._api.set_auth_header(normalized)
        self.state = AuthState.VALID
        return normalized

    async def login_with_token(self, token: str) -> str:
        """使用从 ThingsBoard 页面复制的 JWT 登录，并获取 refresh token。"""
        normalized = normalize_bearer(token)
        if not await self.check_status(normalized):
            raise AuthError("Token 无效")
        self.store_tokens(normalized)
        await self.fetch_user_refresh_token(normalized)
        return normalized

    async def login(self, username: str, password: str) -> str:
        """用户名密码登录，获取 token 与 refresh token。"""
        response = await self._api.request(
            "POST",
            AuthEndpoints.LOGIN,
            json={"username": username, "password": password},
            retry_auth=False,
        )
        data = self._json(response)
        if not data.get("token"):
            raise AuthError("登录响应中没有 token")
        logger.info(f"用户 {username} 已登录")
        return self.store_tokens(data["token"], data.get("refreshToken"))

    async def fetch_user_refresh_token(self, token: str | None = None) -> str | None:
        """根据 token 中的 userId 获取该用户的 refresh token。"""
        token = token or self.session.token
        if not token:
            return None
        user_id = parse_jwt(token).get("userId")
        if not user_id:
            logger.warning("Token 中没有 userId，无法获取 refresh token")
            return None

        response = await self._api.request(
            "GET",
            AuthEndpoints.USER_TOKEN.format(user_id=user_id),
            token=normalize_bearer(token),
        )
        refresh_token = self._json(response).get("refreshToken")
        if refresh_token:
            self.session.refresh_token = refresh_token
            logger.info("已保存 refresh token")
        return refresh_token

    def tenant_id(self) -> str | None:
        token = self.session.token
        if not token:
            return None
        return parse_jwt(token).get("tenantId")

    # ── 清除 ──────────────────────────────────────────

    def reset_tokens(self):
        """清除存储的凭据并移除默认请求头。"""
        self.session.reset_tokens()
        self._api.clear_auth_header()
        self.state = AuthState.UNAUTHENTICATED

    @staticmethod
    def _json(response) -> dict[str, Any]:
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise ParseError(f"响应不是合法的 JSON: {e}") from e
        return data if isinstance(data, dict) else {}
