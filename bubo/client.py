"""
ThingsBoard HTTP 客户端：所有出站请求都经过这里的鉴权拦截逻辑。

- 请求前：没有显式 token 时使用默认 Authorization Header
- 401 且请求本身是刷新端点：清除凭据，不再重试
- 其他 401：刷新一次 token 后重试一次，再次 401 则抛出 AuthError
"""

import logging
from typing import Any

import httpx

from bubo.auth.endpoints import AUTH_HEADER, PUBLIC_ENDPOINTS, AuthEndpoints
from bubo.auth.token_manager import TokenManager
from bubo.errors import AuthError, ParseError, RemoteRequestError, TransientIOError
from bubo.session_store import SessionStore

logger = logging.getLogger(__name__)


class ApiClient:
    """封装 httpx.AsyncClient，持有默认请求头与 TokenManager。"""

    def __init__(
        self,
        host: str | None,
        session: SessionStore,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.host = host
        self.session = session
        self._client = httpx.AsyncClient(
            base_url=host or "",
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self.tokens = TokenManager(self, session)
        if session.token:
            self.set_auth_header(session.token)

    # ── 默认请求头 ────────────────────────────────────

    def set_auth_header(self, token: str):
        self._client.headers[AUTH_HEADER] = token

    def clear_auth_header(self):
        self._client.headers.pop(AUTH_HEADER, None)

    @property
    def auth_header(self) -> str | None:
        return self._client.headers.get(AUTH_HEADER)

    # ── 请求 ──────────────────────────────────────────

    async def request(
        self,
        method: str,
        url: str,
        *,
        token: str | None = None,
        retry_auth: bool = True,
        resource_id: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        发送请求并处理 401。

        Args:
            token: 仅用于本次请求的 Authorization（不修改默认请求头）
            retry_auth: 401 时是否刷新 token 并重试一次
            resource_id: 仅用于错误信息
        """
        if not self.host:
            raise TransientIOError("未配置 ThingsBoard host", operation=f"{method} {url}", resource_id=resource_id)

        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers[AUTH_HEADER] = token
        elif url not in PUBLIC_ENDPOINTS and not self.auth_header and self.session.token:
            logger.warning("默认请求头缺少 Authorization，使用 session 中的 token")
            self.set_auth_header(self.session.token)

        sent_token = headers.get(AUTH_HEADER) or self.auth_header
        response = await self._send(method, url, headers, resource_id, **kwargs)

        if response.status_code == 401:
            if url == AuthEndpoints.REFRESH_TOKEN:
                # 刷新端点本身被拒绝：清除凭据，防止无限刷新
                logger.error("Refresh token 被拒绝，清除本地凭据")
                self.tokens.reset_tokens()
                raise AuthError("Refresh token 已失效，请重新登录")

            if not retry_auth:
                raise AuthError(f"未授权: {method} {url}")

            current = self.session.token
            if current and current != sent_token:
                # 其他请求已经刷新过 token
                logger.info(f"Token 已被更新，直接重试 {method} {url}")
                new_token = current
            else:
                logger.info(f"收到 401，开始刷新 Token: {method} {url}")
                new_token = await self.tokens.refresh_expired()

            if token:
                headers[AUTH_HEADER] = new_token
            response = await self._send(method, url, headers, resource_id, **kwargs)
            if response.status_code == 401:
                raise AuthError(f"刷新 token 后仍未授权: {method} {url}")

        if response.is_error:
            message = self._error_message(response)
            logger.error(f"❌ {method} {url} -> {response.status_code}: {message}")
            raise RemoteRequestError(
                response.status_code,
                message,
                operation=f"{method} {url}",
                resource_id=resource_id,
            )
        return response

    async def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        resource_id: str | None,
        **kwargs: Any,
    ) -> httpx.Response:
        logger.debug(f"request => {method} {url}")
        try:
            return await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise TransientIOError(str(e) or type(e).__name__, operation=f"{method} {url}", resource_id=resource_id) from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        return response.text

    @staticmethod
    def _decode(response: httpx.Response, resource_id: str | None = None) -> Any:
        try:
            return response.json()
        except ValueError as e:
            # 例如代理返回的 HTML 登录页
            raise ParseError(
                f"{response.request.method} {response.request.url.path} 返回的不是合法的 JSON: {e}",
                resource_id=resource_id,
            ) from e

    async def get_json(self, url: str, **kwargs: Any) -> Any:
        response = await self.request("GET", url, **kwargs)
        return self._decode(response, kwargs.get("resource_id"))

    async def post_json(self, url: str, payload: Any, **kwargs: Any) -> Any:
        response = await self.request("POST", url, json=payload, **kwargs)
        if not response.content:
            return None
        return self._decode(response, kwargs.get("resource_id"))

    async def aclose(self):
        await self._client.aclose()
