"""リレー (MediaMTX) 制御 API クライアント.

認証情報は起動時に一度だけ渡し、呼び出しごとに設定ファイルを読み直さない。
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from relay_admin.errors import StreamNotFoundError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

PATHS_LIST = "/v3/paths/list"
PATH_GET = "/v3/paths/get/{name}"
RTSP_SESSIONS_LIST = "/v3/rtspsessions/list"
RTMP_SESSIONS_LIST = "/v3/rtmpsessions/list"
GLOBAL_CONFIG_GET = "/v3/config/global/get"


class RelayClient:
    """リレー制御 API の読み取り専用クライアント.

    Usage:
        async with RelayClient("http://mediamtx:9997", username="u", password="p") as relay:
            paths = await relay.list_paths()
    """

    def __init__(
        self,
        base_url: str,
        *,
        username: str | None = None,
        password: str | None = None,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        auth = httpx.BasicAuth(username, password or "") if username else None
        self._base_url = base_url
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=auth,
            timeout=timeout,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def __aenter__(self) -> RelayClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def list_paths(self) -> list[dict[str, Any]]:
        """path 一覧."""
        return await self._list(PATHS_LIST)

    async def list_rtsp_sessions(self) -> list[dict[str, Any]]:
        """RTSP セッション (リレーへの入力) 一覧."""
        return await self._list(RTSP_SESSIONS_LIST)

    async def list_rtmp_sessions(self) -> list[dict[str, Any]]:
        """RTMP セッション (リレー内部で終端する出力) 一覧."""
        return await self._list(RTMP_SESSIONS_LIST)

    async def get_path(self, name: str) -> dict[str, Any]:
        """path 1 件の詳細.

        Raises:
            StreamNotFoundError: リレーが 404 を返した場合
            UpstreamUnavailableError: その他の失敗
        """
        response = await self._get(PATH_GET.format(name=name))
        if response.status_code == httpx.codes.NOT_FOUND:
            raise StreamNotFoundError(name)
        return self._json(response)

    async def get_global_config(self) -> dict[str, Any]:
        """リレーのグローバル設定."""
        return self._json(await self._get(GLOBAL_CONFIG_GET))

    async def _list(self, endpoint: str) -> list[dict[str, Any]]:
        data = self._json(await self._get(endpoint))
        items = data.get("items") if isinstance(data, dict) else None
        return list(items or [])

    async def _get(self, endpoint: str) -> httpx.Response:
        logger.debug("Relay API GET %s", endpoint)
        try:
            return await self._client.get(endpoint)
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(f"GET {endpoint} failed: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if response.is_error:
            raise UpstreamUnavailableError(
                f"GET {response.request.url.path} returned "
                f"{response.status_code} {response.reason_phrase}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamUnavailableError(
                f"GET {response.request.url.path} returned invalid JSON"
            ) from e
