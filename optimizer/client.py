"""远程回测（评分）接口客户端。

回测引擎本身不在本项目内，这里只负责把完整策略参数 POST 给回测服务，
返回原始响应体 {success, data: {performance}, error}。
HTTP 非 2xx 和网络异常统一转换为 TransientEvaluationError，由评估器决定是否重试。
"""

import logging
from typing import Any, Protocol, runtime_checkable

import httpx

from optimizer.config import settings
from optimizer.exceptions import TransientEvaluationError

logger = logging.getLogger(__name__)


@runtime_checkable
class ScoringClient(Protocol):
    """评分服务客户端接口。"""

    async def score(self, params: dict[str, Any]) -> dict[str, Any]:
        """提交一组完整策略参数，返回响应体。"""
        ...


class HttpScoringClient:
    """基于 httpx 的评分服务客户端。

    Args:
        base_url: 回测服务地址
        endpoint: 优化回测接口路径
        timeout: 单次请求超时（秒）
        transport: 自定义传输层（测试中传入 httpx.MockTransport）
    """

    def __init__(
        self,
        base_url: str | None = None,
        endpoint: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = endpoint or settings.scoring_endpoint
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.scoring_base_url,
            timeout=timeout or settings.scoring_timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def score(self, params: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(self._endpoint, json=params)
        except httpx.HTTPError as exc:
            raise TransientEvaluationError(f"回测接口请求失败: {exc}") from exc

        if response.status_code >= 400:
            raise TransientEvaluationError(
                f"HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise TransientEvaluationError(f"回测接口返回非 JSON 响应: {exc}") from exc
        if not isinstance(body, dict):
            raise TransientEvaluationError("回测接口响应格式错误")
        return body

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpScoringClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
