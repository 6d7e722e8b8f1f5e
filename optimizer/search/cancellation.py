"""搜索任务取消令牌。"""

import asyncio

from optimizer.exceptions import SearchCancelledError


class CancellationToken:
    """单个搜索任务共享的取消标志。

    在生成候选前、进入并发闸门前和每次重试前检查；
    重试等待期间取消会立即唤醒等待方。
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "优化被用户取消") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    async def wait(self) -> None:
        """挂起直到被取消。"""
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SearchCancelledError(self._reason)

    async def sleep(self, delay: float) -> None:
        """等待 delay 秒；期间被取消则立即抛出 SearchCancelledError。"""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise SearchCancelledError(self._reason)
