"""远程评估并发闸门。

回测接口是稀缺的限流资源，闸门限制同时在途的请求数，
释放时把槽位直接交给最早等待的调用方（FIFO）。

使用示例：
    gate = ConcurrencyGate(capacity=3)

    async with gate.slot():
        await client.score(params)
"""

import asyncio
import itertools
import logging
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateToken:
    """acquire 返回的槽位凭证，release 时交回。"""

    token_id: int


class ConcurrencyGate:
    """固定容量、FIFO 公平的并发闸门。

    Args:
        capacity: 最大在途请求数
    """

    def __init__(self, capacity: int = 3) -> None:
        if capacity < 1:
            raise ValueError(f"capacity 必须大于 0，当前值: {capacity}")
        self._capacity = capacity
        self._in_flight = 0
        self._waiters: deque[asyncio.Future] = deque()
        self._issued: set[int] = set()
        self._ids = itertools.count(1)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> GateToken:
        """获取一个槽位，没有空闲槽位时挂起，按到达顺序唤醒。"""
        if self._in_flight < self._capacity and not self.waiting:
            self._in_flight += 1
            return self._issue()

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # 槽位已经移交过来，取消时要还回去
                self._hand_off_or_free()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise
        return self._issue()

    def release(self, token: GateToken) -> None:
        """交回槽位，唤醒最早的等待者。"""
        if token.token_id not in self._issued:
            raise RuntimeError(f"槽位凭证 {token.token_id} 未发放或已释放")
        self._issued.discard(token.token_id)
        self._hand_off_or_free()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[GateToken]:
        """在任意退出路径上都会释放槽位的上下文管理器。"""
        token = await self.acquire()
        try:
            yield token
        finally:
            self.release(token)

    def _issue(self) -> GateToken:
        token = GateToken(next(self._ids))
        self._issued.add(token.token_id)
        return token

    def _hand_off_or_free(self) -> None:
        # 移交时在途数不变，无人等待时才减少
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._in_flight -= 1
        logger.debug("闸门槽位释放，在途 %d/%d", self._in_flight, self._capacity)
