"""Test doubles: fake clock and a scriptable in-memory transport."""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable

from querycache.services.fingerprint import RequestDescriptor
from querycache.services.transport import Response


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeTransport:
    """
    Records every request. `handler` returns a Response, a body, or an
    exception to raise. After hold(), sends block until the gate is set.
    """

    def __init__(self, handler: Callable[[RequestDescriptor], Any] | None = None):
        self.handler = handler or (lambda request: {"url": request.url, "params": request.params})
        self.calls: list[RequestDescriptor] = []
        self.gate: asyncio.Event | None = None

    async def send(self, request: RequestDescriptor) -> Response[Any]:
        self.calls.append(request)
        if self.gate is not None:
            await self.gate.wait()
        result = self.handler(request)
        if isinstance(result, BaseException):
            raise result
        if isinstance(result, Response):
            return result
        return Response(body=result, status=200, headers={}, url=request.url)

    def hold(self) -> asyncio.Event:
        self.gate = asyncio.Event()
        return self.gate


async def settle() -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(10):
        await asyncio.sleep(0)
