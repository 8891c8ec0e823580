"""
Background event loop hosting the quiz escrow core

Flask handlers run in worker threads; the scheduler, the draft store and
the session index must all live on one event loop so their state is only
ever touched from a single thread. Handlers hand coroutines to this loop
and block on the result.
"""

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class EventLoopRuntime:
    def __init__(self, name: str = 'quiz-escrow-loop'):
        self.name = name
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    def start(self) -> 'EventLoopRuntime':
        if self._thread is not None and self._thread.is_alive():
            return self

        self._ready.clear()
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()
        self._ready.wait()
        logger.info(f"✅ Event loop runtime '{self.name}' started")
        return self

    def _run_loop(self) -> None:
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self._ready.set()
        try:
            self.loop.run_forever()
        finally:
            self.loop.close()

    @property
    def running(self) -> bool:
        return self.loop is not None and self.loop.is_running()

    def run(self, coro: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """Run a coroutine on the background loop and wait for its result"""
        if not self.running:
            self.start()
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout)

    def spawn(self, coro: Awaitable[Any]):
        """Start a coroutine on the loop without waiting for it"""
        if not self.running:
            self.start()
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def call(self, func: Callable[..., Any], *args, timeout: Optional[float] = None, **kwargs) -> Any:
        """Run a plain function on the loop thread"""
        async def invoke():
            return func(*args, **kwargs)
        return self.run(invoke(), timeout)

    def stop(self) -> None:
        if self.loop is None:
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._thread = None
        self.loop = None
        logger.info(f"🛑 Event loop runtime '{self.name}' stopped")
