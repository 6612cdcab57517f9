"""TransitionGate — single-writer coordination between requests and transitions.

Proxied requests hold a shared slot for the duration of their upstream call.
A transition (restart, preset activation, stop, exit-triggered reset) takes
exclusive access: it blocks new requests, waits for in-flight ones to drain,
and only then touches the process.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class TransitionGate:
    """Shared request slots plus one exclusive transition at a time.

    Requests that arrive while a transition is active block until it
    finishes. In-flight requests get ``drain_timeout`` seconds to finish
    before the transition proceeds under them.
    """

    def __init__(self, drain_timeout: float = 30.0):
        self.drain_timeout = drain_timeout
        self.active_requests = 0
        self.transition_active = False
        self.transition_lock = asyncio.Lock()
        self._drained = asyncio.Event()
        self._transition_done = asyncio.Event()
        self._drained.set()
        self._transition_done.set()

    async def acquire_request(self) -> None:
        """Take a request slot, waiting out any active transition."""
        while self.transition_active:
            await self._transition_done.wait()
        self.active_requests += 1
        self._drained.clear()

    def release_request(self) -> None:
        """Release a request slot and notify a waiting transition."""
        self.active_requests = max(0, self.active_requests - 1)
        if self.active_requests == 0:
            self._drained.set()

    @asynccontextmanager
    async def drain(self):
        """Block new requests and wait for in-flight ones.

        Caller must already hold ``transition_lock``.
        """
        self.transition_active = True
        self._transition_done.clear()
        try:
            if self.active_requests > 0:
                logger.info(
                    f"Transition waiting for {self.active_requests} "
                    f"in-flight request(s) to drain"
                )
                try:
                    await asyncio.wait_for(
                        self._drained.wait(), timeout=self.drain_timeout
                    )
                except asyncio.TimeoutError:
                    logger.warning(
                        f"Drain timeout after {self.drain_timeout}s, "
                        f"proceeding with {self.active_requests} request(s) in flight"
                    )
            yield
        finally:
            self.transition_active = False
            self._transition_done.set()

    @asynccontextmanager
    async def exclusive(self):
        """Serialize with other transitions, then drain requests."""
        async with self.transition_lock:
            async with self.drain():
                yield
