import asyncio

from .exceptions import InitializationCancelled


class CancellationToken:
    """Explicit cancellation handle checked at suspension points.

    Initialization routines receive one of these and call ``raise_if_cancelled()``
    between phases, and use ``sleep()`` for backoff delays so a cancel wakes them.
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

    def cancel(self, reason: str = "Initialization cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise InitializationCancelled(self._reason)

    async def sleep(self, delay: float) -> bool:
        """Sleep for *delay* seconds; return True early if cancelled meanwhile."""
        if delay <= 0:
            await asyncio.sleep(0)
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except TimeoutError:
            return False
        return True

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"
