"""MetadataRecorder — runs metadata writes beside physical operations.

Writes are submitted as coroutine factories so a failed attempt can be
retried with a fresh coroutine. Failures are logged but never propagated:
a lost metadata write degrades tracking, it does not fail the file
operation that triggered it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    WriteFactory = Callable[[], Awaitable[Any]]

logger = logging.getLogger(__name__)


class MetadataRecorder:
    """Schedules metadata writes with a bounded retry policy.

    A write counts as failed when it raises or returns ``None``, which is
    how the metadata service reports a storage error. ``False`` means no
    record matched and is not retried.

    Args:
        max_attempts: Attempts per write before giving up.
        retry_delay: Seconds to wait between attempts.
        logger: Where failures are reported. Defaults to this module's logger.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        retry_delay: float = 0.05,
        logger: logging.Logger | None = None,
    ) -> None:
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self._logger = logger or logging.getLogger(__name__)
        self._tasks: set[asyncio.Task[bool]] = set()
        self.failures = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def run(self, name: str, factory: WriteFactory) -> bool:
        """Perform the write now, retrying on failure. Returns success."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                outcome = await factory()
            except Exception:
                self._logger.warning(
                    "Metadata write %s failed (attempt %d/%d)",
                    name,
                    attempt,
                    self.max_attempts,
                    exc_info=True,
                )
            else:
                if outcome is not None:
                    return True
                self._logger.warning(
                    "Metadata write %s reported failure (attempt %d/%d)",
                    name,
                    attempt,
                    self.max_attempts,
                )
            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_delay)

        self.failures += 1
        self._logger.error("Giving up on metadata write %s", name)
        return False

    def submit(self, name: str, factory: WriteFactory) -> asyncio.Task[bool]:
        """Schedule the write in the background and return its task."""
        task = asyncio.get_running_loop().create_task(self.run(name, factory), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every submitted write to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
