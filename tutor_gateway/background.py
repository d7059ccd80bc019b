# tutor_gateway/background.py
import asyncio
import logging
from types import TracebackType
from typing import Optional

from tutor_gateway.effectiveness import EffectivenessClassifier

logger = logging.getLogger(__name__)


class EvaluationScheduler:
    """Owns background effectiveness evaluations for the hosting process.

    Create it at startup and close it at shutdown; ``aclose`` cancels whatever
    is still running.

    Usage:
        async with EvaluationScheduler(classifier) as scheduler:
            scheduler.schedule(conversation_id)
    """

    def __init__(self, classifier: EffectivenessClassifier):
        self._classifier = classifier
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, conversation_id: str) -> Optional[asyncio.Task]:
        """Start evaluating a conversation without waiting for the result."""
        if self._closed:
            logger.warning(f"Scheduler closed; evaluation of {conversation_id} skipped")
            return None

        task = asyncio.create_task(
            self._classifier.evaluate(conversation_id),
            name=f"effectiveness:{conversation_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for all scheduled evaluations to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} pending evaluation(s)")

    async def __aenter__(self) -> "EvaluationScheduler":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        await self.aclose()
