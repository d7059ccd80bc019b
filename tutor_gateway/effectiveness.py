# tutor_gateway/effectiveness.py
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, Sequence

from tutor_gateway.errors import ClassificationError
from tutor_gateway.schemas import EffectivenessVerdict, StoredMessage

logger = logging.getLogger(__name__)

EFFECTIVENESS_RULES = {
    "MIN_STUDENT_MESSAGES": 2,
    "MIN_AI_MESSAGES": 2,
    # Average student message length must exceed this many characters
    "MIN_STUDENT_AVG_LENGTH": 20,
    "LEARNING_KEYWORDS": (
        "理解", "思路", "算法", "复杂度", "优化", "错误", "调试",
        "understand", "approach", "algorithm", "complexity", "optimize", "error", "debug",
    ),
}

STUDENT_ROLES = frozenset({"student", "user"})
AI_ROLES = frozenset({"ai", "assistant"})


class ConversationStore(Protocol):
    async def list_messages(self, conversation_id: str) -> list[StoredMessage]:
        ...

    async def save_verdict(self, verdict: EffectivenessVerdict) -> None:
        ...


def _has_learning_keyword(content: str) -> bool:
    lowered = content.lower()
    return any(keyword in lowered for keyword in EFFECTIVENESS_RULES["LEARNING_KEYWORDS"])


def classify(messages: Sequence[StoredMessage]) -> tuple[bool, Optional[str]]:
    """Run the rule cascade. Returns (is_effective, name of the first failed check)."""
    student = [m for m in messages if m.role in STUDENT_ROLES]
    ai = [m for m in messages if m.role in AI_ROLES]

    if len(student) < EFFECTIVENESS_RULES["MIN_STUDENT_MESSAGES"]:
        return False, "student_message_count"

    if len(ai) < EFFECTIVENESS_RULES["MIN_AI_MESSAGES"]:
        return False, "ai_message_count"

    avg_length = sum(len(m.content) for m in student) / len(student)
    if avg_length <= EFFECTIVENESS_RULES["MIN_STUDENT_AVG_LENGTH"]:
        return False, "student_average_length"

    if not any(_has_learning_keyword(m.content) for m in student):
        return False, "learning_keyword"

    return True, None


class EffectivenessClassifier:
    """Scores whether a finished conversation met the minimum-engagement bar.

    Failures never propagate: any error yields a False verdict.
    """

    def __init__(
        self,
        store: ConversationStore,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self._clock = clock

    async def evaluate(self, conversation_id: str) -> bool:
        try:
            messages = await self._store.list_messages(conversation_id)
            if not all(isinstance(m, StoredMessage) for m in messages):
                raise ClassificationError(f"Malformed messages for conversation {conversation_id}")

            is_effective, failed_check = classify(messages)
            await self._store.save_verdict(EffectivenessVerdict(
                conversation_id=conversation_id,
                is_effective=is_effective,
                evaluated_at=self._clock(),
                failed_check=failed_check,
            ))
            return is_effective
        except Exception as e:
            logger.error(f"Effectiveness evaluation failed for {conversation_id}: {e}")
            await self._save_fallback(conversation_id)
            return False

    async def _save_fallback(self, conversation_id: str) -> None:
        try:
            await self._store.save_verdict(EffectivenessVerdict(
                conversation_id=conversation_id,
                is_effective=False,
                evaluated_at=self._clock(),
                failed_check="error",
            ))
        except Exception as e:
            logger.error(f"Could not store fallback verdict for {conversation_id}: {e}")
