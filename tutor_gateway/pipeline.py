# tutor_gateway/pipeline.py
"""One tutoring turn from quota check to the cleaned upstream answer."""
import logging
from typing import Optional, Sequence

from tutor_gateway.background import EvaluationScheduler
from tutor_gateway.config import settings
from tutor_gateway.errors import AggregatedGatewayFailure, ConfigIncomplete, QuotaExceeded, SafetyViolation
from tutor_gateway.gateway import GatewayClient
from tutor_gateway.model_config import ModelConfigResolver
from tutor_gateway.prompts import build_system_prompt, build_user_prompt, truncate_history_message
from tutor_gateway.quota import QuotaGuard
from tutor_gateway.safety import IncidentContext, SafetyPolicy, SafetyScreener
from tutor_gateway.schemas import ChatMessage, ChatOutcome, ChatTurn
from tutor_gateway.topic_guard import OFF_TOPIC_REPLY, OffTopicStrikes, check_topic, sanitize_reply

logger = logging.getLogger(__name__)

SERVICE_UNAVAILABLE_MESSAGE = "The AI service is temporarily unavailable. Please try again later."


class ChatPipeline:
    def __init__(
        self,
        quota: QuotaGuard,
        screener: SafetyScreener,
        resolver: ModelConfigResolver,
        gateway: GatewayClient,
        scheduler: Optional[EvaluationScheduler] = None,
        strikes: Optional[OffTopicStrikes] = None,
    ):
        self.quota = quota
        self.screener = screener
        self.resolver = resolver
        self.gateway = gateway
        self.scheduler = scheduler
        self.strikes = strikes or OffTopicStrikes()

    async def handle(self, turn: ChatTurn, history: Sequence[ChatMessage] = ()) -> ChatOutcome:
        config = self.resolver.get_config()

        limit = config.requests_per_minute
        if limit > 0 and not await self.quota.check_and_increment(turn.tenant_id, turn.user_id, limit):
            error = QuotaExceeded(limit)
            return ChatOutcome(allowed=False, error=str(error), code=error.code)

        if len(turn.student_text) > settings.max_student_text_length:
            return ChatOutcome(
                allowed=False,
                error=f"Message too long (max {settings.max_student_text_length} characters)",
                code="INPUT_TOO_LONG",
            )

        code = turn.attached_code
        code_warning = None
        if code and len(code) > settings.max_code_length:
            code = code[:settings.max_code_length]
            code_warning = f"Code truncated to the first {settings.max_code_length} characters"

        context = IncidentContext(
            tenant_id=turn.tenant_id,
            user_id=turn.user_id,
            conversation_id=turn.conversation_id,
            question_type=turn.question_type.value,
        )
        match = self.screener.screen(
            turn.student_text,
            context,
            code=code,
            custom_patterns_text=config.custom_safety_patterns_text,
            problem_content=turn.problem_content,
        )
        if match is not None and self.screener.policy is SafetyPolicy.BLOCK:
            violation = SafetyViolation(match.pattern)
            return ChatOutcome(
                allowed=True,
                blocked=True,
                pattern=match.pattern,
                error=str(violation),
                code=violation.code,
            )

        topic = check_topic(turn.student_text, code)
        strikes = await self.strikes.record(turn.conversation_id, topic.off_topic)
        if topic.off_topic:
            logger.info(
                f"Off-topic turn from user {turn.user_id} in tenant {turn.tenant_id} "
                f"(keyword={topic.matched_keyword!r}, strike {strikes})"
            )
            strike_limit = settings.off_topic_strike_limit
            if strike_limit > 0 and strikes >= strike_limit:
                return ChatOutcome(
                    allowed=True,
                    content=OFF_TOPIC_REPLY,
                    code="OFF_TOPIC",
                    off_topic=True,
                    code_warning=code_warning,
                )

        system_prompt = build_system_prompt(config.prompt_template, turn.question_type)
        messages = [
            ChatMessage(role=message.role, content=truncate_history_message(message.content))
            for message in history
            if message.role != "system"
        ]
        messages.append(ChatMessage(
            role="user",
            content=build_user_prompt(turn.question_type, turn.student_text, code),
        ))

        try:
            result = await self.gateway.send(self.resolver.resolve_ordered_models(config), messages, system_prompt)
        except ConfigIncomplete as e:
            logger.warning(f"Chat for tenant {turn.tenant_id} rejected: {e}")
            return ChatOutcome(allowed=True, error=str(e), code=e.code, code_warning=code_warning)
        except AggregatedGatewayFailure as e:
            logger.error(f"Chat for tenant {turn.tenant_id} failed: {e}")
            return ChatOutcome(
                allowed=True,
                error=SERVICE_UNAVAILABLE_MESSAGE,
                code=e.code,
                code_warning=code_warning,
            )

        reply = sanitize_reply(result.content, turn.question_type, turn.problem_content)
        if reply.rewritten:
            logger.info(f"Reply to user {turn.user_id} in tenant {turn.tenant_id} rewritten by the topic guard")

        return ChatOutcome(
            allowed=True,
            content=reply.content,
            used_model=f"{result.used_model.endpoint_name}/{result.used_model.model_name}",
            code_warning=code_warning,
            off_topic=topic.off_topic,
            rewritten=reply.rewritten,
        )

    def conversation_updated(self, conversation_id: str) -> None:
        """Queue an effectiveness evaluation for the conversation, if a scheduler is attached."""
        if self.scheduler is None:
            return
        self.scheduler.schedule(conversation_id)
