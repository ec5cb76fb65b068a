"""
Main Study Buddy pipeline: wires the services together and exposes the
chat, streaming, feedback and session operations used by the API.
"""

import asyncio
import logging
import uuid
from typing import Optional, List, Dict, Any, AsyncIterator, Set

from pydantic import BaseModel, Field

from study_buddy.context.optimizer import ContextOptimizer
from study_buddy.core.classifier import QueryClassifier
from study_buddy.core.conversations import ConversationService
from study_buddy.feedback.collector import FeedbackCollector, score_feedback
from study_buddy.feedback.learning import (
    LearningEngine,
    LearningRequest,
    LearningResult,
    LearningStatus,
    LearningType,
)
from study_buddy.feedback.models import Feedback, FeedbackRequest
from study_buddy.memory.knowledge import KnowledgeBase
from study_buddy.memory.models import CompressionLevel
from study_buddy.memory.store import MemoryStore
from study_buddy.monitoring.models import (
    SessionHealthStatus,
    StudyEffectivenessReport,
    StudySessionContext,
)
from study_buddy.monitoring.monitor import RealTimeMonitor, SessionStore
from study_buddy.orchestration.compliance import ComplianceManager, redact_pii
from study_buddy.orchestration.engine import OrchestrationEngine
from study_buddy.orchestration.integration import IntegrationManager
from study_buddy.orchestration.models import ChatRequest, ChatResponse
from study_buddy.orchestration.performance import PerformanceOptimizer
from study_buddy.personalization.engine import PersonalizationEngine
from study_buddy.personalization.models import (
    PatternAnalysisRequest,
    PatternAnalysisResult,
    SessionSignals,
)
from study_buddy.personalization.patterns import PatternRecognizer
from study_buddy.shared.config import StudyBuddySettings, get_settings
from study_buddy.shared.embeddings import EmbeddingClient
from study_buddy.shared.exceptions import (
    InvalidInputError,
    SessionError,
    StorageError,
    UnauthorizedError,
)
from study_buddy.shared.llm import AiServiceManager
from study_buddy.shared.logging import get_logger, log_with_context
from study_buddy.shared.models import ConversationTurn
from study_buddy.storage.store import RelationalStore
from study_buddy.validation.validator import ResponseValidator

logger = get_logger(__name__)

# Learning passes run on every full feedback pass
FULL_PASS_LEARNING = (
    LearningType.CORRECTION_LEARNING,
    LearningType.HALLUCINATION_DETECTION,
    LearningType.QUALITY_OPTIMIZATION,
    LearningType.BEHAVIORAL_ADAPTATION,
)


class FeedbackOutcome(BaseModel):
    """What the full feedback pass learned and changed."""
    feedback: Feedback
    learning: List[LearningResult] = Field(default_factory=list)
    adjustments_applied: List[str] = Field(default_factory=list)
    adaptations_marked: int = 0
    patterns: Optional[PatternAnalysisResult] = None


class StudyBuddyPipeline:
    """Main pipeline that wires everything together."""

    def __init__(
        self,
        store: RelationalStore,
        ai_service: AiServiceManager,
        embedder: Optional[EmbeddingClient] = None,
        config: Optional[StudyBuddySettings] = None,
        session_store: Optional[SessionStore] = None,
    ):
        self.config = config or get_settings()
        self.store = store
        self.ai_service = ai_service
        self.embedder = embedder or EmbeddingClient(provider="hashing")

        self.memory_store = MemoryStore(store, self.embedder, self.config.memory)
        self.knowledge_base = KnowledgeBase(store, self.embedder)
        self.conversations = ConversationService(store)
        self.classifier = QueryClassifier()
        self.context_optimizer = ContextOptimizer(
            self.memory_store, self.knowledge_base, self.embedder, self.config.context
        )
        self.validator = ResponseValidator(self.knowledge_base, self.config.validation)
        self.feedback = FeedbackCollector(store, self.config.feedback)
        self.learning = LearningEngine(self.config.learning, self.config.feedback)
        self.personalization = PersonalizationEngine(store, self.config.personalization)
        self.patterns = PatternRecognizer(store, self.config.patterns, self.config.feedback)
        self.monitor = RealTimeMonitor(self.config.monitor, session_store, ai_service.provider_status)
        self.integration = IntegrationManager(self.config.integration)
        self.performance = PerformanceOptimizer(self.config.performance, self.config.llm)
        self.compliance = ComplianceManager(store, self.memory_store, self.personalization, self.config.safety)
        self.engine = OrchestrationEngine(
            ai_service=ai_service,
            store=store,
            memory_store=self.memory_store,
            classifier=self.classifier,
            context_optimizer=self.context_optimizer,
            validator=self.validator,
            personalization=self.personalization,
            monitor=self.monitor,
            integration=self.integration,
            performance=self.performance,
            compliance=self.compliance,
        )
        self._background: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, config: Optional[StudyBuddySettings] = None) -> "StudyBuddyPipeline":
        config = config or get_settings()
        return cls(
            store=RelationalStore(config.storage.db_path),
            ai_service=AiServiceManager(config=config.llm),
            embedder=EmbeddingClient(),
            config=config,
        )

    async def startup(self) -> int:
        """Load the knowledge seed file, if configured. Returns the number of sources loaded."""
        path = self.config.storage.knowledge_seed_path
        if path is None:
            return 0
        return await self.knowledge_base.load_seed(path)

    async def shutdown(self):
        self.monitor.stop()
        for task in list(self._background):
            task.cancel()

    # Input checks

    @staticmethod
    def _check_user(user_id: Optional[str]):
        if not user_id:
            raise UnauthorizedError("Missing user id")
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            raise InvalidInputError("User id must be a UUID")

    async def _history(self, conversation_id: str) -> List[ConversationTurn]:
        try:
            return await self.conversations.recent_history(
                conversation_id, limit=self.config.context.history_turns.get("full", 20)
            )
        except StorageError as e:
            logger.warning(f"History unavailable, continuing without it: {str(e)}")
            return []

    async def _persist_message(self, conversation_id: str, role: str, content: str, **fields) -> bool:
        """Message writes degrade: a store failure is logged and the turn continues."""
        if self.config.safety.redact_pii:
            content, _ = redact_pii(content)
        try:
            await self.conversations.add_message(conversation_id, role, content, **fields)
            return True
        except StorageError as e:
            logger.warning(f"Message not persisted: {str(e)}", extra={"action": "message_persist_failed"})
            return False

    async def _prepare(
        self,
        user_id: str,
        message: str,
        conversation_id: Optional[str],
        chat_type: str,
        is_personal_query: bool,
        session_id: Optional[str],
        subject: Optional[str],
        context_level: Optional[str],
        token_limit: Optional[int],
        goals: Optional[List[str]],
    ):
        """Validate the turn, check ownership, persist the user message. Returns (request, history)."""
        self._check_user(user_id)
        if not message or not message.strip():
            raise InvalidInputError("Message must not be empty")
        if token_limit is not None and token_limit < 0:
            raise InvalidInputError("token_limit must be non-negative")
        try:
            level = CompressionLevel(context_level) if context_level else None
        except ValueError:
            raise InvalidInputError(f"Unknown context level: {context_level}")

        # Ownership must be verified; store errors here are not degraded
        conversation = await self.conversations.get_or_create(
            user_id, conversation_id, chat_type, redact_pii(message)[0]
        )
        session = await self.monitor.ensure_session(
            user_id, session_id, StudySessionContext(subject=subject, learning_goals=goals or [])
        )
        history = await self._history(conversation["id"])
        await self._persist_message(conversation["id"], "user", message)

        request = ChatRequest(
            user_id=user_id,
            message=message,
            conversation_id=conversation["id"],
            session_id=session.session_id,
            chat_type=chat_type,
            is_personal_query=is_personal_query,
            subject=subject,
            context_level=level,
            token_limit=token_limit,
            goals=goals or [],
        )
        return request, history

    # Chat

    async def process_chat_turn(
        self,
        user_id: str,
        message: str,
        conversation_id: Optional[str] = None,
        chat_type: str = "general",
        is_personal_query: bool = False,
        session_id: Optional[str] = None,
        subject: Optional[str] = None,
        context_level: Optional[str] = None,
        token_limit: Optional[int] = None,
        goals: Optional[List[str]] = None,
    ) -> ChatResponse:
        """
        Answer one chat turn.

        Raises:
            UnauthorizedError if the user id is missing or the conversation belongs to someone else
            InvalidInputError for an empty message or malformed parameters
            UpstreamUnavailableError if ownership cannot be checked
        """
        request, history = await self._prepare(
            user_id, message, conversation_id, chat_type, is_personal_query,
            session_id, subject, context_level, token_limit, goals,
        )
        response = await self.engine.orchestrate(request, history)
        if not response.fallback:
            await self._persist_message(
                request.conversation_id, "assistant", response.content,
                model_used=response.model_used,
                provider_used=response.provider_used,
                tokens_used=response.tokens_used,
                latency_ms=response.latency_ms,
                context_included=response.metadata.context_tokens > 0,
            )
        return response

    async def stream_chat_turn(
        self,
        user_id: str,
        message: str,
        conversation_id: Optional[str] = None,
        chat_type: str = "general",
        is_personal_query: bool = False,
        session_id: Optional[str] = None,
        subject: Optional[str] = None,
        context_level: Optional[str] = None,
        token_limit: Optional[int] = None,
        goals: Optional[List[str]] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Validate the turn and return its event stream.

        Input and ownership errors raise here, before any event is produced.
        """
        request, history = await self._prepare(
            user_id, message, conversation_id, chat_type, is_personal_query,
            session_id, subject, context_level, token_limit, goals,
        )
        return self._stream_events(request, history)

    async def _stream_events(
        self,
        request: ChatRequest,
        history: List[ConversationTurn]
    ) -> AsyncIterator[Dict[str, Any]]:
        chunks: List[str] = []
        failed = False
        async for event in self.engine.stream(request, history):
            if event["type"] == "start":
                event["data"].update({
                    "conversation_id": request.conversation_id,
                    "session_id": request.session_id,
                })
            elif event["type"] == "content":
                chunks.append(event["data"]["text"])
            elif event["type"] == "error":
                failed = True
            elif event["type"] == "end" and chunks and not failed:
                await self._persist_message(request.conversation_id, "assistant", "".join(chunks))
            yield event

    # Feedback

    async def submit_feedback_fast(self, request: FeedbackRequest, schedule_full: bool = True) -> Feedback:
        """
        Store feedback and update session metrics. Learning runs in the background.

        Raises:
            InvalidFeedbackError if the payload is missing or the interaction is unknown
            UnauthorizedError if the interaction belongs to another user
        """
        self._check_user(request.user_id)
        feedback = await self.feedback.collect_feedback(request)
        if feedback.session_id:
            await self.monitor.record_feedback(
                feedback.session_id,
                satisfaction=feedback.quality_score,
                corrections=len(feedback.corrections),
                engagement=self._engagement(feedback),
            )
        if schedule_full:
            task = asyncio.create_task(self._full_pass_quietly(feedback))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return feedback

    submit_feedback = submit_feedback_fast

    def _engagement(self, feedback: Feedback) -> Optional[float]:
        """Engagement from implicit signals only; explicit ratings measure satisfaction."""
        if feedback.implicit is None:
            return None
        return score_feedback(None, feedback.implicit, self.config.feedback)

    async def _full_pass_quietly(self, feedback: Feedback):
        try:
            await self.submit_feedback_full(feedback)
        except Exception as e:
            logger.error(f"Full feedback pass failed: {str(e)}", extra={"action": "feedback_full_failed"})

    async def submit_feedback_full(self, feedback: Feedback) -> FeedbackOutcome:
        """Learning, personalization and pattern recomputation for one feedback event."""
        history = await self.feedback.feedback_for_user(
            feedback.user_id, days=self.config.learning.lookback_days
        )
        learning = [
            await self.learning.learn_from_feedback(LearningRequest(learning_type=t, feedback_data=history))
            for t in FULL_PASS_LEARNING
        ]
        adjustments = [
            adj for result in learning if result.status == LearningStatus.COMPLETED
            for adj in result.adjustments
        ]
        applied = self.performance.apply_adjustments(adjustments)

        engagement = self._engagement(feedback)
        await self.personalization.update_profile(
            feedback.user_id,
            f"feedback:{feedback.interaction_id}",
            SessionSignals(satisfaction=feedback.quality_score, engagement=engagement),
        )

        marked = 0
        fb_config = self.config.feedback
        if feedback.quality_score >= fb_config.positive_threshold:
            marked = await self.personalization.record_adaptation_outcome(feedback.user_id, feedback.interaction_id, True)
        elif feedback.quality_score <= fb_config.negative_threshold:
            marked = await self.personalization.record_adaptation_outcome(feedback.user_id, feedback.interaction_id, False)

        patterns = await self.patterns.recognize_patterns(PatternAnalysisRequest(user_id=feedback.user_id))

        log_with_context(
            logger, logging.INFO, "Full feedback pass complete",
            user_id=feedback.user_id,
            action="feedback_full",
            adjustments=len(applied),
            patterns=len(patterns.patterns),
        )
        return FeedbackOutcome(
            feedback=feedback,
            learning=learning,
            adjustments_applied=applied,
            adaptations_marked=marked,
            patterns=patterns,
        )

    # Sessions

    def _owned_session(self, session_id: str, user_id: Optional[str]):
        session = self.monitor.get_session(session_id)
        if session is None:
            raise SessionError(f"Unknown session {session_id}")
        if user_id is not None and session.user_id != user_id:
            raise UnauthorizedError("Session belongs to a different user")
        return session

    def get_session_health(self, session_id: str, user_id: Optional[str] = None) -> SessionHealthStatus:
        """Point-in-time snapshot. No side effects."""
        self._owned_session(session_id, user_id)
        return self.monitor.get_session_health(session_id)

    async def end_session(self, session_id: str, user_id: Optional[str] = None) -> StudyEffectivenessReport:
        self._owned_session(session_id, user_id)
        report = await self.monitor.end_session(session_id)
        if report is None:
            raise SessionError(f"Session {session_id} has already ended")
        return report

    async def health(self) -> Dict[str, Any]:
        status = await self.integration.check_health()
        return {
            "status": status.overall.value,
            "stages": {name: s.healthy for name, s in status.stages.items()},
            "providers": self.ai_service.provider_status(),
            "recommendations": status.recommendations,
        }
