"""
Orchestration façade: drives the five pipeline stages for one chat turn
and always returns a well-formed response.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, AsyncIterator

from study_buddy.context.optimizer import ContextOptimizer
from study_buddy.core.classifier import QueryClassification, QueryClassifier, QueryType
from study_buddy.memory.models import (
    CompressionLevel,
    ContextBundle,
    Interaction,
    PerformanceSnapshot,
)
from study_buddy.memory.store import MemoryStore
from study_buddy.monitoring.models import InteractionMetrics, StudySessionContext
from study_buddy.monitoring.monitor import RealTimeMonitor
from study_buddy.orchestration.compliance import ComplianceManager
from study_buddy.orchestration.integration import IntegrationManager, StageContext
from study_buddy.orchestration.models import (
    ChatRequest,
    ChatResponse,
    CoordinationResult,
    IntegrationHealthStatus,
    OptimizationPlan,
    OrchestrationMetadata,
    Stage,
)
from study_buddy.orchestration.performance import PerformanceOptimizer
from study_buddy.personalization.engine import PersonalizationEngine
from study_buddy.personalization.models import (
    PersonalizationRequest,
    PersonalizationResult,
    SessionSignals,
)
from study_buddy.shared.exceptions import StageHealthCriticalError, StorageError
from study_buddy.shared.llm import AiServiceManager, GenerationResult
from study_buddy.shared.logging import get_logger, log_with_context
from study_buddy.shared.models import ConversationTurn, TokenUsage
from study_buddy.shared.tokens import count_tokens
from study_buddy.shared.utils import to_iso, utcnow
from study_buddy.storage.store import RelationalStore
from study_buddy.validation.models import ResponseDraft, ValidationRequest, ValidationResult
from study_buddy.validation.validator import ResponseValidator

logger = get_logger(__name__)

FALLBACK_MESSAGE = (
    "I'm having trouble putting together a full answer right now. "
    "Please try again in a moment; your question has not been lost."
)
REFUSAL_MESSAGE = (
    "I can't help with that request as written. "
    "Try rephrasing it as a question about the material you're studying."
)
UNAVAILABLE_ERROR = "The study assistant is temporarily unavailable."


@dataclass
class GeneratedAnswer:
    """Output of the response stage."""
    content: str
    generation: Optional[GenerationResult] = None
    validation: Optional[ValidationResult] = None
    unvalidated: bool = False
    refused: bool = False
    cached: bool = False


def interaction_row(interaction: Interaction) -> Dict[str, Any]:
    row = interaction.model_dump(mode="json")
    row["timestamp"] = to_iso(interaction.timestamp)
    row["created_at"] = to_iso(utcnow())
    return row


class OrchestrationEngine:
    """Runs one chat turn through input, context, personalization, response and monitoring."""

    def __init__(
        self,
        ai_service: AiServiceManager,
        store: RelationalStore,
        memory_store: MemoryStore,
        classifier: QueryClassifier,
        context_optimizer: ContextOptimizer,
        validator: ResponseValidator,
        personalization: PersonalizationEngine,
        monitor: RealTimeMonitor,
        integration: IntegrationManager,
        performance: PerformanceOptimizer,
        compliance: ComplianceManager,
    ):
        self.ai_service = ai_service
        self.store = store
        self.memory_store = memory_store
        self.classifier = classifier
        self.context_optimizer = context_optimizer
        self.validator = validator
        self.personalization = personalization
        self.monitor = monitor
        self.integration = integration
        self.performance = performance
        self.compliance = compliance

        self.integration.register_probe(Stage.CONTEXT, self.memory_store.ping)
        self.integration.register_probe(Stage.RESPONSE, self._provider_probe)
        self.integration.register_probe(Stage.PERSONALIZATION, self.store.ping)

    async def _provider_probe(self) -> bool:
        """Last known provider status; re-ping only when every provider is marked down."""
        if any(self.ai_service.provider_status().values()):
            return True
        return await self.ai_service.health_check()

    @property
    def handlers(self):
        return {
            Stage.INPUT: self._input_stage,
            Stage.CONTEXT: self._context_stage,
            Stage.PERSONALIZATION: self._personalization_stage,
            Stage.RESPONSE: self._response_stage,
            Stage.MONITORING: self._monitoring_stage,
        }

    # Façade

    async def orchestrate(
        self,
        request: ChatRequest,
        history: Optional[List[ConversationTurn]] = None
    ) -> ChatResponse:
        """
        Produce a response for one chat turn. Never raises.

        Stage failures, critical stage health and upstream outages all end
        in a response with fallback=True and a user-safe error message.
        """
        started = time.perf_counter()
        try:
            return await self._orchestrate(request, history or [], started)
        except Exception as e:
            logger.error(
                f"Orchestration failed: {type(e).__name__}: {str(e)}",
                extra={"action": "orchestration_failed"},
            )
            return self._fallback(request, started, retry_after=getattr(e, "retry_after", None))

    async def _orchestrate(
        self,
        request: ChatRequest,
        history: List[ConversationTurn],
        started: float
    ) -> ChatResponse:
        session = await self.monitor.ensure_session(
            request.user_id,
            request.session_id,
            StudySessionContext(subject=request.subject, learning_goals=request.goals),
        )
        request = request.model_copy(update={"session_id": session.session_id})

        health = await self.integration.check_health()
        try:
            self.integration.ensure_not_critical(health)
        except StageHealthCriticalError as e:
            logger.warning(f"Serving degraded response: {str(e)}", extra={"action": "health_critical"})
            await self._record_failure(request, started)
            return self._fallback(request, started, health=health, retry_after=30)

        context = self._new_context(request, history, started)
        strategy = self.integration.select_strategy(health)
        coordination = await self.integration.coordinate(self.handlers, context, strategy, health)

        answer: Optional[GeneratedAnswer] = context.results.get(Stage.RESPONSE)
        if answer is None:
            await self._record_failure(request, started)
            return self._fallback(
                request, started,
                health=health,
                coordination=coordination,
                context=context,
                retry_after=context.data.get("retry_after"),
            )

        response = self._build_response(request, answer, context, started)
        response.metadata = self._metadata(context, started, health, coordination)
        log_with_context(
            logger, logging.INFO, "Chat turn orchestrated",
            user_id=request.user_id,
            action="orchestrate",
            session_id=request.session_id,
            conversation_id=request.conversation_id,
            interaction_id=request.interaction_id,
            provider=response.provider_used,
            strategy=strategy.value,
            latency_ms=round(response.latency_ms, 1),
            cached=answer.cached,
        )
        return response

    def _new_context(self, request: ChatRequest, history: List[ConversationTurn], started: float) -> StageContext:
        context = StageContext(request)
        context.data["history"] = history
        context.data["started"] = started
        return context

    # Stage handlers

    async def _input_stage(self, context: StageContext) -> QueryClassification:
        request: ChatRequest = context.request
        context.data["compliance"] = await self.compliance.check_request(request.user_id, request.message)
        classification = self.classifier.classify(request.message, request.is_personal_query, request.subject)
        context.data["classification"] = classification
        return classification

    def _requested_level(self, request: ChatRequest, classification: QueryClassification) -> CompressionLevel:
        if request.context_level is not None:
            level = CompressionLevel(request.context_level)
        elif classification.query_type == QueryType.GENERAL:
            level = CompressionLevel.RECENT
        else:
            level = CompressionLevel.SELECTIVE

        # Slow recent latency caps the request; escalation rules still apply afterwards
        cap = self.performance.plan(classification).context_level_cap
        if cap is not None and level.rank > cap.rank:
            logger.debug(f"Requested context capped at {cap.value}", extra={"action": "context_capped"})
            level = cap
        return level

    async def _context_stage(self, context: StageContext) -> ContextBundle:
        request: ChatRequest = context.request
        classification: QueryClassification = context.data["classification"]
        level = self._requested_level(request, classification)
        goals = list(dict.fromkeys([*request.goals, *classification.goals]))
        try:
            return await self.context_optimizer.build(
                request.user_id,
                level=level,
                token_limit=request.token_limit,
                subject_filter=[classification.subject] if classification.subject else None,
                history=context.data["history"],
                goals=goals,
                query=request.message,
            )
        except Exception as e:
            logger.warning(f"Context build failed, continuing without context: {str(e)}")
            return ContextBundle(
                compression_level=CompressionLevel.LIGHT,
                requested_level=level,
                token_limit=request.token_limit or 0,
            )

    async def _personalization_stage(self, context: StageContext) -> Optional[PersonalizationResult]:
        request: ChatRequest = context.request
        classification: QueryClassification = context.data["classification"]
        compliance = context.data["compliance"]
        session = self.monitor.get_session(request.session_id) if request.session_id else None
        signals = SessionSignals()
        if session is not None:
            m = session.metrics
            signals = SessionSignals(
                satisfaction=m.satisfaction_score if m.satisfaction_samples else None,
                accuracy=m.accuracy_score if m.accuracy_samples else None,
                engagement=m.engagement_score if m.engagement_samples else None,
                response_time_ms=m.average_response_time_ms,
            )
        try:
            return await self.personalization.personalize(PersonalizationRequest(
                user_id=request.user_id,
                # Without consent nothing is folded into the stored profile
                interaction_id=request.interaction_id if compliance.storage_allowed else None,
                query=compliance.redacted_message or request.message,
                subject=classification.subject,
                signals=signals,
            ))
        except Exception as e:
            logger.warning(f"Personalization skipped: {str(e)}", extra={"action": "personalization_failed"})
            return None

    def _plan(self, context: StageContext) -> OptimizationPlan:
        request: ChatRequest = context.request
        personalization: Optional[PersonalizationResult] = context.results.get(Stage.PERSONALIZATION)
        plan = self.performance.plan(
            context.data["classification"],
            personalization.personalization if personalization else None,
            self.ai_service.provider_status(),
            request.message,
        )
        context.data["plan"] = plan
        return plan

    def _generation_kwargs(self, context: StageContext, plan: OptimizationPlan) -> Dict[str, Any]:
        bundle: Optional[ContextBundle] = context.results.get(Stage.CONTEXT)
        personalization: Optional[PersonalizationResult] = context.results.get(Stage.PERSONALIZATION)
        preferences = personalization.personalization.as_preferences() if personalization else {}
        preferences.update(self.performance.style_overrides)
        return {
            "prompt": context.request.message,
            "context": bundle.text if bundle else "",
            "preferences": preferences or None,
            "max_tokens": plan.max_tokens,
            "temperature": plan.temperature,
            "preferred_provider": plan.preferred_provider,
        }

    async def _response_stage(self, context: StageContext) -> GeneratedAnswer:
        request: ChatRequest = context.request
        if not context.data["compliance"].passed:
            return GeneratedAnswer(content=REFUSAL_MESSAGE, refused=True)

        plan = self._plan(context)
        generation: Optional[GenerationResult] = self.performance.cache_get(plan.cache_key) if plan.cacheable else None
        cached = generation is not None
        if generation is None:
            try:
                generation = await self.ai_service.generate(**self._generation_kwargs(context, plan))
            except Exception as e:
                context.data["retry_after"] = getattr(e, "retry_after", None)
                raise

        answer = await self._validate(context, generation)
        answer.cached = cached
        if plan.cacheable and not cached and answer.validation is not None and answer.validation.is_valid:
            self.performance.cache_put(plan.cache_key, generation)
        return answer

    async def _validate(self, context: StageContext, generation: GenerationResult) -> GeneratedAnswer:
        """Validation fails open: any problem leaves the answer unvalidated."""
        request: ChatRequest = context.request
        classification: QueryClassification = context.data["classification"]
        answer = GeneratedAnswer(content=generation.content, generation=generation)
        try:
            validation = await self.validator.validate(
                ResponseDraft(
                    content=generation.content,
                    model_used=generation.model_used,
                    provider_used=generation.provider_used,
                ),
                ValidationRequest(
                    user_id=request.user_id,
                    query=request.message,
                    subject=classification.subject,
                    conversation_history=context.data["history"],
                ),
                context.results.get(Stage.CONTEXT),
            )
        except Exception as e:
            logger.warning(f"Validation failed, continuing unvalidated: {str(e)}", extra={"action": "validation_failed"})
            answer.unvalidated = True
            return answer

        answer.validation = validation
        answer.unvalidated = validation.timed_out
        return answer

    async def _monitoring_stage(self, context: StageContext) -> bool:
        """Report the turn to the monitor and persist it when consent allows. Returns whether it was persisted."""
        request: ChatRequest = context.request
        answer: GeneratedAnswer = context.results[Stage.RESPONSE]
        classification: QueryClassification = context.data["classification"]
        compliance = context.data["compliance"]
        latency_ms = (time.perf_counter() - context.data["started"]) * 1000

        accuracy = None
        if answer.validation is not None and not answer.unvalidated:
            accuracy = answer.validation.validation_score

        if request.session_id:
            await self.monitor.record_interaction(request.session_id, InteractionMetrics(
                response_time_ms=latency_ms,
                accuracy=accuracy,
                subject=classification.subject,
                is_question=classification.question_type != "personal" or "?" in request.message,
            ))
        if answer.generation is not None and not answer.cached:
            self.performance.record_latency(answer.generation.latency_ms, answer.generation.provider_used)

        if answer.refused or not compliance.storage_allowed:
            return False

        interaction = Interaction(
            id=request.interaction_id,
            user_id=request.user_id,
            session_id=request.session_id,
            conversation_id=request.conversation_id,
            query=compliance.redacted_message or request.message,
            response=answer.content,
            subject=classification.subject,
            performance=PerformanceSnapshot(
                response_time_ms=latency_ms,
                accuracy_estimate=accuracy if accuracy is not None else 0.5,
            ),
        )
        try:
            await self.store.insert("interactions", interaction_row(interaction))
            await self.memory_store.store_interaction(
                interaction,
                quality_score=accuracy if accuracy is not None else 0.5,
                tags=[classification.query_type.value],
            )
        except StorageError as e:
            logger.warning(f"Interaction not persisted: {str(e)}", extra={"action": "persist_failed"})
            return False
        return True

    async def _record_failure(self, request: ChatRequest, started: float):
        if not request.session_id:
            return
        try:
            await self.monitor.record_interaction(request.session_id, InteractionMetrics(
                response_time_ms=(time.perf_counter() - started) * 1000,
                error=True,
                subject=request.subject,
            ))
        except Exception as e:
            logger.warning(f"Failed to record failed turn: {str(e)}")

    # Response assembly

    def _build_response(
        self,
        request: ChatRequest,
        answer: GeneratedAnswer,
        context: StageContext,
        started: float
    ) -> ChatResponse:
        generation = answer.generation
        return ChatResponse(
            content=answer.content,
            interaction_id=request.interaction_id,
            conversation_id=request.conversation_id,
            session_id=request.session_id,
            model_used=generation.model_used if generation else None,
            provider_used=generation.provider_used if generation else None,
            tokens_used=generation.tokens_used if generation and not answer.cached else TokenUsage(),
            latency_ms=(time.perf_counter() - started) * 1000,
            validation=answer.validation,
            personalization=context.results.get(Stage.PERSONALIZATION),
            query_classification=context.data.get("classification"),
            unvalidated=answer.unvalidated,
            error="request_refused" if answer.refused else None,
        )

    def _metadata(
        self,
        context: Optional[StageContext],
        started: float,
        health: Optional[IntegrationHealthStatus] = None,
        coordination: Optional[CoordinationResult] = None
    ) -> OrchestrationMetadata:
        data = context.data if context else {}
        bundle: Optional[ContextBundle] = context.results.get(Stage.CONTEXT) if context else None
        plan: Optional[OptimizationPlan] = data.get("plan")
        answer: Optional[GeneratedAnswer] = context.results.get(Stage.RESPONSE) if context else None
        return OrchestrationMetadata(
            strategy=coordination.strategy if coordination else None,
            stages=coordination.stage_results if coordination else [],
            health=health.overall if health else None,
            total_time_ms=(time.perf_counter() - started) * 1000,
            context_level=bundle.compression_level if bundle else None,
            context_tokens=bundle.token_usage.total if bundle else 0,
            optimizations=plan.applied if plan else [],
            compliance=data.get("compliance"),
            cached=bool(answer and answer.cached),
        )

    def _fallback(
        self,
        request: ChatRequest,
        started: float,
        health: Optional[IntegrationHealthStatus] = None,
        coordination: Optional[CoordinationResult] = None,
        context: Optional[StageContext] = None,
        retry_after: Optional[int] = None
    ) -> ChatResponse:
        return ChatResponse(
            content=FALLBACK_MESSAGE,
            interaction_id=request.interaction_id,
            conversation_id=request.conversation_id,
            session_id=request.session_id,
            latency_ms=(time.perf_counter() - started) * 1000,
            query_classification=context.data.get("classification") if context else None,
            fallback=True,
            error=UNAVAILABLE_ERROR,
            retry_after=retry_after,
            metadata=self._metadata(context, started, health, coordination),
        )

    # Streaming

    async def stream(
        self,
        request: ChatRequest,
        history: Optional[List[ConversationTurn]] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Stream one chat turn as start / content / metadata / error / end events.

        `end` is always the last event, also after an error.
        """
        started = time.perf_counter()
        yield {"type": "start", "data": {"interaction_id": request.interaction_id}}
        try:
            async for event in self._stream(request, history or [], started):
                yield event
        except Exception as e:
            logger.error(
                f"Streaming failed: {type(e).__name__}: {str(e)}",
                extra={"action": "stream_failed", "interaction_id": request.interaction_id},
            )
            await self._record_failure(request, started)
            yield {"type": "error", "data": {
                "message": UNAVAILABLE_ERROR,
                "retry_after": getattr(e, "retry_after", None),
            }}
        yield {"type": "end", "data": {"interaction_id": request.interaction_id}}

    async def _stream(
        self,
        request: ChatRequest,
        history: List[ConversationTurn],
        started: float
    ) -> AsyncIterator[Dict[str, Any]]:
        session = await self.monitor.ensure_session(
            request.user_id,
            request.session_id,
            StudySessionContext(subject=request.subject, learning_goals=request.goals),
        )
        request = request.model_copy(update={"session_id": session.session_id})

        health = await self.integration.check_health()
        self.integration.ensure_not_critical(health)

        context = self._new_context(request, history, started)
        handlers = {
            stage: handler for stage, handler in self.handlers.items()
            if stage in (Stage.INPUT, Stage.CONTEXT, Stage.PERSONALIZATION)
        }
        coordination = await self.integration.coordinate(
            handlers, context, self.integration.select_strategy(health), health
        )
        # Generation runs outside coordinate() here, so gate it on its dependencies directly
        response_deps = self.integration.stages[Stage.RESPONSE].dependencies
        unavailable = [r.stage.label for r in coordination.stage_results if r.stage in response_deps and not r.success]
        if unavailable or "classification" not in context.data:
            raise StageHealthCriticalError(f"Response dependencies unavailable: {unavailable or ['input']}")

        if not context.data["compliance"].passed:
            answer = GeneratedAnswer(content=REFUSAL_MESSAGE, refused=True)
            yield {"type": "content", "data": {"text": REFUSAL_MESSAGE}}
        else:
            plan = self._plan(context)
            kwargs = self._generation_kwargs(context, plan)
            chunks: List[str] = []
            served_by: List[str] = []
            async for chunk in self.ai_service.stream(**kwargs, on_provider=served_by.append):
                chunks.append(chunk)
                yield {"type": "content", "data": {"text": chunk}}
            content = "".join(chunks)
            latency_ms = (time.perf_counter() - started) * 1000
            generation = GenerationResult(
                content=content,
                model_used="stream",
                provider_used=served_by[0] if served_by else "unknown",
                tokens_used=TokenUsage(output=count_tokens(content)),
                latency_ms=latency_ms,
            )
            answer = await self._validate(context, generation)

        context.results[Stage.RESPONSE] = answer
        try:
            await self._monitoring_stage(context)
        except Exception as e:
            logger.warning(f"Monitoring after stream failed: {str(e)}")

        response = self._build_response(request, answer, context, started)
        response.metadata = self._metadata(context, started, health, coordination)
        yield {"type": "metadata", "data": response.model_dump(mode="json", exclude={"content"})}
