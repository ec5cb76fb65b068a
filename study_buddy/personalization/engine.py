"""
Personalization engine: per-user learning profiles and response adaptations.

Profiles persist as one JSON document per user in the relational store.
Every read-modify-write of a profile happens under a per-user asyncio.Lock so
concurrent events for the same user never lose counter updates.
"""

import asyncio
import weakref
from typing import Optional, List, Dict, Iterable

from study_buddy.memory.models import Interaction
from study_buddy.personalization.models import (
    Adaptation,
    AdaptationRecord,
    AdaptationType,
    LearningProgress,
    LearningStyleType,
    PersonalizationProfile,
    PersonalizationRequest,
    PersonalizationResult,
    PersonalizationStatus,
    PersonalizationTargets,
    SessionSignals,
)
from study_buddy.shared.config import PersonalizationConfig, settings
from study_buddy.shared.exceptions import StorageError
from study_buddy.shared.logging import get_logger
from study_buddy.shared.utils import clamp01, to_iso, utcnow
from study_buddy.storage.store import RelationalStore

logger = get_logger(__name__)

STYLE_KEYWORDS: Dict[LearningStyleType, tuple] = {
    LearningStyleType.VISUAL: ("diagram", "chart", "graph", "picture", "visual", "draw", "show me", "map"),
    LearningStyleType.AUDITORY: ("talk me through", "listen", "discuss", "out loud", "podcast", "say it"),
    LearningStyleType.KINESTHETIC: ("practice", "exercise", "hands-on", "try it", "example", "build", "experiment"),
    LearningStyleType.READING_WRITING: ("read", "notes", "summary", "summarize", "list", "define", "write"),
}

STYLE_FORMATS = {
    LearningStyleType.VISUAL: "visual_outline",
    LearningStyleType.AUDITORY: "conversational",
    LearningStyleType.KINESTHETIC: "interactive",
    LearningStyleType.READING_WRITING: "structured",
}

ADAPTATION_PARAMETERS: Dict[AdaptationType, Dict[str, object]] = {
    AdaptationType.SIMPLIFY: {"complexity": "basic", "response_length": "short"},
    AdaptationType.ENGAGEMENT_BOOST: {"format": "interactive", "include_examples": True, "style": "encouraging"},
    AdaptationType.DIFFICULTY_ADJUSTMENT: {"complexity": "basic", "pace": "slow"},
    AdaptationType.RESPONSE_OPTIMIZATION: {"response_length": "short"},
}

ADAPTATION_DESCRIPTIONS = {
    AdaptationType.SIMPLIFY: "Reduce complexity and shorten responses",
    AdaptationType.ENGAGEMENT_BOOST: "Use a more interactive, example-led format",
    AdaptationType.DIFFICULTY_ADJUSTMENT: "Lower difficulty and slow the pace",
    AdaptationType.RESPONSE_OPTIMIZATION: "Prefer shorter answers to cut response time",
}


def _ema(previous: Optional[float], value: Optional[float], alpha: float) -> Optional[float]:
    if value is None:
        return previous
    if previous is None:
        return value
    return alpha * value + (1 - alpha) * previous


class PersonalizationEngine:
    """Build, update and apply per-user personalization profiles."""

    def __init__(self, store: RelationalStore, config: Optional[PersonalizationConfig] = None):
        self.store = store
        self.config = config or settings.personalization
        # Held only while in use, so entries for finished keys are collected
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # Persistence

    async def get_profile(self, user_id: str) -> PersonalizationProfile:
        """Stored profile, or the default profile when none exists or the store fails."""
        try:
            row = await self.store.select_by_id("personalization_profiles", user_id)
        except StorageError as e:
            logger.warning(f"Profile load failed, using default: {str(e)}", extra={"action": "profile_load_failed"})
            row = None
        if row is None:
            return PersonalizationProfile(user_id=user_id)
        return PersonalizationProfile.model_validate(row["profile"])

    async def _save(self, profile: PersonalizationProfile):
        profile.updated_at = utcnow()
        try:
            await self.store.upsert("personalization_profiles", {
                "id": profile.user_id,
                "profile": profile.model_dump(mode="json"),
                "updated_at": to_iso(profile.updated_at),
            })
        except StorageError as e:
            logger.warning(f"Profile save failed: {str(e)}", extra={"action": "profile_save_failed"})

    # Core operation

    def compute_confidence(self, history_length: int, success_rate: float) -> float:
        data_points = min(history_length / 10, 1.0)
        return min(1.0, 0.5 + data_points * 0.3 + success_rate * 0.2)

    async def personalize(self, request: PersonalizationRequest) -> PersonalizationResult:
        """
        Propose adaptations for the current request and fold its signals into the profile.

        Repeating a call with the same interaction id returns the adaptations
        logged the first time and leaves the profile unchanged.
        """
        async with self._lock(request.user_id):
            profile = await self.get_profile(request.user_id)
            duplicate = bool(request.interaction_id) and request.interaction_id in profile.processed_interaction_ids

            if duplicate:
                adaptations = self._logged_adaptations(profile, request.interaction_id)
            else:
                adaptations = self.propose_adaptations(profile, request.signals)

            history_length = request.session_history_length
            if history_length is None:
                history_length = profile.performance_metrics.interaction_count
            confidence = self.compute_confidence(history_length, profile.adaptation_history.success_rate)
            status = PersonalizationStatus.COMPLETED
            if confidence < self.config.min_confidence:
                status = PersonalizationStatus.PARTIAL

            if not duplicate and request.interaction_id:
                if status == PersonalizationStatus.COMPLETED:
                    self._log_adaptations(profile, request.interaction_id, adaptations)
                self._fold(profile, request.interaction_id, request.signals, request.query)
                await self._save(profile)

        applied = adaptations if status == PersonalizationStatus.COMPLETED else []
        logger.debug(
            f"Personalized with {len(applied)} adaptations (confidence {confidence:.2f})",
            extra={"action": "personalize", "status": status.value},
        )
        return PersonalizationResult(
            user_profile=profile,
            personalization=self.targets_for(profile, applied),
            adaptations=adaptations,
            confidence=clamp01(confidence),
            status=status,
        )

    def propose_adaptations(
        self,
        profile: PersonalizationProfile,
        signals: SessionSignals
    ) -> List[Adaptation]:
        """Additive suggestions from current signals versus the profile's rolling averages."""
        metrics = profile.performance_metrics
        proposed: List[AdaptationType] = []

        below_satisfaction = (
            signals.satisfaction is not None
            and metrics.average_satisfaction is not None
            and signals.satisfaction < metrics.average_satisfaction
        )
        below_accuracy = (
            signals.accuracy is not None
            and metrics.average_accuracy is not None
            and signals.accuracy < metrics.average_accuracy
        )
        if below_satisfaction or below_accuracy:
            proposed.append(AdaptationType.SIMPLIFY)
        if signals.engagement is not None and signals.engagement < self.config.engagement_threshold:
            proposed.append(AdaptationType.ENGAGEMENT_BOOST)
        if signals.accuracy is not None and signals.accuracy < self.config.accuracy_floor:
            proposed.append(AdaptationType.DIFFICULTY_ADJUSTMENT)
        if signals.response_time_ms is not None and signals.response_time_ms > self.config.slow_response_ms:
            proposed.append(AdaptationType.RESPONSE_OPTIMIZATION)

        adaptations = []
        for adaptation_type in proposed:
            parameters = {
                key: value for key, value in ADAPTATION_PARAMETERS[adaptation_type].items()
                if key not in profile.preferences
            }
            adaptations.append(Adaptation(
                type=adaptation_type,
                description=ADAPTATION_DESCRIPTIONS[adaptation_type],
                parameters=parameters,
            ))
        return adaptations

    def targets_for(
        self,
        profile: PersonalizationProfile,
        adaptations: Iterable[Adaptation] = ()
    ) -> PersonalizationTargets:
        """Style defaults, then adaptations, then explicit user preferences on top."""
        style = profile.learning_style.type
        targets = PersonalizationTargets(
            format=STYLE_FORMATS[style],
            include_examples=style == LearningStyleType.KINESTHETIC,
        )
        data = targets.model_dump()
        for adaptation in adaptations:
            data.update(adaptation.parameters)
        for key, value in profile.preferences.items():
            if key == "include_examples":
                data[key] = str(value).lower() in ("true", "yes", "1")
            elif key in data:
                data[key] = value
        return PersonalizationTargets(**data)

    # Profile building

    def _fold(
        self,
        profile: PersonalizationProfile,
        key: str,
        signals: SessionSignals,
        query: str = ""
    ):
        alpha = self.config.rolling_alpha
        metrics = profile.performance_metrics
        metrics.interaction_count += 1
        metrics.average_satisfaction = _ema(metrics.average_satisfaction, signals.satisfaction, alpha)
        metrics.average_accuracy = _ema(metrics.average_accuracy, signals.accuracy, alpha)
        metrics.average_engagement = _ema(metrics.average_engagement, signals.engagement, alpha)
        metrics.average_response_time_ms = _ema(metrics.average_response_time_ms, signals.response_time_ms, alpha)

        if query:
            self._detect_style(profile, query)

        profile.processed_interaction_ids.append(key)
        overflow = len(profile.processed_interaction_ids) - self.config.max_tracked_interactions
        if overflow > 0:
            del profile.processed_interaction_ids[:overflow]

    def _detect_style(self, profile: PersonalizationProfile, query: str):
        lowered = query.lower()
        for style, keywords in STYLE_KEYWORDS.items():
            if any(k in lowered for k in keywords):
                profile.style_signals[style.value] = profile.style_signals.get(style.value, 0) + 1

        if not profile.style_signals:
            return
        best, count = max(profile.style_signals.items(), key=lambda kv: kv[1])
        if count >= self.config.style_min_signals:
            total = sum(profile.style_signals.values())
            profile.learning_style.type = LearningStyleType(best)
            profile.learning_style.strength = clamp01(max(0.5, count / total))

    def _log_adaptations(self, profile: PersonalizationProfile, interaction_id: str, adaptations: List[Adaptation]):
        history = profile.adaptation_history
        for adaptation in adaptations:
            history.log.append(AdaptationRecord(
                interaction_id=interaction_id,
                type=adaptation.type,
                description=adaptation.description,
            ))
            history.adaptation_count += 1
        overflow = len(history.log) - self.config.max_adaptation_log
        if overflow > 0:
            del history.log[:overflow]

    @staticmethod
    def _logged_adaptations(profile: PersonalizationProfile, interaction_id: str) -> List[Adaptation]:
        return [
            Adaptation(type=r.type, description=r.description, parameters=dict(ADAPTATION_PARAMETERS.get(r.type, {})))
            for r in profile.adaptation_history.log
            if r.interaction_id == interaction_id
        ]

    async def update_profile(
        self,
        user_id: str,
        key: str,
        signals: SessionSignals,
        query: str = ""
    ) -> PersonalizationProfile:
        """Fold one observation into the profile. A repeated key is a no-op."""
        async with self._lock(user_id):
            profile = await self.get_profile(user_id)
            if key in profile.processed_interaction_ids:
                return profile
            self._fold(profile, key, signals, query)
            await self._save(profile)
            return profile

    async def build_user_profile(
        self,
        user_id: str,
        interactions: List[Interaction],
        satisfaction_by_interaction: Optional[Dict[str, float]] = None
    ) -> PersonalizationProfile:
        """Fold a batch of stored interactions into the profile, skipping any already seen."""
        satisfaction_by_interaction = satisfaction_by_interaction or {}
        async with self._lock(user_id):
            profile = await self.get_profile(user_id)
            changed = False
            for interaction in sorted(interactions, key=lambda i: i.timestamp):
                if interaction.user_id != user_id or interaction.id in profile.processed_interaction_ids:
                    continue
                signals = SessionSignals(
                    satisfaction=satisfaction_by_interaction.get(interaction.id),
                    accuracy=interaction.performance.accuracy_estimate,
                    engagement=interaction.performance.engagement_estimate,
                    response_time_ms=interaction.performance.response_time_ms,
                )
                self._fold(profile, interaction.id, signals, interaction.query)
                changed = True
            if changed:
                await self._save(profile)
            return profile

    async def record_adaptation_outcome(self, user_id: str, interaction_id: str, success: bool) -> int:
        """
        Mark the adaptations logged for an interaction as successful or not.

        Returns the number of records newly marked. success_count only ever
        increments and stays within adaptation_count.
        """
        async with self._lock(user_id):
            profile = await self.get_profile(user_id)
            history = profile.adaptation_history
            marked = 0
            for record in history.log:
                if record.interaction_id == interaction_id and record.success is None:
                    record.success = success
                    record.impact = 1.0 if success else -1.0
                    marked += 1
            if not marked:
                return 0
            if success:
                history.success_count = min(history.adaptation_count, history.success_count + marked)
                for record in history.log:
                    if record.interaction_id == interaction_id and record.type.value not in profile.effective_patterns:
                        profile.effective_patterns.append(record.type.value)
            await self._save(profile)
            return marked

    async def set_user_preferences(self, user_id: str, preferences: Dict[str, str]) -> PersonalizationProfile:
        """Record explicit user choices. Adaptations never override these."""
        async with self._lock(user_id):
            profile = await self.get_profile(user_id)
            profile.preferences.update({k: str(v) for k, v in preferences.items()})
            await self._save(profile)
            return profile

    async def track_learning_progress(self, user_id: str) -> LearningProgress:
        profile = await self.get_profile(user_id)
        judged = [r for r in profile.adaptation_history.log if r.success is not None]
        recent, earlier = judged[-10:], judged[-20:-10]
        trend = "stable"
        if recent and earlier:
            recent_rate = sum(1 for r in recent if r.success) / len(recent)
            earlier_rate = sum(1 for r in earlier if r.success) / len(earlier)
            if recent_rate > earlier_rate + 0.1:
                trend = "improving"
            elif recent_rate < earlier_rate - 0.1:
                trend = "declining"

        metrics = profile.performance_metrics
        return LearningProgress(
            user_id=user_id,
            interaction_count=metrics.interaction_count,
            average_satisfaction=metrics.average_satisfaction,
            average_accuracy=metrics.average_accuracy,
            adaptation_success_rate=profile.adaptation_history.success_rate,
            learning_style=profile.learning_style.type,
            trend=trend,
        )

    async def erase_user(self, user_id: str) -> int:
        async with self._lock(user_id):
            deleted = await self.store.delete("personalization_profiles", user_id)
        return int(deleted)
