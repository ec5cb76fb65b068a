"""
Response validator: fact-checking, confidence scoring and contradiction detection.
"""

import asyncio
import re
import time
from typing import Optional, List, Union

from study_buddy.core.classifier import SUBJECT_KEYWORDS
from study_buddy.memory.knowledge import KnowledgeBase
from study_buddy.memory.models import ContextBundle, KnowledgeFilters, KnowledgeSource
from study_buddy.shared.config import ValidationConfig, settings
from study_buddy.shared.embeddings import content_terms, tokenize
from study_buddy.shared.exceptions import ValidationTimeoutError
from study_buddy.shared.logging import get_logger
from study_buddy.shared.utils import clamp01
from study_buddy.validation.models import (
    ClaimCheck,
    Contradiction,
    ContradictionAnalysis,
    FactCheckSummary,
    IssueSeverity,
    ResponseDraft,
    ValidationIssue,
    ValidationRequest,
    ValidationResult,
)

logger = get_logger(__name__)

_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")
_NUMBER_RE = re.compile(r"\d+(?:[.,]\d+)*")
_DEFINITIONAL_RE = re.compile(
    r"\b(is|are|was|were|means|refers to|equals|defined as|consists of|contains)\b"
)

NEGATIONS = frozenset({
    "not", "never", "no", "cannot", "can't", "isn't", "aren't", "doesn't",
    "don't", "won't", "wasn't", "weren't", "didn't",
})

HEDGES = (
    "might", "maybe", "possibly", "perhaps", "probably",
    "i think", "not sure", "i believe", "could be",
)

INAPPROPRIATE_PHRASES = (
    "kill yourself", "you are stupid", "you're stupid", "you are an idiot",
    "you're an idiot", "shut up", "i hate you",
)

EDUCATIONAL_MARKERS = (
    "for example", "because", "step", "means", "therefore", "in other words",
    "consider", "notice", "this is why", "let's",
)


def split_sentences(text: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_RE.split(text.strip()) if s.strip()]


def numbers_in(text: str) -> set:
    return {n.replace(",", "") for n in _NUMBER_RE.findall(text)}


def _topic_terms(text: str) -> set:
    return {t for t in content_terms(text) if t not in NEGATIONS}


def _jaccard(a: set, b: set) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


class ResponseValidator:
    """Score a generated response against reference knowledge and the conversation so far."""

    def __init__(
        self,
        knowledge_base: KnowledgeBase,
        config: Optional[ValidationConfig] = None
    ):
        self.knowledge_base = knowledge_base
        self.config = config or settings.validation

    async def validate(
        self,
        response: Union[str, ResponseDraft],
        request: ValidationRequest,
        context: Optional[ContextBundle] = None,
    ) -> ValidationResult:
        """
        Validate a response within the configured time budget.

        On timeout returns an invalid result carrying a single timeout issue
        instead of raising; callers proceed without validation.
        """
        draft = response if isinstance(response, ResponseDraft) else ResponseDraft(content=response)
        start = time.perf_counter()
        timeout = self.config.max_processing_time_ms / 1000

        try:
            return await asyncio.wait_for(self._validate(draft, request, context, start), timeout=timeout)
        except asyncio.TimeoutError:
            elapsed = (time.perf_counter() - start) * 1000
            logger.warning(
                f"Validation timed out after {elapsed:.0f}ms, continuing unvalidated",
                extra={"action": "validation_timeout"},
            )
            return ValidationResult(
                is_valid=False,
                validation_score=0.0,
                confidence_score=0.0,
                issues=[ValidationIssue(
                    type="timeout",
                    severity=IssueSeverity.TIMEOUT,
                    description=f"Validation exceeded {self.config.max_processing_time_ms}ms",
                )],
                processing_time_ms=round(elapsed, 2),
            )

    async def validate_or_raise(
        self,
        response: Union[str, ResponseDraft],
        request: ValidationRequest,
        context: Optional[ContextBundle] = None,
    ) -> ValidationResult:
        """Same as validate() but raises ValidationTimeoutError on timeout."""
        result = await self.validate(response, request, context)
        if result.timed_out:
            raise ValidationTimeoutError(result.issues[0].description)
        return result

    async def _validate(
        self,
        draft: ResponseDraft,
        request: ValidationRequest,
        context: Optional[ContextBundle],
        start: float,
    ) -> ValidationResult:
        issues: List[ValidationIssue] = []
        recommendations: List[str] = []

        sources = await self._sources_for(request, context)
        fact_check = self.fact_check(draft.content, sources)
        for check in fact_check.checks:
            if check.verified and not check.passed:
                issues.append(ValidationIssue(
                    type="factual",
                    severity=IssueSeverity.HIGH,
                    description=f"Claim conflicts with reference material: {check.claim[:120]}",
                ))
        if fact_check.failed_claims >= 2 and fact_check.pass_rate < 0.5:
            issues.append(ValidationIssue(
                type="factual",
                severity=IssueSeverity.CRITICAL,
                description="Most verifiable claims conflict with reference material",
            ))
        if fact_check.failed_claims:
            recommendations.append("Re-check the flagged claims against a reliable source before relying on them")

        contradictions = self.detect_contradictions(draft.content, request.conversation_history)
        for c in contradictions.contradictions:
            issues.append(ValidationIssue(
                type="contradiction",
                severity=IssueSeverity.HIGH,
                description=f"{c.kind.capitalize()} conflict with an earlier answer: {c.statement[:120]}",
            ))
        if contradictions.has_contradictions:
            recommendations.append("Reconcile this answer with what was said earlier in the conversation")

        lowered = draft.content.lower()
        if any(phrase in lowered for phrase in INAPPROPRIATE_PHRASES):
            issues.append(ValidationIssue(
                type="appropriateness",
                severity=IssueSeverity.CRITICAL,
                description="Response contains language inappropriate for students",
            ))

        hedges = sum(lowered.count(h) for h in HEDGES)
        if hedges >= 3:
            issues.append(ValidationIssue(
                type="quality",
                severity=IssueSeverity.LOW,
                description=f"Response hedges {hedges} times",
            ))
            recommendations.append("State uncertainty once and clearly instead of hedging throughout")

        educational_value = self.educational_value(draft.content, request.subject)
        if educational_value < 0.4:
            recommendations.append("Add an example or a short explanation of why the answer holds")

        confidence = self.confidence_score(draft, fact_check.pass_rate, hedges)
        total_weight = self.config.score_confidence_weight + self.config.score_fact_check_weight
        validation_score = clamp01(
            (self.config.score_confidence_weight * confidence
             + self.config.score_fact_check_weight * fact_check.pass_rate) / total_weight
        ) if total_weight else 0.0

        has_critical = any(i.severity == IssueSeverity.CRITICAL for i in issues)
        return ValidationResult(
            is_valid=validation_score >= self.config.threshold and not has_critical,
            validation_score=validation_score,
            fact_check=fact_check,
            confidence_score=confidence,
            contradictions=contradictions,
            issues=issues,
            recommendations=recommendations,
            educational_value=educational_value,
            processing_time_ms=round((time.perf_counter() - start) * 1000, 2),
        )

    async def _sources_for(
        self,
        request: ValidationRequest,
        context: Optional[ContextBundle]
    ) -> List[KnowledgeSource]:
        query = f"{request.subject or ''} {request.query}".strip()
        sources = await self.knowledge_base.search_knowledge(
            query,
            KnowledgeFilters(
                min_reliability=self.config.min_source_reliability,
                subjects=[request.subject] if request.subject else [],
                limit=5,
            ),
        )
        seen = {s.id for s in sources}
        if context:
            for source_id in context.knowledge_source_ids:
                if source_id not in seen:
                    source = await self.knowledge_base.get(source_id)
                    if source:
                        sources.append(source)
                        seen.add(source_id)
        return sources

    def extract_claims(self, content: str) -> List[str]:
        """Sentences that carry a number or a definitional verb."""
        claims = []
        for sentence in split_sentences(content):
            if sentence.endswith("?") or len(tokenize(sentence)) < 4:
                continue
            if numbers_in(sentence) or _DEFINITIONAL_RE.search(sentence.lower()):
                claims.append(sentence)
            if len(claims) >= self.config.max_claims:
                break
        return claims

    def fact_check(self, content: str, sources: List[KnowledgeSource]) -> FactCheckSummary:
        source_terms = [(s, set(content_terms(f"{s.title} {s.content}")), numbers_in(s.content)) for s in sources]
        checks = []
        for claim in self.extract_claims(content):
            terms = set(content_terms(claim))
            best, best_overlap, best_numbers = None, 0.0, set()
            for source, s_terms, s_numbers in source_terms:
                overlap = len(terms & s_terms) / len(terms) if terms else 0.0
                if overlap > best_overlap:
                    best, best_overlap, best_numbers = source, overlap, s_numbers

            if best is None or best_overlap < self.config.claim_support_overlap:
                checks.append(ClaimCheck(claim=claim, verified=False, passed=True, reason="no matching source"))
                continue

            claim_numbers = numbers_in(claim)
            if claim_numbers and not (claim_numbers & best_numbers):
                checks.append(ClaimCheck(
                    claim=claim, verified=True, passed=False, source_id=best.id,
                    reason=f"numbers {sorted(claim_numbers)} not supported by '{best.title}'",
                ))
            else:
                checks.append(ClaimCheck(
                    claim=claim, verified=True, passed=True, source_id=best.id,
                    reason=f"supported by '{best.title}'",
                ))

        verified = [c for c in checks if c.verified]
        passed = [c for c in verified if c.passed]
        pass_rate = len(passed) / len(verified) if verified else self.config.unverified_pass_rate
        return FactCheckSummary(
            total_claims=len(checks),
            verified_claims=len(verified),
            passed_claims=len(passed),
            failed_claims=len(verified) - len(passed),
            pass_rate=clamp01(pass_rate),
            checks=checks,
        )

    def detect_contradictions(self, content: str, history) -> ContradictionAnalysis:
        """Compare numeric and negated claims with earlier assistant turns on the same topic."""
        earlier = [
            s for turn in history if turn.role == "assistant"
            for s in split_sentences(turn.content)
        ]
        if not earlier:
            return ContradictionAnalysis()

        earlier_parsed = [(s, _topic_terms(s), numbers_in(s), bool(NEGATIONS & set(tokenize(s)))) for s in earlier]
        found: List[Contradiction] = []
        for sentence in split_sentences(content):
            terms = _topic_terms(sentence)
            if len(terms) < 3:
                continue
            numbers = numbers_in(sentence)
            negated = bool(NEGATIONS & set(tokenize(sentence)))
            for prior, p_terms, p_numbers, p_negated in earlier_parsed:
                if _jaccard(terms, p_terms) < self.config.contradiction_similarity:
                    continue
                if numbers and p_numbers and not (numbers & p_numbers):
                    found.append(Contradiction(kind="numeric", statement=sentence, earlier_statement=prior))
                    break
                if negated != p_negated:
                    found.append(Contradiction(kind="categorical", statement=sentence, earlier_statement=prior))
                    break

        return ContradictionAnalysis(has_contradictions=bool(found), contradictions=found)

    def structure_score(self, content: str, hedges: int) -> float:
        words = len(tokenize(content))
        if words < 20:
            length_score = words / 20
        elif words > 400:
            length_score = max(0.5, 400 / words)
        else:
            length_score = 1.0
        structured = "\n\n" in content or bool(re.search(r"^\s*(?:[-*]|\d+\.)\s", content, re.MULTILINE))
        return clamp01(length_score + (0.1 if structured else 0.0) - 0.1 * hedges)

    def confidence_score(self, draft: ResponseDraft, pass_rate: float, hedges: int) -> float:
        """Weighted combination; weights renormalize when the model reports no confidence."""
        parts = [
            (self.config.fact_check_weight, pass_rate),
            (self.config.structure_weight, self.structure_score(draft.content, hedges)),
        ]
        if draft.model_confidence is not None:
            parts.append((self.config.model_confidence_weight, draft.model_confidence))
        total = sum(w for w, _ in parts)
        if total == 0:
            return 0.0
        return clamp01(sum(w * v for w, v in parts) / total)

    def educational_value(self, content: str, subject: Optional[str]) -> float:
        lowered = content.lower()
        keywords = SUBJECT_KEYWORDS.get((subject or "").lower(), ())
        hits = sum(1 for k in keywords if k in lowered) + sum(1 for m in EDUCATIONAL_MARKERS if m in lowered)
        return clamp01(hits / 3)
