"""
Performance optimizer: latency tracking, generation parameter tuning and a
TTL cache for general (non-personal) answers.
"""

import hashlib
import time
from collections import OrderedDict, defaultdict, deque
from typing import Optional, List, Dict, Any, Tuple

import numpy as np

from study_buddy.core.classifier import QueryClassification, QueryType
from study_buddy.feedback.learning import ModelAdjustment
from study_buddy.memory.models import CompressionLevel
from study_buddy.orchestration.models import OptimizationPlan
from study_buddy.personalization.models import PersonalizationTargets
from study_buddy.shared.config import LLMConfig, PerformanceConfig, settings
from study_buddy.shared.logging import get_logger

logger = get_logger(__name__)

LENGTH_FACTORS = {"short": 0.6, "medium": 1.0, "long": 1.3}


class PerformanceOptimizer:
    """Choose generation parameters from observed latency and learned adjustments."""

    def __init__(
        self,
        config: Optional[PerformanceConfig] = None,
        llm_config: Optional[LLMConfig] = None
    ):
        self.config = config or settings.performance
        llm_config = llm_config or settings.llm
        self.temperature = llm_config.temperature
        self.max_tokens = llm_config.max_tokens
        self.style_overrides: Dict[str, str] = {}
        self.latencies: deque = deque(maxlen=self.config.window_size)
        self.provider_latencies: Dict[str, deque] = defaultdict(lambda: deque(maxlen=self.config.window_size))
        self._cache: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self.cache_hits = 0
        self.cache_misses = 0

    def record_latency(self, latency_ms: float, provider: Optional[str] = None):
        self.latencies.append(latency_ms)
        if provider:
            self.provider_latencies[provider].append(latency_ms)

    def percentiles(self) -> Tuple[Optional[float], Optional[float]]:
        """(p50, p95) of the latency window, or (None, None) when empty."""
        if not self.latencies:
            return None, None
        p50, p95 = np.percentile(np.asarray(self.latencies, dtype=float), [50, 95])
        return float(p50), float(p95)

    def preferred_provider(self, provider_status: Optional[Dict[str, bool]] = None) -> Optional[str]:
        """Healthy provider with the lowest mean latency, if any has samples."""
        candidates = {
            name: float(np.mean(samples))
            for name, samples in self.provider_latencies.items()
            if samples and (provider_status is None or provider_status.get(name, False))
        }
        if not candidates:
            return None
        return min(candidates, key=candidates.get)

    def plan(
        self,
        classification: Optional[QueryClassification] = None,
        targets: Optional[PersonalizationTargets] = None,
        provider_status: Optional[Dict[str, bool]] = None,
        query: str = "",
    ) -> OptimizationPlan:
        p50, p95 = self.percentiles()
        max_tokens = float(self.max_tokens)
        temperature = self.temperature
        context_cap = None
        applied: List[str] = []

        if p95 is not None and p95 > self.config.slow_p95_ms:
            max_tokens *= 0.75
            context_cap = CompressionLevel.SELECTIVE
            applied.extend(["reduce_max_tokens", "cap_context"])
        elif p50 is not None and p50 < self.config.fast_p50_ms:
            applied.append("full_budget")

        if targets is not None:
            factor = LENGTH_FACTORS.get(targets.response_length, 1.0)
            if factor != 1.0:
                max_tokens *= factor
                applied.append(f"length_{targets.response_length}")

        if classification is not None and classification.question_type == "factual":
            temperature = min(temperature, 0.4)
            applied.append("factual_temperature")

        preferred = self.preferred_provider(provider_status)
        if preferred:
            applied.append(f"prefer_{preferred}")

        cacheable = bool(
            query
            and classification is not None
            and classification.query_type == QueryType.GENERAL
            and not classification.web_search_needed
        )
        return OptimizationPlan(
            max_tokens=int(min(self.config.max_max_tokens, max(self.config.min_max_tokens, max_tokens))),
            temperature=min(self.config.max_temperature, max(self.config.min_temperature, temperature)),
            context_level_cap=context_cap,
            preferred_provider=preferred,
            cacheable=cacheable,
            cache_key=self.cache_key(query, classification.subject if classification else None) if cacheable else None,
            p50_ms=p50,
            p95_ms=p95,
            applied=applied,
        )

    def apply_adjustments(self, adjustments: List[ModelAdjustment]) -> List[str]:
        """Fold learning-engine recommendations into the base parameters."""
        applied = []
        for adj in adjustments:
            if adj.parameter == "temperature":
                step = -0.1 if adj.direction == "decrease" else 0.1
                self.temperature = min(self.config.max_temperature, max(self.config.min_temperature, self.temperature + step))
            elif adj.parameter == "max_tokens":
                factor = 0.8 if adj.direction == "decrease" else 1.25
                self.max_tokens = int(min(self.config.max_max_tokens, max(self.config.min_max_tokens, self.max_tokens * factor)))
            elif adj.direction == "set" and adj.value:
                self.style_overrides[adj.parameter] = adj.value
            else:
                continue
            applied.append(f"{adj.parameter}:{adj.direction}")
        if applied:
            logger.info(f"Applied adjustments: {', '.join(applied)}", extra={"action": "apply_adjustments"})
        return applied

    # Response cache

    @staticmethod
    def cache_key(query: str, subject: Optional[str] = None) -> str:
        normalized = " ".join(query.lower().split())
        return hashlib.sha256(f"{subject or ''}|{normalized}".encode()).hexdigest()

    def cache_get(self, key: Optional[str]) -> Optional[Any]:
        if not key or key not in self._cache:
            self.cache_misses += 1
            return None
        expires_at, value = self._cache[key]
        if time.monotonic() >= expires_at:
            del self._cache[key]
            self.cache_misses += 1
            return None
        self._cache.move_to_end(key)
        self.cache_hits += 1
        return value

    def cache_put(self, key: Optional[str], value: Any):
        if not key or self.config.cache_ttl_seconds <= 0:
            return
        self._cache[key] = (time.monotonic() + self.config.cache_ttl_seconds, value)
        self._cache.move_to_end(key)
        while len(self._cache) > self.config.cache_max_entries:
            self._cache.popitem(last=False)

    def stats(self) -> Dict[str, Any]:
        p50, p95 = self.percentiles()
        return {
            "samples": len(self.latencies),
            "p50_ms": p50,
            "p95_ms": p95,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "style_overrides": dict(self.style_overrides),
            "cache_entries": len(self._cache),
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
        }
