"""
Integration manager: stage health probes and dependency-aware coordination.

Stages run under one of four strategies:
- sequential: dependency order; a failure skips its dependents only
- parallel: dependency levels, stages within a level run concurrently
- cascading: dependency order; the first failure aborts everything after it
- adaptive: parallel, then a sequential rerun of whatever did not succeed
"""

import asyncio
import time
from collections import deque
from typing import Optional, List, Dict, Any, Awaitable, Callable, Iterable, Protocol

from study_buddy.orchestration.models import (
    DEFAULT_DEPENDENCIES,
    CoordinationResult,
    CoordinationStrategy,
    HealthLevel,
    IntegrationHealthStatus,
    RetryPolicy,
    Stage,
    StageConfig,
    StageHealthStatus,
    StageResult,
)
from study_buddy.shared.config import IntegrationConfig, settings
from study_buddy.shared.exceptions import StageHealthCriticalError
from study_buddy.shared.logging import get_logger
from study_buddy.shared.utils import clamp01, mean, utcnow

logger = get_logger(__name__)

HealthProbe = Callable[[], Awaitable[bool]]
StageHandler = Callable[["StageContext"], Awaitable[Any]]


class StageContext:
    """Shared state for one coordinated request. Handlers read earlier outputs from `results`."""

    def __init__(self, request: Any = None):
        self.request = request
        self.results: Dict[Stage, Any] = {}
        self.data: Dict[str, Any] = {}


class StageStatusStore(Protocol):
    def get(self, stage: Stage) -> Optional[StageHealthStatus]: ...
    def set(self, status: StageHealthStatus) -> None: ...
    def all(self) -> List[StageHealthStatus]: ...


class InMemoryStageStatusStore:
    """Process-local stage status store."""

    def __init__(self):
        self._statuses: Dict[Stage, StageHealthStatus] = {}

    def get(self, stage: Stage) -> Optional[StageHealthStatus]:
        return self._statuses.get(stage)

    def set(self, status: StageHealthStatus) -> None:
        self._statuses[status.stage] = status

    def all(self) -> List[StageHealthStatus]:
        return [self._statuses[s] for s in sorted(self._statuses)]


def default_stage_configs(config: IntegrationConfig) -> Dict[Stage, StageConfig]:
    policy = RetryPolicy(
        max_retries=config.max_retries,
        backoff_multiplier=config.backoff_multiplier,
        initial_delay_ms=config.initial_delay_ms,
    )
    return {
        stage: StageConfig(
            stage=stage,
            required=int(stage) in config.required_stages,
            priority=int(stage),
            dependencies=list(DEFAULT_DEPENDENCIES[stage]),
            timeout_ms=config.stage_timeouts_ms.get(stage.label, 5000),
            retry_policy=policy.model_copy(),
        )
        for stage in Stage
    }


class IntegrationManager:
    """Health-check and coordinate the processing stages of a request."""

    def __init__(
        self,
        config: Optional[IntegrationConfig] = None,
        status_store: Optional[StageStatusStore] = None
    ):
        self.config = config or settings.integration
        self.stages = default_stage_configs(self.config)
        self.status_store = status_store or InMemoryStageStatusStore()
        self.probes: Dict[Stage, HealthProbe] = {}
        self.history: deque = deque(maxlen=self.config.history_size)

    def register_probe(self, stage: Stage, probe: HealthProbe):
        self.probes[stage] = probe

    def configure_stage(self, stage: Stage, **changes) -> StageConfig:
        self.stages[stage] = self.stages[stage].model_copy(update=changes)
        return self.stages[stage]

    @property
    def enabled_stages(self) -> List[Stage]:
        return [s for s, cfg in self.stages.items() if cfg.enabled]

    def _status(self, stage: Stage) -> StageHealthStatus:
        return self.status_store.get(stage) or StageHealthStatus(
            stage=stage, dependencies=list(self.stages[stage].dependencies)
        )

    # Health

    async def check_stage_health(self, stage: Stage) -> StageHealthStatus:
        """
        Probe one stage, retrying with exponential backoff.

        A stage without a probe is healthy. Once retries are exhausted the
        stage is reported unhealthy; the caller holds that verdict for the
        rest of its request rather than probing again.
        """
        cfg = self.stages[stage]
        status = self._status(stage)
        probe = self.probes.get(stage)
        if probe is None:
            status = status.model_copy(update={
                "healthy": True, "last_check": utcnow(), "response_time_ms": 0.0, "attempts": 0, "last_error": None,
            })
            self.status_store.set(status)
            return status

        timeout = self.config.health_check_timeout_ms / 1000
        healthy, error, elapsed_ms, attempts = False, None, 0.0, 0
        for attempt in range(cfg.retry_policy.max_retries + 1):
            attempts = attempt + 1
            started = time.perf_counter()
            try:
                healthy = bool(await asyncio.wait_for(probe(), timeout=timeout))
                error = None if healthy else "probe reported unhealthy"
            except asyncio.TimeoutError:
                healthy, error = False, "probe timed out"
            except Exception as e:
                healthy, error = False, str(e)
            elapsed_ms = (time.perf_counter() - started) * 1000
            if healthy:
                break
            if attempt < cfg.retry_policy.max_retries:
                await asyncio.sleep(cfg.retry_policy.delay_seconds(attempt))

        alpha = self.config.error_rate_alpha
        status = status.model_copy(update={
            "healthy": healthy,
            "last_check": utcnow(),
            "response_time_ms": elapsed_ms,
            "error_rate": clamp01(alpha * (0.0 if healthy else 1.0) + (1 - alpha) * status.error_rate),
            "attempts": attempts,
            "last_error": error,
            "dependencies": list(cfg.dependencies),
        })
        self.status_store.set(status)
        if not healthy:
            logger.warning(
                f"Stage {stage.label} unhealthy after {attempts} attempts: {error}",
                extra={"action": "stage_unhealthy", "stage": stage},
            )
        return status

    async def check_health(self) -> IntegrationHealthStatus:
        """Probe every enabled stage concurrently and classify overall health."""
        stages = self.enabled_stages
        statuses = await asyncio.gather(*(self.check_stage_health(s) for s in stages))
        by_stage = dict(zip(stages, statuses))
        return self.classify(by_stage)

    def classify(self, by_stage: Dict[Stage, StageHealthStatus]) -> IntegrationHealthStatus:
        total = len(by_stage)
        healthy = [s for s, st in by_stage.items() if st.healthy]
        unhealthy = [s for s, st in by_stage.items() if not st.healthy]
        ratio = len(healthy) / total if total else 0.0

        required_down = [s for s in unhealthy if self.stages[s].required]
        dependency_down = [
            s for s in by_stage
            if any(d in unhealthy for d in self.stages[s].dependencies)
        ]

        if not total or ratio < self.config.critical_healthy_ratio or required_down:
            overall = HealthLevel.CRITICAL
        elif ratio < self.config.degraded_healthy_ratio or dependency_down:
            overall = HealthLevel.DEGRADED
        else:
            overall = HealthLevel.HEALTHY

        recommendations = []
        for stage in required_down:
            recommendations.append(f"Restore required stage {stage.label}")
        for stage in unhealthy:
            if stage not in required_down:
                recommendations.append(f"Stage {stage.label} degraded: {by_stage[stage].last_error}")

        return IntegrationHealthStatus(
            overall=overall,
            stages={s.label: st for s, st in by_stage.items()},
            healthy_count=len(healthy),
            total_count=total,
            mean_response_time_ms=mean([st.response_time_ms for st in by_stage.values()]),
            recommendations=recommendations,
        )

    @staticmethod
    def ensure_not_critical(health: IntegrationHealthStatus):
        if health.overall == HealthLevel.CRITICAL:
            raise StageHealthCriticalError(
                "Integration health critical: " + "; ".join(health.recommendations or ["no healthy stages"])
            )

    def select_strategy(self, health: IntegrationHealthStatus) -> CoordinationStrategy:
        """Pick a strategy from mean probe latency and the number of healthy stages."""
        load = health.mean_response_time_ms
        healthy = health.healthy_count
        if load < self.config.low_load_ms and healthy >= self.config.parallel_min_healthy:
            return CoordinationStrategy.PARALLEL
        if load <= self.config.high_load_ms and healthy >= self.config.cascading_min_healthy:
            return CoordinationStrategy.CASCADING
        if load > self.config.high_load_ms:
            return CoordinationStrategy.ADAPTIVE
        return CoordinationStrategy.SEQUENTIAL

    # Ordering

    def dependency_levels(self, stages: Optional[Iterable[Stage]] = None) -> List[List[Stage]]:
        """
        Topological layering of the given stages.

        Dependencies outside the set are ignored. If nothing in the remaining
        set is ready (a cycle), the whole remainder is released as one level.
        """
        remaining = set(stages if stages is not None else self.enabled_stages)
        members = set(remaining)
        done: set = set()
        levels: List[List[Stage]] = []
        while remaining:
            ready = [
                s for s in remaining
                if all(d in done or d not in members for d in self.stages[s].dependencies)
            ]
            if not ready:
                logger.warning(
                    "Circular stage dependencies, releasing remaining stages together",
                    extra={"action": "dependency_cycle"},
                )
                ready = list(remaining)
            ready.sort(key=lambda s: (self.stages[s].priority, int(s)))
            levels.append(ready)
            done.update(ready)
            remaining.difference_update(ready)
        return levels

    def execution_order(self, stages: Optional[Iterable[Stage]] = None) -> List[Stage]:
        return [s for level in self.dependency_levels(stages) for s in level]

    # Coordination

    async def _run_stage(self, stage: Stage, handler: StageHandler, context: StageContext) -> StageResult:
        cfg = self.stages[stage]
        started = time.perf_counter()
        try:
            output = await asyncio.wait_for(handler(context), timeout=cfg.timeout_ms / 1000)
            context.results[stage] = output
            result = StageResult(stage=stage, success=True)
        except asyncio.TimeoutError:
            result = StageResult(stage=stage, success=False, error=f"timed out after {cfg.timeout_ms} ms")
        except Exception as e:
            result = StageResult(stage=stage, success=False, error=f"{type(e).__name__}: {str(e)}")
        result.duration_ms = (time.perf_counter() - started) * 1000

        if not result.success:
            logger.warning(
                f"Stage {stage.label} failed: {result.error}",
                extra={
                    "action": "stage_failed",
                    "stage": stage,
                    "interaction_id": getattr(context.request, "interaction_id", None),
                },
            )
        self._record_run(stage, result)
        return result

    def _record_run(self, stage: Stage, result: StageResult):
        status = self._status(stage)
        alpha = self.config.error_rate_alpha
        self.status_store.set(status.model_copy(update={
            "error_rate": clamp01(alpha * (0.0 if result.success else 1.0) + (1 - alpha) * status.error_rate),
            "throughput": status.throughput + 1,
        }))

    def _blocked(self, stage: Stage, results: Dict[Stage, StageResult]) -> Optional[str]:
        """Name of a dependency that failed or was skipped in this run, if any."""
        for dep in self.stages[stage].dependencies:
            dep_result = results.get(dep)
            if dep_result is not None and not dep_result.success:
                return dep.label
        return None

    async def _sequential(self, stages, handlers, context, cascade: bool, unhealthy=None) -> List[StageResult]:
        # Stages skipped as unhealthy block their dependents
        results: Dict[Stage, StageResult] = dict(unhealthy or {})
        ordered: List[StageResult] = []
        aborted = False
        for stage in self.execution_order(stages):
            if aborted:
                result = StageResult(stage=stage, skipped=True, error="aborted after earlier failure")
            else:
                blocked_by = self._blocked(stage, results)
                if blocked_by:
                    result = StageResult(stage=stage, skipped=True, error=f"dependency {blocked_by} failed")
                else:
                    result = await self._run_stage(stage, handlers[stage], context)
                    if cascade and not result.success:
                        aborted = True
            results[stage] = result
            ordered.append(result)
        return ordered

    async def _parallel(self, stages, handlers, context, unhealthy=None) -> List[StageResult]:
        results: Dict[Stage, StageResult] = dict(unhealthy or {})
        ordered: List[StageResult] = []
        for level in self.dependency_levels(stages):
            runnable, level_results = [], {}
            for stage in level:
                blocked_by = self._blocked(stage, results)
                if blocked_by:
                    level_results[stage] = StageResult(stage=stage, skipped=True, error=f"dependency {blocked_by} failed")
                else:
                    runnable.append(stage)
            outcomes = await asyncio.gather(
                *(self._run_stage(s, handlers[s], context) for s in runnable),
                return_exceptions=True,
            )
            for stage, outcome in zip(runnable, outcomes):
                if isinstance(outcome, BaseException):
                    outcome = StageResult(stage=stage, success=False, error=str(outcome))
                level_results[stage] = outcome
            for stage in level:
                results[stage] = level_results[stage]
                ordered.append(level_results[stage])
        return ordered

    def _succeeded(self, results: List[StageResult], stages: List[Stage]) -> bool:
        latest = {r.stage: r for r in results}
        return all(
            latest.get(s) is not None and latest[s].success
            for s in stages if self.stages[s].required
        ) and not any(r.error and not r.skipped and not r.success for r in latest.values())

    async def coordinate(
        self,
        handlers: Dict[Stage, StageHandler],
        context: Optional[StageContext] = None,
        strategy: Optional[CoordinationStrategy] = None,
        health: Optional[IntegrationHealthStatus] = None,
    ) -> CoordinationResult:
        """
        Run the enabled stages that have handlers.

        Stages reported unhealthy by `health` are not run, and neither is any
        stage that depends on one of them. Required stages reported unhealthy
        should have been refused already via ensure_not_critical().
        """
        context = context or StageContext()
        if strategy is None:
            health = health or await self.check_health()
            strategy = self.select_strategy(health)

        stages = [s for s in self.enabled_stages if s in handlers]
        unhealthy: Dict[Stage, StageResult] = {}
        if health is not None:
            for stage in list(stages):
                if not health.is_healthy(stage):
                    stages.remove(stage)
                    unhealthy[stage] = StageResult(stage=stage, skipped=True, error="stage unhealthy")

        started = time.perf_counter()
        fallback_used = False
        if strategy == CoordinationStrategy.SEQUENTIAL:
            results = await self._sequential(stages, handlers, context, cascade=False, unhealthy=unhealthy)
        elif strategy == CoordinationStrategy.CASCADING:
            results = await self._sequential(stages, handlers, context, cascade=True, unhealthy=unhealthy)
        elif strategy == CoordinationStrategy.PARALLEL:
            results = await self._parallel(stages, handlers, context, unhealthy=unhealthy)
        else:
            results = await self._parallel(stages, handlers, context, unhealthy=unhealthy)
            if not self._succeeded(results, stages):
                fallback_used = True
                retry = [r.stage for r in results if not r.success]
                logger.info(
                    f"Adaptive coordination falling back to sequential for {[s.label for s in retry]}",
                    extra={"action": "adaptive_fallback"},
                )
                results = [r for r in results if r.success] + await self._sequential(
                    retry, handlers, context, cascade=False, unhealthy=unhealthy
                )

        total_ms = (time.perf_counter() - started) * 1000
        results = list(unhealthy.values()) + results
        stage_time = sum(r.duration_ms for r in results)
        coordination = CoordinationResult(
            strategy=strategy,
            success=self._succeeded(results, stages),
            stage_results=results,
            total_time_ms=total_ms,
            parallel_efficiency=stage_time / total_ms if total_ms > 0 else 1.0,
            fallback_used=fallback_used,
        )
        self.history.append(coordination)
        return coordination

    def get_history(self, limit: int = 50) -> List[CoordinationResult]:
        return list(self.history)[-limit:]

    def get_stage_statuses(self) -> List[StageHealthStatus]:
        return self.status_store.all()
