"""
Tests for RealTimeMonitor session lifecycle, health, alerts and sweeps.
"""

import gc
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from study_buddy.monitoring.models import (
    AlertSeverity,
    AlertType,
    InteractionMetrics,
    SessionHealthLevel,
    SessionStatus,
    StudySessionMetrics,
)
from study_buddy.monitoring.monitor import RealTimeMonitor
from study_buddy.shared.config import MonitorConfig
from study_buddy.shared.exceptions import SessionError, UnauthorizedError
from study_buddy.shared.utils import utcnow


@pytest.fixture
def monitor():
    return RealTimeMonitor(MonitorConfig())


@pytest.mark.asyncio
async def test_session_lifecycle(monitor, user_id):
    session = await monitor.start_session(user_id, "s1")
    assert session.status == SessionStatus.ACTIVE

    assert await monitor.pause_session("s1") is True
    assert await monitor.pause_session("s1") is False
    assert await monitor.resume_session("s1") is True

    report = await monitor.end_session("s1")
    assert report is not None
    assert report.session_id == "s1"
    assert monitor.get_session("s1").status == SessionStatus.COMPLETED
    assert monitor.get_session("s1").end_time is not None


@pytest.mark.asyncio
async def test_duplicate_session_id_rejected(monitor, user_id):
    await monitor.start_session(user_id, "s1")

    with pytest.raises(SessionError):
        await monitor.start_session(user_id, "s1")


@pytest.mark.asyncio
async def test_terminal_states_are_absorbing(monitor, user_id):
    await monitor.start_session(user_id, "s1")
    await monitor.end_session("s1", SessionStatus.INTERRUPTED)

    assert await monitor.end_session("s1") is None
    assert await monitor.resume_session("s1") is False
    assert monitor.get_session("s1").status == SessionStatus.INTERRUPTED


@pytest.mark.asyncio
async def test_metrics_after_end_are_discarded(monitor, user_id):
    await monitor.start_session(user_id, "s1")
    await monitor.end_session("s1")

    assert await monitor.record_interaction("s1", InteractionMetrics(response_time_ms=100.0)) is None
    assert await monitor.record_feedback("s1", 0.9) is None
    assert monitor.get_session("s1").metrics.total_messages == 0


@pytest.mark.asyncio
async def test_paused_session_ignores_metrics(monitor, user_id):
    await monitor.start_session(user_id, "s1")
    await monitor.pause_session("s1")

    assert await monitor.record_interaction("s1", InteractionMetrics()) is None


@pytest.mark.asyncio
async def test_ensure_session(monitor, user_id):
    created = await monitor.ensure_session(user_id, "client-chosen")
    assert created.session_id == "client-chosen"

    await monitor.pause_session("client-chosen")
    resumed = await monitor.ensure_session(user_id, "client-chosen")
    assert resumed.status == SessionStatus.ACTIVE

    with pytest.raises(UnauthorizedError):
        await monitor.ensure_session("someone-else", "client-chosen")

    await monitor.end_session("client-chosen")
    replacement = await monitor.ensure_session(user_id, "client-chosen")
    assert replacement.session_id != "client-chosen"


@pytest.mark.asyncio
async def test_metrics_update(monitor, user_id):
    await monitor.start_session(user_id, "s1")
    await monitor.record_interaction("s1", InteractionMetrics(response_time_ms=1000.0, accuracy=0.8, subject="math"))
    await monitor.record_interaction("s1", InteractionMetrics(response_time_ms=3000.0, accuracy=0.6, subject="physics"))
    await monitor.record_interaction("s1", InteractionMetrics(response_time_ms=2000.0, subject="math"))

    m = monitor.get_session("s1").metrics
    assert m.total_messages == 3
    assert m.average_response_time_ms == pytest.approx(2000.0)
    assert m.accuracy_score == pytest.approx(0.7)
    assert m.topics_covered == ["math", "physics"]
    assert m.context_switches == 2
    assert m.questions_asked == 3


@pytest.mark.asyncio
async def test_health_levels(monitor, user_id):
    await monitor.start_session(user_id, "s1")

    slow = await monitor.record_interaction("s1", InteractionMetrics(response_time_ms=6000.0))
    assert slow.overall == SessionHealthLevel.WARNING

    failing = await monitor.record_interaction("s1", InteractionMetrics(response_time_ms=100.0, error=True))
    assert failing.overall == SessionHealthLevel.CRITICAL
    assert failing.error_count == 1


@pytest.mark.asyncio
async def test_all_providers_down_is_critical(user_id):
    monitor = RealTimeMonitor(MonitorConfig(), provider_status=lambda: {"openai": False, "anthropic": False})
    await monitor.start_session(user_id, "s1")

    health = monitor.get_session_health("s1")

    assert health.overall == SessionHealthLevel.CRITICAL
    assert "All AI providers are unavailable" in health.critical_issues


@pytest.mark.asyncio
async def test_get_session_health_has_no_side_effects(monitor, user_id):
    session = await monitor.start_session(user_id, "s1")
    before = session.health

    monitor.get_session_health("s1")

    assert session.health is before
    assert monitor.get_session_health("missing") is None


def test_quality_score_with_no_samples(monitor):
    assert monitor.quality_score(StudySessionMetrics()) == pytest.approx(0.55)


@pytest.mark.asyncio
async def test_alerts_raised_on_transition_and_resolved(monitor, user_id):
    seen = []
    async_seen = AsyncMock()
    monitor.add_alert_callback(seen.append)
    monitor.add_alert_callback(async_seen)
    await monitor.start_session(user_id, "s1")

    await monitor.record_interaction("s1", InteractionMetrics(response_time_ms=15000.0))
    await monitor.record_interaction("s1", InteractionMetrics(response_time_ms=15000.0))

    assert [a.type for a in seen] == [AlertType.PERFORMANCE]
    assert seen[0].severity == AlertSeverity.HIGH
    assert seen[0].action_required
    async_seen.assert_awaited_once()

    for _ in range(4):
        await monitor.record_interaction("s1", InteractionMetrics(response_time_ms=1000.0))

    alerts = monitor.get_session("s1").alerts
    assert len(alerts) == 1
    assert alerts[0].resolved


@pytest.mark.asyncio
async def test_failing_callback_does_not_break_recording(monitor, user_id):
    def broken(alert):
        raise RuntimeError("callback failed")

    monitor.add_alert_callback(broken)
    await monitor.start_session(user_id, "s1")

    health = await monitor.record_interaction("s1", InteractionMetrics(response_time_ms=25000.0))

    assert health is not None
    assert monitor.get_session("s1").alerts[0].severity == AlertSeverity.CRITICAL


@pytest.mark.asyncio
async def test_event_log_is_bounded(monitor, user_id):
    await monitor.start_session(user_id, "s1")

    for _ in range(120):
        await monitor.record_interaction("s1", InteractionMetrics(response_time_ms=100.0, engagement=0.9))

    assert len(monitor.get_session("s1").events) <= 100


@pytest.mark.asyncio
async def test_sweep_interrupts_idle_sessions(monitor, user_id):
    idle = await monitor.start_session(user_id, "idle")
    await monitor.start_session(user_id, "busy")
    idle.last_activity = utcnow() - timedelta(minutes=31)

    result = await monitor.sweep()

    assert result == {"interrupted": 1, "checked": 1}
    assert monitor.get_session("idle").status == SessionStatus.INTERRUPTED
    assert monitor.get_session("busy").status == SessionStatus.ACTIVE


@pytest.mark.asyncio
async def test_feedback_and_statistics(monitor, user_id):
    await monitor.start_session(user_id, "s1")
    await monitor.start_session(user_id, "s2")
    await monitor.record_feedback("s1", 0.8, corrections=1)
    await monitor.end_session("s2")

    session = monitor.get_session("s1")
    assert session.metrics.satisfaction_score == pytest.approx(0.8)
    assert session.metrics.corrections_made == 1

    stats = monitor.get_monitoring_statistics()
    assert stats.active_sessions == 1
    assert stats.closed_sessions == 1


@pytest.mark.asyncio
async def test_low_engagement_feedback_warns_and_alerts(monitor, user_id):
    seen = []
    monitor.add_alert_callback(seen.append)
    await monitor.start_session(user_id, "s1")
    await monitor.record_interaction("s1", InteractionMetrics(response_time_ms=800.0))

    health = await monitor.record_feedback("s1", 0.3, engagement=0.2)

    metrics = monitor.get_session("s1").metrics
    assert metrics.engagement_samples == 1
    assert metrics.engagement_score == pytest.approx(0.2)
    assert "Low engagement score detected" in health.warnings
    assert health.overall == SessionHealthLevel.WARNING
    assert [a.type for a in seen] == [AlertType.ENGAGEMENT]

    for _ in range(3):
        await monitor.record_feedback("s1", 0.9, engagement=1.0)

    assert monitor.get_session("s1").alerts[0].resolved
    assert "Low engagement score detected" not in monitor.get_session("s1").health.warnings


@pytest.mark.asyncio
async def test_feedback_without_engagement_leaves_it_unsampled(monitor, user_id):
    await monitor.start_session(user_id, "s1")

    await monitor.record_feedback("s1", 0.9)

    assert monitor.get_session("s1").metrics.engagement_samples == 0


@pytest.mark.asyncio
async def test_session_locks_are_released(monitor, user_id):
    for i in range(20):
        await monitor.start_session(user_id, f"s{i}")
        await monitor.record_interaction(f"s{i}", InteractionMetrics(response_time_ms=100.0))
        await monitor.end_session(f"s{i}")
    gc.collect()

    assert len(monitor._locks) == 0
