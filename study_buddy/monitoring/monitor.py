"""
Real-time study session monitor.

Sessions move active -> {paused, completed, interrupted}; completed and
interrupted are terminal and accept no further metric updates. A background
sweep health-checks active sessions and interrupts idle ones.
"""

import asyncio
import inspect
import weakref
from collections import OrderedDict
from datetime import timedelta
from typing import Optional, List, Dict, Any, Callable, Protocol

from study_buddy.monitoring.models import (
    AlertSeverity,
    AlertType,
    InteractionMetrics,
    MonitoringAlert,
    MonitoringStatistics,
    SessionHealthLevel,
    SessionHealthStatus,
    SessionStatus,
    StudyEffectivenessReport,
    StudySession,
    StudySessionContext,
    StudySessionEvent,
    StudySessionMetrics,
)
from study_buddy.shared.config import MonitorConfig, settings
from study_buddy.shared.exceptions import SessionError, UnauthorizedError
from study_buddy.shared.logging import get_logger
from study_buddy.shared.utils import clamp01, mean, new_id, utcnow

logger = get_logger(__name__)

AlertCallback = Callable[[MonitoringAlert], Any]
ProviderStatusSource = Callable[[], Dict[str, bool]]

ALERT_ACTIONS = {
    AlertType.PERFORMANCE: ["Use lighter context", "Check provider latency"],
    AlertType.QUALITY: ["Review recent answers", "Ground answers in reference material"],
    AlertType.ENGAGEMENT: ["Ask a check-in question", "Offer a worked example"],
    AlertType.TECHNICAL: ["Check system logs", "Verify provider and store health"],
}


class SessionStore(Protocol):
    def get(self, session_id: str) -> Optional[StudySession]: ...
    def put(self, session: StudySession) -> None: ...
    def open_sessions(self) -> List[StudySession]: ...
    def close(self, session: StudySession) -> None: ...
    def closed_sessions(self) -> List[StudySession]: ...


class InMemorySessionStore:
    """Open sessions in a dict, closed sessions in a bounded LRU."""

    def __init__(self, max_closed: int = 1000):
        self.max_closed = max_closed
        self._open: Dict[str, StudySession] = {}
        self._closed: "OrderedDict[str, StudySession]" = OrderedDict()

    def get(self, session_id: str) -> Optional[StudySession]:
        return self._open.get(session_id) or self._closed.get(session_id)

    def put(self, session: StudySession) -> None:
        self._open[session.session_id] = session

    def open_sessions(self) -> List[StudySession]:
        return list(self._open.values())

    def close(self, session: StudySession) -> None:
        self._open.pop(session.session_id, None)
        self._closed[session.session_id] = session
        self._closed.move_to_end(session.session_id)
        while len(self._closed) > self.max_closed:
            self._closed.popitem(last=False)

    def closed_sessions(self) -> List[StudySession]:
        return list(self._closed.values())


class RealTimeMonitor:
    """Track study sessions, classify their health and raise alerts."""

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        session_store: Optional[SessionStore] = None,
        provider_status: Optional[ProviderStatusSource] = None
    ):
        self.config = config or settings.monitor
        self.sessions = session_store or InMemorySessionStore(self.config.max_closed_sessions)
        self.provider_status = provider_status
        # Held only while in use, so entries for finished keys are collected
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._alert_callbacks: List[AlertCallback] = []
        self.running = False

    def add_alert_callback(self, callback: AlertCallback):
        self._alert_callbacks.append(callback)

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # Lifecycle

    async def start_session(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        context: Optional[StudySessionContext] = None
    ) -> StudySession:
        """
        Start monitoring a new session.

        Raises:
            SessionError if the id is already in use
        """
        session_id = session_id or new_id()
        async with self._lock(session_id):
            if self.sessions.get(session_id) is not None:
                raise SessionError(f"Session {session_id} already exists")
            session = StudySession(session_id=session_id, user_id=user_id, context=context or StudySessionContext())
            self._add_event(session, "status_change", "Session started")
            self.sessions.put(session)
        logger.info("Session monitoring started", extra={"session_id": session_id, "action": "session_started"})
        return session

    async def ensure_session(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        context: Optional[StudySessionContext] = None
    ) -> StudySession:
        """
        Return a live session for the user, resuming a paused one.

        A terminal or unknown id starts a fresh session (an unknown id is kept,
        a terminal one is replaced).

        Raises:
            UnauthorizedError if the session belongs to another user
        """
        if session_id:
            session = self.sessions.get(session_id)
            if session is not None:
                if session.user_id != user_id:
                    raise UnauthorizedError("Session belongs to a different user")
                if session.status == SessionStatus.PAUSED:
                    await self.resume_session(session_id)
                if not session.status.is_terminal:
                    session.last_activity = utcnow()
                    return session
                session_id = None
        return await self.start_session(user_id, session_id, context)

    def get_session(self, session_id: str) -> Optional[StudySession]:
        return self.sessions.get(session_id)

    async def _transition(self, session_id: str, expected: SessionStatus, target: SessionStatus) -> bool:
        async with self._lock(session_id):
            session = self.sessions.get(session_id)
            if session is None or session.status != expected:
                return False
            session.status = target
            session.last_activity = utcnow()
            self._add_event(session, "status_change", f"Session {target.value}")
            return True

    async def pause_session(self, session_id: str) -> bool:
        return await self._transition(session_id, SessionStatus.ACTIVE, SessionStatus.PAUSED)

    async def resume_session(self, session_id: str) -> bool:
        return await self._transition(session_id, SessionStatus.PAUSED, SessionStatus.ACTIVE)

    async def end_session(
        self,
        session_id: str,
        status: SessionStatus = SessionStatus.COMPLETED
    ) -> Optional[StudyEffectivenessReport]:
        """
        Close a session and report its study effectiveness.

        Returns None when the session is unknown or already closed.
        """
        async with self._lock(session_id):
            session = self.sessions.get(session_id)
            if session is None or session.status.is_terminal:
                return None
            session.close(status)
            self._add_event(session, "status_change", f"Session {status.value}")
            report = self.study_effectiveness(session)
            self.sessions.close(session)
        logger.info(
            f"Session {status.value} (effectiveness {report.session_effectiveness:.2f})",
            extra={"session_id": session_id, "action": "session_ended"},
        )
        return report

    # Metrics

    async def record_interaction(
        self,
        session_id: str,
        interaction: InteractionMetrics
    ) -> Optional[SessionHealthStatus]:
        """
        Fold one turn into the session metrics.

        Returns None, and changes nothing, unless the session is active.
        Results arriving after a session was closed are discarded here.
        """
        async with self._lock(session_id):
            session = self.sessions.get(session_id)
            if session is None or session.status != SessionStatus.ACTIVE:
                logger.debug(
                    "Discarding metrics for inactive session",
                    extra={"session_id": session_id, "action": "metrics_discarded"},
                )
                return None

            m = session.metrics
            m.total_messages += 1
            m.response_times_ms.append(interaction.response_time_ms)
            if len(m.response_times_ms) > self.config.max_response_samples:
                del m.response_times_ms[:-self.config.max_response_samples]
            if interaction.accuracy is not None:
                m.accuracy_score = clamp01(_running_mean(m.accuracy_score, m.accuracy_samples, interaction.accuracy))
                m.accuracy_samples += 1
            if interaction.engagement is not None:
                m.engagement_score = clamp01(_running_mean(m.engagement_score, m.engagement_samples, interaction.engagement))
                m.engagement_samples += 1
            if interaction.error:
                m.error_count += 1
            m.error_rate = clamp01(m.error_count / m.total_messages)
            if interaction.is_question:
                m.questions_asked += 1
            if interaction.subject:
                if m.topics_covered and m.topics_covered[-1] != interaction.subject:
                    m.context_switches += 1
                if interaction.subject not in m.topics_covered:
                    m.topics_covered.append(interaction.subject)
            hours = session.duration_seconds / 3600
            m.learning_velocity = len(m.topics_covered) / hours if hours > 0 else 0.0

            session.last_activity = utcnow()
            self._add_event(
                session,
                "error" if interaction.error else "message",
                "Turn failed" if interaction.error else "Turn completed",
                severity="error" if interaction.error else "info",
                data={"response_time_ms": round(interaction.response_time_ms, 1)},
            )
            health = self._evaluate(session)
            session.health = health
            alerts = self._update_alerts(session)

        await self._dispatch(alerts)
        return health

    async def record_feedback(
        self,
        session_id: str,
        satisfaction: float,
        corrections: int = 0,
        engagement: Optional[float] = None
    ) -> Optional[SessionHealthStatus]:
        """
        Fold one feedback event into the session metrics.

        `engagement` comes from implicit signals (dwell, scroll, abandonment)
        and feeds the low-engagement warning and alert.
        """
        async with self._lock(session_id):
            session = self.sessions.get(session_id)
            if session is None or session.status != SessionStatus.ACTIVE:
                return None
            m = session.metrics
            m.satisfaction_score = clamp01(_running_mean(m.satisfaction_score, m.satisfaction_samples, satisfaction))
            m.satisfaction_samples += 1
            if engagement is not None:
                m.engagement_score = clamp01(_running_mean(m.engagement_score, m.engagement_samples, engagement))
                m.engagement_samples += 1
            m.corrections_made += corrections
            session.last_activity = utcnow()
            data = {"satisfaction": round(satisfaction, 3)}
            if engagement is not None:
                data["engagement"] = round(engagement, 3)
            self._add_event(session, "feedback", "Feedback received", data=data)
            session.health = self._evaluate(session)
            alerts = self._update_alerts(session)

        await self._dispatch(alerts)
        return session.health

    # Health

    def get_session_health(self, session_id: str) -> Optional[SessionHealthStatus]:
        """Point-in-time health snapshot. No side effects."""
        session = self.sessions.get(session_id)
        if session is None:
            return None
        return self._evaluate(session)

    async def check_session_health(self, session_id: str) -> Optional[SessionHealthStatus]:
        """Evaluate, store and alert on a session's health."""
        async with self._lock(session_id):
            session = self.sessions.get(session_id)
            if session is None or session.status.is_terminal:
                return None
            session.health = self._evaluate(session)
            alerts = self._update_alerts(session)
        await self._dispatch(alerts)
        return session.health

    def quality_score(self, m: StudySessionMetrics) -> float:
        """Weighted session quality. Components without samples count as neutral (0.5)."""
        w = self.config.quality_weights
        avg_rt = m.average_response_time_ms
        performance = max(0.0, 1 - avg_rt / 10000) if avg_rt is not None else 1.0
        efficiency = min(1.0, m.learning_velocity / 10) if m.total_messages else 0.0
        accuracy = m.accuracy_score if m.accuracy_samples else 0.5
        satisfaction = m.satisfaction_score if m.satisfaction_samples else 0.5
        engagement = m.engagement_score if m.engagement_samples else 0.5
        total = sum(w.values()) or 1.0
        return clamp01((
            w.get("accuracy", 0) * accuracy
            + w.get("engagement", 0) * engagement
            + w.get("performance", 0) * performance
            + w.get("satisfaction", 0) * satisfaction
            + w.get("efficiency", 0) * efficiency
        ) / total)

    def _evaluate(self, session: StudySession) -> SessionHealthStatus:
        m = session.metrics
        warnings: List[str] = []
        critical: List[str] = []

        providers: Dict[str, bool] = {}
        if self.provider_status is not None:
            try:
                providers = dict(self.provider_status())
            except Exception as e:
                logger.warning(f"Provider status unavailable: {str(e)}")
            if not any(providers.values()):
                critical.append("All AI providers are unavailable")

        if m.error_rate > self.config.critical_error_rate:
            critical.append("Critical error rate threshold exceeded")
        if m.error_rate > self.config.warning_error_rate:
            warnings.append(f"High error rate detected: {m.error_rate * 100:.1f}%")
        avg_rt = m.average_response_time_ms
        if avg_rt is not None and avg_rt > self.config.warning_response_time_ms:
            warnings.append(f"Slow response times detected: {avg_rt:.0f}ms average")
        if m.engagement_score < self.config.warning_engagement:
            warnings.append("Low engagement score detected")

        overall = SessionHealthLevel.HEALTHY
        if critical:
            overall = SessionHealthLevel.CRITICAL
        elif warnings:
            overall = SessionHealthLevel.WARNING

        return SessionHealthStatus(
            overall=overall,
            providers=providers,
            session_quality=self.quality_score(m),
            error_count=m.error_count,
            warnings=warnings,
            critical_issues=critical,
        )

    # Alerts

    def _alert_conditions(self, m: StudySessionMetrics) -> Dict[AlertType, tuple]:
        """Alert type -> (severity, message) for every threshold currently crossed."""
        if not m.total_messages:
            return {}
        c = self.config
        conditions: Dict[AlertType, tuple] = {}
        avg_rt = m.average_response_time_ms
        if avg_rt is not None and avg_rt > c.performance_alert_ms:
            severity = AlertSeverity.CRITICAL if avg_rt > c.performance_critical_ms else AlertSeverity.HIGH
            conditions[AlertType.PERFORMANCE] = (severity, f"Average response time {avg_rt:.0f}ms")
        if m.accuracy_samples and m.accuracy_score < c.quality_alert_accuracy:
            severity = AlertSeverity.HIGH if m.accuracy_score < c.quality_high_accuracy else AlertSeverity.MEDIUM
            conditions[AlertType.QUALITY] = (severity, f"Accuracy dropped to {m.accuracy_score:.2f}")
        if m.engagement_samples and m.engagement_score < c.engagement_alert:
            conditions[AlertType.ENGAGEMENT] = (AlertSeverity.MEDIUM, f"Engagement dropped to {m.engagement_score:.2f}")
        if m.error_rate > c.technical_alert_error_rate:
            severity = AlertSeverity.CRITICAL if m.error_rate > c.technical_critical_error_rate else AlertSeverity.HIGH
            conditions[AlertType.TECHNICAL] = (severity, f"Error rate {m.error_rate * 100:.1f}%")
        return conditions

    def _update_alerts(self, session: StudySession) -> List[MonitoringAlert]:
        """Raise alerts for newly crossed thresholds and resolve cleared ones."""
        conditions = self._alert_conditions(session.metrics)
        open_types = {a.type for a in session.alerts if not a.resolved}

        for alert in session.alerts:
            if not alert.resolved and alert.type not in conditions:
                alert.resolved = True

        raised = []
        for alert_type, (severity, message) in conditions.items():
            if alert_type in open_types:
                continue
            alert = MonitoringAlert(
                session_id=session.session_id,
                type=alert_type,
                severity=severity,
                message=message,
                action_required=severity in (AlertSeverity.HIGH, AlertSeverity.CRITICAL),
                suggested_actions=list(ALERT_ACTIONS.get(alert_type, [])),
            )
            session.alerts.append(alert)
            self._add_event(session, "alert", message, severity="critical" if severity == AlertSeverity.CRITICAL else "warning")
            raised.append(alert)

        if len(session.alerts) > self.config.max_alerts:
            del session.alerts[:-self.config.max_alerts]
        return raised

    async def _dispatch(self, alerts: List[MonitoringAlert]):
        for alert in alerts:
            logger.warning(
                f"{alert.type.value} alert ({alert.severity.value}): {alert.message}",
                extra={"session_id": alert.session_id, "action": "monitoring_alert"},
            )
            for callback in self._alert_callbacks:
                try:
                    result = callback(alert)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"Alert callback error: {str(e)}")

    def _add_event(
        self,
        session: StudySession,
        event_type: str,
        description: str,
        severity: str = "info",
        data: Optional[Dict[str, Any]] = None
    ):
        session.events.append(StudySessionEvent(
            type=event_type, severity=severity, description=description, data=data or {}
        ))
        if len(session.events) > self.config.max_events:
            session.events = session.events[-self.config.events_trim_to:]

    # Reports

    def study_effectiveness(self, session: StudySession) -> StudyEffectivenessReport:
        m = session.metrics
        hours = session.duration_seconds / 3600
        effectiveness = self.quality_score(m)
        if m.satisfaction_score > 0.7:
            trend = "improving"
        elif m.satisfaction_score > 0.4:
            trend = "stable"
        else:
            trend = "declining"

        recommended = []
        if m.engagement_samples and m.engagement_score < 0.6:
            recommended.append("Consider increasing interaction frequency")
        avg_rt = m.average_response_time_ms
        if avg_rt is not None and avg_rt > 8000:
            recommended.append("Response times are slow; consider lighter context")
        if m.accuracy_samples and m.accuracy_score < 0.7:
            recommended.append("Accuracy is below target; review content difficulty")
        if effectiveness > 0.8:
            recommended.append("Excellent session; keep the current approach")
        elif effectiveness < 0.5:
            recommended.append("Session effectiveness was low; consider adjusting strategy")
        if m.context_switches > 5:
            recommended.append("Frequent topic switching; focus on one topic longer")

        preparation = []
        velocity = len(m.topics_covered) / hours if hours > 0 else 0.0
        if velocity > 5:
            preparation.append("High learning velocity; prepare more challenging content")
        elif m.total_messages and velocity < 1:
            preparation.append("Slow pace; make sure the foundations are in place")
        if m.corrections_made > m.total_messages * 0.3:
            preparation.append("High correction rate; review content quality and clarity")

        return StudyEffectivenessReport(
            session_id=session.session_id,
            session_effectiveness=effectiveness,
            learning_velocity=velocity,
            retention_rate=m.accuracy_score,
            engagement_score=m.engagement_score,
            satisfaction_trend=trend,
            adaptation_success=clamp01(1.0 - m.error_rate),
            duration_minutes=session.duration_seconds / 60,
            recommended_actions=recommended,
            next_session_preparation=preparation,
        )

    def get_monitoring_statistics(self) -> MonitoringStatistics:
        open_sessions = self.sessions.open_sessions()
        closed = self.sessions.closed_sessions()
        by_health: Dict[str, int] = {}
        for session in open_sessions:
            by_health[session.health.overall.value] = by_health.get(session.health.overall.value, 0) + 1
        return MonitoringStatistics(
            active_sessions=sum(1 for s in open_sessions if s.status == SessionStatus.ACTIVE),
            paused_sessions=sum(1 for s in open_sessions if s.status == SessionStatus.PAUSED),
            closed_sessions=len(closed),
            average_session_minutes=mean([s.duration_seconds / 60 for s in open_sessions + closed]),
            average_session_quality=mean([self.quality_score(s.metrics) for s in open_sessions]),
            open_alerts=sum(1 for s in open_sessions for a in s.alerts if not a.resolved),
            sessions_by_health=by_health,
        )

    # Background sweep

    async def sweep(self) -> Dict[str, int]:
        """Interrupt idle sessions and health-check the remaining active ones."""
        cutoff = utcnow() - timedelta(minutes=self.config.idle_timeout_minutes)
        interrupted = checked = 0
        for session in self.sessions.open_sessions():
            if session.last_activity < cutoff:
                if await self.end_session(session.session_id, SessionStatus.INTERRUPTED) is not None:
                    interrupted += 1
            elif session.status == SessionStatus.ACTIVE:
                try:
                    await self.check_session_health(session.session_id)
                    checked += 1
                except Exception as e:
                    logger.error(f"Periodic health check failed for session {session.session_id}: {str(e)}")
        return {"interrupted": interrupted, "checked": checked}

    async def run_forever(self, interval: Optional[float] = None):
        """Run the sweep continuously."""
        interval = interval or self.config.interval_seconds
        self.running = True
        logger.info("Session monitor started")

        while self.running:
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Monitor sweep error: {str(e)}")

            await asyncio.sleep(interval)

    def stop(self):
        """Stop the sweep loop."""
        self.running = False
        logger.info("Session monitor stopped")


def _running_mean(current: float, samples: int, value: float) -> float:
    if samples <= 0:
        return value
    return (current * samples + value) / (samples + 1)
