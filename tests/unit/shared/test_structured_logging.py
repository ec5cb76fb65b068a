"""
Tests for the JSON log formatter and log_with_context.
"""

import json
import logging

from study_buddy.orchestration.models import Stage
from study_buddy.shared.logging import StructuredFormatter, anonymize_user_id, log_with_context


class _Capture(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


def _capture(name):
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    handler = _Capture()
    logger.addHandler(handler)
    return logger, handler


def test_turn_context_is_lifted_and_user_id_hashed():
    logger, handler = _capture("study_buddy.test.turn")

    log_with_context(
        logger, logging.INFO, "Chat turn orchestrated",
        user_id="student-1",
        action="orchestrate",
        session_id="s1",
        conversation_id="c1",
        interaction_id="i1",
        provider="anthropic",
        latency_ms=12.5,
    )

    data = json.loads(StructuredFormatter().format(handler.records[-1]))
    assert data["user_id"] == anonymize_user_id("student-1")
    assert "student-1" not in json.dumps(data)
    assert data["session_id"] == "s1"
    assert data["conversation_id"] == "c1"
    assert data["interaction_id"] == "i1"
    assert data["provider"] == "anthropic"
    assert data["extra"] == {"latency_ms": 12.5}
    assert list(data)[4:10] == ["action", "user_id", "session_id", "conversation_id", "interaction_id", "provider"]


def test_stage_is_logged_by_label():
    logger, handler = _capture("study_buddy.test.stage")

    logger.warning("Stage failed", extra={"action": "stage_failed", "stage": Stage.PERSONALIZATION})

    data = json.loads(StructuredFormatter().format(handler.records[-1]))
    assert data["stage"] == "personalization"
    assert "extra" not in data


def test_missing_context_is_omitted():
    logger, handler = _capture("study_buddy.test.bare")

    log_with_context(logger, logging.INFO, "Consent granted", action="consent_granted")

    data = json.loads(StructuredFormatter().format(handler.records[-1]))
    assert data["action"] == "consent_granted"
    assert "user_id" not in data
    assert "session_id" not in data
