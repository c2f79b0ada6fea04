import json
import logging
from unittest.mock import AsyncMock

from ageproof.services.audit import AuditTrail, LoggingAuditLogger, scrub


class TestAuditTrail:
    async def test_forwards_scrubbed_context(self):
        # Arrange
        sink = AsyncMock()
        trail = AuditTrail(sink)

        # Act
        await trail.success(
            "verification_completed", session_id="avs_1", dob="2008-06-15", reason=None
        )

        # Assert
        sink.log_success.assert_awaited_once_with(
            "verification_completed", {"session_id": "avs_1"}
        )

    async def test_sink_failure_never_raises(self, caplog):
        # Arrange
        sink = AsyncMock()
        sink.log_failure.side_effect = RuntimeError("sink down")
        trail = AuditTrail(sink)

        # Act
        with caplog.at_level(logging.ERROR):
            await trail.failure("consent_postback", reason="invalid_signature")

        # Assert
        assert "consent_postback" in caplog.text


class TestLoggingAuditLogger:
    async def test_writes_json_line(self, caplog):
        # Arrange
        audit_logger = LoggingAuditLogger()

        # Act
        with caplog.at_level(logging.INFO, logger="ageproof.audit"):
            await audit_logger.log_success("guardian_link_created", {"link_id": "gcl_1"})

        # Assert
        record = json.loads(caplog.records[-1].getMessage())
        assert record["action"] == "guardian_link_created"
        assert record["result"] == "success"
        assert record["link_id"] == "gcl_1"


def test_scrub_drops_identity_keys_case_insensitively():
    assert scrub({"DOB": "x", "Access_Token": "y", "widget_id": "w"}) == {"widget_id": "w"}


class TestAuditContextKeys:
    async def test_context_may_carry_an_action_key(self):
        # Arrange
        sink = AsyncMock()
        trail = AuditTrail(sink)

        # Act
        await trail.success("consent_postback", action="granted")
        await trail.failure("consent_artifact_applied", action="revoked")

        # Assert
        sink.log_success.assert_awaited_once_with("consent_postback", {"action": "granted"})
        sink.log_failure.assert_awaited_once_with(
            "consent_artifact_applied", {"action": "revoked"}
        )

    async def test_json_line_keeps_event_action(self, caplog):
        audit_logger = LoggingAuditLogger()

        with caplog.at_level(logging.INFO, logger="ageproof.audit"):
            await audit_logger.log_success("consent_postback", {"action": "granted"})

        record = json.loads(caplog.records[-1].getMessage())
        assert record["action"] == "consent_postback"
