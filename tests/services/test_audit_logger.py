import logging
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from barter_federation.db.repository import FederationRepository
from barter_federation.models.federation import FederationEventType, FederationOutcome, TrustLevel
from barter_federation.services.audit import AuditLogger


def _operational_error() -> OperationalError:
    return OperationalError("INSERT", {}, Exception("database is locked"))


def test_transient_failures_are_retried():
    repo = MagicMock(spec=FederationRepository)
    stored = MagicMock()
    repo.append_audit_entry = MagicMock(side_effect=[_operational_error(), stored])
    audit = AuditLogger(repo)

    result = audit.log_federation_event(
        FederationEventType.MESSAGE_RELAY, "b1", "SEND_MESSAGE_RELAY", FederationOutcome.SUCCESS
    )

    assert result is stored
    assert repo.append_audit_entry.call_count == 2


def test_persistent_failure_is_logged_not_raised(caplog):
    repo = MagicMock(spec=FederationRepository)
    repo.append_audit_entry = MagicMock(side_effect=_operational_error())
    audit = AuditLogger(repo)

    with caplog.at_level(logging.ERROR, logger="barter_federation.services.audit"):
        result = audit.log_federation_event(
            FederationEventType.HANDSHAKE_REJECT,
            "b1",
            "ACCEPT_HANDSHAKE",
            FederationOutcome.FAILURE,
            error_message="invalid signature",
        )

    assert result is None
    assert repo.append_audit_entry.call_count == 3
    assert "AUDIT EVENT NOT PERSISTED" in caplog.text
    assert "invalid signature" in caplog.text


def test_details_are_made_json_safe():
    repo = MagicMock(spec=FederationRepository)
    audit = AuditLogger(repo)

    audit.log_federation_event(
        FederationEventType.TRUST_LEVEL_CHANGE,
        "b1",
        "UPDATE_TRUST_LEVEL",
        FederationOutcome.SUCCESS,
        details={"to": TrustLevel.FULL, "ids": ("x", "y")},
    )

    details = repo.append_audit_entry.call_args.kwargs["details"]
    assert details == {"to": "FULL", "ids": ["x", "y"]}


def test_get_audit_logs_clamps_limit():
    repo = MagicMock(spec=FederationRepository)
    repo.get_audit_logs = MagicMock(return_value=[])
    audit = AuditLogger(repo)

    audit.get_audit_logs(limit=5000)

    assert repo.get_audit_logs.call_args.kwargs["limit"] == 1000
