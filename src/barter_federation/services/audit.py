from __future__ import annotations

import enum
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from barter_federation.core.metrics import federation_events_total
from barter_federation.db.repository import FederationRepository
from barter_federation.models.federation import (
    AuditLogEntry,
    FederationEventType,
    FederationOutcome,
)

logger = logging.getLogger(__name__)

_MAX_WRITE_ATTEMPTS = 3


def _json_safe(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    return str(value)


class AuditLogger:
    """Append-only federation audit trail.

    Writes go straight to the database on the caller's path; a write failure
    is logged loudly but never changes the outcome of the operation being
    audited.
    """

    def __init__(self, repository: FederationRepository) -> None:
        self._repository = repository

    def log_federation_event(
        self,
        event_type: FederationEventType,
        server_id: Optional[str],
        action: str,
        outcome: FederationOutcome,
        details: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        duration_ms: Optional[int] = None,
        remote_ip: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        """Records one federation event.

        Transient database errors are retried a bounded number of times.

        Returns:
            The stored entry, or None if it could not be written.
        """
        federation_events_total.labels(event_type.value, outcome.value).inc()
        safe_details = _json_safe(details) if details is not None else None
        for attempt in range(1, _MAX_WRITE_ATTEMPTS + 1):
            try:
                return self._repository.append_audit_entry(
                    event_type=event_type,
                    server_id=server_id,
                    action=action,
                    outcome=outcome,
                    details=safe_details,
                    error_message=error_message,
                    duration_ms=duration_ms,
                    remote_ip=remote_ip,
                )
            except OperationalError as exc:
                logger.warning(
                    "Audit log write attempt %d/%d failed: %s",
                    attempt,
                    _MAX_WRITE_ATTEMPTS,
                    exc,
                )
            except SQLAlchemyError:
                logger.exception(
                    "Audit log write failed for event %s/%s", event_type.value, action
                )
                break
        logger.error(
            "AUDIT EVENT NOT PERSISTED: type=%s server=%s action=%s outcome=%s details=%s error=%s duration_ms=%s remote_ip=%s",
            event_type.value,
            server_id,
            action,
            outcome.value,
            safe_details,
            error_message,
            duration_ms,
            remote_ip,
        )  # ALERT: Audit trail gap
        return None

    def get_audit_logs(
        self,
        server_id: Optional[str] = None,
        event_type: Optional[FederationEventType] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        """Filtered audit history, newest first."""
        return self._repository.get_audit_logs(
            server_id=server_id, event_type=event_type, limit=max(1, min(limit, 1000))
        )


__all__ = ["AuditLogger"]
