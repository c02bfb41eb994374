"""Audit logging for enrollment and authorization events.

Writes one JSON object per line to ``<home>/logs/audit.log``. Tokens are
never written in full; see ``mask_token``.
"""

import json
import logging
import os
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from rich.logging import RichHandler

from . import __version__


class AuditEventType(Enum):
    """Types of audit events."""
    ENROLLMENT = "enrollment"
    REVOCATION = "revocation"
    REMOVAL = "removal"
    RECONCILIATION = "reconciliation"
    PUSH_TOKEN = "push_token"
    ERROR = "error"


def mask_token(token: Optional[str], visible: int = 8) -> Optional[str]:
    """Return a short prefix of ``token`` suitable for logs."""
    if not token:
        return None
    return f"{token[:visible]}..."


def configure_logging(verbose: bool = False) -> None:
    """Install a rich console handler on the package logger.

    Args:
        verbose: Log at DEBUG instead of WARNING.
    """
    package_logger = logging.getLogger("kantine_device")
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    for handler in list(package_logger.handlers):
        if isinstance(handler, RichHandler):
            package_logger.removeHandler(handler)
    package_logger.addHandler(RichHandler(show_path=verbose, rich_tracebacks=verbose, markup=False))


class AuditLogger:
    """Handles audit event logging."""

    def __init__(self, log_dir: Path) -> None:
        """Initialize audit logger.

        Args:
            log_dir: Directory for the audit log.
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.log_dir, 0o700)

        self.audit_log_file = self.log_dir / "audit.log"
        self._setup_logging()

    def _setup_logging(self) -> None:
        """Configure the file handler."""
        self.audit_logger = logging.getLogger(f"kantine_audit.{id(self)}")
        self.audit_logger.setLevel(logging.INFO)
        self.audit_logger.propagate = False
        self.audit_logger.handlers.clear()

        if not self.audit_log_file.exists():
            self.audit_log_file.touch()
        os.chmod(self.audit_log_file, 0o600)

        self._handler = logging.FileHandler(self.audit_log_file)
        self._handler.setLevel(logging.INFO)
        self._handler.setFormatter(logging.Formatter('%(message)s'))
        self.audit_logger.addHandler(self._handler)

    def close(self) -> None:
        self.audit_logger.removeHandler(self._handler)
        self._handler.close()

    def _create_log_entry(
        self,
        event_type: AuditEventType,
        message: str,
        tenant: Optional[str] = None,
        action: Optional[str] = None,
        result: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: str = "INFO"
    ) -> Dict[str, Any]:
        """Create a structured log entry.

        Args:
            event_type: Type of audit event
            message: Log message
            tenant: Tenant slug the event concerns
            action: Action being performed
            result: Result of the action (SUCCESS, FAILURE, etc.)
            details: Additional details as dictionary
            severity: Log severity level

        Returns:
            Structured log entry as dictionary
        """
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type.value,
            "severity": severity,
            "message": message,
            "source": "kantine_device",
            "version": __version__
        }

        if tenant:
            entry["tenant"] = tenant
        if action:
            entry["action"] = action
        if result:
            entry["result"] = result
        if details:
            entry["details"] = details

        return entry

    def log_enrollment(
        self,
        tenant: str,
        enrollment_id: str,
        role: str,
        admitted: Iterable[str],
        dropped: Iterable[str] = (),
        token: Optional[str] = None
    ) -> None:
        """Log a merged enrollment.

        Args:
            tenant: Tenant slug
            enrollment_id: Id of the recorded enrollment
            role: Role of the grant
            admitted: Team ids that were added
            dropped: Team ids cut off by the team limit
            token: Signed device token (masked before writing)
        """
        dropped = list(dropped)
        entry = self._create_log_entry(
            event_type=AuditEventType.ENROLLMENT,
            message=f"Enrolled with {tenant} as {role}",
            tenant=tenant,
            action="enroll",
            result="TRUNCATED" if dropped else "SUCCESS",
            details={
                "enrollment_id": enrollment_id,
                "admitted": list(admitted),
                "dropped": dropped,
                "token": mask_token(token),
            },
            severity="WARNING" if dropped else "INFO"
        )
        self._write_entry(entry)

    def log_revocation(self, tenant: str, cause: str, reason: Optional[str] = None) -> None:
        entry = self._create_log_entry(
            event_type=AuditEventType.REVOCATION,
            message=f"Tenant {tenant} revoked: {cause}",
            tenant=tenant,
            action="revoke",
            result="REVOKED",
            details={"cause": cause, "reason": reason},
            severity="WARNING"
        )
        self._write_entry(entry)

    def log_removal(
        self,
        tenant: str,
        team: Optional[str] = None,
        backend_notified: bool = True
    ) -> None:
        """Log removal of a tenant, or of one team when ``team`` is given."""
        what = f"team {team} from {tenant}" if team else f"tenant {tenant}"
        entry = self._create_log_entry(
            event_type=AuditEventType.REMOVAL,
            message=f"Removed {what}",
            tenant=tenant,
            action="remove_team" if team else "remove_tenant",
            result="SUCCESS" if backend_notified else "LOCAL_ONLY",
            details={"team": team, "backend_notified": backend_notified}
        )
        self._write_entry(entry)

    def log_reconciliation(
        self,
        success: bool,
        enrollments_sent: int = 0,
        summary: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None
    ) -> None:
        status = "SUCCESS" if success else "FAILED"
        entry = self._create_log_entry(
            event_type=AuditEventType.RECONCILIATION,
            message=f"Reconciliation {status.lower()}",
            action="reconcile",
            result=status,
            details={
                "enrollments_sent": enrollments_sent,
                "cleanup_summary": summary,
                "error_message": error_message,
            },
            severity="INFO" if success else "WARNING"
        )
        self._write_entry(entry)

    def log_push_token(self, push_token: str, success: bool) -> None:
        status = "SUCCESS" if success else "FAILED"
        entry = self._create_log_entry(
            event_type=AuditEventType.PUSH_TOKEN,
            message=f"Push token registration {status.lower()}",
            action="register_push_token",
            result=status,
            details={"push_token": mask_token(push_token)},
            severity="INFO" if success else "WARNING"
        )
        self._write_entry(entry)

    def log_error(
        self,
        error_type: str,
        error_message: str,
        tenant: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log error events.

        Args:
            error_type: Type of error
            error_message: Error message
            tenant: Tenant slug if the error concerns one
            details: Additional details
        """
        entry = self._create_log_entry(
            event_type=AuditEventType.ERROR,
            message=f"Error: {error_type} - {error_message}",
            tenant=tenant,
            action="error",
            result="ERROR",
            details={
                "error_type": error_type,
                "error_message": error_message,
                **(details or {})
            },
            severity="ERROR"
        )
        self._write_entry(entry)

    def _write_entry(self, entry: Dict[str, Any]) -> None:
        self.audit_logger.info(json.dumps(entry, default=str))
