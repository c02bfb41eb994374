"""Throttled reconciliation of the device's enrollment set with the backend.

The device periodically uploads every active enrollment. The backend compares
that snapshot with its own records and removes what the device no longer has,
which cleans up after removals whose API call failed. The upload is
idempotent and never changes the local model.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from .api import BackendClient, EnrollmentSyncData, ReconciliationSummary
from .audit_logging import AuditLogger, mask_token
from .models import DomainModel, Role

logger = logging.getLogger(__name__)

DEFAULT_MIN_INTERVAL = 3600.0
SIGNIFICANT_TEAMS_REMOVED = 3


@dataclass(frozen=True)
class DeviceIdentity:
    """Credentials the reconciliation call is made with."""

    hardware_identifier: Optional[str]
    auth_token: Optional[str]


class ReconcileOutcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    THROTTLED = "throttled"
    IN_FLIGHT = "in_flight"
    NO_CREDENTIAL = "no_credential"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    summary: Optional[ReconciliationSummary] = None
    enrollments_sent: int = 0
    error: Optional[str] = None

    @property
    def ran(self) -> bool:
        return self.outcome in (ReconcileOutcome.SUCCEEDED, ReconcileOutcome.FAILED)


def build_enrollment_snapshot(
    model: DomainModel,
    hardware_identifier: Optional[str] = None
) -> Optional[List[EnrollmentSyncData]]:
    """Convert the model's active enrollments to the sync format.

    Season-ended tenants are left out. Team ids are mapped to team codes.
    Enrollments that grant no teams are skipped.

    Returns:
        The snapshot, or None when an enrollment references a team its tenant
        does not know or a team without a code. Uploading such a snapshot
        could make the backend revoke enrollments that are still valid.
    """
    snapshot: List[EnrollmentSyncData] = []

    for tenant_slug, tenant in model.tenants.items():
        if tenant.season_ended:
            logger.debug("Skipping tenant %s: season ended", tenant_slug)
            continue

        for enrollment_id in tenant.enrollments:
            enrollment = model.enrollments.get(enrollment_id)
            if enrollment is None:
                logger.warning("Enrollment %s not found in model", enrollment_id)
                continue

            if not enrollment.teams:
                logger.warning("Enrollment %s grants no teams, skipping", enrollment_id[:8])
                continue

            team_codes: List[str] = []
            for team_id in enrollment.teams:
                team = tenant.team(team_id)
                if team is None:
                    team = next((t for t in tenant.teams if t.code == team_id), None)
                if team is None:
                    logger.error(
                        "No team found for id %s in tenant %s (known: %s); aborting reconciliation",
                        team_id, tenant_slug, [t.id for t in tenant.teams]
                    )
                    return None
                if not team.code:
                    logger.error(
                        "Team %s (%s) in tenant %s has no code; aborting reconciliation",
                        team.id, team.name, tenant_slug
                    )
                    return None
                team_codes.append(team.code)

            snapshot.append(EnrollmentSyncData(
                tenant_slug=tenant_slug,
                role=enrollment.role.value,
                team_codes=tuple(team_codes),
                team_manager_email=enrollment.email if enrollment.role is Role.MANAGER else None,
                hardware_identifier=hardware_identifier,
            ))

    return snapshot


class ReconciliationService:
    """Single-flight, throttled reconciliation.

    One instance per backend session. A trigger that arrives while a run is
    in flight is dropped. The throttle only advances on success.
    """

    def __init__(
        self,
        backend: BackendClient,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        audit: Optional[AuditLogger] = None
    ) -> None:
        self.backend = backend
        self.min_interval = min_interval
        self._clock = clock
        self._audit = audit
        self._lock = threading.Lock()
        self._last_success: Optional[float] = None

    @property
    def last_success(self) -> Optional[float]:
        return self._last_success

    def seconds_until_due(self) -> float:
        if self._last_success is None:
            return 0.0
        return max(0.0, self.min_interval - (self._clock() - self._last_success))

    def reconcile_if_needed(self, model: DomainModel, identity: DeviceIdentity) -> ReconcileResult:
        """Reconcile unless the last successful run is younger than the interval."""
        return self._run(model, identity, force=False)

    def reconcile(self, model: DomainModel, identity: DeviceIdentity) -> ReconcileResult:
        """Reconcile now, bypassing the throttle."""
        return self._run(model, identity, force=True)

    def _run(self, model: DomainModel, identity: DeviceIdentity, force: bool) -> ReconcileResult:
        if not self._lock.acquire(blocking=False):
            logger.info("Reconciliation already in progress, dropping trigger")
            return ReconcileResult(ReconcileOutcome.IN_FLIGHT)

        try:
            if not force and self._last_success is not None:
                elapsed = self._clock() - self._last_success
                if elapsed < self.min_interval:
                    logger.info(
                        "Skipping reconciliation: last sync was %ds ago (minimum: %ds)",
                        int(elapsed), int(self.min_interval)
                    )
                    return ReconcileResult(ReconcileOutcome.THROTTLED)
            return self._reconcile(model, identity)
        finally:
            self._lock.release()

    def _reconcile(self, model: DomainModel, identity: DeviceIdentity) -> ReconcileResult:
        logger.info(
            "Starting reconciliation: %d tenant(s), %d enrollment(s)",
            len(model.tenants), len(model.enrollments)
        )

        if not identity.auth_token:
            logger.warning("No auth token available for reconciliation, skipping")
            return ReconcileResult(ReconcileOutcome.NO_CREDENTIAL)

        snapshot = build_enrollment_snapshot(model, identity.hardware_identifier)
        if snapshot is None:
            logger.error("Reconciliation aborted: incomplete team data, will retry on next trigger")
            return ReconcileResult(ReconcileOutcome.INCOMPLETE)

        for index, item in enumerate(snapshot, 1):
            logger.debug("[%d] tenant=%s role=%s teams=%s", index, item.tenant_slug, item.role, list(item.team_codes))

        try:
            summary = self.backend.sync_enrollments(snapshot, identity.auth_token)
        except Exception as e:
            logger.error("Reconciliation failed (token %s): %s", mask_token(identity.auth_token), e)
            if self._audit:
                self._audit.log_reconciliation(False, len(snapshot), error_message=str(e))
            return ReconcileResult(ReconcileOutcome.FAILED, enrollments_sent=len(snapshot), error=str(e))

        self._last_success = self._clock()

        if not summary.has_changes:
            logger.info("Reconciliation completed, no cleanup needed")
        else:
            logger.info(
                "Reconciliation completed with cleanup: teams removed=%d, enrollments revoked=%d, tenants=%s",
                summary.teams_removed, summary.enrollments_revoked, ", ".join(summary.tenants_affected)
            )
            if summary.enrollments_revoked > 0 or summary.teams_removed > SIGNIFICANT_TEAMS_REMOVED:
                logger.warning("Significant cleanup detected; earlier removal calls may have failed")

        if self._audit:
            self._audit.log_reconciliation(True, len(snapshot), summary=summary.to_dict())
        return ReconcileResult(ReconcileOutcome.SUCCEEDED, summary=summary, enrollments_sent=len(snapshot))
