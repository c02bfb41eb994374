"""Enrollment merge engine.

Folds an ``EnrollmentDelta`` into a ``DomainModel``. The engine is pure and
total: it never raises and never mutates its inputs. It does not protect
against applying the same delta twice; callers track used enrollment tokens
(see ``coordinator.EnrollmentCoordinator.complete_enrollment``).
"""

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Tuple

from .models import MAX_TEAMS, DomainModel, Enrollment, EnrollmentDelta, Team, Tenant, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeResult:
    """Outcome of a merge.

    Attributes:
        model: The new model.
        enrollment_id: Id of the enrollment recorded for the delta.
        admitted: Teams of the delta that fit under the team ceiling.
        dropped: Teams cut off by the ceiling, in delta order.
    """

    model: DomainModel
    enrollment_id: str
    admitted: Tuple[Team, ...]
    dropped: Tuple[Team, ...]

    @property
    def truncated(self) -> bool:
        return bool(self.dropped)


def merge_delta(
    model: DomainModel,
    delta: EnrollmentDelta,
    enrollment_id: Optional[str] = None,
    now: Optional[datetime] = None
) -> MergeResult:
    """Merge ``delta`` into ``model``.

    Args:
        model: Current model.
        delta: Incoming grant.
        enrollment_id: Id for the new enrollment. Defaults to the id carried
            by the delta, then to a fresh UUID.
        now: Timestamp for the enrollment record and ``updated_at``.

    Returns:
        A ``MergeResult`` describing the new model and any truncation.
    """
    now = now or utcnow()
    enrollment_id = enrollment_id or delta.enrollment_id or str(uuid.uuid4())
    tenants = dict(model.tenants)

    # A manager grant supersedes existing entries for the same team ids.
    existing = tenants.get(delta.tenant_slug)
    if existing is not None and delta.grants_manager:
        incoming_ids = {team.id for team in delta.teams}
        superseded = [t.id for t in existing.teams if t.id in incoming_ids]
        if superseded:
            logger.debug("Manager grant supersedes %s in %s", superseded, delta.tenant_slug)
        tenants[delta.tenant_slug] = replace(
            existing, teams=tuple(t for t in existing.teams if t.id not in incoming_ids)
        )

    current_count = sum(len(t.teams) for t in tenants.values())
    available = max(0, MAX_TEAMS - current_count)
    admitted = tuple(delta.teams[:available])
    dropped = tuple(delta.teams[available:])
    if dropped:
        logger.warning(
            "Team limit reached: admitted %d of %d team(s) for %s",
            len(admitted), len(delta.teams), delta.tenant_slug
        )

    tenant = tenants.get(delta.tenant_slug)
    if tenant is None:
        tenant = Tenant(slug=delta.tenant_slug, name=delta.tenant_name)

    known_ids = {t.id for t in tenant.teams}
    new_teams = []
    for team in admitted:
        if team.id in known_ids:
            continue
        known_ids.add(team.id)
        new_teams.append(team)

    token = delta.signed_device_token or tenant.signed_device_token
    season_ended = tenant.season_ended
    if delta.signed_device_token and season_ended:
        # A fresh grant re-activates a tenant that was revoked earlier.
        logger.info("Re-enrollment re-activates tenant %s", delta.tenant_slug)
        season_ended = False
    if season_ended:
        token = None

    tenants[delta.tenant_slug] = replace(
        tenant,
        teams=tenant.teams + tuple(new_teams),
        signed_device_token=token,
        season_ended=season_ended,
        enrollments=tenant.enrollments + (enrollment_id,),
    )

    enrollment = Enrollment(
        id=enrollment_id,
        tenant_slug=delta.tenant_slug,
        role=delta.role,
        teams=tuple(team.id for team in admitted),
        signed_device_token=delta.signed_device_token,
        email=delta.email,
        enrolled_at=now,
    )
    enrollments = dict(model.enrollments)
    enrollments[enrollment_id] = enrollment

    logger.debug(
        "Merged enrollment %s into %s: +%d team(s), total %d",
        enrollment_id[:8], delta.tenant_slug, len(new_teams),
        sum(len(t.teams) for t in tenants.values())
    )

    new_model = model.with_changes(now=now, tenants=tenants, enrollments=enrollments)
    return MergeResult(model=new_model, enrollment_id=enrollment_id, admitted=admitted, dropped=dropped)


def apply_delta(
    model: DomainModel,
    delta: EnrollmentDelta,
    enrollment_id: Optional[str] = None,
    now: Optional[datetime] = None
) -> DomainModel:
    """Return ``model`` with ``delta`` merged in."""
    return merge_delta(model, delta, enrollment_id=enrollment_id, now=now).model
