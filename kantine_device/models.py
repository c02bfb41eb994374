"""Domain model for device enrollments.

The aggregate root is ``DomainModel``: every tenant (club) the device is
enrolled with, keyed by slug, plus every enrollment grant keyed by id. All
types are frozen; transformations return new instances so the coordinator can
persist after each change.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Self, Tuple

from .errors import ResponseValidationError

logger = logging.getLogger(__name__)

MAX_TEAMS = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Optional[str]) -> datetime:
    if not value:
        return utcnow()
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Role(str, Enum):
    """Role a device holds for a team."""

    MANAGER = "manager"
    MEMBER = "member"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Role":
        # The registration endpoint omits the role for manager links.
        return cls.MEMBER if value == cls.MEMBER.value else cls.MANAGER


@dataclass(frozen=True)
class Team:
    """A team within one tenant the device has access to."""

    id: str
    name: str
    role: Role
    code: Optional[str] = None
    email: Optional[str] = None
    enrolled_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "role": self.role.value,
            "email": self.email,
            "enrolled_at": self.enrolled_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Team":
        return cls(
            id=data["id"],
            code=data.get("code"),
            name=data.get("name") or data.get("code") or data["id"],
            role=Role(data.get("role", Role.MEMBER.value)),
            email=data.get("email"),
            enrolled_at=_parse_datetime(data.get("enrolled_at")),
        )


@dataclass(frozen=True)
class Enrollment:
    """Immutable record of one successful registration call."""

    id: str
    tenant_slug: str
    role: Role
    teams: Tuple[str, ...] = ()
    signed_device_token: Optional[str] = None
    email: Optional[str] = None
    enrolled_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_slug": self.tenant_slug,
            "role": self.role.value,
            "teams": list(self.teams),
            "signed_device_token": self.signed_device_token,
            "email": self.email,
            "enrolled_at": self.enrolled_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Enrollment":
        return cls(
            id=data["id"],
            tenant_slug=data["tenant_slug"],
            role=Role(data.get("role", Role.MEMBER.value)),
            teams=tuple(data.get("teams", [])),
            signed_device_token=data.get("signed_device_token") or None,
            email=data.get("email"),
            enrolled_at=_parse_datetime(data.get("enrolled_at")),
        )


@dataclass(frozen=True)
class Tenant:
    """A club the device is enrolled with."""

    slug: str
    name: str
    teams: Tuple[Team, ...] = ()
    signed_device_token: Optional[str] = None
    enrollments: Tuple[str, ...] = ()
    season_ended: bool = False
    club_logo_url: Optional[str] = None

    @property
    def is_accessible(self) -> bool:
        return not self.season_ended and self.signed_device_token is not None

    @property
    def has_manager_team(self) -> bool:
        return any(team.role is Role.MANAGER for team in self.teams)

    def team(self, team_id: str) -> Optional[Team]:
        for team in self.teams:
            if team.id == team_id:
                return team
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "name": self.name,
            "teams": [team.to_dict() for team in self.teams],
            "signed_device_token": self.signed_device_token,
            "enrollments": list(self.enrollments),
            "season_ended": self.season_ended,
            "club_logo_url": self.club_logo_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Tenant":
        return cls(
            slug=data["slug"],
            name=data["name"],
            teams=tuple(Team.from_dict(t) for t in data.get("teams", [])),
            signed_device_token=data.get("signed_device_token") or None,
            enrollments=tuple(data.get("enrollments", [])),
            season_ended=bool(data.get("season_ended", False)),
            club_logo_url=data.get("club_logo_url"),
        )


@dataclass(frozen=True)
class EnrollmentDelta:
    """An incoming grant to be folded into the model.

    Built from a registration response by ``from_response``, which is the
    strict decode step at the network boundary.
    """

    tenant_slug: str
    tenant_name: str
    teams: Tuple[Team, ...] = ()
    signed_device_token: Optional[str] = None
    enrollment_id: Optional[str] = None

    @property
    def role(self) -> Role:
        return self.teams[0].role if self.teams else Role.MEMBER

    @property
    def email(self) -> Optional[str]:
        return self.teams[0].email if self.teams else None

    @property
    def grants_manager(self) -> bool:
        return any(team.role is Role.MANAGER for team in self.teams)

    @classmethod
    def from_response(cls, payload: Any, now: Optional[datetime] = None) -> "EnrollmentDelta":
        """Decode a ``/enrollments/register`` response.

        Args:
            payload: Parsed JSON body.
            now: Enrollment timestamp for the granted teams.

        Returns:
            The decoded delta.

        Raises:
            ResponseValidationError: If ``tenant_slug`` or ``tenant_name`` is
                missing or empty, or the body is not an object.
        """
        if not isinstance(payload, dict):
            raise ResponseValidationError("Invalid response: expected a JSON object")

        tenant_slug = payload.get("tenant_slug")
        if not isinstance(tenant_slug, str) or not tenant_slug:
            raise ResponseValidationError("Missing tenant_slug in API response")

        tenant_name = payload.get("tenant_name")
        if not isinstance(tenant_name, str) or not tenant_name:
            raise ResponseValidationError("Missing tenant_name in API response")

        now = now or utcnow()
        role = Role.parse(payload.get("role"))
        email = payload.get("email") if role is Role.MANAGER else None

        teams: List[Team] = []
        raw_teams = payload.get("teams")
        if isinstance(raw_teams, list):
            for raw in raw_teams:
                if not isinstance(raw, dict):
                    continue
                team_id = raw.get("id") or ""
                if not team_id:
                    logger.warning("Skipping team without id in registration response")
                    continue
                code = raw.get("code")
                name = raw.get("naam") or raw.get("name") or code or team_id
                teams.append(Team(id=team_id, code=code, name=name, role=role, email=email, enrolled_at=now))
        else:
            # Older backends only return codes; the code doubles as the id.
            for code in payload.get("team_codes") or []:
                teams.append(Team(id=code, code=code, name=code, role=role, email=email, enrolled_at=now))

        return cls(
            tenant_slug=tenant_slug,
            tenant_name=tenant_name,
            teams=tuple(teams),
            signed_device_token=payload.get("api_token") or None,
            enrollment_id=payload.get("enrollment_id"),
        )


@dataclass(frozen=True)
class TenantInfo:
    """Server-side metadata for a tenant, as returned by ``/tenants``."""

    slug: str
    name: str
    club_logo_url: Optional[str] = None
    season_ended: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "name": self.name,
            "club_logo_url": self.club_logo_url,
            "season_ended": self.season_ended,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "TenantInfo":
        if not isinstance(data, dict):
            raise ResponseValidationError("Invalid response: tenant entry is not an object")
        slug = data.get("slug")
        name = data.get("club_name") or data.get("name")
        if not isinstance(slug, str) or not slug:
            raise ResponseValidationError("Missing tenant slug in tenant info")
        if not isinstance(name, str) or not name:
            raise ResponseValidationError(f"Missing tenant name for {slug} in tenant info")
        return cls(
            slug=slug,
            name=name,
            club_logo_url=data.get("club_logo_url") or None,
            season_ended=bool(data.get("season_ended", False)),
        )


@dataclass(frozen=True)
class DomainModel:
    """Aggregate root: all tenants and enrollments known to this device."""

    device_id: str
    tenants: Dict[str, Tenant] = field(default_factory=dict)
    enrollments: Dict[str, Enrollment] = field(default_factory=dict)
    push_token: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def empty(cls, device_id: Optional[str] = None, now: Optional[datetime] = None) -> "DomainModel":
        now = now or utcnow()
        return cls(device_id=device_id or str(uuid.uuid4()), created_at=now, updated_at=now)

    @property
    def is_enrolled(self) -> bool:
        return bool(self.tenants)

    @property
    def has_active_tenants(self) -> bool:
        return any(not tenant.season_ended for tenant in self.tenants.values())

    @property
    def total_team_count(self) -> int:
        return sum(len(tenant.teams) for tenant in self.tenants.values())

    def with_changes(self: Self, now: Optional[datetime] = None, **changes: Any) -> "DomainModel":
        """Return a copy with ``changes`` applied and ``updated_at`` bumped."""
        return replace(self, updated_at=now or utcnow(), **changes)

    @property
    def primary_auth_token(self) -> Optional[str]:
        """Token for device-wide calls.

        Prefers an active tenant holding a manager team, then any active
        tenant. Season-ended tenants never contribute a token.
        """
        active = [t for t in self.tenants.values() if not t.season_ended and t.signed_device_token]
        for tenant in active:
            if tenant.has_manager_team:
                return tenant.signed_device_token
        if active:
            return active[0].signed_device_token
        logger.debug("No active auth token available")
        return None

    def auth_token_for_team(self, team_id: str, tenant_slug: str) -> Optional[str]:
        """Token that authorizes calls about ``team_id`` in ``tenant_slug``.

        Looks for the enrollment that granted the team, by id and then by
        team code, and falls back to the tenant token. Returns None for an
        unknown or season-ended tenant.
        """
        tenant = self.tenants.get(tenant_slug)
        if tenant is None or tenant.season_ended:
            return None

        candidates = [self.enrollments[eid] for eid in tenant.enrollments if eid in self.enrollments]
        for enrollment in candidates:
            if team_id in enrollment.teams and enrollment.signed_device_token:
                return enrollment.signed_device_token

        team = tenant.team(team_id)
        if team is not None and team.code:
            for enrollment in candidates:
                if team.code in enrollment.teams and enrollment.signed_device_token:
                    return enrollment.signed_device_token

        return tenant.signed_device_token

    def removing_tenant(self: Self, tenant_slug: str, now: Optional[datetime] = None) -> "DomainModel":
        """Drop a tenant and every enrollment it owns."""
        tenant = self.tenants.get(tenant_slug)
        if tenant is None:
            return self

        tenants = {slug: t for slug, t in self.tenants.items() if slug != tenant_slug}
        owned = set(tenant.enrollments)
        enrollments = {eid: e for eid, e in self.enrollments.items() if eid not in owned}
        return self.with_changes(now=now, tenants=tenants, enrollments=enrollments)

    def removing_team(self: Self, team_id: str, tenant_slug: str, now: Optional[datetime] = None) -> "DomainModel":
        """Drop one team, scrubbing it from the enrollments that granted it.

        Enrollments left without teams are removed; a tenant left without
        teams is removed together with its enrollments.
        """
        tenant = self.tenants.get(tenant_slug)
        if tenant is None:
            return self

        removed = tenant.team(team_id)
        refs = {team_id, removed.code} if removed is not None and removed.code else {team_id}
        teams = tuple(t for t in tenant.teams if t.id != team_id)
        enrollments = dict(self.enrollments)
        kept_ids: List[str] = []
        for eid in tenant.enrollments:
            enrollment = enrollments.get(eid)
            if enrollment is None:
                continue
            remaining = tuple(tid for tid in enrollment.teams if tid not in refs)
            if remaining:
                enrollments[eid] = replace(enrollment, teams=remaining)
                kept_ids.append(eid)
            else:
                del enrollments[eid]

        tenants = dict(self.tenants)
        if teams:
            tenants[tenant_slug] = replace(tenant, teams=teams, enrollments=tuple(kept_ids))
        else:
            for eid in kept_ids:
                enrollments.pop(eid, None)
            del tenants[tenant_slug]

        return self.with_changes(now=now, tenants=tenants, enrollments=enrollments)

    def cleanup_orphaned_enrollments(self: Self) -> "DomainModel":
        """Remove enrollments that no tenant references."""
        referenced = {eid for tenant in self.tenants.values() for eid in tenant.enrollments}
        orphaned = set(self.enrollments) - referenced
        if not orphaned:
            return self
        logger.info("Removing %d orphaned enrollment(s)", len(orphaned))
        enrollments = {eid: e for eid, e in self.enrollments.items() if eid not in orphaned}
        return self.with_changes(enrollments=enrollments)

    def validate(self) -> List[str]:
        """Return human-readable invariant violations (empty when valid)."""
        problems: List[str] = []

        if self.total_team_count > MAX_TEAMS:
            problems.append(f"{self.total_team_count} teams exceed the limit of {MAX_TEAMS}")

        for slug, tenant in self.tenants.items():
            if slug != tenant.slug:
                problems.append(f"Tenant key {slug} does not match slug {tenant.slug}")
            if tenant.season_ended and tenant.signed_device_token is not None:
                problems.append(f"Tenant {slug} ended its season but still holds a token")

            team_ids = [team.id for team in tenant.teams]
            if len(team_ids) != len(set(team_ids)):
                problems.append(f"Tenant {slug} has duplicate team entries")

            known = set(team_ids) | {team.code for team in tenant.teams if team.code}
            for eid in tenant.enrollments:
                enrollment = self.enrollments.get(eid)
                if enrollment is None:
                    problems.append(f"Tenant {slug} references unknown enrollment {eid}")
                    continue
                if enrollment.tenant_slug != slug:
                    problems.append(f"Enrollment {eid} belongs to {enrollment.tenant_slug}, not {slug}")
                for tid in enrollment.teams:
                    if tid not in known:
                        problems.append(f"Enrollment {eid} references team {tid} missing from {slug}")

        referenced = {eid for tenant in self.tenants.values() for eid in tenant.enrollments}
        for eid in self.enrollments:
            if eid not in referenced:
                problems.append(f"Enrollment {eid} is not owned by any tenant")

        return problems

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "push_token": self.push_token,
            "tenants": {slug: tenant.to_dict() for slug, tenant in self.tenants.items()},
            "enrollments": {eid: e.to_dict() for eid, e in self.enrollments.items()},
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DomainModel":
        return cls(
            device_id=data.get("device_id") or str(uuid.uuid4()),
            push_token=data.get("push_token"),
            tenants={slug: Tenant.from_dict(t) for slug, t in (data.get("tenants") or {}).items()},
            enrollments={eid: Enrollment.from_dict(e) for eid, e in (data.get("enrollments") or {}).items()},
            created_at=_parse_datetime(data.get("created_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
        )
