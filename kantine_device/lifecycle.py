"""Tenant lifecycle state machine.

A tenant is either ``ACTIVE`` or ``REVOKED``. It becomes revoked when the
backend explicitly reports its device token as revoked or invalid, or reports
that the club's season has ended. Revocation clears the token and sets
``season_ended`` in a single model update; teams and enrollments are kept so
the season summary can still be shown. Generic network failures never cause
a transition.
"""

import logging
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Deque, Iterable, List, Optional, Tuple

from .errors import AuthorizationError, InvalidTokenError, TokenRevokedError
from .models import DomainModel, Tenant, TenantInfo, utcnow

logger = logging.getLogger(__name__)


class TenantState(Enum):
    """Authorization state of a tenant."""

    ACTIVE = "active"
    REVOKED = "revoked"


class RevocationCause(Enum):
    """Why a tenant was revoked."""

    TOKEN_REVOKED = "token_revoked"
    TOKEN_INVALID = "invalid_token"
    SEASON_ENDED = "season_ended"


@dataclass(frozen=True)
class Transition:
    """A recorded state change of one tenant."""

    tenant_slug: str
    from_state: TenantState
    to_state: TenantState
    cause: RevocationCause
    reason: Optional[str]
    at: datetime


def tenant_state(tenant: Tenant) -> TenantState:
    return TenantState.REVOKED if tenant.season_ended else TenantState.ACTIVE


def cause_for_error(error: BaseException) -> Optional[RevocationCause]:
    """Map an API failure to a revocation cause.

    Only structured ``token_revoked`` / ``invalid_token`` responses count;
    anything else, including a bare 401, returns None.
    """
    if isinstance(error, TokenRevokedError):
        return RevocationCause.TOKEN_REVOKED
    if isinstance(error, InvalidTokenError):
        return RevocationCause.TOKEN_INVALID
    return None


def revoke_tenant(
    model: DomainModel,
    tenant_slug: str,
    cause: RevocationCause,
    reason: Optional[str] = None,
    now: Optional[datetime] = None
) -> Tuple[DomainModel, Optional[Transition]]:
    """Move ``tenant_slug`` to ``REVOKED``.

    Args:
        model: Current model.
        tenant_slug: Tenant to revoke.
        cause: Backend signal that triggered the transition.
        reason: Optional reason reported by the backend.
        now: Timestamp of the transition.

    Returns:
        The new model and the transition, or the unchanged model and None
        when the tenant is unknown or already revoked.
    """
    tenant = model.tenants.get(tenant_slug)
    if tenant is None:
        logger.warning("Tenant %s not found when handling %s", tenant_slug, cause.value)
        return model, None

    if tenant.season_ended and tenant.signed_device_token is None:
        return model, None

    now = now or utcnow()
    tenants = dict(model.tenants)
    tenants[tenant_slug] = replace(tenant, season_ended=True, signed_device_token=None)
    transition = Transition(
        tenant_slug=tenant_slug,
        from_state=tenant_state(tenant),
        to_state=TenantState.REVOKED,
        cause=cause,
        reason=reason,
        at=now,
    )
    logger.info("Tenant %s revoked (%s%s)", tenant_slug, cause.value, f": {reason}" if reason else "")
    return model.with_changes(now=now, tenants=tenants), transition


def apply_tenant_info(
    model: DomainModel,
    infos: Iterable[TenantInfo],
    now: Optional[datetime] = None
) -> Tuple[DomainModel, List[Transition]]:
    """Fold refreshed tenant metadata into the model.

    Updates club logo URLs and revokes tenants the server reports as
    season-ended. Tenants the device is not enrolled with are ignored.
    """
    now = now or utcnow()
    infos = list(infos)
    tenants = dict(model.tenants)
    changed = False

    for info in infos:
        tenant = tenants.get(info.slug)
        if tenant is None:
            continue
        if info.club_logo_url and info.club_logo_url != tenant.club_logo_url:
            tenants[info.slug] = replace(tenant, club_logo_url=info.club_logo_url)
            changed = True

    current = model.with_changes(now=now, tenants=tenants) if changed else model

    transitions: List[Transition] = []
    for info in infos:
        if not info.season_ended:
            continue
        current, transition = revoke_tenant(current, info.slug, RevocationCause.SEASON_ENDED, now=now)
        if transition is not None:
            transitions.append(transition)

    return current, transitions


class TenantLifecycle:
    """Applies lifecycle transitions and keeps a bounded transition history."""

    def __init__(self, history_size: int = 100) -> None:
        self.history: Deque[Transition] = deque(maxlen=history_size)

    def revoke(
        self,
        model: DomainModel,
        tenant_slug: str,
        cause: RevocationCause,
        reason: Optional[str] = None
    ) -> Tuple[DomainModel, Optional[Transition]]:
        new_model, transition = revoke_tenant(model, tenant_slug, cause, reason)
        if transition is not None:
            self.history.append(transition)
        return new_model, transition

    def handle_error(
        self,
        model: DomainModel,
        tenant_slug: str,
        error: BaseException
    ) -> Tuple[DomainModel, Optional[Transition]]:
        """Revoke ``tenant_slug`` if ``error`` is a trusted revocation signal."""
        cause = cause_for_error(error)
        if cause is None:
            logger.debug("Ignoring non-revocation failure for %s: %s", tenant_slug, error)
            return model, None
        reason = error.reason if isinstance(error, AuthorizationError) else None
        return self.revoke(model, tenant_slug, cause, reason)

    def apply_tenant_info(
        self,
        model: DomainModel,
        infos: Iterable[TenantInfo]
    ) -> Tuple[DomainModel, List[Transition]]:
        new_model, transitions = apply_tenant_info(model, infos)
        self.history.extend(transitions)
        return new_model, transitions
