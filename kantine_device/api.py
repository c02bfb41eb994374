"""HTTP client for the Kantine Koning mobile API."""

import base64
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Dict, Any, Optional, List, Self, Sequence, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from . import __version__
from .errors import (
    APIError,
    InvalidTokenError,
    ResponseValidationError,
    TokenRevokedError,
    TransientAPIError,
)
from .models import EnrollmentDelta, TenantInfo

logger = logging.getLogger(__name__)

API_PREFIX = "/api/mobile/v1"
MEMBER_TOKEN_LIFETIME = 10 * 60


@dataclass(frozen=True)
class TeamSummary:
    """A team as listed by the enrollment and search endpoints."""

    id: str
    name: str
    code: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TeamSummary":
        code = data.get("code")
        return cls(id=data["id"], code=code, name=data.get("naam") or data.get("name") or code or data["id"])


@dataclass(frozen=True)
class EnrollmentSyncData:
    """One enrollment as reported to the reconciliation endpoint."""

    tenant_slug: str
    role: str
    team_codes: Tuple[str, ...]
    team_manager_email: Optional[str] = None
    hardware_identifier: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "tenant_slug": self.tenant_slug,
            "role": self.role,
            "team_codes": list(self.team_codes),
        }
        if self.team_manager_email:
            data["team_manager_email"] = self.team_manager_email
        if self.hardware_identifier:
            data["hardware_identifier"] = self.hardware_identifier
        return data


@dataclass(frozen=True)
class ReconciliationSummary:
    """Cleanup the backend performed in response to a sync."""

    teams_removed: int = 0
    enrollments_revoked: int = 0
    tenants_affected: Tuple[str, ...] = ()

    @property
    def has_changes(self) -> bool:
        return bool(self.teams_removed or self.enrollments_revoked)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "teams_removed": self.teams_removed,
            "enrollments_revoked": self.enrollments_revoked,
            "tenants_affected": list(self.tenants_affected),
        }

    @classmethod
    def from_response(cls, payload: Any) -> "ReconciliationSummary":
        summary = payload.get("cleanup_summary") if isinstance(payload, dict) else None
        if not isinstance(summary, dict):
            raise ResponseValidationError("Invalid response: missing cleanup_summary")
        try:
            return cls(
                teams_removed=int(summary.get("teams_removed", 0)),
                enrollments_revoked=int(summary.get("enrollments_revoked", 0)),
                tenants_affected=tuple(summary.get("tenants_affected") or ()),
            )
        except (TypeError, ValueError) as e:
            raise ResponseValidationError(f"Invalid response: malformed cleanup_summary ({e})")


def build_member_token(
    tenant_slug: str,
    tenant_name: str,
    team_ids: Sequence[str],
    now: Optional[float] = None
) -> str:
    """Build a single-use member enrollment token.

    Member enrollment needs no e-mail verification, so the device creates the
    token itself and registers it through the normal registration endpoint.
    """
    now = time.time() if now is None else now
    claims = {
        "tenant_slug": tenant_slug,
        "tenant_name": tenant_name,
        "team_codes": list(team_ids),
        "role": "member",
        "purpose": "device-enroll",
        "exp": int(now + MEMBER_TOKEN_LIFETIME),
        "jti": str(uuid.uuid4()),
        "max_uses": 1,
    }
    return base64.b64encode(json.dumps(claims).encode("utf-8")).decode("ascii")


class BackendClient:
    """Client for the mobile API.

    Device tokens differ per tenant, so every authenticated call takes the
    token to use instead of binding one to the session.
    """

    def __init__(
        self: Self,
        base_url: str,
        timeout: int = 30,
        max_retries: int = 3,
        platform: str = "ios",
        build_environment: str = "production"
    ) -> None:
        """Initialize API client.

        Args:
            base_url: Base URL of the backend (e.g., https://kantinekoning.com)
            timeout: Request timeout in seconds
            max_retries: Retries for idempotent requests
            platform: Platform reported on registration
            build_environment: Push environment reported on registration
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.max_retries = max_retries
        self.platform = platform
        self.build_environment = build_environment
        self.session = requests.Session()
        self._setup_session()

    def _setup_session(self: Self) -> None:
        """Setup session with connection pooling and retry strategy."""
        # POST is left out: enrollment tokens are single use.
        retry_strategy = Retry(
            total=self.max_retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["HEAD", "GET", "PUT", "DELETE", "OPTIONS"]
        )

        adapter = HTTPAdapter(
            pool_connections=10,
            pool_maxsize=10,
            max_retries=retry_strategy
        )

        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        self.session.headers.update({
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'User-Agent': f'kantine-device/{__version__}'
        })

    def _request(
        self: Self,
        method: str,
        endpoint: str,
        token: Optional[str] = None,
        tenant_slug: Optional[str] = None,
        **kwargs: Any
    ) -> Any:
        """Make an HTTP request and map failures onto the error taxonomy.

        Args:
            method: HTTP method
            endpoint: API endpoint below the mobile API prefix
            token: Device token for the Authorization header
            tenant_slug: Tenant the token belongs to, attached to auth errors
            **kwargs: Additional arguments for requests

        Returns:
            Parsed JSON body, or an empty dict for an empty body.

        Raises:
            TokenRevokedError: 401 with ``{"error": "token_revoked"}``.
            InvalidTokenError: 401 with ``{"error": "invalid_token"}``.
            TransientAPIError: Timeouts, connection problems, 5xx, 429 and
                any other 401.
            APIError: Other 4xx responses.
            ResponseValidationError: A 2xx body that is not JSON.
        """
        url = f"{self.base_url}{API_PREFIX}{endpoint}"
        headers = kwargs.pop('headers', {})
        if token:
            headers['Authorization'] = f'Bearer {token}'

        try:
            response = self.session.request(
                method,
                url,
                headers=headers,
                timeout=self.timeout,
                **kwargs
            )
        except requests.exceptions.Timeout as e:
            logger.warning("%s %s timed out: %s", method, endpoint, e)
            raise TransientAPIError(f"Request timeout: {e}")
        except requests.exceptions.ConnectionError as e:
            logger.warning("%s %s connection error: %s", method, endpoint, e)
            raise TransientAPIError(f"Connection error: {e}")
        except requests.exceptions.RetryError as e:
            logger.warning("%s %s gave up after retries: %s", method, endpoint, e)
            raise TransientAPIError(f"Server error after retries: {e}")
        except requests.exceptions.RequestException as e:
            raise TransientAPIError(f"Request failed: {e}")

        if response.status_code >= 400:
            self._raise_for_status(response, method, endpoint, tenant_slug)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ResponseValidationError(f"Invalid response from {endpoint}: {e}")

    def _raise_for_status(
        self: Self,
        response: requests.Response,
        method: str,
        endpoint: str,
        tenant_slug: Optional[str]
    ) -> None:
        status = response.status_code
        try:
            error_data = response.json()
        except ValueError:
            error_data = None
        if not isinstance(error_data, dict):
            error_data = {}

        error_code = error_data.get("error")
        error_msg = error_data.get("detail") or error_data.get("message") or error_code or response.text or f"HTTP {status}"
        logger.debug("%s %s failed with HTTP %d: %s", method, endpoint, status, error_msg)

        if status == 401:
            if error_code == "token_revoked":
                reason = error_data.get("reason")
                raise TokenRevokedError(
                    f"Device token revoked{f' for {tenant_slug}' if tenant_slug else ''}: {reason or 'token_revoked'}",
                    reason=reason,
                    tenant_slug=tenant_slug
                )
            if error_code == "invalid_token":
                raise InvalidTokenError(
                    f"Device token invalid{f' for {tenant_slug}' if tenant_slug else ''}: invalid_token",
                    reason=error_data.get("reason"),
                    tenant_slug=tenant_slug
                )
            raise TransientAPIError(f"Unauthorized (HTTP 401): {error_msg}", status_code=401)

        if status >= 500 or status == 429:
            raise TransientAPIError(f"Server error (HTTP {status}): {error_msg}", status_code=status)

        raise APIError(f"Request failed (HTTP {status}): {error_msg}", status_code=status)

    def close(self: Self) -> None:
        """Close the session and cleanup resources."""
        if self.session:
            self.session.close()

    def __enter__(self: Self) -> Self:
        return self

    def __exit__(self: Self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # Enrollment
    def register_device(
        self: Self,
        enrollment_token: str,
        push_token: Optional[str] = None,
        hardware_identifier: Optional[str] = None
    ) -> EnrollmentDelta:
        """Redeem an enrollment token.

        Args:
            enrollment_token: Token from a magic link, QR code or
                ``build_member_token``.
            push_token: Push token to register with the device.
            hardware_identifier: Stable device identifier.

        Returns:
            The decoded grant.

        Raises:
            ResponseValidationError: If the response lacks tenant_slug or
                tenant_name.
        """
        logger.info("Registering device with token %s...", enrollment_token[:20])
        body = {
            "enrollment_token": enrollment_token,
            "platform": self.platform,
            "build_environment": self.build_environment,
        }
        if push_token:
            body["apns_device_token"] = push_token
        if hardware_identifier:
            body["hardware_identifier"] = hardware_identifier

        data = self._request('POST', '/enrollments/register', json=body)
        return EnrollmentDelta.from_response(data)

    def register_member(
        self: Self,
        tenant_slug: str,
        tenant_name: str,
        team_ids: Sequence[str],
        push_token: Optional[str] = None,
        hardware_identifier: Optional[str] = None
    ) -> EnrollmentDelta:
        """Enroll as a member of ``team_ids`` without e-mail verification."""
        logger.info("Registering member device for %s teams=%s", tenant_slug, list(team_ids))
        token = build_member_token(tenant_slug, tenant_name, team_ids)
        return self.register_device(token, push_token=push_token, hardware_identifier=hardware_identifier)

    def request_enrollment(self: Self, email: str, tenant_slug: str, team_codes: Sequence[str]) -> None:
        """Ask the backend to mail a manager enrollment link."""
        self._request('POST', '/enrollments/request', json={
            "email": email,
            "tenant_slug": tenant_slug,
            "team_codes": list(team_codes),
        })

    def fetch_allowed_teams(self: Self, email: str, tenant_slug: str) -> List[TeamSummary]:
        """Teams ``email`` may manage in ``tenant_slug``."""
        data = self._request('POST', '/enrollments/request', json={
            "email": email,
            "tenant_slug": tenant_slug,
            "team_codes": [],
        })
        teams = data.get("teams") if isinstance(data, dict) else None
        if not isinstance(teams, list):
            logger.warning("teams key missing in allowed teams response")
            return []
        return [TeamSummary.from_dict(t) for t in teams if isinstance(t, dict) and t.get("id")]

    def search_teams(self: Self, tenant_slug: str, query: str) -> List[TeamSummary]:
        query = query.strip()
        if not query:
            return []
        data = self._request('GET', '/teams/search', params={"tenant": tenant_slug, "q": query})
        teams = data.get("teams") if isinstance(data, dict) else None
        if not isinstance(teams, list):
            raise ResponseValidationError("Invalid response: missing teams")
        return [TeamSummary.from_dict(t) for t in teams if isinstance(t, dict) and t.get("id")]

    def remove_teams(self: Self, team_codes: Sequence[str], token: str, tenant_slug: Optional[str] = None) -> None:
        self._request(
            'POST', '/enrollments/remove-teams',
            token=token, tenant_slug=tenant_slug, json={"team_codes": list(team_codes)}
        )

    def remove_tenant(self: Self, tenant_slug: str, token: str) -> None:
        self._request(
            'DELETE', '/enrollments/tenant',
            token=token, tenant_slug=tenant_slug, json={"tenant_slug": tenant_slug}
        )

    def remove_all_enrollments(self: Self, token: str) -> None:
        self._request('DELETE', '/enrollments/all', token=token)

    def update_push_token(self: Self, push_token: str, token: str) -> None:
        self._request(
            'POST', '/device/apns-token',
            token=token, json={"apns_device_token": push_token, "platform": self.platform}
        )

    # Reconciliation
    def sync_enrollments(self: Self, enrollments: Sequence[EnrollmentSyncData], token: str) -> ReconciliationSummary:
        """Upload the device's enrollment set for server-side cleanup.

        The call is idempotent: the same snapshot yields the same server state.
        """
        logger.info("POST /enrollments/sync with %d enrollment(s)", len(enrollments))
        data = self._request(
            'POST', '/enrollments/sync',
            token=token, json={"enrollments": [e.to_dict() for e in enrollments]}
        )
        return ReconciliationSummary.from_response(data)

    # Read-mostly data
    def fetch_tenant_info(self: Self, token: str) -> List[TenantInfo]:
        data = self._request('GET', '/tenants', token=token)
        tenants = data.get("tenants") if isinstance(data, dict) else None
        if not isinstance(tenants, list):
            raise ResponseValidationError("Invalid response: missing tenants")
        return [TenantInfo.from_dict(t) for t in tenants]

    def fetch_leaderboard(
        self: Self,
        tenant_slug: str,
        token: Optional[str] = None,
        period: str = "season",
        team_id: Optional[str] = None
    ) -> Dict[str, Any]:
        params = {"tenant": tenant_slug, "period": period}
        if team_id:
            params["team_id"] = team_id
        data = self._request('GET', '/leaderboard', token=token, tenant_slug=tenant_slug, params=params)
        if not isinstance(data, dict):
            raise ResponseValidationError("Invalid response: leaderboard is not an object")
        return data
