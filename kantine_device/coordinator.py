"""Application coordinator: wires the model, merge engine, lifecycle, cache and
reconciliation together.

All model mutations go through ``StateContainer.update``/``transact``, which
serializes them and persists the new model before returning. Network calls
never run while the state lock is held.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TypeVar

from .api import BackendClient, TeamSummary
from .audit_logging import AuditLogger
from .cache import CachedResult, CacheKey, CacheStatus, TieredCache
from .config import Config
from .errors import AuthorizationError, DuplicateSubmissionError, KantineError
from .lifecycle import TenantLifecycle
from .merge import MergeResult, merge_delta
from .models import DomainModel, EnrollmentDelta, TenantInfo
from .reconciliation import DeviceIdentity, ReconciliationService, ReconcileResult
from .store import ModelStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_PUSH_ATTEMPTS = 3


class StateContainer:
    """Owns the current ``DomainModel`` and persists every change."""

    def __init__(self, store: ModelStore, model: Optional[DomainModel] = None) -> None:
        self.store = store
        self._lock = threading.RLock()
        self._model = model if model is not None else store.load()

    @property
    def model(self) -> DomainModel:
        with self._lock:
            return self._model

    def transact(self, command: Callable[[DomainModel], Tuple[DomainModel, T]]) -> T:
        """Run ``command`` on the current model and persist its result.

        ``command`` returns the new model and a value handed back to the
        caller. If saving fails the in-memory model is left unchanged.
        """
        with self._lock:
            new_model, result = command(self._model)
            if new_model is not self._model:
                self.store.save(new_model)
                self._model = new_model
            return result

    def update(self, command: Callable[[DomainModel], DomainModel]) -> DomainModel:
        """Apply ``command`` and return the resulting model."""
        def run(model: DomainModel) -> Tuple[DomainModel, DomainModel]:
            new_model = command(model)
            return new_model, new_model
        return self.transact(run)


class EnrollmentCoordinator:
    """Reference wiring of the enrollment core for one device."""

    def __init__(
        self,
        backend: BackendClient,
        state: StateContainer,
        cache: TieredCache,
        reconciler: ReconciliationService,
        audit: Optional[AuditLogger] = None,
        hardware_identifier: Optional[str] = None,
        ttl_default: float = 300,
        ttl_long: float = 3600,
        fresh_data_timeout: float = 5.0,
        push_retry_delay: float = 30.0
    ) -> None:
        self.backend = backend
        self.state = state
        self.cache = cache
        self.reconciler = reconciler
        self.audit = audit
        self.hardware_identifier = hardware_identifier
        self.ttl_default = ttl_default
        self.ttl_long = ttl_long
        self.fresh_data_timeout = fresh_data_timeout
        self.push_retry_delay = push_retry_delay
        self.lifecycle = TenantLifecycle()

        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="kantine-refresh")
        self._pending: Set[str] = set()
        self._pending_lock = threading.Lock()
        self._refresh_future: Optional[Future] = None
        self._push_timer: Optional[threading.Timer] = None
        self._push_lock = threading.Lock()
        self._closed = False

    @classmethod
    def from_config(cls, config: Config) -> "EnrollmentCoordinator":
        """Build a coordinator with its collaborators from ``config``."""
        settings = config.load()
        home = config.config_dir

        backend = BackendClient(settings['url'], timeout=settings['timeout'], max_retries=settings['retries'])
        audit = AuditLogger(home / "logs")
        state = StateContainer(ModelStore(home))
        cache = TieredCache(home / "cache", max_memory_bytes=settings['cache_memory_bytes'])
        reconciler = ReconciliationService(backend, min_interval=settings['reconcile_interval'], audit=audit)

        return cls(
            backend,
            state,
            cache,
            reconciler,
            audit=audit,
            hardware_identifier=config.get_hardware_identifier(),
            ttl_default=settings['cache_ttl_default'],
            ttl_long=settings['cache_ttl_long'],
            fresh_data_timeout=settings['fresh_data_timeout'],
            push_retry_delay=settings['push_retry_delay'],
        )

    @property
    def model(self) -> DomainModel:
        return self.state.model

    # Enrollment

    def complete_enrollment(self, enrollment_token: str) -> MergeResult:
        """Redeem ``enrollment_token`` and merge the grant.

        Raises:
            DuplicateSubmissionError: If the same token is already being
                processed. Raised before any network call.
            ResponseValidationError: If the backend response is incomplete.
            APIError: If registration fails.
        """
        return self._enroll(
            enrollment_token,
            lambda: self.backend.register_device(
                enrollment_token,
                push_token=self.model.push_token,
                hardware_identifier=self.hardware_identifier
            )
        )

    def register_member(self, tenant_slug: str, tenant_name: str, team_ids: List[str]) -> MergeResult:
        """Follow ``team_ids`` of ``tenant_slug`` as a member."""
        key = f"member:{tenant_slug}:{','.join(sorted(team_ids))}"
        return self._enroll(
            key,
            lambda: self.backend.register_member(
                tenant_slug,
                tenant_name,
                team_ids,
                push_token=self.model.push_token,
                hardware_identifier=self.hardware_identifier
            )
        )

    def _enroll(self, pending_key: str, register: Callable[[], EnrollmentDelta]) -> MergeResult:
        with self._pending_lock:
            if pending_key in self._pending:
                raise DuplicateSubmissionError(pending_key[:8])
            self._pending.add(pending_key)

        def merge(model: DomainModel) -> Tuple[DomainModel, MergeResult]:
            merged = merge_delta(model, delta)
            return merged.model, merged

        try:
            delta = register()
            result = self.state.transact(merge)
        finally:
            with self._pending_lock:
                self._pending.discard(pending_key)

        logger.info(
            "Enrolled with %s: %d team(s) admitted, %d dropped",
            delta.tenant_slug, len(result.admitted), len(result.dropped)
        )
        if self.audit:
            self.audit.log_enrollment(
                delta.tenant_slug,
                result.enrollment_id,
                delta.role.value,
                [t.id for t in result.admitted],
                [t.id for t in result.dropped],
                token=delta.signed_device_token
            )

        self._submit_refresh()
        if self.model.push_token:
            self._submit(self._register_push_token, 1)
        return result

    def allowed_teams(self, email: str, tenant_slug: str) -> List[TeamSummary]:
        """Teams ``email`` may manage in ``tenant_slug``."""
        return self.backend.fetch_allowed_teams(email, tenant_slug)

    def request_enrollment_link(self, email: str, tenant_slug: str, team_codes: List[str]) -> None:
        """Ask the club to mail a manager enrollment link for ``team_codes``.

        The link is redeemed later through ``complete_enrollment``. Nothing
        changes locally until then.
        """
        self.backend.request_enrollment(email, tenant_slug, team_codes)
        logger.info("Requested enrollment link for %s (%d team(s))", tenant_slug, len(team_codes))

    def search_teams(self, tenant_slug: str, query: str) -> List[TeamSummary]:
        return self.backend.search_teams(tenant_slug, query)

    # Removal

    def remove_team(self, tenant_slug: str, team_id: str) -> bool:
        """Remove one team locally and notify the backend.

        Returns:
            True if the backend acknowledged the removal. A failed call is
            logged; the next reconciliation cleans up the server side.
        """
        model = self.model
        tenant = model.tenants.get(tenant_slug)
        team = tenant.team(team_id) if tenant else None
        if team is None:
            raise KantineError(
                f"Team {team_id} not found in {tenant_slug}",
                ["List enrolled teams with: kantine status"]
            )
        token = model.auth_token_for_team(team_id, tenant_slug)

        new_model = self.state.update(lambda m: m.removing_team(team_id, tenant_slug))
        if tenant_slug not in new_model.tenants:
            self.cache.invalidate_tenant(tenant_slug)
        else:
            self.cache.invalidate_where(
                lambda key: CacheKey.belongs_to(key, tenant_slug) and key.endswith(f":{team_id}")
            )

        notified = self._best_effort(
            lambda: self.backend.remove_teams([team.code or team.id], token, tenant_slug=tenant_slug),
            token,
            f"remove team {team_id}"
        )
        if self.audit:
            self.audit.log_removal(tenant_slug, team=team_id, backend_notified=notified)
        return notified

    def remove_tenant(self, tenant_slug: str) -> bool:
        """Remove a tenant, its enrollments and cached data."""
        model = self.model
        tenant = model.tenants.get(tenant_slug)
        if tenant is None:
            raise KantineError(f"Not enrolled with {tenant_slug}", ["List clubs with: kantine status"])
        token = tenant.signed_device_token

        self.state.update(lambda m: m.removing_tenant(tenant_slug))
        self.cache.invalidate_tenant(tenant_slug)
        self.cache.invalidate(CacheKey.ALL_TENANT_INFO)

        notified = self._best_effort(
            lambda: self.backend.remove_tenant(tenant_slug, token),
            token,
            f"remove tenant {tenant_slug}"
        )
        if self.audit:
            self.audit.log_removal(tenant_slug, backend_notified=notified)
        return notified

    def reset_all(self) -> bool:
        """Drop every enrollment. Device id and push token are kept."""
        token = self.model.primary_auth_token
        notified = self._best_effort(
            lambda: self.backend.remove_all_enrollments(token),
            token,
            "remove all enrollments"
        )
        slugs = list(self.model.tenants)
        self.state.update(
            lambda m: DomainModel.empty(device_id=m.device_id).with_changes(
                push_token=m.push_token, created_at=m.created_at
            )
        )
        self.cache.invalidate_all()
        if self.audit:
            for slug in slugs:
                self.audit.log_removal(slug, backend_notified=notified)
        return notified

    def _best_effort(self, call: Callable[[], None], token: Optional[str], action: str) -> bool:
        if not token:
            logger.warning("No token to %s on the backend; reconciliation will clean up", action)
            return False
        try:
            call()
            return True
        except KantineError as e:
            logger.warning("Failed to %s on the backend: %s", action, e)
            if self.audit:
                self.audit.log_error("removal_failed", str(e), details={"action": action})
            return False

    # Authorization

    def handle_auth_failure(self, tenant_slug: str, error: BaseException) -> bool:
        """Route an API failure for ``tenant_slug`` to the lifecycle machine.

        Returns:
            True if the tenant moved to revoked.
        """
        transition = self.state.transact(lambda m: self.lifecycle.handle_error(m, tenant_slug, error))
        if transition is None:
            return False
        if self.audit:
            self.audit.log_revocation(tenant_slug, transition.cause.value, transition.reason)
        return True

    # Read-mostly data

    def refresh_tenant_info(self, force: bool = False) -> List[TenantInfo]:
        """Return tenant metadata, refreshing it from the backend when needed.

        A fresh cache entry is served as is unless ``force`` is set. On
        failure the cached value (even stale) is returned.
        """
        cached = self.cache.get(CacheKey.ALL_TENANT_INFO)
        cached_infos = self._decode_infos(cached)
        if cached.status is CacheStatus.FRESH and not force:
            return cached_infos

        model = self.model
        token = model.primary_auth_token
        if not token:
            logger.debug("No active token, serving cached tenant info")
            return cached_infos

        try:
            infos = self.backend.fetch_tenant_info(token)
        except AuthorizationError as e:
            self.handle_auth_failure(self._tenant_for_token(model, token), e)
            return cached_infos
        except KantineError as e:
            logger.warning("Failed to refresh tenant info: %s", e)
            return cached_infos

        self.cache.put(CacheKey.ALL_TENANT_INFO, [info.to_dict() for info in infos], self.ttl_long)
        transitions = self.state.transact(lambda m: self.lifecycle.apply_tenant_info(m, infos))
        if self.audit:
            for transition in transitions:
                self.audit.log_revocation(transition.tenant_slug, transition.cause.value, transition.reason)
        return infos

    def get_leaderboard(
        self,
        tenant_slug: str,
        period: str = "season",
        team_id: Optional[str] = None
    ) -> CachedResult[Dict[str, Any]]:
        """Leaderboard for a tenant, served from cache when possible.

        A stale hit is returned immediately and refreshed in the background.
        """
        key = CacheKey.leaderboard(tenant_slug, period, team_id)
        cached = self.cache.get(key)
        if cached.status is CacheStatus.FRESH:
            return cached
        if cached.status is CacheStatus.STALE:
            self._submit(self._fetch_leaderboard, tenant_slug, period, team_id)
            return cached

        data = self._fetch_leaderboard(tenant_slug, period, team_id)
        return CachedResult.fresh(data) if data is not None else CachedResult.miss()

    def _fetch_leaderboard(self, tenant_slug: str, period: str, team_id: Optional[str]) -> Optional[Dict[str, Any]]:
        model = self.model
        token = model.auth_token_for_team(team_id, tenant_slug) if team_id else None
        token = token or (model.tenants[tenant_slug].signed_device_token if tenant_slug in model.tenants else None)
        try:
            data = self.backend.fetch_leaderboard(tenant_slug, token=token, period=period, team_id=team_id)
        except AuthorizationError as e:
            self.handle_auth_failure(tenant_slug, e)
            return None
        except KantineError as e:
            logger.warning("Failed to fetch leaderboard for %s: %s", tenant_slug, e)
            return None
        self.cache.put(CacheKey.leaderboard(tenant_slug, period, team_id), data, self.ttl_default)
        return data

    def wait_for_fresh_data(self, timeout: Optional[float] = None) -> bool:
        """Wait for the background refresh started by the last enrollment.

        Returns:
            True if it finished within ``timeout`` (default: the configured
            ceiling); False means callers should use cached data.
        """
        future = self._refresh_future
        if future is None:
            return True
        try:
            future.result(timeout=self.fresh_data_timeout if timeout is None else timeout)
            return True
        except FutureTimeoutError:
            logger.info("Fresh data not ready in time, using cached data")
            return False

    # Reconciliation

    def identity(self) -> DeviceIdentity:
        return DeviceIdentity(
            hardware_identifier=self.hardware_identifier,
            auth_token=self.model.primary_auth_token
        )

    def reconcile(self, force: bool = False) -> ReconcileResult:
        model = self.model
        if force:
            return self.reconciler.reconcile(model, self.identity())
        return self.reconciler.reconcile_if_needed(model, self.identity())

    def on_foreground(self) -> Future:
        """Kick off the work done when the app becomes active."""
        self._submit_refresh()
        return self._submit(self.reconcile)

    # Push token

    def set_push_token(self, push_token: str) -> None:
        """Store ``push_token`` and register it with the backend.

        A failed registration is retried after ``push_retry_delay`` seconds.
        """
        if self.model.push_token == push_token:
            logger.debug("Push token unchanged")
        else:
            self.state.update(lambda m: m.with_changes(push_token=push_token))
        self._register_push_token(1)

    def _register_push_token(self, attempt: int) -> bool:
        model = self.model
        push_token = model.push_token
        token = model.primary_auth_token
        if not push_token or not token:
            logger.debug("Push token registration deferred until enrolled")
            return False

        try:
            self.backend.update_push_token(push_token, token)
        except KantineError as e:
            logger.warning("Push token registration failed (attempt %d): %s", attempt, e)
            if self.audit:
                self.audit.log_push_token(push_token, False)
            if attempt < MAX_PUSH_ATTEMPTS:
                self._schedule_push_retry(attempt + 1)
            return False

        if self.audit:
            self.audit.log_push_token(push_token, True)
        return True

    def _schedule_push_retry(self, attempt: int) -> None:
        with self._push_lock:
            if self._closed:
                return
            if self._push_timer is not None:
                self._push_timer.cancel()
            self._push_timer = threading.Timer(self.push_retry_delay, self._register_push_token, args=(attempt,))
            self._push_timer.daemon = True
            self._push_timer.start()

    # Lifecycle

    def close(self) -> None:
        """Cancel scheduled work and release resources."""
        with self._push_lock:
            self._closed = True
            if self._push_timer is not None:
                self._push_timer.cancel()
                self._push_timer = None
        self._executor.shutdown(wait=True)
        self.cache.close()
        self.backend.close()
        if self.audit:
            self.audit.close()

    def __enter__(self) -> "EnrollmentCoordinator":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _submit(self, func: Callable[..., Any], *args: Any) -> Future:
        return self._executor.submit(self._guarded, func, *args)

    def _submit_refresh(self) -> None:
        self._refresh_future = self._submit(self.refresh_tenant_info, True)

    @staticmethod
    def _guarded(func: Callable[..., Any], *args: Any) -> Any:
        try:
            return func(*args)
        except KantineError as e:
            logger.warning("Background task %s failed: %s", getattr(func, "__name__", func), e)
            return None

    @staticmethod
    def _decode_infos(cached: CachedResult[Any]) -> List[TenantInfo]:
        if not cached.is_hit or not isinstance(cached.data, list):
            return []
        try:
            return [TenantInfo.from_dict(item) for item in cached.data]
        except KantineError:
            return []

    @staticmethod
    def _tenant_for_token(model: DomainModel, token: str) -> str:
        for slug, tenant in model.tenants.items():
            if tenant.signed_device_token == token:
                return slug
        return ""
