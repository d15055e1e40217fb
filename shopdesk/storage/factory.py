"""Resilient data-service factory.

Builds, caches, health-checks and fails over storage handles.

Behavior:
- ``create_data_service(type)`` reuses a cached handle of that type when its
  liveness check passes; otherwise builds and validates a fresh one.
- Failover: when the requested type cannot be built or validated, the types
  after it in FALLBACK_ORDER (sqlite -> json -> mock) are tried in turn.  If
  all of them fail, the original error is raised.  Callers get a working
  handle or an exception, never a half-initialized handle.
- Health loop (default every 30s): every cached handle is checked; a failing
  one is rebuilt in place with the same type.  If the active type cannot be
  rebuilt, the active pointer fails over; later ticks try to return to the
  configured type.
- Pool loop (default every 10s): handles exposing pool hooks are sampled;
  WARNING alerts for high utilization or queued requests, CRITICAL when the
  pool reports itself unhealthy.
- Switchover: a ``database_type`` config change builds the new handle, moves
  the active pointer and disposes every other cached handle.

Handle swaps happen under the factory lock: a reader sees either the old or
the new handle, never one that is still being built.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from shopdesk.alerts import AlertLevel, AlertLog
from shopdesk.config import ConfigManager, Settings
from shopdesk.storage.base import FALLBACK_ORDER, BackendType, DataService, StorageError
from shopdesk.storage.json_file import JsonFileDataService
from shopdesk.storage.memory import MockDataService
from shopdesk.timers import PeriodicTask

logger = logging.getLogger(__name__)

Builder = Callable[[Settings], DataService]


def _build_postgres(settings: Settings) -> DataService:
    from shopdesk.storage.postgres import PostgresDataService

    return PostgresDataService(
        settings.database_url,
        min_size=settings.postgres_pool_min,
        max_size=settings.postgres_pool_max,
        retries=settings.connect_retries,
    )


def _build_sqlite(settings: Settings) -> DataService:
    from shopdesk.storage.sqlite import SQLiteDataService

    return SQLiteDataService(settings.sqlite_path)


def _build_json(settings: Settings) -> DataService:
    return JsonFileDataService(settings.json_path)


def _build_mock(settings: Settings) -> DataService:
    return MockDataService()


DEFAULT_BUILDERS: dict[BackendType, Builder] = {
    BackendType.POSTGRES: _build_postgres,
    BackendType.SQLITE: _build_sqlite,
    BackendType.JSON: _build_json,
    BackendType.MOCK: _build_mock,
}


def fallback_chain(requested: BackendType) -> list[BackendType]:
    """Types to try, in order, after ``requested`` has failed."""
    if requested in FALLBACK_ORDER:
        return list(FALLBACK_ORDER[FALLBACK_ORDER.index(requested) + 1:])
    return list(FALLBACK_ORDER)


class DataServiceFactory:
    """Owns the cache of storage handles and the loops that keep them alive."""

    def __init__(
        self,
        config: ConfigManager,
        alerts: AlertLog | None = None,
        builders: dict[BackendType, Builder] | None = None,
    ):
        self._config = config
        self.alerts = alerts or AlertLog()
        self._builders = {**DEFAULT_BUILDERS, **(builders or {})}
        self._instances: dict[BackendType, DataService] = {}
        self._current_type: BackendType | None = None
        self._lock = threading.RLock()        # guards the cache and current pointer
        self._build_lock = threading.RLock()  # serializes construction
        self._pool_metrics: dict[str, dict[str, Any]] = {}

        settings = config.settings
        self._health_task = PeriodicTask(
            "storage-health-check", settings.health_check_interval, self.health_check_tick,
        )
        self._pool_task = PeriodicTask(
            "storage-pool-monitor", settings.pool_monitor_interval, self.pool_monitor_tick,
        )
        self._subscribed = False

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(self) -> None:
        """Subscribe to config changes and start the background loops."""
        if not self._subscribed:
            self._config.subscribe(self._on_config_change)
            self._subscribed = True
        self._health_task.start()
        if self._config.get("pool_monitoring_enabled", True):
            self._pool_task.start()
        else:
            logger.info("Connection pool monitoring disabled")
        logger.info("Data service factory started")

    def destroy(self, timeout: float = 5.0) -> None:
        """Stop both loops, detach from config and dispose every handle."""
        self._health_task.stop(timeout)
        self._pool_task.stop(timeout)
        if self._subscribed:
            self._config.unsubscribe(self._on_config_change)
            self._subscribed = False
        with self._lock:
            instances = list(self._instances.items())
            self._instances.clear()
            self._current_type = None
            self._pool_metrics.clear()
        for backend, service in instances:
            self._dispose(backend, service)
        logger.info("Data service factory destroyed")

    # ── Handle access ────────────────────────────────────────────────────

    @property
    def current_type(self) -> BackendType | None:
        with self._lock:
            return self._current_type

    def current(self) -> DataService:
        """The active handle, created on first use."""
        with self._lock:
            backend = self._current_type
            service = self._instances.get(backend) if backend is not None else None
        if service is not None:
            return service
        return self.create_data_service()

    def create_data_service(
        self,
        backend: str | BackendType | None = None,
        *,
        force_new: bool = False,
    ) -> DataService:
        """Return a validated handle for ``backend`` (default: configured type).

        Falls back along FALLBACK_ORDER when the requested type fails.
        Raises StorageError only when every candidate failed.
        """
        requested = BackendType.parse(backend or self._config.database_type())
        with self._build_lock:
            if not force_new:
                cached = self._cached_healthy(requested)
                if cached is not None:
                    self._set_current(requested)
                    logger.debug("Reusing cached %s data service", requested.value)
                    return cached

            try:
                service = self._build(requested)
            except StorageError as e:
                logger.error("Failed to create %s data service: %s", requested.value, e)
                return self._fail_over(e, requested)

            self._install(requested, service)
            self._set_current(requested)
            logger.info("%s data service ready", requested.value)
            return service

    def switch_to(self, backend: str | BackendType) -> DataService:
        """Build ``backend`` fresh, make it active and dispose all others."""
        service = self.create_data_service(backend, force_new=True)
        active = service.backend_type
        with self._lock:
            stale = [(t, s) for t, s in self._instances.items() if t != active]
            for t, _ in stale:
                del self._instances[t]
                self._pool_metrics.pop(t.value, None)
        for t, s in stale:
            self._dispose(t, s)
        logger.info("Data service switched to %s", active.value)
        return service

    # ── Background ticks ─────────────────────────────────────────────────

    def health_check_tick(self) -> None:
        """Probe every cached handle; rebuild the ones that fail."""
        with self._lock:
            snapshot = list(self._instances.items())

        for backend, service in snapshot:
            if self._is_healthy(service):
                continue
            logger.warning("%s data service failed health check, rebuilding", backend.value)
            with self._build_lock:
                try:
                    replacement = self._build(backend)
                except StorageError as e:
                    logger.error("%s data service rebuild failed: %s", backend.value, e)
                    self.alerts.record(
                        AlertLevel.CRITICAL,
                        f"{backend.value} data service rebuild failed: {e}",
                        source="storage.health",
                    )
                    if backend == self.current_type:
                        self._evict(backend, service)
                        try:
                            self._fail_over(e, backend)
                        except StorageError:
                            logger.error("No fallback available for %s", backend.value)
                    continue
                self._install(backend, replacement)
            logger.info("%s data service rebuilt", backend.value)

        self._recover_preferred()

    def pool_monitor_tick(self) -> None:
        """Sample pool statistics of every handle that exposes them."""
        utilization_warning = float(self._config.get("utilization_warning", 0.8))
        pending_warning = int(self._config.get("pending_requests_warning", 5))
        with self._lock:
            snapshot = list(self._instances.items())

        for backend, service in snapshot:
            get_stats = getattr(service, "get_connection_pool_stats", None)
            if not callable(get_stats):
                continue
            try:
                stats = get_stats()
                active = stats.get("active", 0) or 0
                total = stats.get("total", 0) or 0
                pending = stats.get("pending", 0) or 0
                capacity = max(stats.get("max_connections", 0) or 0, total)
                utilization = active / capacity if capacity > 0 else 0.0

                get_health = getattr(service, "get_connection_pool_health", None)
                if callable(get_health):
                    health = get_health()
                    if not health.get("healthy", True):
                        self.alerts.record(
                            AlertLevel.CRITICAL,
                            f"Connection pool unhealthy: {health.get('message', '')} (service: {backend.value})",
                            source="storage.pool",
                            details={"backend": backend.value, **health},
                        )

                if utilization > utilization_warning:
                    self.alerts.record(
                        AlertLevel.WARNING,
                        f"Connection pool utilization high: {backend.value} {utilization:.1%} "
                        f"(threshold {utilization_warning:.1%})",
                        source="storage.pool",
                        details={"backend": backend.value, "utilization": utilization},
                    )
                if pending > pending_warning:
                    self.alerts.record(
                        AlertLevel.WARNING,
                        f"Connection pool has {pending} waiting requests "
                        f"(threshold {pending_warning}, service: {backend.value})",
                        source="storage.pool",
                        details={"backend": backend.value, "pending": pending},
                    )

                with self._lock:
                    self._pool_metrics[backend.value] = {
                        **stats,
                        "utilization": utilization,
                        "timestamp": time.time(),
                    }
                logger.debug(
                    "Pool stats [%s]: active=%s idle=%s total=%s pending=%s utilization=%.2f%%",
                    backend.value, active, stats.get("idle"), total, pending, utilization * 100,
                )
            except Exception:
                logger.warning("Collecting %s pool metrics failed", backend.value, exc_info=True)

    # ── Introspection ────────────────────────────────────────────────────

    def pool_metrics(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {k: dict(v) for k, v in self._pool_metrics.items()}

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "current_type": self._current_type.value if self._current_type else None,
                "configured_type": self._config.database_type(),
                "active_services": [t.value for t in self._instances],
                "health_check_running": self._health_task.running,
                "health_check_interval": self._health_task.interval,
                "pool_monitoring_running": self._pool_task.running,
                "pool_monitor_interval": self._pool_task.interval,
                "pool_metrics": {k: dict(v) for k, v in self._pool_metrics.items()},
                "alerts": self.alerts.summary(),
            }

    # ── Internals ────────────────────────────────────────────────────────

    def _build(self, backend: BackendType) -> DataService:
        """Construct and validate one handle. Raises StorageError."""
        builder = self._builders.get(backend)
        if builder is None:
            raise StorageError(f"No builder registered for {backend.value}", backend)
        try:
            service = builder(self._config.settings)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"{backend.value} construction failed: {e}", backend) from e
        try:
            service.test_connection()
        except Exception as e:
            self._dispose(backend, service)
            if isinstance(e, StorageError):
                raise
            raise StorageError(f"{backend.value} validation failed: {e}", backend) from e
        return service

    def _fail_over(self, original: StorageError, requested: BackendType) -> DataService:
        for candidate in fallback_chain(requested):
            try:
                service = self._cached_healthy(candidate) or self._build(candidate)
            except StorageError as e:
                logger.warning("Fallback to %s failed: %s", candidate.value, e)
                continue
            self._install(candidate, service)
            self._set_current(candidate)
            self.alerts.record(
                AlertLevel.WARNING,
                f"Storage degraded: {requested.value} unavailable, using {candidate.value}",
                source="storage.failover",
                details={"requested": requested.value, "active": candidate.value, "error": str(original)},
            )
            return service
        raise original

    def _recover_preferred(self) -> None:
        preferred = BackendType.parse(self._config.database_type())
        current = self.current_type
        if current is None or current == preferred:
            return
        with self._build_lock:
            try:
                service = self._cached_healthy(preferred) or self._build(preferred)
            except StorageError:
                logger.debug("%s still unavailable, staying on %s", preferred.value, current.value)
                return
            self._install(preferred, service)
            self._set_current(preferred)
        logger.info("Recovered preferred data service %s (was %s)", preferred.value, current.value)

    def _cached_healthy(self, backend: BackendType) -> DataService | None:
        with self._lock:
            cached = self._instances.get(backend)
        if cached is None:
            return None
        if self._is_healthy(cached):
            return cached
        logger.warning("Cached %s data service is unhealthy, discarding", backend.value)
        self._evict(backend, cached)
        return None

    def _install(self, backend: BackendType, service: DataService) -> None:
        with self._lock:
            old = self._instances.get(backend)
            self._instances[backend] = service
        if old is not None and old is not service:
            self._dispose(backend, old)

    def _evict(self, backend: BackendType, service: DataService) -> None:
        with self._lock:
            if self._instances.get(backend) is service:
                del self._instances[backend]
        self._dispose(backend, service)

    def _set_current(self, backend: BackendType) -> None:
        with self._lock:
            self._current_type = backend

    @staticmethod
    def _is_healthy(service: DataService) -> bool:
        try:
            service.test_connection()
            return True
        except Exception as e:
            logger.warning("%s health check failed: %s", getattr(service, "backend_type", "?"), e)
            return False

    @staticmethod
    def _dispose(backend: BackendType, service: DataService) -> None:
        cleanup = getattr(service, "cleanup", None)
        if not callable(cleanup):
            return
        try:
            cleanup()
            logger.info("Disposed %s data service", backend.value)
        except Exception:
            logger.warning("Disposing %s data service failed", backend.value, exc_info=True)

    def _on_config_change(self, key: str, old: Any, new: Any) -> None:
        if key != "database_type":
            return
        logger.info("Database type changed: %s -> %s", old, new)
        try:
            self.switch_to(new)
        except StorageError as e:
            logger.error("Data service switch to %s failed: %s", new, e)
