"""
SyncService: runs stored sync configurations and persists their results.

Flow for one configuration:
  1. Create SyncLog (status="running")
  2. Load the configuration and its checkpoint (a corrupt checkpoint is
     dropped with a warning and the run starts from scratch)
  3. Run the orchestrator with the service's shared limiters and resolver
  4. Save the checkpoint the report hands back (never on a dry run)
  5. Update SyncLog with the run status, counts and error summary

On any exception: update SyncLog (status="failed") and re-raise.

The service owns one RateLimiter per external service, shared by every
configuration it runs, so concurrent runs still respect each service's quota.
Configurations whose factory hands back the same left client share one
cross-reference cache. Clients are built once per configuration and rebuilt
when the stored configuration changes.
A configuration is never run twice at the same time in one process.
"""
import asyncio
import importlib
import logging
from typing import Callable, Dict, List, Optional, Set, Tuple

from tablesync.config import get_settings
from tablesync.db import repository
from tablesync.engine.configuration import SyncConfiguration
from tablesync.engine.contracts import EndpointClient
from tablesync.engine.cross_reference import CrossReferenceResolver
from tablesync.engine.orchestrator import SyncOrchestrator
from tablesync.engine.rate_limiter import RateLimiter
from tablesync.engine.report import RunReport
from tablesync.engine.retry import RetryExecutor
from tablesync.errors import StateError

logger = logging.getLogger(__name__)

ClientFactory = Callable[[SyncConfiguration], Tuple[EndpointClient, EndpointClient]]


def load_client_factory(path: str) -> ClientFactory:
    """
    Import a client factory from a "package.module:callable" path.

    Raises:
        ValueError: if the path is empty or malformed.
    """
    if not path or ":" not in path:
        raise ValueError(
            "TABLESYNC_CLIENT_FACTORY must be set to 'package.module:callable'"
        )
    module_name, attr = path.split(":", 1)
    module = importlib.import_module(module_name)
    return getattr(module, attr)


class SyncService:
    """Runs stored configurations against endpoint clients built by a factory."""

    def __init__(self, engine, client_factory: Optional[ClientFactory] = None):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            client_factory: builds (left_client, right_client) for a
                configuration. Defaults to the one named in settings.
        """
        settings = get_settings()
        self.engine = engine
        self.client_factory = client_factory or load_client_factory(settings.client_factory)
        self.left_limiter = RateLimiter(settings.left_requests_per_second, name="left")
        self.right_limiter = RateLimiter(settings.right_requests_per_second, name="right")
        self.retry = RetryExecutor(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            jitter=settings.retry_jitter_seconds,
        )
        self.ttl_seconds = settings.cross_reference_ttl_seconds
        self._orchestrators: Dict[str, Tuple[SyncConfiguration, SyncOrchestrator]] = {}
        self._resolvers: List[Tuple[EndpointClient, CrossReferenceResolver]] = []
        self._running: Set[str] = set()

    def is_running(self, config_id: str) -> bool:
        return config_id in self._running

    async def run_config(self, config_id: str) -> Optional[RunReport]:
        """
        Run one stored configuration.

        Returns:
            The RunReport, or None if the configuration is unknown, inactive
            or already running.

        Raises:
            Any exception from building clients or persisting results (after
            recording it on the SyncLog).
        """
        if config_id in self._running:
            logger.warning("Sync for %s is already running; skipping", config_id)
            return None
        record = repository.get_config(self.engine, config_id)
        if record is None:
            logger.warning("No sync configuration %s", config_id)
            return None
        if not record.active:
            logger.info("Sync configuration %s is paused; skipping", config_id)
            return None

        self._running.add(config_id)
        log = repository.start_log(self.engine, config_id)
        try:
            config = record.to_configuration()
            state_warning = None
            try:
                checkpoint = repository.load_checkpoint(self.engine, config_id)
            except StateError as exc:
                logger.warning("Discarding checkpoint for %s: %s", config_id, exc)
                state_warning = f"Checkpoint discarded: {exc}"
                checkpoint = None

            report = await self._orchestrator_for(config).run(config, checkpoint)
            if state_warning and report.phases:
                report.phases[0].warnings.insert(0, state_warning)

            if not config.dry_run and report.checkpoint is not None and report.checkpoint is not checkpoint:
                repository.save_checkpoint(self.engine, report.checkpoint)
            repository.record_run_result(self.engine, config_id, report)
            repository.finish_log(self.engine, log, status=report.status.value, report=report)
            return report

        except Exception as exc:
            repository.finish_log(self.engine, log, status="failed", error_message=str(exc))
            raise
        finally:
            self._running.discard(config_id)

    async def run_all(self) -> Dict[str, Optional[RunReport]]:
        """Run every active configuration concurrently. Failures are logged, not raised."""
        configs = repository.list_active_configs(self.engine)
        results = await asyncio.gather(
            *(self.run_config(c.id) for c in configs),
            return_exceptions=True,
        )
        reports: Dict[str, Optional[RunReport]] = {}
        for record, outcome in zip(configs, results):
            if isinstance(outcome, BaseException):
                logger.error("Sync for %s failed: %s", record.id, outcome)
                reports[record.id] = None
            else:
                reports[record.id] = outcome
        return reports

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _orchestrator_for(self, config: SyncConfiguration) -> SyncOrchestrator:
        """Orchestrator for a configuration, rebuilt with fresh clients when the configuration changed."""
        cached = self._orchestrators.get(config.id)
        if cached is not None and cached[0] == config:
            orchestrator = cached[1]
        else:
            if cached is not None:
                logger.info("Configuration %s changed; rebuilding its clients", config.id)
            left, right = self.client_factory(config)
            orchestrator = SyncOrchestrator(
                left,
                right,
                left_limiter=self.left_limiter,
                right_limiter=self.right_limiter,
                retry=self.retry,
                resolver=self._resolver_for(left),
            )
            self._orchestrators[config.id] = (config, orchestrator)
            self._drop_unused_resolvers()
        orchestrator.resolver.use_label_fields(config.label_fields)
        return orchestrator

    def _resolver_for(self, left: EndpointClient) -> CrossReferenceResolver:
        # one cache per left client, so configurations linking to the same table share it
        for client, resolver in self._resolvers:
            if client is left:
                return resolver
        resolver = CrossReferenceResolver(left, self.left_limiter, self.retry, ttl_seconds=self.ttl_seconds)
        self._resolvers.append((left, resolver))
        return resolver

    def _drop_unused_resolvers(self) -> None:
        in_use = [orchestrator.left for _, orchestrator in self._orchestrators.values()]
        self._resolvers = [
            (client, resolver) for client, resolver in self._resolvers
            if any(client is used for used in in_use)
        ]
