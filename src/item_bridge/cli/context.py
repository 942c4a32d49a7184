"""
CLI context manager for Item Bridge.

This module provides the context object that is passed to all CLI commands,
containing configuration, platform clients, and job state storage.
"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

from item_bridge.client.platform_client import PlatformClient
from item_bridge.client.rate_limit import RateLimitTracker
from item_bridge.config import BridgeConfig, load_config_from_yaml
from item_bridge.migration.failure_log import FailureLog
from item_bridge.migration.orchestrator import ItemMigrator
from item_bridge.migration.service import MigrationService
from item_bridge.migration.state import JobStateStore
from item_bridge.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class BridgeContext:
    """
    Context object for CLI commands.

    This object holds configuration, clients, and state that is shared
    across CLI commands. It is passed via Click's context mechanism.

    Attributes:
        config_path: Path to configuration file
        log_level: Logging level
        log_file: Optional log file path
        config: Loaded bridge configuration
        tracker: Rate-limit tracker fed by the target client
        source_client: Client for the source platform instance
        target_client: Client for the target platform instance
        state_store: Job state store
        failure_log: Per-job failure log
    """

    config_path: Path | None = None
    log_level: str = "INFO"
    log_file: Path | None = None

    # Lazy-loaded attributes
    _config: BridgeConfig | None = field(default=None, init=False, repr=False)
    _tracker: RateLimitTracker | None = field(default=None, init=False, repr=False)
    _source_client: PlatformClient | None = field(default=None, init=False, repr=False)
    _target_client: PlatformClient | None = field(default=None, init=False, repr=False)
    _state_store: JobStateStore | None = field(default=None, init=False, repr=False)
    _failure_log: FailureLog | None = field(default=None, init=False, repr=False)

    @property
    def config(self) -> BridgeConfig:
        """Get or load bridge configuration."""
        if self._config is None:
            if self.config_path is None:
                raise ValueError(
                    "Configuration file path not provided. "
                    "Use --config option or set ITEM_BRIDGE_CONFIG environment variable."
                )

            logger.debug("loading_configuration", config_path=str(self.config_path))
            self._config = load_config_from_yaml(self.config_path)
            logger.debug("configuration_loaded")

        return self._config

    @property
    def tracker(self) -> RateLimitTracker:
        if self._tracker is None:
            self._tracker = RateLimitTracker()
        return self._tracker

    def _create_client(self, side: str) -> PlatformClient:
        instance = self.config.source if side == "source" else self.config.target
        performance = self.config.performance
        logger.debug("creating_client", side=side, url=instance.url)
        return PlatformClient(
            config=instance,
            rate_limit=performance.rate_limit,
            # Only the target quota gates batches
            tracker=self.tracker if side == "target" else None,
            log_payloads=self.config.logging.log_payloads,
            max_payload_size=self.config.logging.max_payload_size,
            max_connections=performance.http_max_connections,
            max_keepalive_connections=performance.http_max_keepalive_connections,
        )

    @property
    def source_client(self) -> PlatformClient:
        """Get or create the source platform client."""
        if self._source_client is None:
            self._source_client = self._create_client("source")
        return self._source_client

    @property
    def target_client(self) -> PlatformClient:
        """Get or create the target platform client."""
        if self._target_client is None:
            self._target_client = self._create_client("target")
        return self._target_client

    @property
    def state_store(self) -> JobStateStore:
        """Get or create the job state store."""
        if self._state_store is None:
            state = self.config.state
            logger.debug("initializing_state_store", data_dir=state.data_dir)
            self._state_store = JobStateStore(
                state.data_dir, write_retry_attempts=state.write_retry_attempts
            )
        return self._state_store

    @property
    def failure_log(self) -> FailureLog:
        if self._failure_log is None:
            self._failure_log = FailureLog(self.config.state.failure_log_dir)
        return self._failure_log

    def create_migrator(self, progress_queue: asyncio.Queue | None = None) -> ItemMigrator:
        """Build a migrator wired to this context's clients and stores."""
        return ItemMigrator(
            source_client=self.source_client,
            target_client=self.target_client,
            state_store=self.state_store,
            failure_log=self.failure_log,
            tracker=self.tracker,
            performance=self.config.performance,
            cache_config=self.config.cache,
            rounding=self.config.matching.number_rounding,
            progress_queue=progress_queue,
        )

    def create_service(self, progress_queue: asyncio.Queue | None = None) -> MigrationService:
        """Build the job control service."""
        return MigrationService(
            state_store=self.state_store,
            failure_log=self.failure_log,
            migrator_factory=lambda: self.create_migrator(progress_queue),
            heartbeat_stale_seconds=self.config.state.heartbeat_stale_seconds,
        )

    async def aclose(self) -> None:
        """Close any platform clients that were created."""
        logger.debug("cleaning_up_context_resources")
        if self._source_client is not None:
            await self._source_client.close()
            self._source_client = None
        if self._target_client is not None:
            await self._target_client.close()
            self._target_client = None
