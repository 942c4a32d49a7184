"""
Migration module for Item Bridge.

This module provides the batched item migration engine: duplicate-detection
caching, rate-limit aware batch writes, durable job state with checkpoints,
and job lifecycle control.
"""

# Engine
from item_bridge.migration.batch_processor import BatchProcessor
from item_bridge.migration.cancellation import PauseToken
from item_bridge.migration.failure_log import FailureLog

# Models
from item_bridge.migration.models import (
    DryRunPreview,
    DuplicateBehavior,
    ErrorCategory,
    ItemMigrationConfig,
    JobStatus,
    MigrationJob,
    MigrationMode,
    MigrationResult,
)
from item_bridge.migration.orchestrator import ItemMigrator
from item_bridge.migration.prefetch_cache import PrefetchCache
from item_bridge.migration.service import MigrationService

# State management
from item_bridge.migration.state import JobStateStore

__all__ = [
    # Models
    "DryRunPreview",
    "DuplicateBehavior",
    "ErrorCategory",
    "ItemMigrationConfig",
    "JobStatus",
    "MigrationJob",
    "MigrationMode",
    "MigrationResult",
    # Engine
    "BatchProcessor",
    "FailureLog",
    "ItemMigrator",
    "MigrationService",
    "PauseToken",
    "PrefetchCache",
    # State management
    "JobStateStore",
]
