"""
Ed Discussion Forum Sync

Pulls threads, answers and comments from Ed Discussion, turns them into
searchable documents, and keeps one Qdrant collection per course in sync
with full and delta syncs tracked by a persisted per-course state machine.

Features:
- Offset pagination with a safety cap and classified retry backoff
- Bounded-concurrency thread enrichment with partial-failure reporting
- Idempotent document IDs, so re-runs converge instead of duplicating
- Background workflows, stuck-sync sweeps and state cleanup
"""

from .config import (
    Config,
    EdConfig,
    QdrantConfig,
    EmbeddingConfig,
    SyncConfig,
    StateConfig,
    SchedulerConfig,
    LoggingConfig,
)
from .ed_client import (
    EdClient,
    TokenProvider,
    StaticTokenProvider,
    EnvTokenProvider,
    User,
    Course,
    UserCourse,
    Thread,
    ThreadDetails,
    Comment,
    ThreadPage,
)
from .retry import RetryClass, classify, backoff_delay, with_retry
from .extractor import IndexDocument, extract_documents, clean_text, make_document_id
from .vector_store import ForumVectorStore, SearchResult, CourseStats, SyncResult, UpsertResult
from .state_store import SyncStateStore, SyncState, SyncStatus, SyncType
from .sync import ForumSyncEngine, CourseSyncReport, EnrichmentResult
from .workflows import WorkflowRunner, WorkflowRun, WorkflowStatus
from .orchestrator import SyncOrchestrator, FanOutResult, OperationResult
from .search import CourseSearcher, CourseSearchResponse, format_results
from .scheduler import SyncScheduler
from .utils import (
    setup_logging,
    setup_detailed_logging,
    timed_operation,
    HealthStatus,
    ForumSyncError,
    EdAPIError,
    RateLimitError,
    AuthError,
    TransientNetworkError,
    RequestTimeoutError,
    MalformedResponseError,
    VectorStoreError,
    StateStoreError,
    SyncError,
    SyncInProgressError,
    ConfigError,
)

__all__ = [
    # Config
    "Config",
    "EdConfig",
    "QdrantConfig",
    "EmbeddingConfig",
    "SyncConfig",
    "StateConfig",
    "SchedulerConfig",
    "LoggingConfig",
    # Ed API
    "EdClient",
    "TokenProvider",
    "StaticTokenProvider",
    "EnvTokenProvider",
    "User",
    "Course",
    "UserCourse",
    "Thread",
    "ThreadDetails",
    "Comment",
    "ThreadPage",
    # Retry
    "RetryClass",
    "classify",
    "backoff_delay",
    "with_retry",
    # Extraction
    "IndexDocument",
    "extract_documents",
    "clean_text",
    "make_document_id",
    # Vector store
    "ForumVectorStore",
    "SearchResult",
    "CourseStats",
    "SyncResult",
    "UpsertResult",
    # State
    "SyncStateStore",
    "SyncState",
    "SyncStatus",
    "SyncType",
    # Sync
    "ForumSyncEngine",
    "CourseSyncReport",
    "EnrichmentResult",
    "WorkflowRunner",
    "WorkflowRun",
    "WorkflowStatus",
    "SyncOrchestrator",
    "FanOutResult",
    "OperationResult",
    # Search
    "CourseSearcher",
    "CourseSearchResponse",
    "format_results",
    # Scheduler
    "SyncScheduler",
    # Utils
    "setup_logging",
    "setup_detailed_logging",
    "timed_operation",
    "HealthStatus",
    "ForumSyncError",
    "EdAPIError",
    "RateLimitError",
    "AuthError",
    "TransientNetworkError",
    "RequestTimeoutError",
    "MalformedResponseError",
    "VectorStoreError",
    "StateStoreError",
    "SyncError",
    "SyncInProgressError",
    "ConfigError",
]
