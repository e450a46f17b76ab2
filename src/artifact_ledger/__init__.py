"""artifact-ledger: content-addressed artifact store.

This package versions saved artifacts by content and code hash, records which
parent versions each artifact was built from, detects stale descendants,
plans and executes level-ordered rebuilds, and prunes old versions.
"""

from artifact_ledger.catalog import ArtifactRow, Catalog, VersionRow
from artifact_ledger.config import StoreConfig, StoreConfigError, load_store_config, save_store_config
from artifact_ledger.errors import (
    AtomicWriteError,
    BuilderFailureError,
    CorruptStateError,
    CycleDetectedError,
    NotFoundError,
    PolicyError,
    SerializationError,
    StoreError,
)
from artifact_ledger.executor import BuildOutput, RebuildExecutor, RebuildResult
from artifact_ledger.formats import FormatBackend, FormatRegistry, UnknownFormatError, default_registry
from artifact_ledger.hashing import (
    artifact_id,
    code_hash,
    content_hash,
    file_hash,
    normalize_path,
    register_canonicalizer,
    version_id,
)
from artifact_ledger.lineage import LineageIndex, LineageRow
from artifact_ledger.locking import FileLock, LockAcquisitionError, LockError
from artifact_ledger.planner import PlanEntry, RebuildPlanner
from artifact_ledger.retention import (
    BUILTIN_POLICIES,
    PruneCandidate,
    PruneReport,
    RetentionEngine,
    RetentionPolicy,
    load_policies_from_file,
)
from artifact_ledger.sidecar import SidecarRecord, read_sidecar
from artifact_ledger.staleness import StalenessDetector, StalenessReport
from artifact_ledger.store import ArtifactInfo, ChangeReport, SaveDecision, SaveResult, Store
from artifact_ledger.version_spec import (
    ExactId,
    Interactive,
    Latest,
    Offset,
    Oldest,
    parse_version_spec,
    resolve_version,
)
from artifact_ledger.version_store import ParentDescriptor, VersionStore

__version__ = "0.1.0"

__all__ = [
    "BUILTIN_POLICIES",
    "ArtifactInfo",
    "ArtifactRow",
    "AtomicWriteError",
    "BuildOutput",
    "BuilderFailureError",
    "Catalog",
    "ChangeReport",
    "CorruptStateError",
    "CycleDetectedError",
    "ExactId",
    "FileLock",
    "FormatBackend",
    "FormatRegistry",
    "Interactive",
    "Latest",
    "LineageIndex",
    "LineageRow",
    "LockAcquisitionError",
    "LockError",
    "NotFoundError",
    "Offset",
    "Oldest",
    "ParentDescriptor",
    "PlanEntry",
    "PolicyError",
    "PruneCandidate",
    "PruneReport",
    "RebuildExecutor",
    "RebuildPlanner",
    "RebuildResult",
    "RetentionEngine",
    "RetentionPolicy",
    "SaveDecision",
    "SaveResult",
    "SerializationError",
    "SidecarRecord",
    "StalenessDetector",
    "StalenessReport",
    "Store",
    "StoreConfig",
    "StoreConfigError",
    "StoreError",
    "UnknownFormatError",
    "VersionRow",
    "VersionStore",
    "artifact_id",
    "code_hash",
    "content_hash",
    "default_registry",
    "file_hash",
    "load_policies_from_file",
    "load_store_config",
    "normalize_path",
    "parse_version_spec",
    "read_sidecar",
    "register_canonicalizer",
    "resolve_version",
    "save_store_config",
    "version_id",
]
