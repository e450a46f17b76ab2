"""Version retention with union keep-rules.

A policy keeps every version, the newest ``keep_n`` versions per artifact,
or, when both ``keep_n`` and ``keep_days`` are set, every version matching
EITHER rule. Versions matching no keep rule are pruning candidates.

Pruning only removes historical snapshots and catalog rows. The live artifact
file and its sidecar are never touched.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from artifact_ledger.catalog import Catalog, VersionRow
from artifact_ledger.errors import PolicyError
from artifact_ledger.hashing import artifact_id, normalize_path
from artifact_ledger.version_store import VersionStore

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class RetentionPolicy:
    """Keep rules applied per artifact.

    Attributes:
        name: Human-readable policy name.
        keep_n: Keep this many most recent versions (None = no count rule).
        keep_days: Keep versions younger than this many days (None = no age rule).

    With both rules unset the policy keeps everything.
    """

    name: str = "custom"
    keep_n: int | None = None
    keep_days: float | None = None

    def __post_init__(self) -> None:
        if self.keep_n is not None:
            if isinstance(self.keep_n, bool) or not isinstance(self.keep_n, int) or self.keep_n < 0:
                raise PolicyError(f"keep_n must be a non-negative integer, got {self.keep_n!r}")
        if self.keep_days is not None:
            if isinstance(self.keep_days, bool) or not isinstance(self.keep_days, (int, float)):
                raise PolicyError(f"keep_days must be a number, got {self.keep_days!r}")
            if math.isnan(self.keep_days) or self.keep_days < 0:
                raise PolicyError(f"keep_days must be non-negative, got {self.keep_days!r}")

    @property
    def keeps_all(self) -> bool:
        return self.keep_n is None and self.keep_days is None

    @classmethod
    def keep_all(cls) -> RetentionPolicy:
        return cls(name="keep_all")

    @classmethod
    def keep_latest(cls, n: int) -> RetentionPolicy:
        return cls(name=f"keep_latest_{n}", keep_n=n)

    @classmethod
    def parse(cls, value: Any) -> RetentionPolicy:
        """Coerce a policy description into a RetentionPolicy.

        Accepts a RetentionPolicy, None, ``"all"``, a built-in policy name,
        ``math.inf``, an integer count, or a mapping with ``n`` and/or
        ``days`` keys.

        Raises:
            PolicyError: For negative values, unknown keys, or other types.
        """
        if isinstance(value, RetentionPolicy):
            return value
        if value is None or value == "all":
            return cls.keep_all()
        if isinstance(value, str):
            if value in BUILTIN_POLICIES:
                return BUILTIN_POLICIES[value]
            raise PolicyError(f"Unknown retention policy: {value!r}")
        if isinstance(value, bool):
            raise PolicyError(f"Invalid retention policy: {value!r}")
        if isinstance(value, float) and math.isinf(value) and value > 0:
            return cls.keep_all()
        if isinstance(value, int):
            return cls.keep_latest(value)
        if isinstance(value, Mapping):
            unknown = sorted(set(value) - {"n", "days", "name"})
            if unknown:
                raise PolicyError(f"Unknown retention policy keys: {', '.join(map(str, unknown))}")
            n = value.get("n")
            if isinstance(n, float) and math.isinf(n):
                n = None
            return cls(name=value.get("name", "custom"), keep_n=n, keep_days=value.get("days"))
        raise PolicyError(f"Invalid retention policy: {value!r}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        result: dict[str, Any] = {"name": self.name}
        if self.keep_n is not None:
            result["keep_n"] = self.keep_n
        if self.keep_days is not None:
            result["keep_days"] = self.keep_days
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RetentionPolicy:
        """Create a RetentionPolicy from a dict."""
        return cls(name=data["name"], keep_n=data.get("keep_n"), keep_days=data.get("keep_days"))


BUILTIN_POLICIES: dict[str, RetentionPolicy] = {
    "keep_all": RetentionPolicy.keep_all(),
    "keep_latest": RetentionPolicy(name="keep_latest", keep_n=1),
    "keep_last_5": RetentionPolicy(name="keep_last_5", keep_n=5),
    "two_weeks": RetentionPolicy(name="two_weeks", keep_n=1, keep_days=14),
}


@dataclass
class PruneCandidate:
    """A version selected for deletion."""

    path: str
    version_id: str
    created_at: str
    size_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "version_id": self.version_id,
            "created_at": self.created_at,
            "size_bytes": self.size_bytes,
        }


@dataclass
class PruneReport:
    """Result of a prune call."""

    policy: RetentionPolicy
    dry_run: bool
    candidates: list[PruneCandidate] = field(default_factory=list)
    bytes_reclaimed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "policy": self.policy.to_dict(),
            "dry_run": self.dry_run,
            "candidates": [c.to_dict() for c in self.candidates],
            "bytes_reclaimed": self.bytes_reclaimed,
            "errors": self.errors,
        }


def _parse_iso_datetime(iso_str: str) -> datetime:
    """Parse an ISO 8601 datetime string."""
    if iso_str.endswith("Z"):
        iso_str = iso_str[:-1] + "+00:00"
    parsed = datetime.fromisoformat(iso_str)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _age_days(created_at: str, now: datetime) -> float:
    return (now - _parse_iso_datetime(created_at)).total_seconds() / _SECONDS_PER_DAY


def select_pruned(versions: list[VersionRow], policy: RetentionPolicy, now: datetime) -> list[VersionRow]:
    """Versions of one artifact (newest first) that match no keep rule."""
    if policy.keeps_all:
        return []
    pruned = []
    for index, row in enumerate(versions):
        keep_by_count = policy.keep_n is not None and index < policy.keep_n
        keep_by_age = policy.keep_days is not None and _age_days(row.created_at, now) < policy.keep_days
        if not (keep_by_count or keep_by_age):
            pruned.append(row)
    return pruned


def load_policies_from_file(path: Path) -> dict[str, RetentionPolicy]:
    """Load named retention policies from a YAML file.

    Args:
        path: Path to a YAML file with a top-level ``policies`` list.

    Returns:
        Dictionary mapping policy names to RetentionPolicy objects (empty if
        the file is missing or declares no policies).
    """
    if not path.exists():
        return {}

    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not data or "policies" not in data:
        return {}

    policies = {}
    for policy_data in data["policies"]:
        policy = RetentionPolicy.from_dict(policy_data)
        policies[policy.name] = policy
    return policies


class RetentionEngine:
    """Applies retention policies to the catalog and snapshot directories."""

    def __init__(self, catalog: Catalog, versions: VersionStore) -> None:
        self.catalog = catalog
        self.versions = versions

    def _estimate_size(self, path: str, row: VersionRow) -> int:
        if row.size_bytes is not None:
            return row.size_bytes
        try:
            return self.versions.size(self.versions.version_dir(path, row.version_id))
        except OSError as exc:
            logger.warning("Cannot size %s @ %s: %s", path, row.version_id, exc)
            return 0

    def prune(
        self,
        paths: Iterable[str] | None = None,
        policy: RetentionPolicy | int | Mapping[str, Any] | str | None = None,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> PruneReport:
        """Prune versions that match no keep rule.

        Args:
            paths: Artifacts to consider (default: every artifact in the catalog).
            policy: Policy or policy description (see RetentionPolicy.parse).
            dry_run: Only report candidates and the bytes they occupy.
            now: Reference time for age rules (default: current UTC time).

        Returns:
            PruneReport listing candidates (deleted unless ``dry_run``).
        """
        policy = RetentionPolicy.parse(policy)
        now = now or datetime.now(timezone.utc)
        state = self.catalog.load()

        if paths is None:
            artifacts = sorted(state.artifacts.values(), key=lambda r: r.path)
        else:
            wanted = [artifact_id(normalize_path(p)) for p in paths]
            artifacts = [state.artifacts[aid] for aid in dict.fromkeys(wanted) if aid in state.artifacts]

        report = PruneReport(policy=policy, dry_run=dry_run)
        for artifact in artifacts:
            for row in select_pruned(state.versions_for(artifact.artifact_id), policy, now):
                size = self._estimate_size(artifact.path, row)
                report.candidates.append(PruneCandidate(artifact.path, row.version_id, row.created_at, size))
                report.bytes_reclaimed += size

        if dry_run or not report.candidates:
            return report

        # Catalog first: a leftover directory is harmless, a dangling row is not.
        self.catalog.remove_versions(c.version_id for c in report.candidates)
        for candidate in report.candidates:
            version_dir = self.versions.version_dir(candidate.path, candidate.version_id)
            try:
                self.versions.remove(version_dir)
            except OSError as e:
                logger.error("Failed to delete snapshot %s: %s", version_dir, e)
                report.errors.append(f"Failed to delete {candidate.path} @ {candidate.version_id}: {e}")

        logger.info(
            "Pruned %d version(s) across %d artifact(s) with policy %s",
            len(report.candidates),
            len({c.path for c in report.candidates}),
            policy.name,
        )
        return report
