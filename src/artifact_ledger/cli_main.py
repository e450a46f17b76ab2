"""artifact-ledger CLI: inspect and maintain an artifact store.

Commands:
    init: Create the state directory, config file, and empty catalog.
    versions / latest / info: Query the catalog for one artifact.
    children / lineage: Walk the lineage graph down or up.
    stale: Report whether artifacts lag behind their parents.
    plan: Compute a leveled rebuild plan for changed targets.
    prune: Apply a retention policy to version snapshots.
    restore: Copy a historical version back over the live artifact.
    repair: Reset a corrupt catalog (the old file is kept aside).

Exit codes: 0 on success, 1 when the store reports an error, 2 for usage errors.
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from artifact_ledger.config import CONFIG_FILENAME, DEFAULT_STATE_DIR, StoreConfig, StoreConfigError
from artifact_ledger.errors import StoreError
from artifact_ledger.planner import PLAN_MODES
from artifact_ledger.retention import BUILTIN_POLICIES, RetentionPolicy
from artifact_ledger.store import Store

if TYPE_CHECKING:
    from collections.abc import Sequence

    from artifact_ledger.lineage import Depth

__version__ = "0.1.0"


def _depth(value: str) -> Depth:
    if value in ("inf", "all"):
        return math.inf
    try:
        depth = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"depth must be a positive integer or 'inf', got {value!r}") from None
    if depth < 1:
        raise argparse.ArgumentTypeError(f"depth must be >= 1, got {depth}")
    return depth


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the artifact-ledger CLI."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--root",
        type=Path,
        default=None,
        help="Store root directory (defaults to current directory)",
    )
    common.add_argument(
        "--state-dir",
        default=DEFAULT_STATE_DIR,
        help=f"State directory name under the root (default: {DEFAULT_STATE_DIR})",
    )
    common.add_argument(
        "--json",
        action="store_true",
        dest="as_json",
        help="Emit machine-readable JSON",
    )
    common.add_argument(
        "--quiet",
        "-q",
        action="store_true",
        help="Suppress non-error output",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="count",
        default=0,
        help="Log progress to stderr (-vv for debug detail)",
    )

    parser = argparse.ArgumentParser(
        prog="artifact-ledger",
        description="Content-addressed artifact store: versions, lineage, rebuilds, retention",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", parents=[common], help="Initialize a store")
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Rewrite the config file even if the store exists",
    )
    init_parser.add_argument(
        "--versioning",
        choices=("content", "timestamp", "off"),
        default="content",
        help="When saves create new versions (default: content)",
    )
    init_parser.add_argument(
        "--meta-format",
        choices=("json", "yaml", "both"),
        default="json",
        help="Sidecar encoding(s) to write (default: json)",
    )
    init_parser.add_argument(
        "--retain",
        type=int,
        default=None,
        metavar="N",
        help="Keep only the N newest versions of each artifact after every save",
    )

    for name, help_text in (
        ("versions", "List versions of an artifact, newest first"),
        ("latest", "Print the latest version id of an artifact"),
        ("info", "Show sidecar, catalog row, and parents of an artifact"),
    ):
        sub = subparsers.add_parser(name, parents=[common], help=help_text)
        sub.add_argument("path", help="Artifact path")

    for name, help_text in (
        ("children", "List artifacts built from PATH"),
        ("lineage", "List the ancestors of PATH"),
    ):
        sub = subparsers.add_parser(name, parents=[common], help=help_text)
        sub.add_argument("path", help="Artifact path")
        sub.add_argument(
            "--depth",
            type=_depth,
            default=1,
            help="Levels to walk (integer or 'inf', default: 1)",
        )

    stale_parser = subparsers.add_parser("stale", parents=[common], help="Check artifacts for staleness")
    stale_parser.add_argument("paths", nargs="+", metavar="PATH", help="Artifact paths")

    plan_parser = subparsers.add_parser("plan", parents=[common], help="Plan rebuilds below changed targets")
    plan_parser.add_argument("targets", nargs="+", metavar="TARGET", help="Changed artifact paths")
    plan_parser.add_argument(
        "--mode",
        choices=PLAN_MODES,
        default="propagate",
        help="propagate: everything downstream; strict: only already-stale children",
    )
    plan_parser.add_argument(
        "--depth",
        type=_depth,
        default=math.inf,
        help="Levels to plan (integer or 'inf', default: inf)",
    )
    plan_parser.add_argument(
        "--include-targets",
        action="store_true",
        help="Also schedule targets that are themselves stale (level 0)",
    )

    prune_parser = subparsers.add_parser("prune", parents=[common], help="Delete versions outside a retention policy")
    prune_parser.add_argument("paths", nargs="*", metavar="PATH", help="Artifacts to prune (default: all)")
    prune_parser.add_argument("--keep", type=int, default=None, metavar="N", help="Keep the N newest versions")
    prune_parser.add_argument("--days", type=float, default=None, metavar="D", help="Keep versions younger than D days")
    prune_parser.add_argument(
        "--policy",
        choices=sorted(BUILTIN_POLICIES),
        default=None,
        help="Use a named built-in policy",
    )
    prune_parser.add_argument("--dry-run", action="store_true", help="Report candidates without deleting")

    restore_parser = subparsers.add_parser("restore", parents=[common], help="Restore a historical version")
    restore_parser.add_argument("path", help="Artifact path")
    restore_parser.add_argument(
        "version",
        help="Version id, offset (0 = latest, -1 = previous), 'latest', or 'oldest'",
    )

    repair_parser = subparsers.add_parser("repair", parents=[common], help="Reset a corrupt catalog")
    repair_parser.add_argument(
        "--no-backup",
        action="store_true",
        help="Do not keep the old catalog file",
    )

    return parser


def _log(msg: str, quiet: bool = False) -> None:
    """Print a message unless quiet mode is enabled."""
    if not quiet:
        sys.stdout.write(msg + "\n")


def _emit_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, indent=2, sort_keys=True) + "\n")


def _configure_logging(verbose: int, quiet: bool) -> None:
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)


def cmd_init(args: argparse.Namespace) -> int:
    """Initialize a store under ``--root``.

    Returns:
        0 on success (including an already-initialized store without --force).
    """
    root = args.root or Path.cwd()
    config_path = root / args.state_dir / CONFIG_FILENAME
    if config_path.exists() and not args.force:
        _log(f"Store already initialized at {config_path.parent}. Use --force to reinitialize.", args.quiet)
        return 0

    config = StoreConfig(
        state_dir=args.state_dir,
        versioning=args.versioning,
        meta_format=args.meta_format,
        retain_versions=args.retain,
    )
    store = Store.init(root, config)
    if args.as_json:
        _emit_json({"root": str(store.root), "state_dir": str(store.state_dir), "config": config.to_dict()})
    else:
        _log(f"Initialized store at {store.state_dir}", args.quiet)
    return 0


def cmd_versions(store: Store, args: argparse.Namespace) -> int:
    rows = store.versions(args.path)
    if args.as_json:
        _emit_json([row.to_dict() for row in rows])
        return 0
    if not rows:
        _log(f"No versions recorded for {store.resolve(args.path)}", args.quiet)
    for offset, row in enumerate(rows):
        _log(f"{-offset:>4}  {row.version_id}  {row.created_at}  {row.size_bytes} bytes", args.quiet)
    return 0


def cmd_latest(store: Store, args: argparse.Namespace) -> int:
    latest = store.latest(args.path)
    if args.as_json:
        _emit_json({"path": store.resolve(args.path), "latest_version_id": latest})
        return 0
    if latest is None:
        sys.stderr.write(f"No versions recorded for {store.resolve(args.path)}\n")
        return 1
    _log(latest, args.quiet)
    return 0


def cmd_info(store: Store, args: argparse.Namespace) -> int:
    info = store.info(args.path)
    if args.as_json:
        _emit_json(info.to_dict())
        return 0
    _log(f"Path:      {info.path}", args.quiet)
    if info.catalog is not None:
        _log(f"Format:    {info.catalog.format}", args.quiet)
        _log(f"Latest:    {info.catalog.latest_version_id}", args.quiet)
        _log(f"Versions:  {info.catalog.n_versions}", args.quiet)
    else:
        _log("Catalog:   (not recorded)", args.quiet)
    if info.sidecar is not None:
        _log(f"Saved at:  {info.sidecar.created_at}", args.quiet)
        _log(f"Content:   {info.sidecar.content_hash}", args.quiet)
        if info.sidecar.code_hash:
            label = f" ({info.sidecar.code_label})" if info.sidecar.code_label else ""
            _log(f"Code:      {info.sidecar.code_hash}{label}", args.quiet)
    if info.snapshot_dir is not None:
        _log(f"Snapshot:  {info.snapshot_dir}", args.quiet)
    for parent in info.parents:
        _log(f"Parent:    {parent.path} @ {parent.version_id}", args.quiet)
    return 0


def _print_lineage(rows: list, args: argparse.Namespace, arrow: str) -> None:
    if args.as_json:
        _emit_json([row.to_dict() for row in rows])
        return
    for row in rows:
        _log(
            f"[{row.level}] {row.parent_path}@{row.parent_version_id} {arrow} {row.child_path}@{row.child_version_id}",
            args.quiet,
        )


def cmd_children(store: Store, args: argparse.Namespace) -> int:
    _print_lineage(store.children_of(args.path, depth=args.depth), args, "->")
    return 0


def cmd_lineage(store: Store, args: argparse.Namespace) -> int:
    _print_lineage(store.lineage_of(args.path, depth=args.depth), args, "->")
    return 0


def cmd_stale(store: Store, args: argparse.Namespace) -> int:
    reports = [store.staleness_report(path) for path in args.paths]
    if args.as_json:
        _emit_json([report.to_dict() for report in reports])
        return 0
    for report in reports:
        _log(f"{report.status:<8} {report.path} ({report.reason})", args.quiet)
        for parent in report.stale_parents:
            _log(f"         parent {parent.path}: {parent.pinned_version_id} -> {parent.latest_version_id}", args.quiet)
    return 0


def cmd_plan(store: Store, args: argparse.Namespace) -> int:
    entries = store.plan_rebuild(args.targets, depth=args.depth, include_targets=args.include_targets, mode=args.mode)
    if args.as_json:
        _emit_json([entry.to_dict() for entry in entries])
        return 0
    if not entries:
        _log("Nothing to rebuild.", args.quiet)
    for entry in entries:
        _log(f"[{entry.level}] {entry.path} ({entry.reason})", args.quiet)
    return 0


def _prune_policy(args: argparse.Namespace) -> RetentionPolicy | None:
    if args.policy is not None:
        if args.keep is not None or args.days is not None:
            raise StoreError("--policy cannot be combined with --keep or --days")
        return BUILTIN_POLICIES[args.policy]
    if args.keep is None and args.days is None:
        return None
    return RetentionPolicy(keep_n=args.keep, keep_days=args.days)


def cmd_prune(store: Store, args: argparse.Namespace) -> int:
    report = store.prune(args.paths or None, _prune_policy(args), dry_run=args.dry_run)
    if args.as_json:
        _emit_json(report.to_dict())
        return 1 if report.errors else 0
    verb = "Would delete" if report.dry_run else "Deleted"
    for candidate in report.candidates:
        _log(f"{verb} {candidate.path} @ {candidate.version_id} ({candidate.size_bytes} bytes)", args.quiet)
    _log(
        f"{verb} {len(report.candidates)} version(s), {report.bytes_reclaimed} bytes (policy {report.policy.name})",
        args.quiet,
    )
    for error in report.errors:
        sys.stderr.write(f"Error: {error}\n")
    return 1 if report.errors else 0


def cmd_restore(store: Store, args: argparse.Namespace) -> int:
    version_id = store.restore(args.path, args.version)
    if args.as_json:
        _emit_json({"path": store.resolve(args.path), "version_id": version_id})
    else:
        _log(f"Restored {store.resolve(args.path)} to version {version_id}", args.quiet)
    return 0


def cmd_repair(store: Store, args: argparse.Namespace) -> int:
    backup = store.repair(backup=not args.no_backup)
    if args.as_json:
        _emit_json({"catalog": str(store.catalog.path), "backup": str(backup) if backup else None})
    else:
        _log(f"Catalog reset at {store.catalog.path}", args.quiet)
        if backup is not None:
            _log(f"Previous catalog kept at {backup}", args.quiet)
    return 0


_STORE_COMMANDS = {
    "versions": cmd_versions,
    "latest": cmd_latest,
    "info": cmd_info,
    "children": cmd_children,
    "lineage": cmd_lineage,
    "stale": cmd_stale,
    "plan": cmd_plan,
    "prune": cmd_prune,
    "restore": cmd_restore,
    "repair": cmd_repair,
}


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point for the artifact-ledger CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose, args.quiet)

    try:
        if args.command == "init":
            return cmd_init(args)
        handler = _STORE_COMMANDS.get(args.command)
        if handler is None:
            parser.error(f"Unknown command: {args.command}")
        store = Store.open(args.root or Path.cwd(), state_dir=args.state_dir)
        try:
            return handler(store, args)
        finally:
            store.close()
    except (StoreError, StoreConfigError) as e:
        sys.stderr.write(f"Error: {e}\n")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
