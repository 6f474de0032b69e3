from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Callable, Sequence

from dbkeeper.core.config import get_settings
from dbkeeper.core.errors import ArtifactNotFoundError, DbKeeperError
from dbkeeper.core.logging import configure_logging
from dbkeeper.domain.types import STRATEGY_NAMES, RunState
from dbkeeper.persistence.db import SessionLocal, init_models
from dbkeeper.persistence.repos.artifacts import get_artifact, list_artifacts
from dbkeeper.persistence.repos.runs import latest_run
from dbkeeper.services.alerts import build_alert_sink
from dbkeeper.services.doclint import lint_corpus
from dbkeeper.services.locks import TargetLockManager
from dbkeeper.services.pipeline import BackupPipeline
from dbkeeper.services.schedule_config import DbKeeperConfig, load_config
from dbkeeper.services.scheduler import Scheduler
from dbkeeper.services.verification import VerificationRunner


def _build_pipeline(*, verify: bool | None = None) -> BackupPipeline:
    alerts = build_alert_sink()
    return BackupPipeline(alerts=alerts, verify_after_snapshot=verify)


async def _cmd_run(args: argparse.Namespace) -> int:
    # Run one backup now, honouring the same per-target lock the scheduler uses.
    config = load_config(args.config)
    target = config.target(args.target)
    entries = config.schedule_entries(args.target)
    strategy = args.strategy or (entries[0].strategy if entries else "logical")
    await init_models()
    locks = TargetLockManager()
    lease = await locks.acquire(target.name)
    if lease is None:
        print(f"target={target.name}")
        print("status=skipped_in_progress")
        await locks.close()
        return 2
    try:
        pipeline = _build_pipeline(verify=False if args.no_verify else None)
        outcome = await pipeline.run(
            target,
            strategy,
            policies=config.policies_for(target.name),
            trigger="manual",
        )
    finally:
        await locks.release(lease)
        await locks.close()
    print(f"run_id={outcome.run_id}")
    print(f"target={outcome.target}")
    print(f"strategy={outcome.strategy}")
    print(f"status={outcome.state.value}")
    print(f"artifact_id={outcome.artifact_id}")
    print(f"verified={str(outcome.verified).lower()}")
    print(f"pruned={len(outcome.pruned)}")
    if outcome.error_code:
        print(f"error_code={outcome.error_code}")
        print(f"error={outcome.error_message}")
    return 0 if outcome.succeeded else 1


async def _cmd_verify(args: argparse.Namespace) -> int:
    # Hold the target lock so retention cannot prune the artifact while it is restored.
    await init_models()
    async with SessionLocal() as session:
        artifact = await get_artifact(session, args.artifact_id)
    if artifact is None or artifact.pruned_at is not None:
        raise ArtifactNotFoundError(f"artifact {args.artifact_id} not found")
    locks = TargetLockManager()
    lease = await locks.acquire(artifact.target)
    if lease is None:
        print(f"artifact_id={artifact.id}")
        print("status=skipped_in_progress")
        await locks.close()
        return 2
    try:
        runner = VerificationRunner(alerts=build_alert_sink())
        report = await runner.verify(artifact.id)
    finally:
        await locks.release(lease)
        await locks.close()
    print(f"artifact_id={report.artifact_id}")
    print(f"status={'passed' if report.passed else 'failed'}")
    print(f"checksum_ok={str(report.checksum_ok).lower()}")
    for table, delta in sorted(report.row_count_deltas.items()):
        print(f"row_count_delta table={table} expected={delta['expected']} actual={delta['actual']}")
    if report.diagnostic:
        print(f"diagnostic={report.diagnostic}")
    return 0 if report.passed else 1


async def _cmd_list(args: argparse.Namespace) -> int:
    await init_models()
    async with SessionLocal() as session:
        rows = await list_artifacts(session, target=args.target, include_pruned=args.all, limit=args.limit)
    for row in rows:
        print(
            f"artifact_id={row.id} target={row.target} strategy={row.strategy} "
            f"created_at={row.created_at.isoformat()} status={row.verification_status} "
            f"size_bytes={row.size_bytes} binlog={row.binlog_file}:{row.binlog_position}"
            + (f" pruned_at={row.pruned_at.isoformat()}" if row.pruned_at else "")
        )
    print(f"count={len(rows)}")
    return 0


async def _cmd_prune(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    targets = [args.target] if args.target else config.target_names()
    await init_models()
    pipeline = _build_pipeline()
    locks = TargetLockManager()
    total = 0
    try:
        for name in targets:
            total += await _prune_target(args, config, pipeline, locks, name)
    finally:
        await locks.close()
    print(f"dry_run={str(args.dry_run).lower()}")
    print(f"pruned_backups={total}")
    return 0


async def _prune_target(
    args: argparse.Namespace,
    config: DbKeeperConfig,
    pipeline: BackupPipeline,
    locks: TargetLockManager,
    name: str,
) -> int:
    config.target(name)
    policies = config.policies_for(name)
    if not policies:
        print(f"target={name} status=no_policy")
        return 0
    if not args.force:
        async with SessionLocal() as session:
            run = await latest_run(session, name)
        if run is not None and run.state == RunState.FAILED.value:
            print(f"target={name} status=retention_suppressed reason=last_run_failed")
            return 0
    # Same lock as backups and verification: never prune an artifact mid-restore.
    lease = await locks.acquire(name)
    if lease is None:
        print(f"target={name} status=skipped_in_progress")
        return 0
    try:
        decisions = await pipeline.run_retention(name, policies, dry_run=args.dry_run)
    finally:
        await locks.release(lease)
    for decision in decisions:
        print(f"target={name} artifact_id={decision.artifact_id} reason={decision.reason}")
    return len(decisions)


async def _cmd_schedule(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    await init_models()
    scheduler = Scheduler(config, pipeline=_build_pipeline())
    await scheduler.start()
    try:
        await scheduler.wait()
    finally:
        await scheduler.stop()
    return 0


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from dbkeeper.apps.api.main import create_app

    settings = get_settings()
    config = load_config(args.config)
    scheduler = Scheduler(config, pipeline=_build_pipeline())
    app = create_app(scheduler, start_scheduler=not args.no_scheduler)
    uvicorn.run(app, host=args.host or settings.api_host, port=args.port or settings.api_port, log_config=None)
    return 0


def _cmd_lint_docs(args: argparse.Namespace) -> int:
    root = Path(args.root)
    issues = lint_corpus(root, max_line_length=args.max_line_length)
    for issue in issues:
        print(issue.format(root.resolve()))
    print(f"issues={len(issues)}")
    return 1 if issues else 0


async def _cmd_init_db(args: argparse.Namespace) -> int:
    await init_models()
    print("status=ok")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="backup", description="MySQL backup orchestration")
    parser.add_argument("--config", default=None, help="Path to dbkeeper.yaml (defaults to CONFIG_PATH)")
    parser.add_argument("--log-level", default=None)
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Snapshot, verify, and apply retention for one target")
    run.add_argument("--target", required=True)
    run.add_argument("--strategy", choices=STRATEGY_NAMES, default=None)
    run.add_argument("--no-verify", action="store_true")

    verify = sub.add_parser("verify", help="Restore an artifact into an ephemeral target and compare")
    verify.add_argument("artifact_id")

    list_cmd = sub.add_parser("list", help="List cataloged artifacts")
    list_cmd.add_argument("--target", default=None)
    list_cmd.add_argument("--all", action="store_true", help="Include pruned artifacts")
    list_cmd.add_argument("--limit", type=int, default=None)

    prune = sub.add_parser("prune", help="Apply retention policies")
    prune.add_argument("--target", default=None)
    prune.add_argument("--dry-run", action="store_true")
    prune.add_argument("--force", action="store_true", help="Prune even when the last run failed")

    sub.add_parser("schedule", help="Run the scheduler loop in the foreground")

    serve = sub.add_parser("serve", help="Serve the ops API with the scheduler attached")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--no-scheduler", action="store_true")

    lint = sub.add_parser("lint-docs", help="Lint skill/agent Markdown documents")
    lint.add_argument("root")
    lint.add_argument("--max-line-length", type=int, default=None)

    sub.add_parser("init-db", help="Create catalog tables")
    return parser


_ASYNC_COMMANDS: dict[str, Callable[[argparse.Namespace], object]] = {
    "run": _cmd_run,
    "verify": _cmd_verify,
    "list": _cmd_list,
    "prune": _cmd_prune,
    "schedule": _cmd_schedule,
    "init-db": _cmd_init_db,
}
_SYNC_COMMANDS: dict[str, Callable[[argparse.Namespace], int]] = {
    "serve": _cmd_serve,
    "lint-docs": _cmd_lint_docs,
}


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    try:
        if args.command in _SYNC_COMMANDS:
            return _SYNC_COMMANDS[args.command](args)
        return asyncio.run(_ASYNC_COMMANDS[args.command](args))
    except DbKeeperError as exc:
        print(f"error_code={exc.code}", file=sys.stderr)
        print(f"error={exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
