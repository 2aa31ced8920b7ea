"""Command-line entrypoints for the full scrape execution engine."""
from __future__ import annotations

import argparse
import asyncio
import json
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
import tomllib
import uvloop
from dotenv import load_dotenv

from fullscrape.admin.control import ScrapeControl
from fullscrape.domain.package import load_package
from fullscrape.errors import ScrapeEngineError
from fullscrape.observability.log import configure_logging
from fullscrape.observability.metrics import record_duration
from fullscrape.orchestrator.engine import build_engine
from fullscrape.orchestrator.jobs import ExecutionStatus
from fullscrape.orchestrator.options import EngineSettings
from fullscrape.storage.repository import JsonBuildRepository
from fullscrape.storage.seed import seed_builds
from fullscrape.tools.registry import default_registry

LOGGER = structlog.get_logger(__name__)

DEFAULT_SETTINGS_PATH = Path("config/settings.toml")
DEFAULT_BUILDS_PATH = Path("data/builds.json")
SUCCESSFUL_STATUSES = {ExecutionStatus.COMPLETED.value, ExecutionStatus.PARTIAL_SUCCESS.value}


def load_settings(path: Path) -> Dict[str, Any]:
    """Read the TOML configuration file; a missing file means defaults."""
    if not path.exists():
        return {}
    with path.open("rb") as handle:
        return tomllib.load(handle)


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="fullscrape", description="Full scrape execution engine")
    parser.add_argument("--settings", type=Path, default=DEFAULT_SETTINGS_PATH, help="Path to settings.toml")
    parser.add_argument("--store", type=Path, help="Path to the JSON build store (overrides settings)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Execute the scrape for a stored build and wait for it to finish")
    run.add_argument("--build-id", required=True, help="Build to scrape")
    run.add_argument("--timeout-ms", type=int, help="Wall-clock timeout for the job")
    run.add_argument("--batch-size", type=int, help="URLs per batch")

    status = sub.add_parser("status", help="Show the stored status of a build")
    status.add_argument("--build-id", required=True, help="Build to inspect")

    validate = sub.add_parser("validate-package", help="Validate a configuration package JSON file")
    validate.add_argument("path", type=Path, help="Package file")

    sub.add_parser("seed-builds", help="Populate the build store with demo builds")
    sub.add_parser("tools", help="List the registered tools")

    return parser


def _store_path(args: argparse.Namespace, settings: Dict[str, Any]) -> Path:
    if args.store is not None:
        return args.store
    return Path(settings.get("storage", {}).get("builds_path", DEFAULT_BUILDS_PATH))


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def request_cancel(control: ScrapeControl, build_id: str, pending: List[asyncio.Task]) -> None:
    """SIGINT handler: schedule a cancel and keep its task so the caller can await it."""
    LOGGER.info("interrupt_received", build_id=build_id)
    pending.append(asyncio.ensure_future(control.cancel(build_id)))


async def run_build(args: argparse.Namespace, settings: Dict[str, Any]) -> Dict[str, Any]:
    """Start the build's job, cancel it on SIGINT, and return the final report."""
    repository = JsonBuildRepository(path=_store_path(args, settings))
    engine = build_engine(EngineSettings.from_settings(settings), repository)
    control = ScrapeControl(engine, repository)

    await control.start(args.build_id, timeout_ms=args.timeout_ms, batch_size=args.batch_size)
    loop = asyncio.get_running_loop()
    cancellations: List[asyncio.Task] = []
    loop.add_signal_handler(signal.SIGINT, request_cancel, control, args.build_id, cancellations)
    try:
        with record_duration(engine.metrics, "run_duration_ms"):
            await engine.wait(args.build_id)
    finally:
        loop.remove_signal_handler(signal.SIGINT)
    if cancellations:
        await asyncio.gather(*cancellations)
    metrics_dir = settings.get("app", {}).get("metrics_dir")
    if metrics_dir:
        engine.metrics.export(path=Path(metrics_dir) / f"job_{args.build_id}.json", job_id=args.build_id)
    return await control.status(args.build_id)


async def show_status(args: argparse.Namespace, settings: Dict[str, Any]) -> Dict[str, Any]:
    repository = JsonBuildRepository(path=_store_path(args, settings))
    control = ScrapeControl(build_engine(EngineSettings.from_settings(settings), repository), repository)
    return await control.status(args.build_id)


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    settings = load_settings(args.settings)
    configure_logging(Path(settings.get("app", {}).get("log_config", "config/logging.yaml")))

    if args.command == "validate-package":
        try:
            package = load_package(args.path)
        except ScrapeEngineError as exc:
            _print({"path": str(args.path), "valid": False, "error": str(exc)})
            raise SystemExit(1)
        known = default_registry()
        missing = [config.tool_id for config in [package.scraper, *package.auxiliary_tools()] if config.tool_id not in known]
        _print({"path": str(args.path), "valid": not missing, "unknown_tools": missing})
        if missing:
            raise SystemExit(1)
        return

    if args.command == "tools":
        _print(default_registry().list_tools())
        return

    if args.command == "seed-builds":
        repository = JsonBuildRepository(path=_store_path(args, settings))
        created = asyncio.run(seed_builds(repository))
        _print([build.build_id for build in created])
        return

    try:
        if args.command == "status":
            _print(asyncio.run(show_status(args, settings)))
            return
        if args.command == "run":
            report = uvloop.run(run_build(args, settings))
            _print(report)
            if report["status"] not in SUCCESSFUL_STATUSES:
                raise SystemExit(1)
    except ScrapeEngineError as exc:
        LOGGER.error("command_failed", command=args.command, code=exc.code, error=str(exc))
        _print({"error": str(exc), "code": exc.code})
        raise SystemExit(1)


if __name__ == "__main__":
    main()
