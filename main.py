"""Command-line entry point for the replica health orchestrator."""

from __future__ import annotations

import argparse
from pathlib import Path
import sys
import time

from config import ConfigController
from config.settings import StorageSettings
from core.errors import ConfigurationError
from core.gate import ConfirmationGate, console_prompt
from core.logging import enable_file_logging, log_error, log_info, log_warning, logger, set_level
from core.models import ExitStatus, RunMode, RunResult
from services.orchestrator import HealthOrchestrator
from services.scope_resolver import ScopeSpec


def parse_args(argv: list[str]) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Raw command-line arguments.

    Returns:
        Parsed arguments namespace.
    """

    parser = argparse.ArgumentParser(
        description="Check, heal and verify directory replication health."
    )
    scope = parser.add_mutually_exclusive_group(required=True)
    scope.add_argument("--nodes", type=str, help="Nodes separated by commas, semicolons or spaces.")
    scope.add_argument("--site", type=str, help="Every node in the named site.")
    scope.add_argument("--fleet", action="store_true", help="Every node in the fleet.")
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in RunMode],
        default=RunMode.AUDIT.value,
        help="audit: report only; heal: remediate eligible issues; verify: score node health.",
    )
    parser.add_argument("--policy", type=str, help="Override the configured healing policy tier.")
    parser.add_argument("--dry-run", action="store_true", help="Make every decision but skip mutating calls.")
    parser.add_argument("--unattended", action="store_true", help="Approve confirmations without prompting.")
    parser.add_argument("--force-full", action="store_true", help="Ignore the delta cache (every cycle with --interval).")
    parser.add_argument("--offline", type=Path, help="Serve replication state from a YAML inventory.")
    parser.add_argument("--config-dir", type=Path, help="Directory holding default.yaml and override.yaml.")
    parser.add_argument(
        "--interval",
        type=float,
        help="Repeat the cycle every N seconds until interrupted.",
    )
    return parser.parse_args(argv)


def _scope_from_args(args: argparse.Namespace) -> ScopeSpec:
    if args.nodes is not None:
        return ScopeSpec.explicit(args.nodes)
    if args.site is not None:
        return ScopeSpec.for_site(args.site)
    return ScopeSpec.fleet()


def _transcript_path(storage: StorageSettings) -> Path:
    stamp = time.strftime("%Y%m%d_%H%M%S")
    return storage.log_dir / f"replica_health_{stamp}.log"


def report(result: RunResult) -> None:
    summary = result.summary
    style = "bold green" if summary.exit_status is ExitStatus.SUCCESS else "bold yellow"
    log_info(
        f"{summary.mode.value} {summary.scope_description}: "
        f"{summary.healthy}/{summary.total_nodes} healthy, {summary.issue_count} issue(s), "
        f"{summary.action_count} action(s) -> {summary.exit_status.name}",
        style=style,
    )
    for issue in sorted(result.issues, key=lambda i: i.severity.rank, reverse=True):
        logger.info("  %s [%s] %s", issue.severity.value.upper(), issue.category.value, issue.description)
    for verification in result.verifications:
        logger.info(
            "  %s verified %s (%.0f%%)",
            verification.node.name,
            verification.verdict.value,
            verification.ratio * 100,
        )
    if summary.deferred_count:
        log_warning(f"{summary.deferred_count} eligible issue(s) deferred by the action cap")
    if summary.fatal_error:
        log_error(f"Run failed: {summary.fatal_error}")


def main(argv: list[str] | None = None) -> int:
    """Application entry point.

    Args:
        argv: Optional list of command-line arguments.

    Returns:
        Process exit code.
    """

    if argv is None:
        argv = sys.argv[1:]
    args = parse_args(argv)

    if args.config_dir is not None:
        ConfigController(config_dir=args.config_dir)
    config = ConfigController.get_instance().get_config()
    set_level(str(config.get("logging_level", "INFO")))
    if config.get("file_logging_enabled", True):
        log_file_path = _transcript_path(StorageSettings.from_config(config))
        enable_file_logging(log_file_path)
        logger.info("Writing logs to %s", log_file_path)

    gate = ConfirmationGate(unattended=args.unattended, prompt=console_prompt)
    try:
        orchestrator = HealthOrchestrator.from_config(config, gate=gate, inventory=args.offline)
        scope = _scope_from_args(args)
        if args.interval:
            orchestrator.start_loop(
                scope,
                args.mode,
                args.interval,
                force_full=args.force_full,
                dry_run=args.dry_run,
                policy_name=args.policy,
            )
            try:
                while orchestrator.is_loop_alive():
                    time.sleep(1.0)
            except KeyboardInterrupt:
                logger.info("Program terminated by user")
            finally:
                orchestrator.stop_loop()
            loop_error = orchestrator.get_loop_error()
            if loop_error is not None:
                raise loop_error
            result = orchestrator.get_last_result()
            if result is None:
                return int(ExitStatus.CANCELLED)
        else:
            result = orchestrator.run_once(
                scope,
                args.mode,
                force_full=args.force_full,
                dry_run=args.dry_run,
                policy_name=args.policy,
            )
    except ConfigurationError as exc:
        log_error(f"Configuration error: {exc}")
        logger.debug("Configuration error detail: %s", exc.to_dict())
        return int(ExitStatus.FATAL_ERROR)

    report(result)
    return int(result.summary.exit_status)


if __name__ == "__main__":
    raise SystemExit(main())
