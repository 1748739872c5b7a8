"""Command-line entry point for the self-improvement loop."""

from __future__ import annotations

import argparse
from datetime import datetime
from pathlib import Path
import sys
import time

import yaml

from config import ConfigController
from config.settings import SelfImprovementConfig
from core.logging import enable_file_logging, logger, set_level
from core.models import ActionOutcome, DiagnosisStatus

OPERATOR_COMMANDS = {
    "approve",
    "reject",
    "supersede-pending",
    "pause",
    "resume",
    "reset-circuit-breaker",
}


def _format_ts(value: float | None) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


def parse_args(argv: list[str]) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Raw command-line arguments.

    Returns:
        Parsed arguments namespace.
    """

    parser = argparse.ArgumentParser(
        description="Inspect or run the self-improvement control loop."
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Override the configured logging level (DEBUG, INFO, ...).",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("status", help="Show loop status.")

    history = subparsers.add_parser("history", help="Show recent actions.")
    history.add_argument("--limit", type=int, default=20)
    history.add_argument(
        "--outcome",
        choices=[outcome.value for outcome in ActionOutcome],
        default=None,
    )

    diagnostics = subparsers.add_parser("diagnostics", help="Run diagnostics probes.")
    diagnostics.add_argument("--verbose", action="store_true")
    diagnostics.add_argument("--offline", action="store_true")
    diagnostics.add_argument("--yaml", action="store_true", help="Emit results as YAML records.")

    subparsers.add_parser("config", help="Show the effective configuration.")
    subparsers.add_parser("circuit-breaker", help="Show circuit breaker state.")
    subparsers.add_parser("baselines", help="Show metric baselines.")

    approve = subparsers.add_parser("approve", help="Approve a diagnosis awaiting approval.")
    approve.add_argument("diagnosis_id")
    reject = subparsers.add_parser("reject", help="Reject a pending diagnosis.")
    reject.add_argument("diagnosis_id")
    reject.add_argument("--reason", default="rejected by operator")
    subparsers.add_parser("supersede-pending", help="Drop every pending diagnosis.")
    pause = subparsers.add_parser("pause", help="Pause analysis and mutation.")
    pause.add_argument("seconds", type=float)
    subparsers.add_parser("resume", help="Resume after a pause.")
    subparsers.add_parser("reset-circuit-breaker", help="Close the circuit breaker.")

    run = subparsers.add_parser("run", help="Run the loop in the foreground.")
    run.add_argument("--once", action="store_true", help="Run a single cycle and exit.")
    run.add_argument("--loop-period", type=float, default=5.0)
    return parser.parse_args(argv)


def _open_store(settings: SelfImprovementConfig):
    from storage.self_improvement import SelfImprovementStore

    return SelfImprovementStore(Path(settings.var_dir).expanduser() / "self_improvement.db")


def _cmd_status(settings: SelfImprovementConfig) -> int:
    from services.self_improvement import PAUSED_UNTIL_KEY

    store = _open_store(settings)
    try:
        paused_until = store.get_control(PAUSED_UNTIL_KEY)
        breaker = store.load_circuit_breaker() or {}
        recent = store.actions_since(time.time() - 3600.0)
        pending = store.pending_diagnoses()
        last = store.history(limit=1)
    finally:
        store.close()
    print("Self-improvement status")
    print("-" * 60)
    print(f"enabled:              {settings.enabled}")
    print(f"circuit state:        {breaker.get('state', 'closed')}")
    print(f"consecutive failures: {breaker.get('consecutive_failures', 0)}")
    print(f"actions this hour:    {len(recent)}/{settings.executor.max_actions_per_hour}")
    if paused_until is not None and paused_until > time.time():
        print(f"paused until:         {_format_ts(paused_until)}")
    print(f"pending diagnoses:    {len(pending)}")
    awaiting = [d for d in pending if d.status is DiagnosisStatus.AWAITING_APPROVAL]
    if awaiting:
        print(f"awaiting approval:    {', '.join(d.id for d in awaiting)}")
    print(f"last action:          {_format_ts(last[0].executed_at) if last else '-'}")
    return 0


def _cmd_history(settings: SelfImprovementConfig, limit: int, outcome: str | None) -> int:
    store = _open_store(settings)
    try:
        records = store.history(limit=limit, outcome=ActionOutcome(outcome) if outcome else None)
    finally:
        store.close()
    if not records:
        print("No actions recorded.")
        return 0
    for record in records:
        reward = f"{record.normalized_reward:+.3f}" if record.normalized_reward is not None else "n/a"
        line = f"{_format_ts(record.executed_at)}  {record.outcome.value:<11} reward={reward}  {record.action.describe()}"
        if record.rollback_reason:
            line = f"{line}  ({record.rollback_reason})"
        print(line)
    return 0


def _cmd_diagnostics(settings: SelfImprovementConfig, verbose: bool, offline: bool, as_records: bool) -> int:
    from diagnostics.run import collect_results
    from diagnostics.runner import exit_code, format_results

    results = collect_results(offline=offline)
    if as_records:
        print(yaml.safe_dump([result.to_dict() for result in results], sort_keys=False))
    else:
        print(format_results(results))
    if verbose:
        print(yaml.safe_dump(settings.to_dict(), sort_keys=False))
    return exit_code(results)


def _cmd_circuit_breaker(settings: SelfImprovementConfig) -> int:
    store = _open_store(settings)
    try:
        state = store.load_circuit_breaker() or {"state": "closed"}
    finally:
        store.close()
    print(f"failure_threshold: {settings.circuit_breaker.failure_threshold}")
    print(f"success_threshold: {settings.circuit_breaker.success_threshold}")
    print(f"recovery_timeout_secs: {settings.circuit_breaker.recovery_timeout_secs:.0f}")
    for key, value in state.items():
        if key.startswith("last_"):
            value = _format_ts(value)
        print(f"{key}: {value}")
    return 0


def _cmd_baselines(settings: SelfImprovementConfig) -> int:
    store = _open_store(settings)
    try:
        baselines = store.get_all_baselines()
    finally:
        store.close()
    if not baselines:
        print("No baselines recorded.")
        return 0
    for baseline in baselines:
        validity = "valid" if baseline.is_valid else "warming up"
        print(
            f"{baseline.metric_name:<14} avg={baseline.rolling_avg:.4g} ema={baseline.ema_value:.4g} "
            f"warn={baseline.warning_threshold:.4g} crit={baseline.critical_threshold:.4g} "
            f"n={baseline.rolling_sample_count} ({validity})"
        )
    return 0


def _open_system(settings: SelfImprovementConfig):
    from services.self_improvement import SelfImprovementSystem

    return SelfImprovementSystem(settings, store=_open_store(settings))


def _cmd_operator(settings: SelfImprovementConfig, args: argparse.Namespace) -> int:
    system = _open_system(settings)
    try:
        if args.command == "approve":
            diagnosis = system.approve_diagnosis(args.diagnosis_id)
        elif args.command == "reject":
            diagnosis = system.reject_diagnosis(args.diagnosis_id, args.reason)
        elif args.command == "supersede-pending":
            superseded = system.supersede_pending()
            print(f"Superseded {len(superseded)} pending diagnoses.")
            return 0
        elif args.command == "pause":
            print(f"Paused until {_format_ts(system.pause(args.seconds))}")
            return 0
        elif args.command == "resume":
            system.resume()
            print("Resumed.")
            return 0
        else:
            summary = system.reset_circuit_breaker()
            print(f"Circuit breaker {summary.state.value}.")
            return 0
    finally:
        system.store.close()
    if diagnosis is None:
        print(f"No pending diagnosis {args.diagnosis_id}.")
        return 1
    print(f"{diagnosis.id}: {diagnosis.status.value}")
    return 0


def _cmd_run(settings: SelfImprovementConfig, once: bool, loop_period: float) -> int:
    system = _open_system(settings)
    try:
        if once:
            result = system.run_cycle()
            print(yaml.safe_dump(result.to_dict(), sort_keys=False))
            return 0 if result.success or result.error is None else 1

        system.start_loop(loop_period_s=loop_period)
        try:
            while system.is_loop_alive():
                time.sleep(1.0)
        except KeyboardInterrupt:
            logger.info("Program terminated by user")
        finally:
            system.stop_loop()
        return 0
    finally:
        system.store.close()


def main(argv: list[str] | None = None) -> int:
    """Application entry point.

    Args:
        argv: Optional list of command-line arguments.

    Returns:
        Process exit code.
    """

    if argv is None:
        argv = sys.argv[1:]

    config = ConfigController.get_instance().get_config()
    args = parse_args(argv)
    set_level(args.log_level or config.get("logging_level", "INFO"))
    settings = SelfImprovementConfig.from_config(config)

    command = args.command or "status"
    if command == "status":
        return _cmd_status(settings)
    if command == "history":
        return _cmd_history(settings, args.limit, args.outcome)
    if command == "diagnostics":
        return _cmd_diagnostics(settings, args.verbose, args.offline, args.yaml)
    if command == "config":
        print(yaml.safe_dump(settings.to_dict(), sort_keys=False))
        return 0
    if command == "circuit-breaker":
        return _cmd_circuit_breaker(settings)
    if command == "baselines":
        return _cmd_baselines(settings)
    if command in OPERATOR_COMMANDS:
        return _cmd_operator(settings, args)
    if command == "run":
        if config.get("file_logging_enabled", False):
            log_path = Path(config.get("log_dir", "./log/")).expanduser() / "self_improvement.log"
            enable_file_logging(log_path)
            logger.info("Writing logs to %s", log_path)
        return _cmd_run(settings, args.once, args.loop_period)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
