#!/usr/bin/env python3
"""
Phasegate CLI - drive work items through gated phases.

Usage:
    phasegate registries
    phasegate create alice --payload '{"title": "Solar kiosk"}'
    phasegate score wi_0123456789ab c1 85 --reviewer bob
    phasegate advance wi_0123456789ab
    phasegate override wi_0123456789ab pass --actor bob --reason "Market data attached"
    phasegate history wi_0123456789ab --json

Exit codes: 0 success, 1 error, 2 gate evaluation already in progress.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from .config import ConfigManager
from .error_handling import ConfigurationError, GateInProgressError, PhasegateError
from .factory import Engine, EngineFactory
from .logging_setup import setup_logging
from .registry import bundled_registry_names, load_bundled_registry, load_registry

VERSION = "1.0.0"

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_IN_PROGRESS = 2


def _is_registry_path(value: str) -> bool:
    return value.endswith((".yaml", ".yml")) or Path(value).exists()


def _load_registry_arg(value: str):
    """A registry argument is either a YAML path or a bundled registry name"""
    if _is_registry_path(value):
        return load_registry(Path(value))
    return load_bundled_registry(value)


def build_engine(args) -> Engine:
    """Load configuration, apply command-line overrides and wire the engine"""
    manager = ConfigManager(Path(args.config) if args.config else None)
    config = manager.config
    if args.db:
        config.storage.backend = "sqlite"
        config.storage.path = args.db
    if args.registry:
        if _is_registry_path(args.registry):
            config.registry.path = args.registry
        else:
            config.registry.name = args.registry
            config.registry.path = None

    valid, errors = manager.validate()
    if not valid:
        raise ConfigurationError("Invalid configuration: " + "; ".join(errors))

    setup_logging(config.logging)
    return EngineFactory(config).create_engine()


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_advance(result) -> None:
    if result.decision is None:
        print(f"{result.work_item_id}: {result.status.value} (phase {result.phase})")
        return
    gate = result.gate_result
    line = f"{result.work_item_id}: {result.decision.value.upper()}"
    if gate is not None:
        line += f" score={gate.score:.1f}"
        if gate.degraded:
            line += " (degraded)"
        if gate.timed_out:
            line += " (timed out)"
    print(line)
    print(f"  Phase: {result.phase}  Status: {result.status.value}")
    if gate is not None and gate.weak_criteria:
        print(f"  Weak criteria: {', '.join(gate.weak_criteria)}")


# ============================================================================
# Commands
# ============================================================================

def cmd_registries(args) -> int:
    """List bundled registries."""
    for name in bundled_registry_names():
        registry = load_bundled_registry(name)
        print(f"{name:<22} {len(registry)} phases  {registry.description}")
    return EXIT_OK


def cmd_validate(args) -> int:
    """Validate a registry file or bundled registry."""
    registry = _load_registry_arg(args.registry_ref)
    print(f"✓ Registry '{registry.name}' v{registry.version} is valid")
    for phase in registry.phases:
        print(f"  {phase.ordinal}. {phase.name}: {len(phase.criteria)} criteria, "
              f"pass >= {phase.pass_threshold:g}, escalate >= {phase.escalate_threshold:g}")
    return EXIT_OK


def cmd_create(args, engine: Engine) -> int:
    """Create a work item in phase 1."""
    try:
        payload = json.loads(args.payload) if args.payload else {}
    except json.JSONDecodeError as e:
        print(f"Error: --payload is not valid JSON: {e}", file=sys.stderr)
        return EXIT_ERROR

    work_item_id = engine.controller.create_work_item(args.owner, payload)
    if args.json:
        _print_json({"work_item_id": work_item_id})
    else:
        print(f"✓ Created {work_item_id}")
    return EXIT_OK


def cmd_advance(args, engine: Engine) -> int:
    """Evaluate the current gate and apply its decision."""
    result = engine.controller.advance(args.work_item_id)
    if args.json:
        _print_json(result.to_dict())
    else:
        _print_advance(result)
    return EXIT_OK


def cmd_override(args, engine: Engine) -> int:
    """Resolve an escalated gate."""
    result = engine.controller.override(args.work_item_id, args.decision, args.actor, args.reason or "")
    if args.json:
        _print_json(result.to_dict())
    else:
        _print_advance(result)
    return EXIT_OK


def cmd_reject(args, engine: Engine) -> int:
    """Reject a work item."""
    result = engine.controller.reject(args.work_item_id, args.actor, args.reason or "")
    print(f"✓ {result.work_item_id} rejected in phase {result.phase}")
    return EXIT_OK


def cmd_resume(args, engine: Engine) -> int:
    """Resume a stalled work item."""
    result = engine.controller.resume(args.work_item_id, args.actor, args.reason or "")
    print(f"✓ {result.work_item_id} resumed in phase {result.phase}")
    return EXIT_OK


def cmd_score(args, engine: Engine) -> int:
    """Record a reviewer's score for a criterion of the current phase."""
    review = engine.controller.record_review(
        args.work_item_id, args.criterion_id, args.score, args.reviewer, args.rationale or ""
    )
    print(f"✓ {review.criterion_id} scored {review.score:g} on {review.work_item_id} "
          f"phase {review.phase} by {review.reviewer}")
    return EXIT_OK


def cmd_status(args, engine: Engine) -> int:
    """Show a work item's position."""
    report = engine.controller.get_status(args.work_item_id)
    if args.json:
        _print_json(report.to_dict())
        return EXIT_OK

    print(f"Work item: {report.work_item_id}")
    phase = f"{report.phase}" + (f" ({report.phase_name})" if report.phase_name else "")
    print(f"  Phase:   {phase}")
    print(f"  Status:  {report.status.value}")
    print(f"  Attempt: {report.attempt}")
    if report.awaiting_override:
        print("  Awaiting override")
    if report.last_gate_result:
        gate = report.last_gate_result
        print(f"  Last gate: phase {gate.phase} attempt {gate.attempt} "
              f"{gate.decision.value} score={gate.score:.1f}")
    return EXIT_OK


def cmd_history(args, engine: Engine) -> int:
    """Show a work item's audit trail."""
    history = engine.controller.get_history(args.work_item_id)
    if args.json:
        _print_json([entry.to_dict() for entry in history])
        return EXIT_OK

    for entry in history:
        details = ", ".join(f"{k}={v}" for k, v in entry.payload.items())
        print(f"{entry.timestamp.isoformat()}  #{entry.sequence:<5} {entry.event_type.value:<22} "
              f"{entry.actor:<10} {details}")
    return EXIT_OK


def cmd_list(args, engine: Engine) -> int:
    """List work items."""
    items = engine.controller.list_work_items(owner_id=args.owner, status=args.status, phase=args.phase)
    if args.json:
        _print_json([item.to_dict() for item in items])
        return EXIT_OK

    if not items:
        print("No work items")
        return EXIT_OK
    for item in items:
        print(f"{item.id}  {item.owner_id:<16} phase {item.phase:<3} {item.status.value}")
    return EXIT_OK


def cmd_summary(args, engine: Engine) -> int:
    """Show per-phase gate results."""
    summary = engine.controller.gate_summary(args.work_item_id)
    if args.json:
        _print_json(summary)
        return EXIT_OK

    for row in summary:
        score = f"{row['last_score']:.1f}" if row["last_score"] is not None else "-"
        decision = row["last_decision"] or "-"
        print(f"{row['phase']}. {row['name']:<28} attempts={row['attempts']:<3} "
              f"score={score:<6} decision={decision}")
    return EXIT_OK


# Commands that do not need an engine
_STANDALONE = {cmd_registries, cmd_validate}


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phasegate",
        description="Phasegate - staged workflow engine with weighted quality gates",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  phasegate registries
  phasegate validate my_registry.yaml
  phasegate create alice --payload '{"title": "Solar kiosk"}'
  phasegate advance wi_0123456789ab
  phasegate override wi_0123456789ab pass --actor bob --reason "Looks good"
  phasegate summary wi_0123456789ab
        """
    )
    parser.add_argument('--config', '-c', help='Configuration file (default: phasegate.yaml)')
    parser.add_argument('--db', help='SQLite database path (overrides configuration)')
    parser.add_argument('--registry', '-r', help='Bundled registry name or registry YAML path')
    parser.add_argument('--version', '-v', action='version', version=f'%(prog)s {VERSION}')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    registries_parser = subparsers.add_parser('registries', help='List bundled registries')
    registries_parser.set_defaults(func=cmd_registries)

    validate_parser = subparsers.add_parser('validate', help='Validate a registry')
    validate_parser.add_argument('registry_ref', help='Bundled registry name or YAML path')
    validate_parser.set_defaults(func=cmd_validate)

    create_parser_ = subparsers.add_parser('create', help='Create a work item')
    create_parser_.add_argument('owner', help='Owner id')
    create_parser_.add_argument('--payload', '-p', help='Work item content as a JSON object')
    create_parser_.add_argument('--json', action='store_true', help='Output as JSON')
    create_parser_.set_defaults(func=cmd_create)

    advance_parser = subparsers.add_parser('advance', help='Evaluate the current gate')
    advance_parser.add_argument('work_item_id')
    advance_parser.add_argument('--json', action='store_true', help='Output as JSON')
    advance_parser.set_defaults(func=cmd_advance)

    override_parser = subparsers.add_parser('override', help='Resolve an escalated gate')
    override_parser.add_argument('work_item_id')
    override_parser.add_argument('decision', choices=['pass', 'fail'])
    override_parser.add_argument('--actor', '-a', required=True, help='Reviewer id')
    override_parser.add_argument('--reason', help='Why the gate is overridden')
    override_parser.add_argument('--json', action='store_true', help='Output as JSON')
    override_parser.set_defaults(func=cmd_override)

    reject_parser = subparsers.add_parser('reject', help='Reject a work item')
    reject_parser.add_argument('work_item_id')
    reject_parser.add_argument('--actor', '-a', required=True, help='Reviewer id')
    reject_parser.add_argument('--reason', help='Why the work item is rejected')
    reject_parser.set_defaults(func=cmd_reject)

    resume_parser = subparsers.add_parser('resume', help='Resume a stalled work item')
    resume_parser.add_argument('work_item_id')
    resume_parser.add_argument('--actor', '-a', required=True, help='Reviewer id')
    resume_parser.add_argument('--reason', help='Why the work item is resumed')
    resume_parser.set_defaults(func=cmd_resume)

    score_parser = subparsers.add_parser('score', help='Record a reviewer score for a criterion')
    score_parser.add_argument('work_item_id')
    score_parser.add_argument('criterion_id', help='Criterion id in the current phase')
    score_parser.add_argument('score', type=float, help='Score from 0 to 100')
    score_parser.add_argument('--reviewer', '-a', required=True, help='Reviewer id')
    score_parser.add_argument('--rationale', help='Why this score')
    score_parser.set_defaults(func=cmd_score)

    status_parser = subparsers.add_parser('status', help='Show a work item')
    status_parser.add_argument('work_item_id')
    status_parser.add_argument('--json', action='store_true', help='Output as JSON')
    status_parser.set_defaults(func=cmd_status)

    history_parser = subparsers.add_parser('history', help='Show a work item audit trail')
    history_parser.add_argument('work_item_id')
    history_parser.add_argument('--json', action='store_true', help='Output as JSON')
    history_parser.set_defaults(func=cmd_history)

    list_parser = subparsers.add_parser('list', help='List work items')
    list_parser.add_argument('--owner', help='Filter by owner id')
    list_parser.add_argument('--status', choices=['active', 'passed_all', 'rejected', 'stalled'])
    list_parser.add_argument('--phase', type=int, help='Filter by phase ordinal')
    list_parser.add_argument('--json', action='store_true', help='Output as JSON')
    list_parser.set_defaults(func=cmd_list)

    summary_parser = subparsers.add_parser('summary', help='Show per-phase gate results')
    summary_parser.add_argument('work_item_id')
    summary_parser.add_argument('--json', action='store_true', help='Output as JSON')
    summary_parser.set_defaults(func=cmd_summary)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_ERROR

    try:
        if args.func in _STANDALONE:
            return args.func(args)

        engine = build_engine(args)
        try:
            return args.func(args, engine)
        finally:
            engine.close()
    except GateInProgressError as e:
        print(f"In progress: {e}", file=sys.stderr)
        return EXIT_IN_PROGRESS
    except PhasegateError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == '__main__':
    sys.exit(main())
