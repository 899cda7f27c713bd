"""
CLI entry point for unirouter.

Usage:
    python main.py route --request request.json --tokens 1200 [--config config/router.json]
    python main.py rules [--config config/router.json]
    python main.py migrate legacy.json [--output router.json] [--keep-legacy]
    python main.py validate [--config config/router.json]
"""

import argparse
import json
import sys
from pathlib import Path

from unirouter.exceptions import ConfigurationError
from unirouter.logger import configure_logging
from unirouter.router_config import (
    load_router_config,
    migrate_config,
    normalize_config,
    validate_unified_config,
)
from unirouter.routing.conditions import ConditionEvaluator, describe_condition
from unirouter.routing.engine import UnifiedRouter


def _read_json(path):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def cmd_route(args):
    """Route a single request and print the decision."""
    config = load_router_config(args.config)
    base_dir = Path(args.config).resolve().parent if args.config else None
    router = UnifiedRouter.from_config(config, evaluator=ConditionEvaluator(base_dir=base_dir))

    request = _read_json(args.request) if args.request else {"model": args.model}
    result = router.evaluate(request, args.tokens, session_id=args.session, timeout=args.timeout)
    print(json.dumps(result.model_dump(), indent=2, default=str))


def cmd_rules(args):
    """List rules by priority."""
    config = load_router_config(args.config)
    router = UnifiedRouter.from_config(config)
    print(f"Default route: {config.router.default_route}\n")
    for rule in router.get_rules():
        state = "on " if rule.enabled else "off"
        print(
            f"  [{state}] {rule.priority:>4}  {rule.name:<16} "
            f"{describe_condition(rule.condition):<40} -> {rule.action.route}"
        )


def cmd_migrate(args):
    """Convert a legacy router config to the unified format."""
    raw = _read_json(args.source)
    migrated, changed, errors = migrate_config(raw, keep_legacy=args.keep_legacy)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        sys.exit(1)
    if not changed:
        print("Config is already in the unified format; nothing to do.")
        return

    text = json.dumps(migrated, indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(text + "\n", encoding="utf-8")
        print(f"Migrated config written to {args.output} ({len(migrated['Router']['rules'])} rules)")
    else:
        print(text)


def cmd_validate(args):
    """Validate a router config file."""
    path = args.config or "config/router.json"
    try:
        raw = _read_json(path)
    except (OSError, json.JSONDecodeError) as exc:
        print(f"Error: cannot read {path}: {exc}", file=sys.stderr)
        sys.exit(1)

    errors = validate_unified_config(normalize_config(raw).get("Router"))
    if errors:
        print(f"{path}: {len(errors)} problem(s)")
        for error in errors:
            print(f"  - {error}")
        sys.exit(1)
    print(f"{path}: OK")


def main():
    parser = argparse.ArgumentParser(
        description="unirouter - rule-based model routing"
    )
    parser.add_argument("--log-level", default=None, help="Logging level (debug, info, warn, error)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # route
    p_route = subparsers.add_parser("route", help="Route a single request")
    p_route.add_argument("--config", default=None, help="Router config JSON")
    p_route.add_argument("--request", default=None, help="Request body JSON file")
    p_route.add_argument("--model", default=None, help="Model string when no request file is given")
    p_route.add_argument("--tokens", type=int, default=0, help="Prompt token count")
    p_route.add_argument("--session", default=None, help="Session id")
    p_route.add_argument("--timeout", type=float, default=None, help="External predicate timeout (s)")

    # rules
    p_rules = subparsers.add_parser("rules", help="List rules by priority")
    p_rules.add_argument("--config", default=None, help="Router config JSON")

    # migrate
    p_migrate = subparsers.add_parser("migrate", help="Convert a legacy config")
    p_migrate.add_argument("source", help="Legacy config JSON")
    p_migrate.add_argument("--output", default=None, help="Write result here instead of stdout")
    p_migrate.add_argument("--keep-legacy", action="store_true", help="Keep the old block as LegacyRouter")

    # validate
    p_validate = subparsers.add_parser("validate", help="Validate a router config")
    p_validate.add_argument("--config", default=None, help="Router config JSON")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    configure_logging(level=args.log_level)

    commands = {
        "route": cmd_route,
        "rules": cmd_rules,
        "migrate": cmd_migrate,
        "validate": cmd_validate,
    }
    try:
        commands[args.command](args)
    except ConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
