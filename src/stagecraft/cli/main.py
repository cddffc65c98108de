"""Command line entry point."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from stagecraft.cli.state import handle_state_command, register_state_parser
from stagecraft.core.errors import main_with_error_handling
from stagecraft.logging import configure_logging


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("topology", help="Path to topology YAML file")
    parser.add_argument("--state", dest="state_path", help="State file path")
    parser.add_argument("--config", dest="config_path", help="Policy config file")
    parser.add_argument(
        "--flag",
        dest="flags",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Override a topology flag (repeatable)",
    )
    parser.add_argument(
        "--output", choices=["text", "json"], default="text", help="Output format"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stagecraft", description="Two-stage convergent infrastructure orchestrator"
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "console"],
        default="console",
        help="Log renderer (default: console)",
    )
    subparsers = parser.add_subparsers(dest="command")

    # plan command (dry-run)
    plan_parser = subparsers.add_parser("plan", help="Preview what apply would change")
    _add_common_arguments(plan_parser)
    plan_parser.add_argument(
        "--destroy", action="store_true", help="Preview a destroy instead of an apply"
    )

    apply_parser = subparsers.add_parser("apply", help="Converge the topology")
    _add_common_arguments(apply_parser)
    apply_parser.add_argument(
        "--stage",
        choices=["infrastructure", "all"],
        default="all",
        help="Stop after the infrastructure stage, or run both (default: all)",
    )
    apply_parser.add_argument(
        "--prune", action="store_true", help="Destroy recorded nodes no longer declared"
    )
    apply_parser.add_argument(
        "--backend",
        choices=["live", "memory"],
        default="live",
        help="Provider backends (memory runs against in-process fakes)",
    )

    destroy_parser = subparsers.add_parser("destroy", help="Tear down every tracked node")
    _add_common_arguments(destroy_parser)
    destroy_parser.add_argument("--yes", "-y", action="store_true", help="Skip confirmation")
    destroy_parser.add_argument(
        "--backend", choices=["live", "memory"], default="live", help="Provider backends"
    )

    register_state_parser(subparsers)
    return parser


@main_with_error_handling()
def run(args: argparse.Namespace) -> int:
    if args.command == "plan":
        from stagecraft.cli.plan import plan_command

        return plan_command(
            args.topology,
            state_path=args.state_path,
            config_path=args.config_path,
            flags=args.flags,
            destroy=args.destroy,
            output_format=args.output,
            verbose=args.verbose,
        )

    if args.command == "apply":
        from stagecraft.cli.apply import apply_command

        return apply_command(
            args.topology,
            state_path=args.state_path,
            config_path=args.config_path,
            flags=args.flags,
            stage=args.stage,
            prune=args.prune,
            backend=args.backend,
            output_format=args.output,
            verbose=args.verbose,
        )

    if args.command == "destroy":
        from stagecraft.cli.destroy import destroy_command

        return destroy_command(
            args.topology,
            state_path=args.state_path,
            config_path=args.config_path,
            flags=args.flags,
            backend=args.backend,
            yes=args.yes,
            output_format=args.output,
        )

    if args.command == "state":
        return handle_state_command(args)

    return 1


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        sys.exit(1)

    configure_logging(
        logging.DEBUG if getattr(args, "verbose", False) else logging.WARNING,
        json=args.log_format == "json",
    )
    sys.exit(run(args))


if __name__ == "__main__":  # pragma: no cover
    main()
