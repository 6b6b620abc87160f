"""CLI entry point for the bruin collection runner.

Exit codes: 0 all requests passed, 1 request or assertion failures,
2 usage or setup errors, 130 interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Any, Coroutine

# Use uvloop when installed
_HAS_UVLOOP = False
try:
    import uvloop
    _HAS_UVLOOP = True
except ImportError:
    pass

from rich.console import Console

from . import __version__
from .aggregator import EXIT_INTERRUPTED, EXIT_SETUP_ERROR
from .config import apply_overrides, load_config, load_matrix
from .exceptions import BruinConfigError, BruinError
from .logging_config import configure_logging, get_logger
from .models import RunConfig
from .runner import ReportPaths, RunOutcome, run_collection_path, run_matrix, run_root

logger = get_logger("cli")


def _run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run coroutine on uvloop when available, else the default asyncio loop."""
    if _HAS_UVLOOP:
        return uvloop.run(coro)
    return asyncio.run(coro)


def _parse_env_args(env_list: list[str] | None) -> dict[str, str]:
    """Parse repeated ``--env-var KEY=VALUE`` flags.

    Raises:
        BruinConfigError: for an entry without ``=`` or with an empty key
    """
    if not env_list:
        return {}
    out: dict[str, str] = {}
    for s in env_list:
        k, sep, v = s.partition("=")
        if not sep or not k.strip():
            raise BruinConfigError(f"--env-var expects KEY=VALUE, got {s!r}")
        out[k.strip()] = v.strip()
    return out


def _report_paths(args: argparse.Namespace) -> ReportPaths:
    return ReportPaths(
        json=Path(args.reporter_json) if args.reporter_json else None,
        junit=Path(args.reporter_junit) if args.reporter_junit else None,
        html=Path(args.reporter_html) if args.reporter_html else None,
    )


def _build_config(base: RunConfig, args: argparse.Namespace) -> RunConfig:
    """Apply CLI flags on top of the config file (or defaults)."""
    return apply_overrides(
        base,
        timeout_seconds=args.timeout,
        suite_timeout_seconds=args.suite_timeout,
        parallel_requests=getattr(args, "parallel_requests", None),
        concurrency=getattr(args, "concurrency", None),
        bail=True if args.bail else None,
        verify_tls=False if args.insecure else None,
        http2=False if args.no_http2 else None,
        delay_ms=args.delay,
    )


def _common_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--env-var",
        action="append",
        metavar="KEY=VALUE",
        dest="env_var",
        help="Override a variable (highest precedence, can be repeated)",
    )
    common.add_argument("--timeout", type=float, default=None, metavar="SEC", help="Per-request timeout in seconds")
    common.add_argument(
        "--suite-timeout",
        type=float,
        default=None,
        metavar="SEC",
        dest="suite_timeout",
        help="Cancel the run after SEC seconds; remaining requests are skipped",
    )
    common.add_argument("--bail", action="store_true", help="Stop a collection after its first failing request")
    common.add_argument("--delay", type=float, default=None, metavar="MS", help="Delay between requests (ms)")
    common.add_argument("--insecure", action="store_true", help="Do not verify TLS certificates")
    common.add_argument("--no-http2", action="store_true", dest="no_http2", help="Disable HTTP/2")
    common.add_argument("--reporter-json", metavar="PATH", dest="reporter_json", help="Write JSON report to PATH")
    common.add_argument("--reporter-junit", metavar="PATH", dest="reporter_junit", help="Write JUnit XML report to PATH")
    common.add_argument("--reporter-html", metavar="PATH", dest="reporter_html", help="Write HTML report to PATH")
    common.add_argument("-q", "--quiet", action="store_true", help="No console output (reports and exit code only)")
    return common


def build_parser() -> argparse.ArgumentParser:
    common = _common_parser()
    parser = argparse.ArgumentParser(
        prog="bruin",
        description="Run declarative HTTP request collections (.bru files) against a named environment.",
    )
    parser.add_argument("-v", "--version", action="version", version=f"bruin {__version__}")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Diagnostic log level on stderr (default: $BRUIN_LOG_LEVEL or WARNING)",
    )
    parser.add_argument(
        "--log-format", default=None, choices=["text", "json"], help="Diagnostic log format (default: text)"
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    run_p = sub.add_parser("run", parents=[common], help="Run one collection against one environment")
    run_p.add_argument(
        "collection", nargs="?", default=".", help="Collection directory (default: current directory)"
    )
    run_p.add_argument("--env", required=True, metavar="NAME", help="Environment name (environments/NAME.bru)")
    run_p.add_argument("-f", "--config", default=None, help="Path to YAML run config")
    run_p.add_argument(
        "--parallel-requests",
        type=int,
        default=None,
        metavar="N",
        dest="parallel_requests",
        help="Requests in flight at once; only honoured for collections without hooks",
    )

    matrix_p = sub.add_parser(
        "matrix",
        parents=[common],
        help="Run many collection/environment pairs concurrently (one report per pair)",
    )
    source = matrix_p.add_mutually_exclusive_group(required=True)
    source.add_argument("-f", "--config", dest="matrix", default=None, help="Path to matrix YAML (runs: ...)")
    source.add_argument("--root", default=None, help="Run every collection under this directory")
    matrix_p.add_argument(
        "--env",
        action="append",
        metavar="NAME",
        dest="envs",
        help="Environment for --root mode (can be repeated)",
    )
    matrix_p.add_argument(
        "--concurrency", type=int, default=None, metavar="N", help="Pairs in flight at once"
    )
    return parser


def _execute(args: argparse.Namespace, console: Console | None) -> RunOutcome:
    overrides = _parse_env_args(args.env_var)
    process_env = dict(os.environ)
    reports = _report_paths(args)
    if args.command == "run":
        base = load_config(args.config) if args.config else RunConfig()
        config = _build_config(base, args)
        return _run_async(
            run_collection_path(
                args.collection,
                args.env,
                config=config,
                overrides=overrides,
                process_env=process_env,
                reports=reports,
                console=console,
            )
        )
    if args.matrix:
        targets, base = load_matrix(args.matrix)
        return _run_async(
            run_matrix(
                targets,
                config=_build_config(base, args),
                overrides=overrides,
                process_env=process_env,
                reports=reports,
                console=console,
            )
        )
    if not args.envs:
        raise BruinConfigError("--root requires at least one --env NAME")
    return _run_async(
        run_root(
            args.root,
            args.envs,
            config=_build_config(RunConfig(), args),
            overrides=overrides,
            process_env=process_env,
            reports=reports,
            console=console,
        )
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help(sys.stderr)
        return EXIT_SETUP_ERROR

    if args.log_level or args.log_format:
        configure_logging(args.log_level, args.log_format)
    console = None if args.quiet else Console()
    try:
        outcome = _execute(args, console)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED
    except BruinError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return EXIT_SETUP_ERROR
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected error")
        print("Error: An unexpected error occurred. Check logs for details.", file=sys.stderr)
        return EXIT_SETUP_ERROR
    return outcome.exit_code


if __name__ == "__main__":
    sys.exit(main())
