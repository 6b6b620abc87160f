"""Execution runner: load, run, report. One Report per collection+environment pair."""

from __future__ import annotations

import asyncio
import signal
from collections import Counter
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Sequence

import httpx
from rich.console import Console

from .aggregator import aggregate, exit_code
from .engine import run, run_many
from .exceptions import BruinError, BruinRunnerError, MalformedDescriptorError, NotACollectionError
from .loader import load_collection, scan_collections
from .logging_config import get_logger
from .models import Collection, Report, ReportError, RunConfig, RunResult, RunTarget
from .report import generate_html_report, generate_json_report, generate_junit_report, print_result, print_summary

logger = get_logger("runner")


@dataclass(slots=True)
class ReportPaths:
    """Where to write reports. Unset paths are not written."""

    json: Path | None = None
    junit: Path | None = None
    html: Path | None = None

    def for_pair(self, collection: str, environment: str, occurrence: int = 1) -> "ReportPaths":
        """Distinct paths per pair: ``<stem>_<collection>_<env><suffix>``.

        A pair that appears more than once gets ``_<occurrence>`` appended from
        its second appearance on.
        """
        repeat = f"_{occurrence}" if occurrence > 1 else ""

        def one(p: Path | None) -> Path | None:
            if p is None:
                return None
            return p.parent / f"{p.stem}_{_slug(collection)}_{_slug(environment)}{repeat}{p.suffix}"

        return ReportPaths(json=one(self.json), junit=one(self.junit), html=one(self.html))

    def any(self) -> bool:
        return any(p is not None for p in (self.json, self.junit, self.html))


@dataclass(slots=True)
class RunOutcome:
    """Reports of a CLI invocation plus whether it was interrupted by a signal."""

    reports: list[Report] = field(default_factory=list)
    interrupted: bool = False

    @property
    def exit_code(self) -> int:
        return exit_code(self.reports, self.interrupted)


def _slug(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "-" for c in name) or "unnamed"


class _SignalCancel:
    """Route SIGINT/SIGTERM to the run's cancel event for a graceful partial report."""

    def __init__(self, cancel_event: asyncio.Event) -> None:
        self.cancel_event = cancel_event
        self.interrupted = False
        self._installed: list[int] = []
        self._previous: dict[int, Any] = {}

    def _fire(self, signum: int) -> None:
        if not self.interrupted:
            logger.info("Shutdown signal received (signal %d), cancelling remaining requests...", signum)
        self.interrupted = True
        self.cancel_event.set()

    def __enter__(self) -> "_SignalCancel":
        loop = asyncio.get_running_loop()
        signals = [signal.SIGINT]
        if hasattr(signal, "SIGTERM"):
            signals.append(signal.SIGTERM)
        for sig in signals:
            try:
                loop.add_signal_handler(sig, self._fire, int(sig))
                self._installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Windows event loops: fall back to signal.signal, hop onto the loop thread
                self._previous[sig] = signal.signal(
                    sig, lambda signum, frame: loop.call_soon_threadsafe(self._fire, signum)
                )
        return self

    def __exit__(self, *exc: object) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._installed:
            loop.remove_signal_handler(sig)
        for sig, previous in self._previous.items():
            signal.signal(sig, previous)


def write_reports(report: Report, paths: ReportPaths, console: Console | None = None) -> None:
    if paths.json:
        generate_json_report(paths.json, report)
        if console:
            console.print(f"[dim]JSON report:[/dim] {paths.json}")
    if paths.junit:
        generate_junit_report(paths.junit, report)
        if console:
            console.print(f"[dim]JUnit report:[/dim] {paths.junit}")
    if paths.html:
        generate_html_report(paths.html, report)
        if console:
            console.print(f"[green]Report written to[/green] {paths.html}")


def _error_report(collection: str, environment: str, error: BruinError) -> Report:
    now = datetime.now(timezone.utc)
    return aggregate(
        [],
        collection=collection,
        environment=environment,
        started_at=now,
        finished_at=now,
        errors=[ReportError.from_exception(error)],
    )


async def _load(path: Path) -> Collection:
    return await asyncio.to_thread(load_collection, path)


def _error_name(path: Path, error: BruinError) -> str:
    """Manifest name when the manifest was read, else the directory name."""
    return str(error.context.get("collection") or path.name)


def _printer(console: Console | None) -> Any:
    if console is None:
        return None

    def on_result(result: RunResult, secrets: frozenset[str]) -> None:
        print_result(result, console, secrets)

    return on_result


async def run_collection_path(
    collection_path: str | Path,
    environment: str,
    *,
    config: RunConfig | None = None,
    overrides: Mapping[str, str] | None = None,
    process_env: Mapping[str, str] | None = None,
    reports: ReportPaths | None = None,
    console: Console | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    handle_signals: bool = True,
) -> RunOutcome:
    """Load one collection, run it against environment, write reports.

    Structural problems (not a collection, malformed environment file) and
    unknown environments end up as Report-level errors, never exceptions.
    """
    config = config or RunConfig()
    path = Path(collection_path)
    cancel_event = asyncio.Event()
    signals = _SignalCancel(cancel_event) if handle_signals else None
    try:
        collection = await _load(path)
    except (NotACollectionError, MalformedDescriptorError) as e:
        logger.error("Cannot load collection %s: %s", path, e)
        report = _error_report(_error_name(path, e), environment, e)
    else:
        with signals or nullcontext():
            report = await run(
                collection,
                environment,
                config.parallel_requests,
                config=config,
                process_env=process_env,
                overrides=overrides,
                transport=transport,
                cancel_event=cancel_event,
                on_result=_printer(console),
            )

    outcome = RunOutcome([report], interrupted=bool(signals and signals.interrupted))
    _finish(outcome, reports, console, per_pair=False)
    return outcome


def _finish(outcome: RunOutcome, reports: ReportPaths | None, console: Console | None, per_pair: bool) -> None:
    seen: Counter[tuple[str, str]] = Counter()
    for report in outcome.reports:
        if console is not None:
            print_summary(report, console)
        if reports is not None and reports.any():
            paths = reports
            if per_pair:
                pair = (report.collection, report.environment)
                seen[pair] += 1
                paths = reports.for_pair(*pair, occurrence=seen[pair])
            write_reports(report, paths, console)


async def run_matrix(
    targets: Sequence[RunTarget],
    *,
    config: RunConfig | None = None,
    overrides: Mapping[str, str] | None = None,
    process_env: Mapping[str, str] | None = None,
    reports: ReportPaths | None = None,
    console: Console | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    handle_signals: bool = True,
    load_errors: Sequence[Report] = (),
) -> RunOutcome:
    """Run many collection+environment pairs concurrently, one report file set per pair.

    A collection that fails to load yields an error Report for each of its
    pairs; sibling pairs still run.

    Raises:
        BruinRunnerError: if targets is empty
    """
    if not targets and not load_errors:
        raise BruinRunnerError("No collection/environment pairs to run")
    config = config or RunConfig()
    cancel_event = asyncio.Event()

    collections: dict[Path, Collection | BruinError] = {}
    for target in targets:
        if target.collection_path in collections:
            continue
        try:
            collections[target.collection_path] = await _load(target.collection_path)
        except (NotACollectionError, MalformedDescriptorError) as e:
            logger.error("Cannot load collection %s: %s", target.collection_path, e)
            collections[target.collection_path] = e

    runnable: list[tuple[Collection, str]] = []
    for target in targets:
        loaded = collections[target.collection_path]
        if isinstance(loaded, Collection):
            runnable.append((loaded, target.environment))

    signals = _SignalCancel(cancel_event) if handle_signals else None
    with signals or nullcontext():
        ran = await run_many(
            runnable,
            config=config,
            process_env=process_env,
            overrides=overrides,
            transport=transport,
            cancel_event=cancel_event,
            on_result=_printer(console),
        )

    # Reports in target order, error reports in place of unloadable collections
    ran_iter = iter(ran)
    ordered: list[Report] = list(load_errors)
    for target in targets:
        loaded = collections[target.collection_path]
        if isinstance(loaded, Collection):
            ordered.append(next(ran_iter))
        else:
            ordered.append(_error_report(_error_name(target.collection_path, loaded), target.environment, loaded))

    outcome = RunOutcome(ordered, interrupted=bool(signals and signals.interrupted))
    _finish(outcome, reports, console, per_pair=True)
    return outcome


async def run_root(
    root: str | Path,
    environments: Sequence[str],
    **kwargs: Any,
) -> RunOutcome:
    """Discover every collection under root and run each against every environment.

    Subdirectories that are not collections produce error Reports; the others still run.
    """
    handles, errors = await asyncio.to_thread(scan_collections, root)
    targets = [RunTarget(collection_path=h.path, environment=env) for h in handles for env in environments]
    load_errors = [
        _error_report(_error_name(Path(e.path), e), env, e) for e in errors for env in environments
    ]
    return await run_matrix(targets, load_errors=load_errors, **kwargs)
