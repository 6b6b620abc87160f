"""Result aggregation: fold run results into a Report and decide the exit status."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Sequence

from .logging_config import get_logger
from .models import Outcome, Report, ReportError, ReportWarning, RunResult

logger = get_logger("aggregator")

WARN_EMPTY_COLLECTION = "empty_collection"

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_SETUP_ERROR = 2
EXIT_INTERRUPTED = 130


def aggregate(
    run_results: Sequence[RunResult],
    *,
    collection: str,
    environment: str,
    started_at: datetime | None = None,
    finished_at: datetime | None = None,
    cancelled: bool = False,
    errors: Iterable[ReportError] = (),
    warnings: Iterable[ReportWarning] = (),
    secret_values: frozenset[str] = frozenset(),
) -> Report:
    """Build the Report for one collection+environment run.

    Results keep their given order. An empty run without errors is not a
    failure but carries an ``empty_collection`` warning.
    """
    counts = {outcome: 0 for outcome in Outcome}
    assertions_passed = assertions_failed = 0
    for r in run_results:
        counts[r.outcome] += 1
        for o in r.assertion_outcomes:
            if o.passed:
                assertions_passed += 1
            else:
                assertions_failed += 1

    errors = tuple(errors)
    warnings = list(warnings)
    if not run_results and not errors and not cancelled:
        message = f"Collection '{collection}' has no requests to run"
        logger.warning(message)
        warnings.append(ReportWarning(WARN_EMPTY_COLLECTION, message))

    if started_at is not None and finished_at is not None:
        duration_ms = (finished_at - started_at).total_seconds() * 1000.0
    else:
        duration_ms = sum(r.duration_ms for r in run_results)

    return Report(
        collection=collection,
        environment=environment,
        results=tuple(run_results),
        passed=counts[Outcome.PASSED],
        failed=counts[Outcome.FAILED],
        errored=counts[Outcome.NETWORK_ERROR] + counts[Outcome.ERROR],
        skipped=counts[Outcome.SKIPPED],
        assertions_passed=assertions_passed,
        assertions_failed=assertions_failed,
        duration_ms=duration_ms,
        started_at=started_at,
        finished_at=finished_at,
        cancelled=cancelled,
        warnings=tuple(warnings),
        errors=errors,
        secret_values=secret_values,
    )


def exit_code(reports: Report | Sequence[Report], interrupted: bool = False) -> int:
    """Process exit status for one report or a set of reports.

    130 when interrupted by a signal, 2 when any pair could not run at all,
    1 when any request failed or errored, otherwise 0. Warnings never fail.
    """
    if isinstance(reports, Report):
        reports = [reports]
    if interrupted:
        return EXIT_INTERRUPTED
    if any(r.errors for r in reports):
        return EXIT_SETUP_ERROR
    if any(not r.success for r in reports):
        return EXIT_FAILURES
    return EXIT_OK
