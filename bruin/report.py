"""Report writers: JSON, JUnit XML, plain HTML, and the rich console summary.

Everything written to disk goes through report_to_dict(), which masks query
strings in URLs, redacts sensitive headers and replaces secret environment
values wherever they appear.
"""

from __future__ import annotations

import re
import sys
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urlparse, urlunparse
from xml.dom import minidom

import orjson
from jinja2 import Environment, PackageLoader, select_autoescape
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__ as bruin_version
from .models import Outcome, Report, RunResult

# Headers that must be redacted in reports (case-insensitive)
SENSITIVE_HEADER_NAMES = frozenset(
    k.lower()
    for k in (
        "Authorization",
        "Cookie",
        "Set-Cookie",
        "X-Api-Key",
        "X-Auth-Token",
        "Api-Key",
        "ApiKey",
        "Token",
        "Proxy-Authorization",
    )
)
REDACTED_PLACEHOLDER = "[REDACTED]"
MAX_BODY_CHARS = 2000

OUTCOME_STYLES = {
    Outcome.PASSED: ("green", "PASS"),
    Outcome.FAILED: ("red", "FAIL"),
    Outcome.NETWORK_ERROR: ("red", "NET "),
    Outcome.ERROR: ("magenta", "ERR "),
    Outcome.SKIPPED: ("yellow", "SKIP"),
}


def mask_url(url: str, max_path_length: int = 120) -> str:
    """Remove query string and fragment from URL to avoid leaking tokens in reports."""
    if not url or not url.strip():
        return url
    try:
        parsed = urlparse(url)
        clean = urlunparse((parsed.scheme, parsed.netloc, parsed.path or "", "", "", ""))
    except ValueError:
        clean = url.split("?", 1)[0]
    if len(clean) > max_path_length:
        clean = clean[: max_path_length - 3] + "..."
    return clean


def redact_secrets(text: str | None, secrets: frozenset[str] | set[str]) -> str:
    """Replace every secret value occurring in text."""
    if not text:
        return ""
    # Longest first so a secret containing another is replaced whole
    for secret in sorted(secrets, key=len, reverse=True):
        if secret:
            text = text.replace(secret, REDACTED_PLACEHOLDER)
    return text


def mask_error_message(msg: str | None, max_length: int = 200, secrets: frozenset[str] = frozenset()) -> str:
    """Truncate error message, redact URLs and secrets."""
    if not msg:
        return ""
    msg = redact_secrets(msg, secrets)
    msg = re.sub(r"https?://[^\s,;]+", lambda m: mask_url(m.group(0)), msg)
    if len(msg) > max_length:
        return msg[: max_length - 3] + "..."
    return msg


def redact_headers(headers: dict[str, str], secrets: frozenset[str] = frozenset()) -> dict[str, str]:
    return {
        k: REDACTED_PLACEHOLDER if k.lower() in SENSITIVE_HEADER_NAMES else redact_secrets(v, secrets)
        for k, v in headers.items()
    }


def _truncate(text: str | None, limit: int = MAX_BODY_CHARS) -> str | None:
    if text is None or len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _iso(dt: datetime | None) -> str | None:
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ") if dt else None


def result_to_dict(result: RunResult, secrets: frozenset[str] = frozenset()) -> dict[str, Any]:
    request = result.resolved_request
    response = result.response
    return {
        "name": result.request_name,
        "path": result.request_path,
        "seq": result.seq,
        "outcome": result.outcome.value,
        "timestamp": datetime.fromtimestamp(result.timestamp, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "duration_ms": round(result.duration_ms, 2),
        "request": None
        if request is None
        else {
            "method": request.method,
            "url": mask_url(redact_secrets(request.url, secrets)),
            "headers": redact_headers(request.headers, secrets),
            "body": _truncate(redact_secrets(request.body, secrets)) if request.body is not None else None,
        },
        "response": None
        if response is None
        else {
            "status": response.status,
            "reason": response.reason,
            "headers": redact_headers(response.headers, secrets),
            "body": _truncate(redact_secrets(response.body, secrets)),
            "elapsed_ms": round(response.elapsed_ms, 2),
        },
        "assertions": [
            {
                "assertion": o.assertion.describe(),
                "passed": o.passed,
                "description": redact_secrets(o.description, secrets),
            }
            for o in result.assertion_outcomes
        ],
        "error_code": result.error_code.value if result.error_code else None,
        "error": mask_error_message(result.error_message, 500, secrets) or None,
        "warnings": [{"code": w.code, "message": w.message} for w in result.warnings],
    }


def report_to_dict(report: Report) -> dict[str, Any]:
    """Stable, redacted JSON shape of a Report."""
    secrets = report.secret_values
    return {
        "collection": report.collection,
        "environment": report.environment,
        "success": report.success,
        "cancelled": report.cancelled,
        "start_datetime": _iso(report.started_at),
        "end_datetime": _iso(report.finished_at),
        "duration_ms": round(report.duration_ms, 2),
        "summary": {
            "total": report.total,
            "passed": report.passed,
            "failed": report.failed,
            "errored": report.errored,
            "skipped": report.skipped,
            "assertions_passed": report.assertions_passed,
            "assertions_failed": report.assertions_failed,
        },
        "errors": [{"code": e.code.value, "message": mask_error_message(e.message, 500, secrets)} for e in report.errors],
        "warnings": [
            {"code": w.code, "message": w.message, "request": w.request} for w in report.all_warnings()
        ],
        "results": [result_to_dict(r, secrets) for r in report.results],
    }


def _prepare(output_path: str | Path) -> Path:
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    return out


def generate_json_report(output_path: str | Path, report: Report) -> None:
    """Write machine-readable JSON report."""
    payload = report_to_dict(report)
    payload["bruin_version"] = bruin_version
    _prepare(output_path).write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))


def generate_junit_report(output_path: str | Path, report: Report) -> None:
    """Write JUnit XML report for CI: one testcase per request, failures carry the assertion messages."""
    data = report_to_dict(report)
    suite_name = f"bruin.{report.collection}.{report.environment}"
    testsuite = ET.Element(
        "testsuite",
        name=suite_name,
        tests=str(report.total),
        failures=str(report.failed),
        errors=str(report.errored + len(report.errors)),
        skipped=str(report.skipped),
        time=f"{report.duration_ms / 1000:.3f}",
    )
    if report.started_at:
        testsuite.set("timestamp", report.started_at.strftime("%Y-%m-%dT%H:%M:%S"))

    for err in data["errors"]:
        testcase = ET.SubElement(testsuite, "testcase", name="setup", classname=suite_name, time="0.000")
        error = ET.SubElement(testcase, "error", message=err["message"], type=err["code"])
        error.text = err["message"]

    for result, item in zip(report.results, data["results"]):
        testcase = ET.SubElement(
            testsuite,
            "testcase",
            name=result.request_name,
            classname=f"{suite_name}.{result.request_path}",
            time=f"{result.duration_ms / 1000:.3f}",
        )
        if result.outcome is Outcome.FAILED:
            failed = [a["description"] for a in item["assertions"] if not a["passed"]]
            failure = ET.SubElement(testcase, "failure", message=failed[0] if failed else "assertion failed")
            failure.text = "\n".join(failed)
        elif result.outcome in (Outcome.NETWORK_ERROR, Outcome.ERROR):
            code = item["error_code"] or "ERROR"
            error = ET.SubElement(testcase, "error", message=item["error"] or code, type=code)
            error.text = item["error"] or ""
        elif result.outcome is Outcome.SKIPPED:
            ET.SubElement(testcase, "skipped", message=item["error"] or "skipped")
        if item["response"] is not None:
            system_out = ET.SubElement(testcase, "system-out")
            system_out.text = (
                f"{item['request']['method']} {item['request']['url']} -> "
                f"{item['response']['status']} in {item['response']['elapsed_ms']}ms"
            )

    root = ET.Element("testsuites")
    root.append(testsuite)
    xml_str = minidom.parseString(ET.tostring(root, encoding="unicode", method="xml")).toprettyxml(indent="  ")
    _prepare(output_path).write_text(xml_str, encoding="utf-8")


def generate_html_report(output_path: str | Path, report: Report) -> None:
    """Write a plain single-file HTML report."""
    env = Environment(
        loader=PackageLoader("bruin", "templates"),
        autoescape=select_autoescape(["html", "xml"]),
    )
    template = env.get_template("report.html")
    html = template.render(
        report=report_to_dict(report),
        generated_at=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"),
        bruin_version=bruin_version,
        python_version=f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
    )
    _prepare(output_path).write_text(html, encoding="utf-8")


def print_result(result: RunResult, console: Console, secrets: frozenset[str] = frozenset()) -> None:
    """One progress line per request, plus the failing assertions or the error."""
    style, label = OUTCOME_STYLES[result.outcome]
    status = f" {result.response.status}" if result.response is not None else ""
    console.print(
        f"[{style}]{label}[/{style}] {escape(result.request_path)}{status} [dim]({result.duration_ms:.0f} ms)[/dim]",
        highlight=False,
    )
    for o in result.assertion_outcomes:
        if not o.passed:
            console.print(f"      [red]x[/red] {escape(o.assertion.describe())}: {escape(redact_secrets(o.description, secrets))}")
    if result.outcome in (Outcome.NETWORK_ERROR, Outcome.ERROR) and result.error_message:
        console.print(f"      [red]{escape(mask_error_message(result.error_message, 300, secrets))}[/red]", highlight=False)


def print_summary(report: Report, console: Console) -> None:
    """End-of-run summary table for one collection+environment pair."""
    table = Table(title=escape(f"{report.collection} [{report.environment}]"), title_justify="left")
    table.add_column("", style="cyan")
    table.add_column("Requests", justify="right")
    table.add_column("Assertions", justify="right")
    table.add_row("Passed", str(report.passed), str(report.assertions_passed), style="green")
    table.add_row("Failed", str(report.failed), str(report.assertions_failed), style="red" if report.failed else None)
    table.add_row("Errored", str(report.errored), "-", style="red" if report.errored else None)
    table.add_row("Skipped", str(report.skipped), "-", style="yellow" if report.skipped else None)
    table.add_row("Total", str(report.total), str(report.assertions_passed + report.assertions_failed))
    console.print(table)

    for err in report.errors:
        console.print(f"[bold red]{err.code.value}[/bold red]: {escape(mask_error_message(err.message, 300, report.secret_values))}")
    for w in report.all_warnings():
        where = f" ({w.request})" if w.request else ""
        console.print(f"[yellow]warning[/yellow] {w.code}{escape(where)}: {escape(w.message)}", highlight=False)
    if report.cancelled:
        console.print("[yellow]Run was cancelled; remaining requests were skipped.[/yellow]")
    verdict = "[bold green]PASSED[/bold green]" if report.success else "[bold red]FAILED[/bold red]"
    console.print(f"{verdict} in {report.duration_ms / 1000:.2f}s")
