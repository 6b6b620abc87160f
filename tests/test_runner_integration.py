"""Integration tests: load, run and report through the runner with a mock transport."""

from __future__ import annotations

import asyncio
import xml.etree.ElementTree as ET
from pathlib import Path

import httpx
import orjson
import pytest
from conftest import GET_FACT_BRU, request_bru, status_transport, write_collection
from rich.console import Console

from bruin.aggregator import EXIT_FAILURES, EXIT_OK, EXIT_SETUP_ERROR
from bruin.exceptions import BruinRunnerError, ErrorCode
from bruin.models import RunConfig, RunTarget
from bruin.report import REDACTED_PLACEHOLDER
from bruin.runner import ReportPaths, run_collection_path, run_matrix, run_root

FAST = RunConfig(timeout_seconds=1.0, http2=False)


def test_report_paths_for_pair() -> None:
    paths = ReportPaths(json=Path("out/report.json"), html=Path("out/report.html"))
    pair = paths.for_pair("Cat Facts", "prod")
    assert pair.json == Path("out/report_Cat-Facts_prod.json")
    assert pair.html == Path("out/report_Cat-Facts_prod.html")
    assert pair.junit is None
    assert paths.for_pair("Cat Facts", "prod", occurrence=2).json == Path("out/report_Cat-Facts_prod_2.json")
    assert not ReportPaths().any()


def test_run_collection_path_writes_reports(cat_facts_dir: Path, tmp_path: Path) -> None:
    reports = ReportPaths(
        json=tmp_path / "r" / "report.json",
        junit=tmp_path / "r" / "junit.xml",
        html=tmp_path / "r" / "report.html",
    )
    outcome = asyncio.run(
        run_collection_path(
            cat_facts_dir,
            "prod",
            config=FAST,
            reports=reports,
            transport=status_transport(200),
            handle_signals=False,
        )
    )
    assert outcome.exit_code == EXIT_OK
    assert not outcome.interrupted
    data = orjson.loads(reports.json.read_bytes())
    assert data["results"][0]["request"]["url"] == "https://catfact.test/fact"
    assert ET.parse(reports.junit).getroot().find("testsuite").get("tests") == "1"
    assert "cat-facts" in reports.html.read_text(encoding="utf-8")


def test_run_collection_path_not_a_collection(tmp_path: Path) -> None:
    outcome = asyncio.run(run_collection_path(tmp_path / "nothing", "prod", config=FAST, handle_signals=False))
    report = outcome.reports[0]
    assert report.errors[0].code is ErrorCode.NOT_A_COLLECTION
    assert report.collection == "nothing"
    assert outcome.exit_code == EXIT_SETUP_ERROR


def test_run_collection_path_overrides_win(cat_facts_dir: Path) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json={})

    asyncio.run(
        run_collection_path(
            cat_facts_dir,
            "prod",
            config=FAST,
            overrides={"baseUrl": "http://localhost:9999"},
            transport=httpx.MockTransport(handler),
            handle_signals=False,
        )
    )
    assert seen == ["http://localhost:9999/fact"]


def test_run_matrix_per_pair_reports(tmp_path: Path) -> None:
    envs = {"prod": "vars {\n  baseUrl: https://prod.test\n}\n", "dev": "vars {\n  baseUrl: https://dev.test\n}\n"}
    cats = write_collection(tmp_path, "cats", {"get-fact.bru": GET_FACT_BRU}, environments=envs)
    dogs = write_collection(
        tmp_path, "dogs", {"d.bru": request_bru("Dogs", 1, "{{baseUrl}}/dogs", "assert {\n  res.status: eq 201\n}")},
        environments=envs,
    )
    targets = [RunTarget(cats, "prod"), RunTarget(cats, "dev"), RunTarget(dogs, "prod")]
    reports = ReportPaths(json=tmp_path / "out" / "report.json")
    outcome = asyncio.run(
        run_matrix(
            targets,
            config=FAST,
            reports=reports,
            transport=status_transport(200),
            handle_signals=False,
        )
    )
    assert [(r.collection, r.environment) for r in outcome.reports] == [
        ("cats", "prod"),
        ("cats", "dev"),
        ("dogs", "prod"),
    ]
    assert [r.success for r in outcome.reports] == [True, True, False]
    assert outcome.exit_code == EXIT_FAILURES
    for name in ("report_cats_prod.json", "report_cats_dev.json", "report_dogs_prod.json"):
        assert (tmp_path / "out" / name).exists()
    dev = orjson.loads((tmp_path / "out" / "report_cats_dev.json").read_bytes())
    assert dev["results"][0]["request"]["url"] == "https://dev.test/fact"


def test_run_matrix_requires_targets() -> None:
    with pytest.raises(BruinRunnerError):
        asyncio.run(run_matrix([], config=FAST, handle_signals=False))


def test_run_root_keeps_siblings(tmp_path: Path) -> None:
    write_collection(tmp_path, "cats", {"get-fact.bru": GET_FACT_BRU})
    (tmp_path / "scratch").mkdir()
    outcome = asyncio.run(
        run_root(tmp_path, ["prod"], config=FAST, transport=status_transport(200), handle_signals=False)
    )
    by_name = {r.collection: r for r in outcome.reports}
    assert by_name["cats"].success
    assert by_name["scratch"].errors[0].code is ErrorCode.NOT_A_COLLECTION
    assert outcome.exit_code == EXIT_SETUP_ERROR


def test_run_matrix_unreadable_environment_keeps_siblings(tmp_path: Path) -> None:
    bad = write_collection(tmp_path, "bad", {"get-fact.bru": GET_FACT_BRU})
    (bad / "bruno.json").write_bytes(orjson.dumps({"version": "1", "name": "Broken API", "type": "collection"}))
    (bad / "environments" / "prod.bru").write_bytes(b"vars {\n  baseUrl: \xff\xfe\n}\n")
    good = write_collection(tmp_path, "good", {"get-fact.bru": GET_FACT_BRU})
    outcome = asyncio.run(
        run_matrix(
            [RunTarget(bad, "prod"), RunTarget(good, "prod")],
            config=FAST,
            transport=status_transport(200),
            handle_signals=False,
        )
    )
    assert [r.passed for r in outcome.reports] == [0, 1]
    broken = outcome.reports[0]
    assert broken.collection == "Broken API"
    assert broken.errors[0].code is ErrorCode.MALFORMED_DESCRIPTOR
    assert outcome.exit_code == EXIT_SETUP_ERROR


def test_run_matrix_repeated_pair_keeps_every_report(tmp_path: Path) -> None:
    cats = write_collection(tmp_path, "cats", {"get-fact.bru": GET_FACT_BRU})
    outcome = asyncio.run(
        run_matrix(
            [RunTarget(cats, "prod"), RunTarget(cats, "prod")],
            config=FAST,
            reports=ReportPaths(json=tmp_path / "out" / "report.json"),
            transport=status_transport(200),
            handle_signals=False,
        )
    )
    assert len(outcome.reports) == 2
    assert sorted(p.name for p in (tmp_path / "out").iterdir()) == ["report_cats_prod.json", "report_cats_prod_2.json"]


def test_console_progress_redacts_secrets(tmp_path: Path) -> None:
    path = write_collection(
        tmp_path,
        "secret",
        {"get-fact.bru": request_bru("Fact", 1, "{{baseUrl}}/fact", "assert {\n  res.body.fact: eq {{apiKey}}\n}")},
        environments={
            "prod": "vars {\n  baseUrl: https://catfact.test\n  apiKey: s3cret-key\n}\n\nvars:secret [\n  apiKey\n]\n"
        },
    )
    console = Console(record=True, width=200)
    outcome = asyncio.run(
        run_collection_path(
            path, "prod", config=FAST, console=console, transport=status_transport(200), handle_signals=False
        )
    )
    assert outcome.reports[0].failed == 1
    text = console.export_text()
    assert "s3cret-key" not in text
    assert REDACTED_PLACEHOLDER in text


def test_suite_timeout_skips_remaining(tmp_path: Path) -> None:
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.5)
        return httpx.Response(200)

    path = write_collection(
        tmp_path,
        "slow",
        {f"r{i}.bru": request_bru(f"R{i}", i, "{{baseUrl}}/r") for i in range(1, 4)},
    )
    outcome = asyncio.run(
        run_collection_path(
            path,
            "prod",
            config=RunConfig(timeout_seconds=5, suite_timeout_seconds=0.2, http2=False),
            transport=httpx.MockTransport(slow),
            handle_signals=False,
        )
    )
    report = outcome.reports[0]
    assert report.cancelled
    assert report.skipped == 3
    assert outcome.exit_code == EXIT_FAILURES
