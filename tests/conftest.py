"""Pytest fixtures for bruin tests."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import httpx
import orjson
import pytest

GET_FACT_BRU = """meta {
  name: Get fact
  type: http
  seq: 1
}

get {
  url: {{baseUrl}}/fact
  body: none
  auth: none
}

assert {
  res.status: eq 200
}
"""

PROD_ENV_BRU = """vars {
  baseUrl: https://catfact.test
}
"""


def write_collection(
    root: Path,
    name: str,
    requests: dict[str, str],
    environments: dict[str, str] | None = None,
    collection_bru: str | None = None,
) -> Path:
    """Create a collection directory: manifest, environments/ and request files."""
    path = root / name
    (path / "environments").mkdir(parents=True)
    (path / "bruno.json").write_bytes(orjson.dumps({"version": "1", "name": name, "type": "collection"}))
    for env_name, text in (environments if environments is not None else {"prod": PROD_ENV_BRU}).items():
        (path / "environments" / f"{env_name}.bru").write_text(text, encoding="utf-8")
    for rel, text in requests.items():
        f = path / rel
        f.parent.mkdir(parents=True, exist_ok=True)
        f.write_text(text, encoding="utf-8")
    if collection_bru is not None:
        (path / "collection.bru").write_text(collection_bru, encoding="utf-8")
    return path


def request_bru(name: str, seq: int, url: str, *blocks: str, method: str = "get") -> str:
    """Small .bru request; extra blocks are appended verbatim."""
    text = f"meta {{\n  name: {name}\n  seq: {seq}\n}}\n\n{method} {{\n  url: {url}\n}}\n"
    for block in blocks:
        text += "\n" + block.strip("\n") + "\n"
    return text


def status_transport(status: int, body: dict | None = None) -> httpx.MockTransport:
    """MockTransport answering every request with status and a JSON body."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=body if body is not None else {"fact": "Cats sleep a lot.", "length": 17})

    return httpx.MockTransport(handler)


@pytest.fixture
def cat_facts_dir(tmp_path: Path) -> Path:
    """The cat-facts collection: one GET /fact request asserting status 200."""
    return write_collection(tmp_path, "cat-facts", {"get-fact.bru": GET_FACT_BRU})


@pytest.fixture
def make_collection(tmp_path: Path) -> Callable[..., Path]:
    def _make(name: str, requests: dict[str, str], **kwargs: object) -> Path:
        return write_collection(tmp_path, name, requests, **kwargs)  # type: ignore[arg-type]

    return _make
