"""Data models for the bruin collection runner.

Descriptors, environments, results and reports are immutable once built
(frozen dataclasses with slots). The only mutable model is Collection, which
the loader fills in as it walks the folder.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from .exceptions import BruinError, EnvironmentNotFoundError, ErrorCode, MalformedDescriptorError


class HttpMethod(str, Enum):
    """HTTP verbs a descriptor may use. Values are the Bru block tags."""

    GET = "get"
    POST = "post"
    PUT = "put"
    PATCH = "patch"
    DELETE = "delete"
    HEAD = "head"
    OPTIONS = "options"


class BodyMode(str, Enum):
    NONE = "none"
    JSON = "json"
    TEXT = "text"
    XML = "xml"
    GRAPHQL = "graphql"
    FORM_URLENCODED = "form-urlencoded"


class AuthMode(str, Enum):
    NONE = "none"
    INHERIT = "inherit"
    BEARER = "bearer"
    BASIC = "basic"


class Outcome(str, Enum):
    """Outcome of one descriptor execution."""

    PASSED = "passed"
    FAILED = "failed"  # at least one assertion failed
    NETWORK_ERROR = "network_error"  # timeout or connection failure
    ERROR = "error"  # malformed descriptor, script or variable error
    SKIPPED = "skipped"  # cancelled or bailed out


@dataclass(frozen=True, slots=True)
class KeyValue:
    """One ``key: value`` line of a dictionary block. Disabled lines start with ``~``."""

    name: str
    value: str
    enabled: bool = True


@dataclass(frozen=True, slots=True)
class Assertion:
    """Predicate over the response, e.g. ``res.status: eq 200``."""

    target: str
    operator: str
    expected: str = ""
    enabled: bool = True

    def describe(self) -> str:
        return f"{self.target} {self.operator} {self.expected}".strip()


@dataclass(frozen=True, slots=True)
class RequestDescriptor:
    """Declarative definition of one HTTP request plus its assertions and hooks.

    ``bodies`` and ``auth_params`` keep every body/auth block found in the file;
    ``body_mode`` and ``auth_mode`` select the one that is sent. Unknown blocks
    are kept verbatim in ``extensions`` as ``(tag, raw block text)`` pairs.
    """

    name: str
    method: HttpMethod
    url: str
    seq: int = 0
    meta_type: str = "http"
    meta_extra: tuple[KeyValue, ...] = ()
    headers: tuple[KeyValue, ...] = ()
    query: tuple[KeyValue, ...] = ()
    body_mode: BodyMode = BodyMode.NONE
    bodies: tuple[tuple[str, str], ...] = ()
    form: tuple[KeyValue, ...] = ()
    auth_mode: AuthMode = AuthMode.NONE
    auth_params: tuple[tuple[str, tuple[KeyValue, ...]], ...] = ()
    assertions: tuple[Assertion, ...] = ()
    pre_request_vars: tuple[KeyValue, ...] = ()
    post_response_vars: tuple[KeyValue, ...] = ()
    pre_request_script: str | None = None
    post_response_script: str | None = None
    tests: str | None = None
    docs: str | None = None
    extensions: tuple[tuple[str, str], ...] = ()

    def body_text(self) -> str | None:
        """Raw text of the active body block, or None."""
        for mode, text in self.bodies:
            if mode == self.body_mode.value:
                return text
        return None

    def auth_entries(self, mode: AuthMode | None = None) -> dict[str, str]:
        wanted = (mode or self.auth_mode).value
        for block_mode, entries in self.auth_params:
            if block_mode == wanted:
                return {kv.name: kv.value for kv in entries if kv.enabled}
        return {}

    @property
    def has_hooks(self) -> bool:
        """True if executing this descriptor can read or write run variables."""
        return bool(
            self.pre_request_script
            or self.post_response_script
            or any(kv.enabled for kv in self.post_response_vars)
            or any(kv.enabled for kv in self.pre_request_vars)
        )


@dataclass(frozen=True, slots=True)
class Environment:
    """Named, ordered set of variables. Names are unique within one environment."""

    name: str
    variables: tuple[KeyValue, ...] = ()
    secret_names: frozenset[str] = frozenset()

    def as_dict(self) -> dict[str, str]:
        return {kv.name: kv.value for kv in self.variables if kv.enabled}


@dataclass(frozen=True, slots=True)
class CollectionSettings:
    """Collection-wide defaults from ``collection.bru``, applied to every request."""

    headers: tuple[KeyValue, ...] = ()
    auth_mode: AuthMode = AuthMode.NONE
    auth_params: tuple[tuple[str, tuple[KeyValue, ...]], ...] = ()
    pre_request_vars: tuple[KeyValue, ...] = ()

    def auth_entries(self) -> dict[str, str]:
        for block_mode, entries in self.auth_params:
            if block_mode == self.auth_mode.value:
                return {kv.name: kv.value for kv in entries if kv.enabled}
        return {}


@dataclass(slots=True)
class LoadedRequest:
    """A descriptor file after parsing: either a descriptor or the parse error."""

    path: Path
    relative_path: str
    descriptor: RequestDescriptor | None = None
    error: MalformedDescriptorError | None = None

    @property
    def name(self) -> str:
        if self.descriptor is not None:
            return self.descriptor.name
        return Path(self.relative_path).stem

    @property
    def seq(self) -> int:
        return self.descriptor.seq if self.descriptor is not None else 0


@dataclass(slots=True)
class Collection:
    """Named group of request descriptors plus its environments."""

    name: str
    path: Path
    manifest: dict[str, Any] = field(default_factory=dict)
    requests: list[LoadedRequest] = field(default_factory=list)
    environments: dict[str, Environment] = field(default_factory=dict)
    settings: CollectionSettings = field(default_factory=CollectionSettings)

    def environment(self, name: str) -> Environment:
        try:
            return self.environments[name]
        except KeyError:
            raise EnvironmentNotFoundError(
                f"Environment '{name}' not found in collection '{self.name}'",
                context={"available": sorted(self.environments)},
            ) from None

    @property
    def has_hooks(self) -> bool:
        if any(kv.enabled for kv in self.settings.pre_request_vars):
            return True
        return any(r.descriptor is not None and r.descriptor.has_hooks for r in self.requests)


@dataclass(frozen=True, slots=True)
class ResolvedRequest:
    """Request after placeholder substitution, exactly as sent."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None


@dataclass(frozen=True, slots=True)
class ResponseSnapshot:
    """Raw response as received. Header names are lower-cased."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""
    elapsed_ms: float = 0.0
    reason: str = ""


@dataclass(frozen=True, slots=True)
class AssertionOutcome:
    assertion: Assertion
    passed: bool
    description: str
    actual: str = ""


@dataclass(frozen=True, slots=True)
class ReportWarning:
    """Non-fatal finding, kept apart from failures so consumers can filter."""

    code: str
    message: str
    request: str | None = None


@dataclass(frozen=True, slots=True)
class ReportError:
    """Run-level error that prevented a collection+environment pair from running."""

    code: ErrorCode
    message: str

    @classmethod
    def from_exception(cls, exc: BruinError) -> "ReportError":
        return cls(code=exc.code, message=exc.message)


@dataclass(frozen=True, slots=True)
class RunResult:
    """Append-only record of one descriptor execution."""

    request_name: str
    request_path: str
    seq: int
    timestamp: float
    duration_ms: float
    outcome: Outcome
    resolved_request: ResolvedRequest | None = None
    response: ResponseSnapshot | None = None
    assertion_outcomes: tuple[AssertionOutcome, ...] = ()
    error_code: ErrorCode | None = None
    error_message: str | None = None
    warnings: tuple[ReportWarning, ...] = ()

    @property
    def passed(self) -> bool:
        return self.outcome is Outcome.PASSED


@dataclass(frozen=True, slots=True)
class Report:
    """Aggregate outcome of one collection+environment run."""

    collection: str
    environment: str
    results: tuple[RunResult, ...] = ()
    passed: int = 0
    failed: int = 0
    errored: int = 0
    skipped: int = 0
    assertions_passed: int = 0
    assertions_failed: int = 0
    duration_ms: float = 0.0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    cancelled: bool = False
    warnings: tuple[ReportWarning, ...] = ()
    errors: tuple[ReportError, ...] = ()
    secret_values: frozenset[str] = frozenset()

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def success(self) -> bool:
        return not self.errors and not self.cancelled and self.failed == 0 and self.errored == 0

    def all_warnings(self) -> list[ReportWarning]:
        out = list(self.warnings)
        for r in self.results:
            out.extend(r.warnings)
        return out


@dataclass(slots=True)
class RunConfig:
    """Runtime configuration, from YAML and/or CLI flags."""

    timeout_seconds: float = 30.0
    suite_timeout_seconds: float | None = None
    concurrency: int = 4  # collection+environment pairs in flight
    parallel_requests: int = 1  # descriptors in flight within one pair (hook-free only)
    http2: bool = True
    verify_tls: bool = True
    follow_redirects: bool = True
    bail: bool = False
    delay_ms: float = 0.0


@dataclass(frozen=True, slots=True)
class RunTarget:
    """One (collection, environment) pair from the CI matrix."""

    collection_path: Path
    environment: str

    @property
    def label(self) -> str:
        return f"{self.collection_path.name}:{self.environment}"
