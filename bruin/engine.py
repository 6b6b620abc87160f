"""Execution engine: resolve, send, assert, hook. One context per collection+environment.

Each call to run() owns its state: the HTTP client (unless one is passed in),
the runtime variables written by post-response hooks, and the list of run
results. Nothing is shared between contexts, so run_many() can execute
independent pairs concurrently.

Within one context descriptors run in declared order. Parallel execution
inside a context is opt-in (concurrency > 1) and refused when any descriptor
has hooks, because later requests may read variables set by earlier ones.

Failure isolation:
- malformed descriptor, script or variable errors -> ERROR result, continue
- timeout / connection failure -> NETWORK_ERROR result, continue
- failed assertions -> FAILED result, continue
- cancel_event set -> in-flight call cancelled, remaining descriptors SKIPPED
"""

from __future__ import annotations

import asyncio
import base64
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Mapping, Sequence, TypeVar
from urllib.parse import parse_qsl, urlencode, urlsplit

import httpx
import orjson

from .aggregator import aggregate
from .assertions import evaluate_assertion
from .environment import ResolvedEnvironment, resolve
from .exceptions import (
    BruinError,
    CyclicVariableReferenceError,
    EnvironmentNotFoundError,
    ErrorCode,
    ScriptError,
)
from .logging_config import get_logger
from .models import (
    AuthMode,
    BodyMode,
    Collection,
    CollectionSettings,
    LoadedRequest,
    Outcome,
    ReportError,
    Report,
    ReportWarning,
    RequestDescriptor,
    ResolvedRequest,
    ResponseSnapshot,
    RunConfig,
    RunResult,
)
from .scripting import HookPhase, ScriptContext, run_script, run_vars_block

logger = get_logger("engine")

DEFAULT_MAX_CONNECTIONS = 100
DEFAULT_MAX_KEEPALIVE = 20
DEFAULT_KEEPALIVE_EXPIRY = 30.0
# Nanoseconds to milliseconds conversion
NS_TO_MS = 1_000_000

CONTENT_TYPES = {
    BodyMode.JSON: "application/json",
    BodyMode.GRAPHQL: "application/json",
    BodyMode.TEXT: "text/plain",
    BodyMode.XML: "application/xml",
    BodyMode.FORM_URLENCODED: "application/x-www-form-urlencoded",
}

WARN_PARALLELISM_REFUSED = "parallelism_refused"
WARN_TESTS_NOT_EXECUTED = "tests_block_not_executed"

ResultCallback = Callable[[RunResult, frozenset[str]], None]
T = TypeVar("T")


class _Cancelled(Exception):
    """Raised internally when the run-level cancel event fires mid-request."""


def create_client(config: RunConfig | None = None, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    """Create the async HTTP client for one execution context.

    Args:
        config: Run configuration (timeouts, HTTP/2, TLS verification, redirects)
        transport: Optional transport, e.g. httpx.MockTransport in tests

    Returns:
        Configured AsyncClient; the caller closes it
    """
    config = config or RunConfig()
    limits = httpx.Limits(
        max_connections=DEFAULT_MAX_CONNECTIONS,
        max_keepalive_connections=DEFAULT_MAX_KEEPALIVE,
        keepalive_expiry=DEFAULT_KEEPALIVE_EXPIRY,
    )
    return httpx.AsyncClient(
        http2=config.http2,
        timeout=config.timeout_seconds,
        limits=limits,
        verify=config.verify_tls,
        follow_redirects=config.follow_redirects,
        transport=transport,
    )


def _request_vars(settings: CollectionSettings, descriptor: RequestDescriptor) -> dict[str, str]:
    out = {kv.name: kv.value for kv in settings.pre_request_vars if kv.enabled}
    out.update({kv.name: kv.value for kv in descriptor.pre_request_vars if kv.enabled})
    return out


def _set_header(headers: dict[str, str], name: str, value: str) -> None:
    """Set a header, replacing any existing one regardless of case."""
    for existing in [k for k in headers if k.lower() == name.lower()]:
        del headers[existing]
    headers[name] = value


def _has_header(headers: dict[str, str], name: str) -> bool:
    return any(k.lower() == name.lower() for k in headers)


def build_request(
    descriptor: RequestDescriptor,
    resolved: ResolvedEnvironment,
    settings: CollectionSettings | None = None,
    warnings: list[ReportWarning] | None = None,
    extra_headers: Mapping[str, str] | None = None,
) -> ResolvedRequest:
    """Substitute placeholders and assemble the request exactly as it will be sent."""
    settings = settings or CollectionSettings()
    interp = resolved.interpolate

    url = interp(descriptor.url, warnings)
    enabled_query = [(kv.name, interp(kv.value, warnings)) for kv in descriptor.query if kv.enabled]
    if enabled_query:
        present = {k for k, _ in parse_qsl(urlsplit(url).query, keep_blank_values=True)}
        missing = [(k, v) for k, v in enabled_query if k not in present]
        if missing:
            url = f"{url}{'&' if '?' in url else '?'}{urlencode(missing)}"

    headers: dict[str, str] = {}
    for kv in (*settings.headers, *descriptor.headers):
        if kv.enabled:
            _set_header(headers, kv.name, interp(kv.value, warnings))
    for name, value in (extra_headers or {}).items():
        _set_header(headers, name, value)

    if descriptor.auth_mode is AuthMode.INHERIT:
        auth_mode, auth = settings.auth_mode, settings.auth_entries()
    else:
        auth_mode, auth = descriptor.auth_mode, descriptor.auth_entries()
    if not _has_header(headers, "Authorization"):
        if auth_mode is AuthMode.BEARER and auth.get("token"):
            headers["Authorization"] = f"Bearer {interp(auth['token'], warnings)}"
        elif auth_mode is AuthMode.BASIC:
            user = interp(auth.get("username", ""), warnings)
            password = interp(auth.get("password", ""), warnings)
            token = base64.b64encode(f"{user}:{password}".encode("utf-8")).decode("ascii")
            headers["Authorization"] = f"Basic {token}"

    body: str | None = None
    mode = descriptor.body_mode
    if mode is BodyMode.FORM_URLENCODED:
        body = urlencode([(kv.name, interp(kv.value, warnings)) for kv in descriptor.form if kv.enabled])
    elif mode is BodyMode.GRAPHQL:
        text = descriptor.body_text()
        if text is not None:
            body = orjson.dumps({"query": interp(text, warnings)}).decode("utf-8")
    elif mode is not BodyMode.NONE:
        text = descriptor.body_text()
        if text is not None:
            body = interp(text, warnings)
    if body is not None and not _has_header(headers, "Content-Type"):
        headers["Content-Type"] = CONTENT_TYPES[mode]

    return ResolvedRequest(method=descriptor.method.value.upper(), url=url, headers=headers, body=body)


async def send_request(client: httpx.AsyncClient, request: ResolvedRequest, timeout: float) -> ResponseSnapshot:
    """Issue one HTTP call bounded by timeout seconds.

    Raises:
        httpx.HTTPError, asyncio.TimeoutError, ...: left to the caller to classify
    """
    content = request.body.encode("utf-8") if request.body is not None else None
    start_ns = time.perf_counter_ns()
    r = await asyncio.wait_for(
        client.request(request.method, request.url, headers=request.headers, content=content, timeout=timeout),
        timeout=timeout,
    )
    elapsed_ms = (time.perf_counter_ns() - start_ns) / NS_TO_MS
    return ResponseSnapshot(
        status=r.status_code,
        headers={k.lower(): v for k, v in r.headers.items()},
        body=r.text,
        elapsed_ms=elapsed_ms,
        reason=r.reason_phrase,
    )


async def _call_cancellable(aw: Awaitable[T], cancel_event: asyncio.Event | None) -> T:
    """Await aw unless cancel_event fires first; then cancel it and raise _Cancelled."""
    if cancel_event is None:
        return await aw
    if cancel_event.is_set():
        if asyncio.iscoroutine(aw):
            aw.close()
        raise _Cancelled()
    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()
    if task in done:
        return task.result()
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:  # noqa: BLE001
        # The call lost the race against cancellation; its own error is moot
        logger.debug("In-flight request failed while being cancelled", exc_info=True)
    raise _Cancelled()


def _describe_network_error(e: BaseException, timeout: float) -> str:
    if isinstance(e, (asyncio.TimeoutError, httpx.TimeoutException)):
        return f"timeout after {timeout:g}s"
    text = str(e) or type(e).__name__
    return f"{type(e).__name__}: {text}"


class _RunContext:
    """Mutable state owned by exactly one collection+environment run."""

    __slots__ = (
        "collection", "environment_name", "config", "client", "process_env",
        "overrides", "cancel_event", "runtime_vars", "on_result", "base_warnings", "secret_values",
    )

    def __init__(
        self,
        collection: Collection,
        environment_name: str,
        config: RunConfig,
        client: httpx.AsyncClient,
        process_env: Mapping[str, str],
        overrides: Mapping[str, str],
        cancel_event: asyncio.Event | None,
        on_result: ResultCallback | None,
        base: ResolvedEnvironment,
    ) -> None:
        self.collection = collection
        self.environment_name = environment_name
        self.config = config
        self.client = client
        self.process_env = process_env
        self.overrides = overrides
        self.cancel_event = cancel_event
        self.runtime_vars: dict[str, str] = {}
        self.on_result = on_result
        self.base_warnings = frozenset(base.warnings)
        self.secret_values = base.secret_values

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def log_extra(self, request: str | None = None) -> dict[str, str | None]:
        return {"collection": self.collection.name, "environment": self.environment_name, "request": request}

    def emit(self, result: RunResult) -> RunResult:
        if self.on_result is not None:
            try:
                self.on_result(result, self.secret_values)
            except Exception:  # noqa: BLE001
                logger.exception("Result callback failed for %s", result.request_name)
        return result


def _result(
    loaded: LoadedRequest,
    outcome: Outcome,
    started: float,
    start_ns: int,
    **kwargs: object,
) -> RunResult:
    return RunResult(
        request_name=loaded.name,
        request_path=loaded.relative_path,
        seq=loaded.seq,
        timestamp=started,
        duration_ms=(time.perf_counter_ns() - start_ns) / NS_TO_MS,
        outcome=outcome,
        **kwargs,  # type: ignore[arg-type]
    )


def skipped_result(loaded: LoadedRequest, reason: str, code: ErrorCode | None = None) -> RunResult:
    return RunResult(
        request_name=loaded.name,
        request_path=loaded.relative_path,
        seq=loaded.seq,
        timestamp=time.time(),
        duration_ms=0.0,
        outcome=Outcome.SKIPPED,
        error_code=code,
        error_message=reason,
    )


async def execute_descriptor(ctx: _RunContext, loaded: LoadedRequest) -> RunResult:
    """Run one descriptor through resolve, pre-hook, HTTP, assertions, post-hook.

    Never raises for request-level failures; they are recorded on the result.
    """
    started = time.time()
    start_ns = time.perf_counter_ns()
    if loaded.error is not None or loaded.descriptor is None:
        err = loaded.error
        return _result(
            loaded,
            Outcome.ERROR,
            started,
            start_ns,
            error_code=ErrorCode.MALFORMED_DESCRIPTOR,
            error_message=f"{err.message} (field: {err.field})" if err else "descriptor missing",
        )

    d = loaded.descriptor
    settings = ctx.collection.settings
    environment = ctx.collection.environment(ctx.environment_name)
    warnings: list[ReportWarning] = []
    request: ResolvedRequest | None = None

    # 1-2. resolve placeholders, pre-request hook (local variables only)
    try:
        request_vars = _request_vars(settings, d)
        resolved = resolve(environment, ctx.process_env, request_vars, ctx.overrides, ctx.runtime_vars)
        extra_headers: dict[str, str] = {}
        if d.pre_request_script:
            local_vars: dict[str, str] = {}
            hook = ScriptContext(HookPhase.PRE_REQUEST, resolved, local_vars, request_headers=extra_headers)
            run_script(d.pre_request_script, hook)
            if local_vars:
                resolved = resolve(
                    environment, ctx.process_env, {**request_vars, **local_vars}, ctx.overrides, ctx.runtime_vars
                )
        for w in resolved.warnings:
            if w not in ctx.base_warnings:
                logger.warning(w.message, extra=ctx.log_extra(d.name))
                warnings.append(w)
        request = build_request(d, resolved, settings, warnings, extra_headers)
    except (CyclicVariableReferenceError, ScriptError) as e:
        logger.warning("Request failed before sending: %s", e, extra=ctx.log_extra(d.name))
        return _result(
            loaded, Outcome.ERROR, started, start_ns,
            resolved_request=request, error_code=e.code, error_message=e.message, warnings=tuple(warnings),
        )

    # 3. HTTP call
    timeout = ctx.config.timeout_seconds
    try:
        response = await _call_cancellable(send_request(ctx.client, request, timeout), ctx.cancel_event)
    except _Cancelled:
        return _result(
            loaded, Outcome.SKIPPED, started, start_ns,
            resolved_request=request, error_code=ErrorCode.CANCELLED,
            error_message="run cancelled while request was in flight", warnings=tuple(warnings),
        )
    except Exception as e:  # noqa: BLE001
        message = _describe_network_error(e, timeout)
        logger.info("Network error: %s", message, extra=ctx.log_extra(d.name))
        return _result(
            loaded, Outcome.NETWORK_ERROR, started, start_ns,
            resolved_request=request, error_code=ErrorCode.NETWORK_ERROR, error_message=message,
            warnings=tuple(warnings),
        )

    # 4. assertions
    outcomes = tuple(evaluate_assertion(a, response, resolved, warnings) for a in d.assertions if a.enabled)
    passed = all(o.passed for o in outcomes)

    # 5. post-response hook (run-scoped variables, visible to later descriptors)
    post_vars = {kv.name: kv.value for kv in d.post_response_vars if kv.enabled}
    if post_vars or d.post_response_script:
        hook = ScriptContext(HookPhase.POST_RESPONSE, resolved, ctx.runtime_vars, response=response)
        try:
            run_vars_block(post_vars, hook)
            if d.post_response_script:
                run_script(d.post_response_script, hook)
        except ScriptError as e:
            logger.warning("Post-response hook failed: %s", e, extra=ctx.log_extra(d.name))
            return _result(
                loaded, Outcome.ERROR, started, start_ns,
                resolved_request=request, response=response, assertion_outcomes=outcomes,
                error_code=e.code, error_message=e.message, warnings=tuple(warnings),
            )

    if d.tests and d.tests.strip():
        warnings.append(
            ReportWarning(WARN_TESTS_NOT_EXECUTED, "tests block is preserved but not executed", request=d.name)
        )
    failed = [o for o in outcomes if not o.passed]
    return _result(
        loaded,
        Outcome.PASSED if passed else Outcome.FAILED,
        started,
        start_ns,
        resolved_request=request,
        response=response,
        assertion_outcomes=outcomes,
        error_code=None if passed else ErrorCode.ASSERTION_FAILURE,
        error_message=None if passed else "; ".join(o.description for o in failed),
        warnings=tuple(warnings),
    )


async def _run_sequential(ctx: _RunContext) -> list[RunResult]:
    results: list[RunResult] = []
    bailed = False
    for index, loaded in enumerate(ctx.collection.requests):
        if ctx.cancelled:
            results.append(ctx.emit(skipped_result(loaded, "run cancelled", ErrorCode.CANCELLED)))
            continue
        if bailed:
            results.append(ctx.emit(skipped_result(loaded, "skipped after earlier failure (bail)")))
            continue
        result = ctx.emit(await execute_descriptor(ctx, loaded))
        results.append(result)
        if ctx.config.bail and not result.passed and result.outcome is not Outcome.SKIPPED:
            bailed = True
        if ctx.config.delay_ms > 0 and index < len(ctx.collection.requests) - 1:
            await asyncio.sleep(ctx.config.delay_ms / 1000.0)
    return results


async def _run_parallel(ctx: _RunContext, concurrency: int) -> list[RunResult]:
    """Hook-free collections only: descriptors in flight at once, results in declared order."""
    semaphore = asyncio.Semaphore(concurrency)

    async def one(loaded: LoadedRequest) -> RunResult:
        async with semaphore:
            if ctx.cancelled:
                return ctx.emit(skipped_result(loaded, "run cancelled", ErrorCode.CANCELLED))
            return ctx.emit(await execute_descriptor(ctx, loaded))

    return list(await asyncio.gather(*(one(r) for r in ctx.collection.requests)))


async def run(
    collection: Collection,
    environment_name: str,
    concurrency: int = 1,
    *,
    config: RunConfig | None = None,
    process_env: Mapping[str, str] | None = None,
    overrides: Mapping[str, str] | None = None,
    client: httpx.AsyncClient | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    cancel_event: asyncio.Event | None = None,
    on_result: ResultCallback | None = None,
) -> Report:
    """Run every descriptor of collection against one environment.

    Args:
        collection: Loaded collection
        environment_name: Environment to select
        concurrency: Descriptors in flight at once; >1 only honoured without hooks
        config: Timeouts, bail, delay, client options
        process_env: Read-only process environment for ``{{process.env.X}}``
        overrides: Highest-precedence variables (CLI ``--env-var``)
        client: Shared client; created (and closed) per run when omitted
        transport: Transport for the created client (tests)
        cancel_event: Run-level cancellation signal
        on_result: Called with each RunResult as it is produced and the
            secret values to redact from it

    Returns:
        Report for this collection+environment pair. Never raises for
        request-level failures; run-level errors are recorded on the Report.
    """
    config = config or RunConfig()
    process_env = process_env if process_env is not None else {}
    overrides = dict(overrides or {})
    started_at = datetime.now(timezone.utc)
    run_warnings: list[ReportWarning] = []

    def failed_report(e: BruinError) -> Report:
        logger.error("Cannot run %s with environment %s: %s", collection.name, environment_name, e)
        return aggregate(
            [],
            collection=collection.name,
            environment=environment_name,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            errors=[ReportError.from_exception(e)],
        )

    try:
        environment = collection.environment(environment_name)
        base = resolve(environment, process_env, None, overrides)
    except (EnvironmentNotFoundError, CyclicVariableReferenceError) as e:
        return failed_report(e)
    for w in base.warnings:
        logger.warning(w.message, extra={"collection": collection.name, "environment": environment_name})
    run_warnings.extend(base.warnings)

    if concurrency > 1 and collection.has_hooks:
        message = (
            f"Parallel execution ({concurrency}) refused for collection '{collection.name}': "
            "descriptors have hooks, running sequentially"
        )
        logger.warning(message)
        run_warnings.append(ReportWarning(WARN_PARALLELISM_REFUSED, message))
        concurrency = 1

    timer: asyncio.TimerHandle | None = None
    if config.suite_timeout_seconds:
        cancel_event = cancel_event or asyncio.Event()
        timer = asyncio.get_running_loop().call_later(config.suite_timeout_seconds, cancel_event.set)

    owns_client = client is None
    http = client if client is not None else create_client(config, transport)
    ctx = _RunContext(
        collection, environment_name, config, http, process_env, overrides, cancel_event, on_result, base
    )
    logger.info(
        "Running collection=%s env=%s requests=%d concurrency=%d",
        collection.name, environment_name, len(collection.requests), concurrency,
    )
    try:
        if concurrency > 1:
            results = await _run_parallel(ctx, concurrency)
        else:
            results = await _run_sequential(ctx)
    finally:
        if timer is not None:
            timer.cancel()
        if owns_client:
            await http.aclose()

    report = aggregate(
        results,
        collection=collection.name,
        environment=environment_name,
        started_at=started_at,
        finished_at=datetime.now(timezone.utc),
        cancelled=ctx.cancelled,
        warnings=run_warnings,
        secret_values=base.secret_values,
    )
    logger.info(
        "Finished collection=%s env=%s passed=%d failed=%d errored=%d skipped=%d",
        report.collection, report.environment, report.passed, report.failed, report.errored, report.skipped,
    )
    return report


async def run_many(
    pairs: Sequence[tuple[Collection, str]],
    *,
    config: RunConfig | None = None,
    process_env: Mapping[str, str] | None = None,
    overrides: Mapping[str, str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    cancel_event: asyncio.Event | None = None,
    on_result: ResultCallback | None = None,
) -> list[Report]:
    """Run independent collection+environment pairs concurrently.

    At most config.concurrency pairs are in flight. Every pair gets its own
    client and runtime variables. Reports come back in the order of pairs.
    """
    config = config or RunConfig()
    semaphore = asyncio.Semaphore(config.concurrency)

    async def one(collection: Collection, env_name: str) -> Report:
        async with semaphore:
            return await run(
                collection,
                env_name,
                config.parallel_requests,
                config=config,
                process_env=process_env,
                overrides=overrides,
                transport=transport,
                cancel_event=cancel_event,
                on_result=on_result,
            )

    return list(await asyncio.gather(*(one(c, e) for c, e in pairs)))
