"""Environment resolution: ``{{var}}`` placeholders, process env, layered overrides.

Precedence, lowest first:

1. variables of the selected environment file
2. runtime variables set by post-response hooks earlier in the same run
3. request-level variables (``vars:pre-request`` of the collection and the request)
4. overrides supplied on the command line

Values may reference other variables; references are followed up to
MAX_RESOLUTION_DEPTH levels. ``{{process.env.NAME}}`` reads the process
environment mapping handed in by the caller; this module never reads
``os.environ`` itself.
"""

from __future__ import annotations

import random
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Callable, Mapping

from .exceptions import CyclicVariableReferenceError
from .logging_config import get_logger
from .models import Environment, KeyValue, ReportWarning

logger = get_logger("environment")

VAR_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
PROCESS_ENV_PREFIX = "process.env."
MAX_RESOLUTION_DEPTH = 10

WARN_MISSING_PROCESS_ENV = "missing_process_env"
WARN_UNDEFINED_VARIABLE = "undefined_variable"

DYNAMIC_VARIABLES: dict[str, Callable[[], str]] = {
    "$guid": lambda: str(uuid.uuid4()),
    "$timestamp": lambda: str(int(time.time())),
    "$isoTimestamp": lambda: datetime.now(timezone.utc).isoformat(),
    "$randomInt": lambda: str(random.randint(0, 1000)),
}


def has_placeholders(text: str) -> bool:
    return VAR_PATTERN.search(text) is not None


@dataclass(frozen=True, slots=True)
class ResolvedEnvironment:
    """Fully expanded variables for one request or run. Immutable snapshot."""

    variables: Mapping[str, str]
    process_env: Mapping[str, str] = field(default_factory=dict)
    warnings: tuple[ReportWarning, ...] = ()
    secret_values: frozenset[str] = frozenset()

    def get(self, name: str, default: str | None = None) -> str | None:
        return self.variables.get(name, default)

    def as_dict(self) -> dict[str, str]:
        return dict(self.variables)

    def interpolate(self, text: str, warnings: list[ReportWarning] | None = None) -> str:
        """Replace placeholders in request text. Unknown names become "" and are reported."""
        if "{{" not in text:
            return text

        def repl(match: re.Match[str]) -> str:
            key = match.group(1)
            if key in self.variables:
                return self.variables[key]
            if key.startswith(PROCESS_ENV_PREFIX):
                return _lookup_process_env(key, self.process_env, warnings)
            if key in DYNAMIC_VARIABLES:
                return DYNAMIC_VARIABLES[key]()
            _warn(warnings, WARN_UNDEFINED_VARIABLE, f"Variable '{key}' is not defined")
            return ""

        return VAR_PATTERN.sub(repl, text)


def _warn(warnings: list[ReportWarning] | None, code: str, message: str, log: bool = True) -> None:
    if log:
        logger.warning(message)
    if warnings is not None:
        warnings.append(ReportWarning(code=code, message=message))


def _lookup_process_env(
    key: str, process_env: Mapping[str, str], warnings: list[ReportWarning] | None, log: bool = True
) -> str:
    env_name = key[len(PROCESS_ENV_PREFIX):]
    value = process_env.get(env_name)
    if value is None:
        _warn(warnings, WARN_MISSING_PROCESS_ENV, f"Process environment variable '{env_name}' is not set", log)
        return ""
    return value


def _enabled(entries: Mapping[str, str] | tuple[KeyValue, ...] | None) -> dict[str, str]:
    if not entries:
        return {}
    if isinstance(entries, Mapping):
        return dict(entries)
    return {kv.name: kv.value for kv in entries if kv.enabled}


def resolve(
    environment: Environment | Mapping[str, str] | None,
    process_env: Mapping[str, str],
    request_vars: Mapping[str, str] | tuple[KeyValue, ...] | None = None,
    overrides: Mapping[str, str] | None = None,
    runtime_vars: Mapping[str, str] | None = None,
) -> ResolvedEnvironment:
    """Expand every variable of the layered environment.

    Runtime variables are inserted literally (they hold response data); all
    other layers are templates and may reference each other.
    Warnings are collected on the result, not logged; callers log them once.

    Raises:
        CyclicVariableReferenceError: self-referential chain, or references
            nested deeper than MAX_RESOLUTION_DEPTH
    """
    if isinstance(environment, Environment):
        base = environment.as_dict()
        secret_names = environment.secret_names
    else:
        base = _enabled(environment)
        secret_names = frozenset()

    templates: dict[str, str] = dict(base)
    literals: dict[str, str] = {}
    for name, value in (runtime_vars or {}).items():
        literals[name] = value
        templates.pop(name, None)
    for layer in (_enabled(request_vars), dict(overrides or {})):
        for name, value in layer.items():
            templates[name] = value
            literals.pop(name, None)

    warnings: list[ReportWarning] = []
    resolved: dict[str, str] = dict(literals)
    # longest reference chain below each resolved variable; literals have none
    depths: dict[str, int] = dict.fromkeys(literals, 0)

    def check_depth(chain: tuple[str, ...], below: int) -> None:
        # chain holds the starting variable plus one entry per reference followed
        if len(chain) - 1 + below > MAX_RESOLUTION_DEPTH:
            raise CyclicVariableReferenceError(
                f"Variable '{chain[0]}' exceeds maximum resolution depth {MAX_RESOLUTION_DEPTH}",
                variable=chain[0],
                context={"chain": " -> ".join(chain)},
            )

    def expand(name: str, chain: tuple[str, ...]) -> str:
        if name in resolved:
            check_depth(chain, depths[name])
            return resolved[name]
        check_depth(chain, 0)
        below = 0

        def repl(match: re.Match[str]) -> str:
            nonlocal below
            ref = match.group(1)
            if ref in chain:
                raise CyclicVariableReferenceError(
                    f"Cyclic reference to variable '{ref}'",
                    variable=ref,
                    context={"chain": " -> ".join((*chain, ref))},
                )
            if ref in resolved or ref in templates:
                value = expand(ref, (*chain, ref))
                below = max(below, depths[ref] + 1)
                return value
            if ref.startswith(PROCESS_ENV_PREFIX):
                return _lookup_process_env(ref, process_env, warnings, log=False)
            if ref in DYNAMIC_VARIABLES:
                return DYNAMIC_VARIABLES[ref]()
            _warn(
                warnings,
                WARN_UNDEFINED_VARIABLE,
                f"Variable '{ref}' referenced by '{chain[-1]}' is not defined",
                log=False,
            )
            return ""

        value = VAR_PATTERN.sub(repl, templates[name])
        resolved[name] = value
        depths[name] = below
        return value

    for name in templates:
        expand(name, (name,))

    secrets = frozenset(resolved[n] for n in secret_names if resolved.get(n))
    return ResolvedEnvironment(
        variables=MappingProxyType(resolved),
        process_env=process_env,
        warnings=tuple(warnings),
        secret_values=secrets,
    )
