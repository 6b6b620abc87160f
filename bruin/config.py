"""YAML configuration loader: run settings and the CI matrix of collection/environment pairs."""

from __future__ import annotations

from dataclasses import fields, replace
from pathlib import Path
from typing import Any

import yaml

from .exceptions import BruinConfigError
from .logging_config import get_logger
from .models import RunConfig, RunTarget

logger = get_logger("config")


def _validate_run_config(c: RunConfig) -> None:
    """Validate RunConfig bounds. Raises BruinConfigError if invalid."""
    if c.timeout_seconds <= 0:
        raise BruinConfigError("timeout_seconds must be > 0")
    if c.suite_timeout_seconds is not None and c.suite_timeout_seconds <= 0:
        raise BruinConfigError("suite_timeout_seconds must be > 0 when set")
    if c.concurrency < 1:
        raise BruinConfigError("concurrency must be >= 1")
    if c.parallel_requests < 1:
        raise BruinConfigError("parallel_requests must be >= 1")
    if c.delay_ms < 0:
        raise BruinConfigError("delay_ms must be >= 0")


def _read_yaml(path: str | Path, what: str) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise BruinConfigError(f"{what} file not found: {path}", context={"path": str(path)})
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.exception("Failed to parse YAML %s file", what.lower())
        raise BruinConfigError(
            f"Invalid YAML syntax in {what.lower()} file: {e}",
            context={"path": str(path)},
            original_error=e,
        ) from e
    except OSError as e:
        logger.exception("Failed to read %s file", what.lower())
        raise BruinConfigError(
            f"Cannot read {what.lower()} file: {e}",
            context={"path": str(path)},
            original_error=e,
        ) from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise BruinConfigError(
            f"{what} must be a YAML object/dictionary",
            context={"path": str(path), "actual_type": type(raw).__name__},
        )
    return raw


def _bool(raw: dict[str, Any], key: str, default: bool) -> bool:
    v = raw.get(key, default)
    if isinstance(v, bool):
        return v
    if isinstance(v, str) and v.strip().lower() in ("true", "yes", "1", "false", "no", "0"):
        return v.strip().lower() in ("true", "yes", "1")
    raise BruinConfigError(f"{key} must be a boolean, got {v!r}")


def _optional_float(data: dict[str, Any], key: str) -> float | None:
    v = data.get(key)
    if v is None:
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        raise BruinConfigError(f"{key} must be a number, got {v!r}") from None


def config_from_dict(raw: dict[str, Any]) -> RunConfig:
    """Build a validated RunConfig from a mapping; missing keys use defaults."""
    defaults = RunConfig()
    known = {f.name for f in fields(RunConfig)}
    unknown = sorted(set(raw) - known - {"runs", "root"})
    if unknown:
        logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
    try:
        config = RunConfig(
            timeout_seconds=float(raw.get("timeout_seconds", defaults.timeout_seconds)),
            suite_timeout_seconds=_optional_float(raw, "suite_timeout_seconds"),
            concurrency=int(raw.get("concurrency", defaults.concurrency)),
            parallel_requests=int(raw.get("parallel_requests", defaults.parallel_requests)),
            http2=_bool(raw, "http2", defaults.http2),
            verify_tls=_bool(raw, "verify_tls", defaults.verify_tls),
            follow_redirects=_bool(raw, "follow_redirects", defaults.follow_redirects),
            bail=_bool(raw, "bail", defaults.bail),
            delay_ms=float(raw.get("delay_ms", defaults.delay_ms)),
        )
    except (TypeError, ValueError) as e:
        raise BruinConfigError(f"Invalid config value: {e}", original_error=e) from e
    _validate_run_config(config)
    return config


def load_config(path: str | Path) -> RunConfig:
    """Load run configuration from YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated RunConfig instance

    Raises:
        BruinConfigError: If file not found, invalid YAML, or validation fails
    """
    raw = _read_yaml(path, "Config")
    try:
        config = config_from_dict(raw)
    except BruinConfigError as e:
        raise e.with_context(path=str(path))
    logger.debug(
        "Loaded config: timeout=%ss, concurrency=%s, parallel_requests=%s",
        config.timeout_seconds,
        config.concurrency,
        config.parallel_requests,
    )
    return config


def apply_overrides(config: RunConfig, **overrides: Any) -> RunConfig:
    """Return a copy of config with every non-None override applied, validated."""
    changes = {k: v for k, v in overrides.items() if v is not None}
    if not changes:
        return config
    merged = replace(config, **changes)
    _validate_run_config(merged)
    return merged


def load_matrix(path: str | Path) -> tuple[list[RunTarget], RunConfig]:
    """Load a CI matrix file.

    Format::

        root: collections          # optional, relative to the matrix file
        timeout_seconds: 10        # any run config key
        runs:
          - collection: cat-facts
            env: prod

    Returns:
        (targets, run config from the same file)

    Raises:
        BruinConfigError: file errors, missing/empty ``runs``, entries without collection or env
    """
    p = Path(path)
    raw = _read_yaml(p, "Matrix")
    runs = raw.get("runs")
    if not isinstance(runs, list) or not runs:
        raise BruinConfigError("Matrix must define a non-empty 'runs' list", context={"path": str(path)})
    root = p.parent / str(raw.get("root") or ".")
    targets: list[RunTarget] = []
    for i, entry in enumerate(runs):
        if not isinstance(entry, dict) or not entry.get("collection") or not entry.get("env"):
            raise BruinConfigError(
                f"runs[{i}] must have 'collection' and 'env'", context={"path": str(path), "entry": entry}
            )
        envs = entry["env"] if isinstance(entry["env"], list) else [entry["env"]]
        for env in envs:
            targets.append(RunTarget(collection_path=root / str(entry["collection"]), environment=str(env)))
    config = config_from_dict({k: v for k, v in raw.items() if k not in ("runs", "root")})
    return targets, config
