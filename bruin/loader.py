"""Collection discovery and loading from the filesystem.

Layout::

    root/
      <collection>/
        bruno.json            manifest (required)
        collection.bru        collection-wide headers/auth/vars (optional)
        environments/         one <name>.bru per environment (required)
        <folder>/<request>.bru

Loading only reads files. A malformed request file is recorded on its
LoadedRequest and does not stop the rest of the collection from loading.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import orjson

from .bru import parse_collection_settings, parse_descriptor, parse_environment
from .exceptions import MalformedDescriptorError, NotACollectionError
from .logging_config import get_logger
from .models import Collection, CollectionSettings, Environment, LoadedRequest

logger = get_logger("loader")

MANIFEST_FILENAME = "bruno.json"
ENVIRONMENTS_DIRNAME = "environments"
COLLECTION_SETTINGS_FILENAME = "collection.bru"
FOLDER_SETTINGS_FILENAME = "folder.bru"
REQUEST_SUFFIX = ".bru"
DEFAULT_IGNORE = frozenset({"node_modules", ".git"})


@dataclass(frozen=True, slots=True)
class CollectionHandle:
    """A directory verified to have the structural files of a collection."""

    name: str
    path: Path
    manifest: dict[str, Any]

    @property
    def environments_path(self) -> Path:
        return self.path / ENVIRONMENTS_DIRNAME


def _read_manifest(path: Path) -> dict[str, Any]:
    manifest_path = path / MANIFEST_FILENAME
    try:
        raw = orjson.loads(manifest_path.read_bytes())
    except orjson.JSONDecodeError as e:
        raise NotACollectionError(
            f"Invalid JSON in {MANIFEST_FILENAME}: {e}",
            path=str(path),
            context={"path": str(manifest_path)},
            original_error=e,
        ) from e
    except OSError as e:
        raise NotACollectionError(
            f"Cannot read {MANIFEST_FILENAME}: {e}",
            path=str(path),
            context={"path": str(manifest_path)},
            original_error=e,
        ) from e
    if not isinstance(raw, dict):
        raise NotACollectionError(
            f"{MANIFEST_FILENAME} must be a JSON object", path=str(path), context={"path": str(manifest_path)}
        )
    return raw


def open_collection(path: str | Path) -> CollectionHandle:
    """Verify one collection directory.

    Raises:
        NotACollectionError: directory missing, manifest missing/invalid,
            or no environments sub-directory
    """
    p = Path(path)
    if not p.is_dir():
        raise NotACollectionError(f"Not a directory: {p}", path=str(p))
    if not (p / MANIFEST_FILENAME).is_file():
        raise NotACollectionError(
            f"Directory '{p.name}' has no {MANIFEST_FILENAME} manifest", path=str(p), context={"path": str(p)}
        )
    manifest = _read_manifest(p)
    if not (p / ENVIRONMENTS_DIRNAME).is_dir():
        raise NotACollectionError(
            f"Collection '{p.name}' has no {ENVIRONMENTS_DIRNAME}/ directory", path=str(p), context={"path": str(p)}
        )
    name = str(manifest.get("name") or p.name)
    return CollectionHandle(name=name, path=p, manifest=manifest)


def _subdirectories(root: Path) -> list[Path]:
    if not root.is_dir():
        raise NotACollectionError(f"Collections root is not a directory: {root}", path=str(root))
    return sorted(d for d in root.iterdir() if d.is_dir() and not d.name.startswith("."))


def discover_collections(root: str | Path) -> list[CollectionHandle]:
    """Return a handle for every subdirectory of root.

    Raises:
        NotACollectionError: for the first subdirectory missing its manifest
            or environments directory
    """
    return [open_collection(d) for d in _subdirectories(Path(root))]


def scan_collections(root: str | Path) -> tuple[list[CollectionHandle], list[NotACollectionError]]:
    """Like discover_collections, but collect failures so siblings still run."""
    handles: list[CollectionHandle] = []
    errors: list[NotACollectionError] = []
    for d in _subdirectories(Path(root)):
        try:
            handles.append(open_collection(d))
        except NotACollectionError as e:
            logger.warning("Skipping %s: %s", d, e.message)
            errors.append(e)
    return handles, errors


def _read_structural(path: Path, root: Path) -> str:
    """Read an environment or settings file; unreadable files are malformed."""
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        source = path.relative_to(root).as_posix()
        raise MalformedDescriptorError(
            f"Cannot read {source}: {e}", field="file", context={"source": source}, original_error=e
        ) from e


def load_environments(handle: CollectionHandle) -> dict[str, Environment]:
    """Parse environments/<name>.bru. Malformed or unreadable files raise MalformedDescriptorError."""
    envs: dict[str, Environment] = {}
    for f in sorted(handle.environments_path.glob(f"*{REQUEST_SUFFIX}")):
        envs[f.stem] = parse_environment(_read_structural(f, handle.path), f.stem)
    return envs


def _ignored(handle: CollectionHandle) -> frozenset[str]:
    extra = handle.manifest.get("ignore") or []
    if not isinstance(extra, list):
        return DEFAULT_IGNORE
    return DEFAULT_IGNORE | {str(x) for x in extra}


def _load_request(path: Path, root: Path) -> LoadedRequest:
    relative = path.relative_to(root).as_posix()
    try:
        text = path.read_text(encoding="utf-8")
        descriptor = parse_descriptor(text, source=relative)
    except MalformedDescriptorError as e:
        logger.warning("Malformed request %s: %s", relative, e)
        return LoadedRequest(path=path, relative_path=relative, error=e)
    except (OSError, UnicodeDecodeError) as e:
        err = MalformedDescriptorError(
            f"Cannot read request file: {e}", field="file", context={"source": relative}, original_error=e
        )
        return LoadedRequest(path=path, relative_path=relative, error=err)
    return LoadedRequest(path=path, relative_path=relative, descriptor=descriptor)


def _walk(folder: Path, root: Path, ignored: frozenset[str], out: list[LoadedRequest]) -> None:
    files: list[LoadedRequest] = []
    subfolders: list[Path] = []
    for entry in folder.iterdir():
        if entry.name in ignored or entry.name.startswith("."):
            continue
        if entry.is_dir():
            if folder == root and entry.name == ENVIRONMENTS_DIRNAME:
                continue
            subfolders.append(entry)
        elif entry.suffix == REQUEST_SUFFIX and entry.name not in (
            COLLECTION_SETTINGS_FILENAME,
            FOLDER_SETTINGS_FILENAME,
        ):
            files.append(_load_request(entry, root))
    files.sort(key=lambda r: (r.seq, r.path.name))
    out.extend(files)
    for sub in sorted(subfolders):
        _walk(sub, root, ignored, out)


def load_collection(source: CollectionHandle | str | Path) -> Collection:
    """Load a collection: environments, collection settings and request descriptors.

    Raises:
        NotACollectionError: if source is a path that is not a collection
        MalformedDescriptorError: if an environment file or collection.bru is malformed or unreadable
    """
    handle = source if isinstance(source, CollectionHandle) else open_collection(source)
    settings = CollectionSettings()
    settings_path = handle.path / COLLECTION_SETTINGS_FILENAME
    try:
        if settings_path.is_file():
            settings = parse_collection_settings(_read_structural(settings_path, handle.path))
        environments = load_environments(handle)
    except MalformedDescriptorError as e:
        raise e.with_context(collection=handle.name)

    requests: list[LoadedRequest] = []
    _walk(handle.path, handle.path, _ignored(handle), requests)
    collection = Collection(
        name=handle.name,
        path=handle.path,
        manifest=handle.manifest,
        requests=requests,
        environments=environments,
        settings=settings,
    )
    logger.debug(
        "Loaded collection %s: %d requests, environments=%s",
        collection.name,
        len(requests),
        sorted(collection.environments),
    )
    return collection
