from __future__ import annotations

import os
import sys
import uuid
from pathlib import Path
from typing import Iterable

WAREHOUSE_ROOT_ENV = "CERT_REGISTRY_WAREHOUSE_ROOT"
DUCKDB_PATH_ENV = "DUCKDB_DB_PATH"
_APP_DIR = "cert-registry"
_DEFAULT_DUCKDB_NAME = "registry.duckdb"


def _user_data_base() -> Path:
    if os.name == "nt":
        base = os.getenv("LOCALAPPDATA")
        if base:
            return Path(base) / _APP_DIR
        return Path.home() / "AppData" / "Local" / _APP_DIR
    data_home = os.getenv("XDG_DATA_HOME")
    if data_home:
        return Path(data_home) / _APP_DIR
    return Path.home() / ".local" / "share" / _APP_DIR


def _uniquify(paths: Iterable[Path]) -> list[Path]:
    return list(dict.fromkeys(paths))


def _candidate_warehouse_dirs() -> list[Path]:
    candidates: list[Path] = [Path.cwd() / "warehouse"]

    try:
        repo_root = Path(__file__).resolve().parents[2]
    except IndexError:
        repo_root = Path(__file__).resolve().parent
    candidates.append(repo_root / "warehouse")

    exe_dir = Path(sys.executable).parent
    candidates.append(exe_dir.parent / "warehouse")

    candidates.append(_user_data_base() / "warehouse")
    return _uniquify(candidates)


def _dir_is_writable(path: Path) -> bool:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False
    marker = path / f".permcheck-{uuid.uuid4().hex}"
    try:
        marker.write_bytes(b"")
        marker.unlink()
        return True
    except OSError:
        return False


def resolve_warehouse_path(
    explicit: Path | str | None = None, *, ensure_exists: bool = True
) -> Path:
    """Directory holding the DuckDB file and logs.

    Order: ``explicit``, ``$CERT_REGISTRY_WAREHOUSE_ROOT``, the first
    existing writable candidate, the first candidate that can be created,
    then the per-user data directory.
    """
    chosen = explicit or os.getenv(WAREHOUSE_ROOT_ENV)
    if chosen:
        resolved = Path(chosen).expanduser()
        if ensure_exists:
            resolved.mkdir(parents=True, exist_ok=True)
        return resolved

    candidates = _candidate_warehouse_dirs()
    for candidate in candidates:
        if candidate.exists() and _dir_is_writable(candidate):
            return candidate
    for candidate in candidates:
        if _dir_is_writable(candidate):
            return candidate

    fallback = _user_data_base() / "warehouse"
    if ensure_exists:
        fallback.mkdir(parents=True, exist_ok=True)
    return fallback


def resolve_duckdb_path(explicit: Path | str | None = None) -> Path:
    if explicit:
        return Path(explicit).expanduser()
    env_path = os.getenv(DUCKDB_PATH_ENV)
    if env_path:
        return Path(env_path).expanduser()
    return resolve_warehouse_path() / _DEFAULT_DUCKDB_NAME


def resolve_log_path(filename: str = "cert-registry.log") -> Path:
    log_dir = resolve_warehouse_path() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / filename


__all__ = [
    "WAREHOUSE_ROOT_ENV",
    "DUCKDB_PATH_ENV",
    "resolve_warehouse_path",
    "resolve_duckdb_path",
    "resolve_log_path",
]
