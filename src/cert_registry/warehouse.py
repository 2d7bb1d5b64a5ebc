from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import duckdb  # type: ignore

from .errors import DuplicateKeyError, RepositoryError
from .models import COLLECTIONS
from .repository import Repository, _check_collection, natural_key_for

log = logging.getLogger(__name__)


def _as_path(path: Path | str | bytes) -> Path:
    if isinstance(path, bytes):
        path = os.fsdecode(path)
    return Path(path).expanduser()


def _connect(db_path: Path):
    db_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        return duckdb.connect(os.fspath(db_path))
    except duckdb.Error as exc:
        raise RepositoryError(f"cannot open warehouse {db_path}: {exc}") from exc


def ensure_schema(db_path: Path | str) -> None:
    path = _as_path(db_path)
    with _connect(path) as con:
        for name in COLLECTIONS:
            # one document table per collection; natural_key is NULL where a collection has none
            con.execute(f"CREATE SEQUENCE IF NOT EXISTS {name}_seq")
            con.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {name} (
                    seq BIGINT NOT NULL DEFAULT nextval('{name}_seq'),
                    id VARCHAR PRIMARY KEY,
                    natural_key VARCHAR UNIQUE,
                    active BOOLEAN NOT NULL DEFAULT TRUE,
                    payload VARCHAR NOT NULL,
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP
                )
                """
            )


def _dump(record: Mapping[str, Any]) -> str:
    return json.dumps(dict(record), ensure_ascii=False, sort_keys=True, default=str)


def _load(payload: str) -> Dict[str, Any]:
    data = json.loads(payload)
    if not isinstance(data, dict):
        raise RepositoryError("stored payload is not an object")
    return data


class DuckDBRepository(Repository):
    """Repository over a DuckDB file, one connection per call."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = _as_path(db_path)
        ensure_schema(self.db_path)

    def _query(self, sql: str, params: list[Any]) -> list[tuple]:
        try:
            with _connect(self.db_path) as con:
                return con.execute(sql, params).fetchall()
        except duckdb.Error as exc:
            raise RepositoryError(str(exc)) from exc

    def find_by_id(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        _check_collection(collection)
        rows = self._query(f"SELECT payload FROM {collection} WHERE id = ?", [str(record_id)])
        return _load(rows[0][0]) if rows else None

    def find_all(self, collection: str) -> List[Dict[str, Any]]:
        _check_collection(collection)
        rows = self._query(f"SELECT payload FROM {collection} ORDER BY seq", [])
        return [_load(r[0]) for r in rows]

    def find_all_active(self, collection: str) -> List[Dict[str, Any]]:
        _check_collection(collection)
        rows = self._query(
            f"SELECT payload FROM {collection} WHERE active ORDER BY seq", []
        )
        return [_load(r[0]) for r in rows]

    def _find_by_key(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        rows = self._query(f"SELECT payload FROM {collection} WHERE natural_key = ?", [key])
        return _load(rows[0][0]) if rows else None

    def _insert(self, collection: str, record: Dict[str, Any], key: Optional[str]) -> Dict[str, Any]:
        try:
            with _connect(self.db_path) as con:
                con.execute(
                    f"INSERT INTO {collection} (id, natural_key, active, payload) VALUES (?, ?, ?, ?)",
                    [str(record["id"]), key, record.get("active", True) is not False, _dump(record)],
                )
        except duckdb.ConstraintException as exc:
            if key is not None and self._find_by_key(collection, key) is not None:
                raise DuplicateKeyError(collection, key) from exc
            raise RepositoryError(str(exc)) from exc
        except duckdb.Error as exc:
            raise RepositoryError(str(exc)) from exc
        return dict(record)

    def update(self, collection: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        _check_collection(collection)
        rid = str(record.get("id"))
        key = natural_key_for(collection, record)
        try:
            with _connect(self.db_path) as con:
                row = con.execute(
                    f"SELECT natural_key FROM {collection} WHERE id = ?", [rid]
                ).fetchone()
                if row is None:
                    raise RepositoryError(f"{collection} id {rid} not found")
                if row[0] != key:
                    # indexed column: only touch it when the key really changes
                    con.execute(f"UPDATE {collection} SET natural_key = ? WHERE id = ?", [key, rid])
                con.execute(
                    f"UPDATE {collection} SET payload = ?, active = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    [_dump(record), record.get("active", True) is not False, rid],
                )
        except duckdb.ConstraintException as exc:
            raise DuplicateKeyError(collection, key or "") from exc
        except duckdb.Error as exc:
            raise RepositoryError(str(exc)) from exc
        return dict(record)

    def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for name in COLLECTIONS:
            out[name] = int(self._query(f"SELECT count(*) FROM {name}", [])[0][0])
        return out


__all__ = ["ensure_schema", "DuckDBRepository"]
