"""Reference repository contract and an in-memory implementation.

Records are plain dicts (see ``models.*.to_record``). Collections that have a
natural key (position title, certificate type name, employee name, the
position/type pair of a requirement) are unique on the case-insensitive form
of that key, and ``upsert`` treats a duplicate-key collision as "already
exists, fetch and continue".
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .dates import is_blank
from .errors import DuplicateKeyError, RepositoryError
from .models import (
    CERTIFICATE_TYPES,
    CERTIFICATES,
    COLLECTIONS,
    EMPLOYEES,
    POSITION_REQUIREMENTS,
    POSITIONS,
    new_id,
    natural_key,
    requirement_key,
)

log = logging.getLogger(__name__)

KEY_FIELDS = {
    POSITIONS: "title",
    CERTIFICATE_TYPES: "name",
    EMPLOYEES: "name",
}


def natural_key_for(collection: str, record: Mapping[str, Any]) -> Optional[str]:
    if collection in KEY_FIELDS:
        value = record.get(KEY_FIELDS[collection])
        return None if is_blank(value) else natural_key(value)
    if collection == POSITION_REQUIREMENTS:
        pid = record.get("position_id")
        ctype = record.get("certificate_type_name")
        if is_blank(pid) or is_blank(ctype):
            return None
        return requirement_key(str(pid), str(ctype))
    return None


def _check_collection(collection: str) -> None:
    if collection not in COLLECTIONS:
        raise RepositoryError(f"unknown collection: {collection}")


class Repository(ABC):
    """Storage contract the engine consumes."""

    @abstractmethod
    def find_by_id(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def find_all(self, collection: str) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def update(self, collection: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        """Replace a stored record by id; raises RepositoryError if it does not exist."""

    @abstractmethod
    def _find_by_key(self, collection: str, key: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def _insert(self, collection: str, record: Dict[str, Any], key: Optional[str]) -> Dict[str, Any]:
        """Store a new record; raises DuplicateKeyError on a natural-key collision."""

    def find_all_active(self, collection: str) -> List[Dict[str, Any]]:
        return [r for r in self.find_all(collection) if r.get("active", True) is not False]

    def find_by_unique_field(
        self,
        collection: str,
        field: str,
        value: Any,
        case_insensitive: bool = True,
    ) -> Optional[Dict[str, Any]]:
        if is_blank(value):
            return None
        if case_insensitive and KEY_FIELDS.get(collection) == field:
            return self._find_by_key(collection, natural_key(value))
        wanted = natural_key(value) if case_insensitive else str(value)
        for record in self.find_all(collection):
            current = record.get(field)
            if is_blank(current):
                continue
            have = natural_key(current) if case_insensitive else str(current)
            if have == wanted:
                return record
        return None

    def insert(self, collection: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        _check_collection(collection)
        record = dict(data)
        if is_blank(record.get("id")):
            record["id"] = new_id()
        return self._insert(collection, record, natural_key_for(collection, record))

    def upsert(
        self,
        collection: str,
        key_value: Any,
        data: Mapping[str, Any],
        *,
        overwrite: bool = True,
    ) -> Tuple[Dict[str, Any], bool]:
        """Insert ``data`` under its natural key, or reuse the existing record.

        Returns ``(record, created)``. With ``overwrite`` the existing record is
        merged with ``data`` (its id is kept); without it the existing record is
        returned untouched. A concurrent insert of the same key is absorbed by
        re-reading the winner.
        """
        _check_collection(collection)
        key = natural_key_for(collection, data) or natural_key(key_value)
        if not key:
            raise RepositoryError(f"empty natural key for {collection}")
        existing = self._find_by_key(collection, key)
        if existing is None:
            record = dict(data)
            if is_blank(record.get("id")):
                record["id"] = new_id()
            try:
                return self._insert(collection, record, key), True
            except DuplicateKeyError:
                log.info("duplicate key on %s %r; reusing existing record", collection, key)
                existing = self._find_by_key(collection, key)
                if existing is None:
                    raise RepositoryError(
                        f"{collection} key {key!r} collided but cannot be read back"
                    ) from None
        if not overwrite:
            return existing, False
        merged = {**existing, **dict(data), "id": existing["id"]}
        return self.update(collection, merged), False


class MemoryRepository(Repository):
    """Dict-backed repository; used by tests and dry runs."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Dict[str, Any]]] = {c: {} for c in COLLECTIONS}
        self._keys: Dict[str, Dict[str, str]] = {c: {} for c in COLLECTIONS}

    def find_by_id(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        _check_collection(collection)
        record = self._records[collection].get(str(record_id))
        return copy.deepcopy(record) if record is not None else None

    def find_all(self, collection: str) -> List[Dict[str, Any]]:
        _check_collection(collection)
        return [copy.deepcopy(r) for r in self._records[collection].values()]

    def _find_by_key(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        rid = self._keys[collection].get(key)
        return self.find_by_id(collection, rid) if rid is not None else None

    def _insert(self, collection: str, record: Dict[str, Any], key: Optional[str]) -> Dict[str, Any]:
        rid = str(record["id"])
        if rid in self._records[collection]:
            raise RepositoryError(f"{collection} id {rid} already exists")
        if key is not None:
            if key in self._keys[collection]:
                raise DuplicateKeyError(collection, key)
            self._keys[collection][key] = rid
        stored = copy.deepcopy(record)
        stored.setdefault("created_at", datetime.now().isoformat())
        self._records[collection][rid] = stored
        return copy.deepcopy(stored)

    def update(self, collection: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        _check_collection(collection)
        rid = str(record.get("id"))
        if rid not in self._records[collection]:
            raise RepositoryError(f"{collection} id {rid} not found")
        key = natural_key_for(collection, record)
        owners = self._keys[collection]
        if key is not None and owners.get(key, rid) != rid:
            raise DuplicateKeyError(collection, key)
        for k, v in list(owners.items()):
            if v == rid and k != key:
                del owners[k]
        if key is not None:
            owners[key] = rid
        stored = copy.deepcopy(dict(record))
        stored["updated_at"] = datetime.now().isoformat()
        self._records[collection][rid] = stored
        return copy.deepcopy(stored)


__all__ = ["KEY_FIELDS", "natural_key_for", "Repository", "MemoryRepository"]
