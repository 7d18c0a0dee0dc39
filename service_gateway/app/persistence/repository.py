"""
Data-access layer used behind the gateway's model cache.

``Repository`` defines the capability interface the cache wraps (single
record lookups, writes, bulk writes) and a registry of post-write hooks.
``MemoryRepository`` is a dict-backed implementation used as the default
data source and in tests.
"""

import re
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel

from shared.logging import get_logger

RecordT = TypeVar("RecordT", bound=BaseModel)


class RepositoryEvent(str, Enum):
    """Post-write lifecycle events a repository emits."""

    AFTER_CREATE = "after_create"
    AFTER_UPDATE = "after_update"
    AFTER_DELETE = "after_delete"
    AFTER_BULK_CREATE = "after_bulk_create"
    AFTER_BULK_UPDATE = "after_bulk_update"
    AFTER_BULK_DELETE = "after_bulk_delete"

    @property
    def is_bulk(self) -> bool:
        return self.value.startswith("after_bulk_")


# Hooks receive the event and the affected record (single-record events)
# or the list of affected records (bulk events).
Hook = Callable[[RepositoryEvent, Any], Awaitable[None]]


class Op:
    """Query operators accepted in ``where`` criteria."""

    OR = "$or"
    AND = "$and"
    NOT = "$not"
    IN = "$in"
    NOT_IN = "$notIn"
    NE = "$ne"
    GT = "$gt"
    GTE = "$gte"
    LT = "$lt"
    LTE = "$lte"
    LIKE = "$like"
    NOT_LIKE = "$notLike"
    REGEXP = "$regexp"
    NOT_REGEXP = "$notRegexp"
    BETWEEN = "$between"
    NOT_BETWEEN = "$notBetween"


class Repository(Generic[RecordT]):
    """Capability interface of a hookable single-model repository."""

    model_name: str
    record_type: Type[RecordT]
    pk_field: str = "id"

    def __init__(self):
        self._hooks: Dict[RepositoryEvent, List[Hook]] = {event: [] for event in RepositoryEvent}

    def add_hook(self, event: RepositoryEvent, hook: Hook) -> None:
        """Register a coroutine run after every write of kind ``event``."""
        self._hooks[RepositoryEvent(event)].append(hook)

    async def _run_hooks(self, event: RepositoryEvent, payload: Any) -> None:
        for hook in self._hooks[event]:
            await hook(event, payload)

    async def find_by_pk(self, pk: Any, *, include: Optional[Iterable[str]] = None,
                         transaction: Any = None) -> Optional[RecordT]:
        raise NotImplementedError

    async def find_one(self, where: Optional[Dict[str, Any]] = None, *,
                       include: Optional[Iterable[str]] = None,
                       transaction: Any = None) -> Optional[RecordT]:
        raise NotImplementedError

    async def find_all(self, where: Optional[Dict[str, Any]] = None, *,
                       limit: Optional[int] = None) -> List[RecordT]:
        raise NotImplementedError

    async def create(self, data: Dict[str, Any]) -> RecordT:
        raise NotImplementedError

    async def update(self, pk: Any, changes: Dict[str, Any]) -> Optional[RecordT]:
        raise NotImplementedError

    async def delete(self, pk: Any) -> bool:
        raise NotImplementedError

    async def bulk_create(self, items: List[Dict[str, Any]]) -> List[RecordT]:
        raise NotImplementedError

    async def bulk_update(self, where: Dict[str, Any], changes: Dict[str, Any]) -> int:
        raise NotImplementedError

    async def bulk_delete(self, where: Dict[str, Any]) -> int:
        raise NotImplementedError


def _like_to_regex(pattern: str) -> re.Pattern:
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE | re.DOTALL)


def _match_operator(value: Any, operator: str, operand: Any) -> bool:
    if operator == Op.IN:
        return value in operand
    if operator == Op.NOT_IN:
        return value not in operand
    if operator == Op.NE:
        return value != operand
    if operator == Op.GT:
        return value is not None and value > operand
    if operator == Op.GTE:
        return value is not None and value >= operand
    if operator == Op.LT:
        return value is not None and value < operand
    if operator == Op.LTE:
        return value is not None and value <= operand
    if operator == Op.LIKE:
        return isinstance(value, str) and bool(_like_to_regex(operand).match(value))
    if operator == Op.NOT_LIKE:
        return not (isinstance(value, str) and _like_to_regex(operand).match(value))
    if operator == Op.REGEXP:
        return isinstance(value, str) and re.search(operand, value) is not None
    if operator == Op.NOT_REGEXP:
        return not (isinstance(value, str) and re.search(operand, value))
    if operator == Op.BETWEEN:
        low, high = operand
        return value is not None and low <= value <= high
    if operator == Op.NOT_BETWEEN:
        low, high = operand
        return value is None or not (low <= value <= high)
    raise ValueError(f"Unsupported query operator: {operator}")


def matches(record: Dict[str, Any], where: Optional[Dict[str, Any]]) -> bool:
    """Evaluate ``where`` criteria against a record's field mapping."""
    if not where:
        return True

    for key, condition in where.items():
        if key == Op.OR:
            if not any(matches(record, clause) for clause in condition):
                return False
        elif key == Op.AND:
            if not all(matches(record, clause) for clause in condition):
                return False
        elif key == Op.NOT:
            if matches(record, condition):
                return False
        elif isinstance(condition, dict) and condition and all(str(op).startswith("$") for op in condition):
            value = record.get(key)
            if not all(_match_operator(value, op, operand) for op, operand in condition.items()):
                return False
        elif record.get(key) != condition:
            return False
    return True


class MemoryRepository(Repository[RecordT]):
    """Dict-backed repository with auto-incrementing integer keys."""

    def __init__(self, record_type: Type[RecordT], model_name: Optional[str] = None):
        super().__init__()
        self.record_type = record_type
        self.model_name = model_name or record_type.__name__
        self.logger = get_logger(f"gateway.repository.{self.model_name.lower()}")
        self._records: Dict[Any, RecordT] = {}
        self._next_pk = 1

    def _fields(self, record: RecordT) -> Dict[str, Any]:
        return record.model_dump()

    async def find_by_pk(self, pk, *, include=None, transaction=None):
        return self._records.get(self._coerce_pk(pk))

    async def find_one(self, where=None, *, include=None, transaction=None):
        for record in self._records.values():
            if matches(self._fields(record), where):
                return record
        return None

    async def find_all(self, where=None, *, limit=None):
        found = [record for record in self._records.values() if matches(self._fields(record), where)]
        return found[:limit] if limit is not None else found

    async def create(self, data):
        record = self._insert(data)
        self.logger.debug("Record created", pk=getattr(record, self.pk_field))
        await self._run_hooks(RepositoryEvent.AFTER_CREATE, record)
        return record

    async def update(self, pk, changes):
        pk = self._coerce_pk(pk)
        current = self._records.get(pk)
        if current is None:
            return None

        updated = self.record_type.model_validate({**current.model_dump(), **changes, self.pk_field: pk})
        self._records[pk] = updated
        await self._run_hooks(RepositoryEvent.AFTER_UPDATE, updated)
        return updated

    async def delete(self, pk):
        removed = self._records.pop(self._coerce_pk(pk), None)
        if removed is None:
            return False
        await self._run_hooks(RepositoryEvent.AFTER_DELETE, removed)
        return True

    async def bulk_create(self, items):
        created = [self._insert(item) for item in items]
        await self._run_hooks(RepositoryEvent.AFTER_BULK_CREATE, created)
        return created

    async def bulk_update(self, where, changes):
        affected = []
        for pk, record in list(self._records.items()):
            if matches(self._fields(record), where):
                updated = self.record_type.model_validate({**record.model_dump(), **changes, self.pk_field: pk})
                self._records[pk] = updated
                affected.append(updated)
        await self._run_hooks(RepositoryEvent.AFTER_BULK_UPDATE, affected)
        return len(affected)

    async def bulk_delete(self, where):
        affected = [record for record in self._records.values() if matches(self._fields(record), where)]
        for record in affected:
            del self._records[getattr(record, self.pk_field)]
        await self._run_hooks(RepositoryEvent.AFTER_BULK_DELETE, affected)
        return len(affected)

    def _insert(self, data: Dict[str, Any]) -> RecordT:
        payload = dict(data)
        pk = payload.get(self.pk_field)
        if pk is None:
            pk = self._next_pk
            payload[self.pk_field] = pk
        self._next_pk = max(self._next_pk, int(pk) + 1) if isinstance(pk, int) else self._next_pk

        record = self.record_type.model_validate(payload)
        self._records[pk] = record
        return record

    @staticmethod
    def _coerce_pk(pk: Any) -> Any:
        if isinstance(pk, str) and pk.isdigit():
            return int(pk)
        return pk
