"""One logical record, many keys.

Every resource type declares its key templates once, in a ``RecordType``.
``RecordStore`` is the only writer: it serializes a record once and dispatches
the write to every resolved key together, so no code path can update fewer
index keys than another. The backing store has no transactions; a partial
fan-out is reported as one aggregate ``FanOutError`` rather than hidden.
"""
from __future__ import annotations

import asyncio
import string
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Dict,
    Generic,
    List,
    Mapping,
    Optional,
    Type,
    TypeVar,
)

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from klearkarma.logging import get_logger, sanitize_error_message
from klearkarma.storage.errors import (
    ConstraintViolation,
    FanOutError,
    InvalidKeyError,
    RecordCorruptedError,
    StoreError,
    StoreTimeoutError,
)
from klearkarma.storage.kv import KeyValueBackend

logger = get_logger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

_ID_SUFFIX = "{id}"


def _template_fields(template: str) -> List[str]:
    return [
        field_name
        for _, field_name, _, _ in string.Formatter().parse(template)
        if field_name is not None
    ]


def _key_part(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    part = str(value)
    if ":" in part or not part:
        raise InvalidKeyError(part)
    return part


class RecordType(Generic[RecordT]):
    """Declared key layout for one resource type.

    ``key_templates`` maps an index name to a template such as
    ``"practitioner_services:{practitioner_id}:{id}"``. The first entry is the
    primary key. Every template must end in ``{id}`` so that an index prefix
    lists exactly the records of one owner/category.
    """

    def __init__(
        self,
        name: str,
        model: Type[RecordT],
        key_templates: Mapping[str, str],
    ) -> None:
        if not key_templates:
            raise ValueError(f"{name}: at least one key template is required")
        fields = set(model.model_fields)
        for index, template in key_templates.items():
            if not template.endswith(":" + _ID_SUFFIX):
                raise ValueError(f"{name}.{index}: template must end with ':{{id}}'")
            missing = [f for f in _template_fields(template) if f not in fields]
            if missing:
                raise ValueError(
                    f"{name}.{index}: template references unknown fields {missing}"
                )
        primary = next(iter(key_templates.values()))
        if _template_fields(primary) != ["id"]:
            raise ValueError(f"{name}: primary template may only reference {{id}}")
        self.name = name
        self.model = model
        self.key_templates: Dict[str, str] = dict(key_templates)
        self.primary_index = next(iter(key_templates))

    def __repr__(self) -> str:
        return f"RecordType({self.name!r})"

    def primary_key(self, record_id: str) -> str:
        return self.key_templates[self.primary_index].format(id=_key_part(record_id))

    def keys_for(self, record: RecordT) -> List[str]:
        """Resolve every template for ``record``.

        Templates whose fields are ``None`` on this record are skipped, so an
        optional attribute only produces an index entry when it is set.
        """
        keys: List[str] = []
        for template in self.key_templates.values():
            values: Dict[str, str] = {}
            for field_name in _template_fields(template):
                raw = getattr(record, field_name)
                if raw is None:
                    break
                values[field_name] = _key_part(raw)
            else:
                keys.append(template.format(**values))
        return keys

    def prefix(self, index: str, **values: Any) -> str:
        """Scan prefix for one index, e.g. ``prefix("by_category", category="reiki")``."""
        template = self.key_templates[index]
        head = template[: -len(_ID_SUFFIX)]
        expected = _template_fields(head)
        if sorted(expected) != sorted(values):
            raise ValueError(f"{self.name}.{index}: expected values for {expected}")
        return head.format(**{k: _key_part(v) for k, v in values.items()})


class RecordStore:
    """Typed fan-out persistence over a ``KeyValueBackend``.

    Each backend call is bounded by ``timeout_seconds``; a timeout is a
    failure (``StoreTimeoutError``) and is not retried here.
    """

    def __init__(
        self,
        kv: KeyValueBackend,
        *,
        timeout_seconds: float = 5.0,
        scan_limit: int = 1000,
    ) -> None:
        self.kv = kv
        self.timeout_seconds = timeout_seconds
        self.scan_limit = scan_limit

    async def _call(self, op: str, key: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.error("store_timeout", op=op, key=key, timeout=self.timeout_seconds)
            raise StoreTimeoutError(
                f"store {op} timed out", detail={"key": key, "op": op}
            ) from exc
        except StoreError:
            raise
        except Exception as exc:
            logger.error(
                "store_call_failed",
                op=op,
                key=key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreError(
                sanitize_error_message(f"store {op} failed: {exc}"),
                detail={"key": key, "op": op},
            ) from exc

    # -- raw keys (pointers such as email:{email} and refresh:{user_id}) --

    async def get_raw(self, key: str) -> Optional[str]:
        return await self._call("get", key, self.kv.get(key))

    async def put_raw(
        self, key: str, value: str, *, ttl_seconds: Optional[int] = None
    ) -> None:
        await self._call("put", key, self.kv.put(key, value, ttl_seconds=ttl_seconds))

    async def delete_raw(self, key: str) -> None:
        await self._call("delete", key, self.kv.delete(key))

    async def list_keys(self, prefix: str, *, limit: Optional[int] = None) -> List[str]:
        """Key names under ``prefix`` in sorted order, at most ``limit``."""
        bound = min(limit or self.scan_limit, self.scan_limit)
        listing = await self._call("list", prefix, self.kv.list(prefix, limit=bound))
        if not listing.list_complete:
            logger.info("record_scan_truncated", prefix=prefix, limit=bound)
        return [info.name for info in listing.keys]

    async def claim_raw(self, key: str, value: str) -> None:
        """Write a unique pointer key, refusing to overwrite a different owner.

        Check-then-write: two concurrent claims can both succeed, the last
        one wins the pointer.
        """
        existing = await self.get_raw(key)
        if existing is not None and existing != value:
            raise ConstraintViolation("key already claimed", {"key": key})
        await self.put_raw(key, value)

    # -- records --

    def _decode(self, record_type: RecordType[RecordT], key: str, raw: str) -> RecordT:
        try:
            return record_type.model.model_validate_json(raw)
        except PydanticValidationError as exc:
            raise RecordCorruptedError(
                f"stored {record_type.name} failed validation",
                detail={"key": key, "errors": exc.error_count()},
            ) from exc

    async def _fan_out(
        self,
        record_type: RecordType[Any],
        writes: Dict[str, Optional[str]],
    ) -> None:
        """Dispatch every write (value) or delete (None) together and await all."""
        keys = list(writes)
        calls = [
            self._call("put", key, self.kv.put(key, value))
            if value is not None
            else self._call("delete", key, self.kv.delete(key))
            for key, value in writes.items()
        ]
        results = await asyncio.gather(*calls, return_exceptions=True)
        failed = [
            (key, res) for key, res in zip(keys, results) if isinstance(res, BaseException)
        ]
        if failed:
            logger.error(
                "record_fan_out_failed",
                record_type=record_type.name,
                failed_keys=[key for key, _ in failed],
                attempted=len(keys),
            )
            raise FanOutError(
                record_type.name, [key for key, _ in failed], [err for _, err in failed]
            )

    async def put(
        self,
        record_type: RecordType[RecordT],
        record: RecordT,
        *,
        previous: Optional[RecordT] = None,
    ) -> None:
        """Write ``record`` under every key its type declares.

        When ``previous`` is given, keys it resolved to that the new version
        no longer resolves to (for example after a category change) are
        deleted in the same batch.
        """
        payload = record.model_dump_json()
        keys = record_type.keys_for(record)
        writes: Dict[str, Optional[str]] = {key: payload for key in keys}
        if previous is not None:
            for stale in record_type.keys_for(previous):
                writes.setdefault(stale, None)
        await self._fan_out(record_type, writes)
        logger.debug(
            "record_put",
            record_type=record_type.name,
            record_id=getattr(record, "id", None),
            keys=len(keys),
        )

    async def insert(self, record_type: RecordType[RecordT], record: RecordT) -> None:
        primary = record_type.keys_for(record)[0]
        if await self.get_raw(primary) is not None:
            raise ConstraintViolation(
                f"{record_type.name} already exists", {"key": primary}
            )
        await self.put(record_type, record)

    async def get(
        self, record_type: RecordType[RecordT], record_id: str
    ) -> Optional[RecordT]:
        return await self.get_by_key(record_type, record_type.primary_key(record_id))

    async def get_by_key(
        self, record_type: RecordType[RecordT], key: str
    ) -> Optional[RecordT]:
        raw = await self.get_raw(key)
        if raw is None:
            return None
        return self._decode(record_type, key, raw)

    async def scan(
        self,
        record_type: RecordType[RecordT],
        prefix: str,
        *,
        limit: Optional[int] = None,
    ) -> AsyncIterator[RecordT]:
        """Yield records whose keys start with ``prefix``, at most ``limit``.

        Lazy and single-use. Keys that vanish between listing and reading
        are skipped; entries that fail validation are logged and skipped.
        """
        for key in await self.list_keys(prefix, limit=limit):
            raw = await self.get_raw(key)
            if raw is None:
                continue
            try:
                yield self._decode(record_type, key, raw)
            except RecordCorruptedError as exc:
                logger.warning(
                    "record_scan_skipped_corrupt",
                    record_type=record_type.name,
                    key=key,
                    detail=exc.detail,
                )

    async def collect(
        self,
        record_type: RecordType[RecordT],
        prefix: str,
        *,
        limit: Optional[int] = None,
    ) -> List[RecordT]:
        return [item async for item in self.scan(record_type, prefix, limit=limit)]

    async def delete(self, record_type: RecordType[RecordT], record: RecordT) -> None:
        """Remove every key the record resolves to."""
        await self._fan_out(record_type, {key: None for key in record_type.keys_for(record)})
        logger.debug(
            "record_deleted", record_type=record_type.name, record_id=getattr(record, "id", None)
        )


__all__ = ["RecordType", "RecordStore"]
