"""
Persistent local mirror of remote entities plus the pending-change ledger.

Collections are addressed by name (see ``models.COLLECTIONS``). Rows come
back as detached ORM instances; callers read them, only AuthSession and
SyncCoordinator write through this class.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from sqlalchemy import delete, func, select

from .clock import utcnow
from .database import Base, Database
from .models import (
    COLLECTIONS,
    DEFAULT_PERMISSIONS,
    Configuration,
    FieldVisibility,
    Permission,
    SyncLedgerEntry,
    User,
)

logger = logging.getLogger(__name__)

LEDGER_ACTIONS = ("create", "update", "delete")

RowLike = Union[Mapping[str, Any], Base]


def _model_for(collection: str) -> type[Base]:
    try:
        return COLLECTIONS[collection]
    except KeyError:
        raise KeyError(f"Unknown collection '{collection}'") from None


def _values(row: RowLike, model: type[Base]) -> Dict[str, Any]:
    """Column values of ``row`` restricted to ``model``'s columns."""
    columns = model.__table__.columns.keys()
    if isinstance(row, Mapping):
        return {k: v for k, v in row.items() if k in columns}
    return {k: getattr(row, k) for k in columns if hasattr(row, k)}


class LocalStore:
    """Typed CRUD over the local collections."""

    def __init__(self, db: Database) -> None:
        self.db = db
        self._locks: Dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in COLLECTIONS}

    def _lock(self, collection: str) -> asyncio.Lock:
        _model_for(collection)
        return self._locks[collection]

    # ---------- reads ----------

    async def get(self, collection: str, id: int) -> Optional[Base]:
        model = _model_for(collection)
        async with self._lock(collection):
            async with self.db.session() as session:
                return await session.get(model, id)

    async def list(self, collection: str) -> List[Base]:
        model = _model_for(collection)
        async with self._lock(collection):
            async with self.db.session() as session:
                result = await session.execute(select(model).order_by(model.id))
                return list(result.scalars())

    async def count(self, collection: str) -> int:
        model = _model_for(collection)
        async with self._lock(collection):
            async with self.db.session() as session:
                result = await session.execute(select(func.count()).select_from(model))
                return int(result.scalar_one())

    async def get_user_by_login(self, login: str) -> Optional[User]:
        async with self._lock("users"):
            async with self.db.session() as session:
                result = await session.execute(select(User).where(User.login == login).limit(1))
                return result.scalar_one_or_none()

    async def permissions_by_module(self, module: str) -> List[Permission]:
        async with self._lock("permissions"):
            async with self.db.session() as session:
                result = await session.execute(
                    select(Permission).where(Permission.module == module).order_by(Permission.id)
                )
                return list(result.scalars())

    # ---------- writes ----------

    async def add(self, collection: str, row: RowLike) -> Base:
        model = _model_for(collection)
        now = utcnow()
        async with self._lock(collection):
            async with self.db.transaction() as session:
                obj = model(**_values(row, model))
                if hasattr(model, "updated_at"):
                    obj.created_at = now
                    obj.updated_at = now
                elif hasattr(model, "created_at"):
                    obj.created_at = now
                session.add(obj)
        return obj

    async def update(self, collection: str, id: int, changes: Mapping[str, Any]) -> Optional[Base]:
        """Apply ``changes`` to row ``id``; returns the updated row or None if absent."""
        model = _model_for(collection)
        async with self._lock(collection):
            async with self.db.transaction() as session:
                obj = await session.get(model, id)
                if obj is None:
                    return None
                for key, value in _values(changes, model).items():
                    if key in ("id", "created_at"):
                        continue
                    setattr(obj, key, value)
                if hasattr(model, "updated_at"):
                    obj.updated_at = utcnow()
        return obj

    async def delete(self, collection: str, id: int) -> bool:
        model = _model_for(collection)
        async with self._lock(collection):
            async with self.db.transaction() as session:
                result = await session.execute(delete(model).where(model.id == id))
                return bool(result.rowcount)

    async def clear(self, collection: str) -> None:
        model = _model_for(collection)
        async with self._lock(collection):
            async with self.db.transaction() as session:
                await session.execute(delete(model))

    async def replace_all(self, collection: str, rows: Iterable[RowLike]) -> List[Base]:
        """
        Clear ``collection`` and bulk-insert ``rows`` as one unit.

        Readers of the collection wait on the same lock, so they see either
        the old snapshot or the new one, never a partial state. If any insert
        fails the transaction rolls back and the old snapshot survives.
        """
        model = _model_for(collection)
        now = utcnow()
        async with self._lock(collection):
            async with self.db.transaction() as session:
                await session.execute(delete(model))
                objs = []
                for row in rows:
                    obj = model(**_values(row, model))
                    obj.created_at = now
                    if hasattr(model, "updated_at"):
                        obj.updated_at = now
                    objs.append(obj)
                session.add_all(objs)
        logger.debug("Replaced %s mirror with %d rows", collection, len(objs))
        return objs

    async def upsert_many(self, collection: str, rows: Iterable[RowLike]) -> Dict[str, int]:
        """Insert-or-update by primary key; rows absent from ``rows`` are kept."""
        model = _model_for(collection)
        now = utcnow()
        stats = {"created": 0, "updated": 0}
        async with self._lock(collection):
            async with self.db.transaction() as session:
                for row in rows:
                    values = _values(row, model)
                    obj = await session.get(model, values.get("id")) if values.get("id") is not None else None
                    if obj is None:
                        obj = model(**values)
                        obj.created_at = now
                        session.add(obj)
                        stats["created"] += 1
                    else:
                        for key, value in values.items():
                            if key not in ("id", "created_at"):
                                setattr(obj, key, value)
                        stats["updated"] += 1
                    if hasattr(model, "updated_at"):
                        obj.updated_at = now
        return stats

    async def seed_default_permissions(self) -> int:
        """Insert the built-in permission set if the table is empty."""
        if await self.count("permissions"):
            return 0
        await self.replace_all("permissions", DEFAULT_PERMISSIONS)
        logger.info("Seeded %d default permissions", len(DEFAULT_PERMISSIONS))
        return len(DEFAULT_PERMISSIONS)

    # ---------- field visibility ----------

    async def field_visibility(self, user_id: Optional[int] = None) -> List[FieldVisibility]:
        """Per-user rules when ``user_id`` is given, global rules otherwise."""
        if user_id is None:
            clause = FieldVisibility.user_id.is_(None)
        else:
            clause = FieldVisibility.user_id == user_id
        async with self._lock("field_visibility"):
            async with self.db.session() as session:
                result = await session.execute(
                    select(FieldVisibility).where(clause).order_by(FieldVisibility.id)
                )
                return list(result.scalars())

    async def set_field_visibility(
        self,
        entity_type: str,
        field_name: str,
        visible: bool,
        user_id: Optional[int] = None,
    ) -> FieldVisibility:
        owner = FieldVisibility.user_id.is_(None) if user_id is None else FieldVisibility.user_id == user_id
        async with self._lock("field_visibility"):
            async with self.db.transaction() as session:
                result = await session.execute(
                    select(FieldVisibility).where(
                        owner,
                        FieldVisibility.entity_type == entity_type,
                        FieldVisibility.field_name == field_name,
                    )
                )
                row = result.scalar_one_or_none()
                if row is None:
                    row = FieldVisibility(user_id=user_id, entity_type=entity_type, field_name=field_name)
                    session.add(row)
                row.visible = visible
                row.updated_at = utcnow()
        return row

    # ---------- ledger ----------

    async def append_ledger_entry(
        self,
        entity_type: str,
        entity_id: int,
        action: str,
        payload: Any = None,
    ) -> SyncLedgerEntry:
        if action not in LEDGER_ACTIONS:
            raise ValueError(f"Unknown ledger action '{action}'")
        async with self.db.transaction() as session:
            entry = SyncLedgerEntry(
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                payload=payload,
                synced=False,
                created_at=utcnow(),
            )
            session.add(entry)
        return entry

    async def pending_ledger_entries(self) -> List[SyncLedgerEntry]:
        async with self.db.session() as session:
            result = await session.execute(
                select(SyncLedgerEntry)
                .where(SyncLedgerEntry.synced == False)  # noqa: E712
                .order_by(SyncLedgerEntry.id)
            )
            return list(result.scalars())

    async def mark_ledger_entry_synced(self, entry_id: int) -> bool:
        async with self.db.transaction() as session:
            entry = await session.get(SyncLedgerEntry, entry_id)
            if entry is None:
                return False
            entry.synced = True
            entry.synced_at = utcnow()
            entry.error = None
        return True

    # ---------- maintenance ----------

    async def clear_all_data(self) -> None:
        """Wipe every collection, the ledger and the configuration in one transaction."""
        locks = [self._locks[name] for name in sorted(self._locks)]
        for lock in locks:
            await lock.acquire()
        try:
            async with self.db.transaction() as session:
                for model in COLLECTIONS.values():
                    await session.execute(delete(model))
                await session.execute(delete(SyncLedgerEntry))
                await session.execute(delete(Configuration))
        finally:
            for lock in reversed(locks):
                lock.release()
        logger.info("Local data cleared")
