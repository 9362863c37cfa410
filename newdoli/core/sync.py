"""
Remote-or-local loading of the mirrored collections.

Online, a refresh fetches from Dolibarr and rewrites the local mirror;
offline, or when the fetch or the mirror write fails, it serves the mirror as
it stands. Such failures never escape ``refresh``: they are recorded on the
outcome and in ``error``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from newdoli.services.api_client import RemoteGateway

from .auth import AuthSession
from .clock import utcnow
from .connectivity import ConnectivityMonitor
from .errors import APIError, AuthError, NewDoliError
from .store import LocalStore

logger = logging.getLogger(__name__)

ENTITY_TYPES = ("users", "groups", "third_parties", "products")

# users and groups are never deleted locally; the catalogue mirrors are rewritten
UPSERTED = frozenset({"users", "groups"})


@dataclass
class SyncStatus:
    last_sync: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class RefreshOutcome:
    entity_type: str
    items: List[Any] = field(default_factory=list)
    is_online: bool = False
    last_sync: Optional[datetime] = None
    error: Optional[str] = None
    source: str = "local"  # "remote" | "local"


class SyncCoordinator:
    def __init__(
        self,
        store: LocalStore,
        gateway: RemoteGateway,
        connectivity: ConnectivityMonitor,
        auth: AuthSession,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.connectivity = connectivity
        self.auth = auth
        self._status: Dict[str, SyncStatus] = {name: SyncStatus() for name in ENTITY_TYPES}
        self._locks: Dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in ENTITY_TYPES}
        self._fetchers: Dict[str, Callable[[str], Awaitable[List[Any]]]] = {
            "users": gateway.fetch_users,
            "groups": gateway.fetch_groups,
            "third_parties": gateway.fetch_third_parties,
            "products": gateway.fetch_products,
        }

    # ---------- status ----------

    def status(self, entity_type: str) -> SyncStatus:
        self._check(entity_type)
        return self._status[entity_type]

    @property
    def last_sync(self) -> Optional[datetime]:
        """Most recent successful sync across entity types."""
        stamps = [s.last_sync for s in self._status.values() if s.last_sync]
        return max(stamps) if stamps else None

    @property
    def error(self) -> Optional[str]:
        """Outstanding refresh error, first entity type first."""
        for name in ENTITY_TYPES:
            if self._status[name].error:
                return self._status[name].error
        return None

    @staticmethod
    def _check(entity_type: str) -> None:
        if entity_type not in ENTITY_TYPES:
            raise KeyError(f"Unknown entity type '{entity_type}'")

    # ---------- refresh ----------

    async def refresh(self, entity_type: str) -> RefreshOutcome:
        """
        Load ``entity_type`` from Dolibarr when online, from the mirror otherwise.

        Concurrent refreshes of the same entity type run one after the other.
        """
        self._check(entity_type)
        async with self._locks[entity_type]:
            status = self._status[entity_type]
            online = self.connectivity.is_online

            if online:
                try:
                    items = await self._pull(entity_type)
                except (NewDoliError, SQLAlchemyError) as exc:
                    await self._on_remote_failure(entity_type, exc)
                else:
                    status.last_sync = utcnow()
                    status.error = None
                    logger.info("%s synced from Dolibarr (%d rows)", entity_type, len(items))
                    return RefreshOutcome(
                        entity_type=entity_type,
                        items=items,
                        is_online=True,
                        last_sync=status.last_sync,
                        error=None,
                        source="remote",
                    )
            else:
                # offline is not a failure
                status.error = None

            items = await self.store.list(entity_type)
            return RefreshOutcome(
                entity_type=entity_type,
                items=items,
                is_online=online,
                last_sync=status.last_sync,
                error=status.error,
                source="local",
            )

    async def _pull(self, entity_type: str) -> List[Any]:
        token = await self.auth.credential()
        if not token:
            raise APIError("No Dolibarr token available")

        remote = await self._fetchers[entity_type](token)
        rows = [item.to_row() for item in remote]
        if entity_type in UPSERTED:
            await self.store.upsert_many(entity_type, rows)
        else:
            await self.store.replace_all(entity_type, rows)
        return await self.store.list(entity_type)

    async def _on_remote_failure(self, entity_type: str, exc: Exception) -> None:
        self._status[entity_type].error = str(exc) or exc.__class__.__name__
        if isinstance(exc, AuthError):
            logger.warning("Dolibarr rejected the credential while loading %s; signing out", entity_type)
            await self.auth.clear_auth_data()
        else:
            logger.warning("Error syncing %s from Dolibarr, using local data: %s", entity_type, exc)

    async def refresh_all(self) -> Dict[str, RefreshOutcome]:
        outcomes = await asyncio.gather(*(self.refresh(name) for name in ENTITY_TYPES))
        return dict(zip(ENTITY_TYPES, outcomes))

    # ---------- pending-change ledger ----------

    async def record_local_change(
        self,
        entity_type: str,
        entity_id: int,
        action: str,
        payload: Any = None,
    ):
        """
        Append a ledger entry for a change made while offline.

        Returns the entry, or None when online (nothing is pending then).
        """
        if self.connectivity.is_online:
            return None
        entry = await self.store.append_ledger_entry(entity_type, entity_id, action, payload)
        logger.info("Recorded offline %s of %s #%s", action, entity_type, entity_id)
        return entry

    async def pending_changes(self):
        return await self.store.pending_ledger_entries()

    async def mark_change_synced(self, entry_id: int) -> bool:
        return await self.store.mark_ledger_entry_synced(entry_id)

    async def sync_status(self) -> Dict[str, Any]:
        pending = await self.store.pending_ledger_entries()
        return {
            "pending": len(pending),
            "last_pending_at": max((e.created_at for e in pending), default=None),
            "last_sync": self.last_sync,
            "is_online": self.connectivity.is_online,
        }
