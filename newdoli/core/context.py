"""Single owner of the per-process components."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from newdoli.services.api_client import RemoteGateway

from .auth import AuthSession
from .config import ConfigStore
from .connectivity import ConnectivityMonitor
from .database import Database
from .store import LocalStore
from .sync import SyncCoordinator

logger = logging.getLogger(__name__)


class AppContext:
    """
    Builds and holds exactly one of each component, wired together.

    ``transport`` is handed to the Dolibarr gateway and ``probe_transport``
    to the connectivity monitor; both default to real network I/O.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        probe_transport: Optional[httpx.AsyncBaseTransport] = None,
        probe_url: Optional[str] = None,
        initially_online: bool = True,
        session_secret: Optional[str] = None,
    ) -> None:
        self.db = Database(database_url)
        self.config = ConfigStore(self.db)
        self.store = LocalStore(self.db)
        self.connectivity = ConnectivityMonitor(
            self.config,
            probe_url=probe_url,
            initially_online=initially_online,
            transport=probe_transport,
        )
        self.gateway = RemoteGateway(self.config, transport=transport)
        self.auth = AuthSession(self.store, self.gateway, self.config, secret=session_secret)
        self.sync = SyncCoordinator(self.store, self.gateway, self.connectivity, self.auth)

    async def start(self) -> None:
        """Create the schema, seed defaults and restore the previous session."""
        await self.db.init()
        await self.store.seed_default_permissions()
        await self.auth.initialize()
        logger.info("NewDoli core started (authenticated=%s)", self.auth.is_authenticated)

    async def close(self) -> None:
        await self.gateway.close()
        await self.db.dispose()

    async def __aenter__(self) -> "AppContext":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
