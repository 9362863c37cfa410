"""Online/offline tracking.

Other components read ``is_online`` synchronously; the monitor is the only
writer of ``ConnectivityState``. Passive transitions come from the host
(``set_online``), active ones from ``check_now``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, List, Optional

import httpx

from .clock import utcnow
from .config import ConfigStore, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectivityState:
    is_online: bool = True
    is_checking: bool = False
    last_check: Optional[datetime] = None
    error: Optional[str] = None


Listener = Callable[[ConnectivityState], None]


class ConnectivityMonitor:
    def __init__(
        self,
        config: Optional[ConfigStore] = None,
        *,
        probe_url: Optional[str] = None,
        initially_online: bool = True,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.config = config
        self.probe_url = probe_url or settings.probe_url
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self._transport = transport
        self._state = ConnectivityState(is_online=initially_online)
        self._listeners: List[Listener] = []

    # ---------- state ----------

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state.is_online

    @property
    def is_checking(self) -> bool:
        return self._state.is_checking

    @property
    def last_check(self) -> Optional[datetime]:
        return self._state.last_check

    @property
    def error(self) -> Optional[str]:
        return self._state.error

    def _update(self, **changes) -> None:
        previous = self._state
        self._state = replace(previous, **changes)
        if previous.is_online != self._state.is_online:
            logger.info("Network: %s", "Online" if self._state.is_online else "Offline")
            self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("Connectivity listener %r failed", listener)

    def on_change(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for online/offline transitions; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ---------- passive signal ----------

    def set_online(self, online: bool) -> None:
        """Host platform reported a connectivity change; no probe is made."""
        self._update(is_online=bool(online), last_check=utcnow(), error=None)

    # ---------- active probes ----------

    async def _probe_target(self) -> Optional[str]:
        if self.probe_url:
            return self.probe_url
        if self.config is not None:
            return await self.config.dolibarr_url()
        return None

    async def _head(self, url: str) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            return await client.head(url, headers={"Cache-Control": "no-cache"})

    async def check_now(self) -> bool:
        """
        Probe the network with a lightweight HEAD request.

        Any answer that is not an HTTP error counts as reachable. Failures
        are recorded in the state, never raised.
        """
        self._update(is_checking=True, error=None)
        url = await self._probe_target()
        if not url:
            self._update(
                is_online=False,
                is_checking=False,
                last_check=utcnow(),
                error="No probe URL configured",
            )
            return False

        try:
            resp = await self._head(url)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("Connectivity check failed: %s", exc)
            self._update(
                is_online=False,
                is_checking=False,
                last_check=utcnow(),
                error=str(exc) or "Connectivity check failed",
            )
            return False

        online = not resp.is_error
        self._update(
            is_online=online,
            is_checking=False,
            last_check=utcnow(),
            error=None if online else f"Probe returned HTTP {resp.status_code}",
        )
        return online

    async def check_url(self, url: str) -> bool:
        """Reachability of a specific URL; only a 2xx answer counts."""
        self._update(is_checking=True, error=None)
        try:
            resp = await self._head(url)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("URL reachability check failed: %s", exc)
            self._update(
                is_online=False,
                is_checking=False,
                last_check=utcnow(),
                error=str(exc) or "URL not reachable",
            )
            return False

        reachable = resp.is_success
        self._update(
            is_online=reachable,
            is_checking=False,
            last_check=utcnow(),
            error=None if reachable else f"URL not reachable: {resp.status_code}",
        )
        return reachable
