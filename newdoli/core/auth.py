"""
Authentication session: credential exchange, startup restore, teardown and
the permission/rights view derived from the logged-in user.

Two tokens are involved and must not be confused:

- the *credential*, issued by Dolibarr on login and stored in the
  ConfigStore under ``dolibarr_token``; it authorises every remote call;
- the *session marker*, a locally signed JWT that only identifies this
  client's session and authorises nothing remotely.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

import jwt
from pydantic import ValidationError

from newdoli.services.api_client import RemoteGateway
from newdoli.services.schemas import LoginResult, UserInfo

from . import permissions as rules
from .clock import utcnow
from .config import DOLIBARR_TOKEN_KEY, ConfigStore, get_settings
from .errors import (
    APIError,
    AuthError,
    AuthenticationInProgressError,
    FieldValidationError,
    NewDoliError,
)
from .store import LocalStore

logger = logging.getLogger(__name__)

AUTH_TOKEN_KEY = "newdoli_auth_token"
USER_DATA_KEY = "newdoli_user_data"


class AuthStatus(str, Enum):
    LOGGED_OUT = "logged_out"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    AUTH_ERROR = "auth_error"


@dataclass(frozen=True)
class AuthSessionState:
    status: AuthStatus = AuthStatus.LOGGED_OUT
    user: Optional[UserInfo] = None
    token: Optional[str] = None
    permissions: Tuple[str, ...] = ()
    rights: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    is_loading: bool = False
    error: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return (
            self.status is AuthStatus.AUTHENTICATED
            and self.user is not None
            and self.token is not None
        )


class _LoginCancelled(Exception):
    pass


def _freeze_rights(rights: Dict[str, Iterable[str]]) -> Dict[str, Tuple[str, ...]]:
    return {module: tuple(actions) for module, actions in rights.items()}


class AuthSession:
    """The single session of a running client; owned by ``AppContext``."""

    def __init__(
        self,
        store: LocalStore,
        gateway: RemoteGateway,
        config: ConfigStore,
        *,
        secret: Optional[str] = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.config = config
        self._secret = secret or get_settings().session_secret
        self._state = AuthSessionState()
        self._epoch = 0

    # ---------- state ----------

    @property
    def state(self) -> AuthSessionState:
        return self._state

    @property
    def status(self) -> AuthStatus:
        return self._state.status

    @property
    def is_authenticated(self) -> bool:
        return self._state.is_authenticated

    @property
    def current_user(self) -> Optional[UserInfo]:
        return self._state.user

    @property
    def is_admin(self) -> bool:
        user = self._state.user
        return bool(user is not None and user.admin)

    @property
    def permissions(self) -> Tuple[str, ...]:
        return self._state.permissions

    @property
    def rights(self) -> Dict[str, Tuple[str, ...]]:
        return self._state.rights

    @property
    def error(self) -> Optional[str]:
        return self._state.error

    def _set_state(self, **changes: Any) -> None:
        previous = self._state.status
        self._state = replace(self._state, **changes)
        if self._state.status is not previous:
            logger.info("Auth state: %s -> %s", previous.value, self._state.status.value)

    def _authenticated(
        self,
        user: UserInfo,
        token: str,
        permissions: Iterable[str],
        rights: Dict[str, Iterable[str]],
    ) -> None:
        self._set_state(
            status=AuthStatus.AUTHENTICATED,
            user=user,
            token=token,
            permissions=tuple(permissions),
            rights=_freeze_rights(rights),
            is_loading=False,
            error=None,
        )

    # ---------- credential ----------

    async def credential(self) -> Optional[str]:
        """The stored Dolibarr credential, if any."""
        token = await self.config.get(DOLIBARR_TOKEN_KEY)
        return token or None

    def _session_token(self, user: UserInfo) -> str:
        payload = {
            "sub": str(user.id),
            "login": user.login,
            "admin": user.admin,
            "iat": int(time.time()),
        }
        return jwt.encode(payload, self._secret, algorithm="HS256")

    # ---------- persisted session record ----------

    async def _store_session(
        self,
        token: str,
        user: UserInfo,
        permissions: Iterable[str],
        rights: Dict[str, Iterable[str]],
    ) -> None:
        record = {
            "user": user.model_dump(mode="json"),
            "permissions": list(permissions),
            "rights": {m: list(a) for m, a in rights.items()},
        }
        await self.config.set(AUTH_TOKEN_KEY, token, "string", "Local session marker")
        await self.config.set(USER_DATA_KEY, record, "json", "Session user data")

    async def _load_session(self) -> Optional[Tuple[str, UserInfo, List[str], Dict[str, List[str]]]]:
        """The persisted session record, or None when it is missing or malformed."""
        token = await self.config.get(AUTH_TOKEN_KEY)
        record = await self.config.get(USER_DATA_KEY)
        if not token or not isinstance(record, dict):
            return None
        try:
            user = UserInfo.model_validate(record.get("user"))
        except ValidationError as exc:
            logger.warning("Stored session user is malformed: %s", exc)
            return None
        perms = record.get("permissions")
        rights = record.get("rights")
        if not isinstance(perms, list) or not isinstance(rights, dict):
            logger.warning("Stored session permissions are malformed")
            return None
        return token, user, [str(p) for p in perms], rights

    async def _clear_session_record(self) -> None:
        await self.config.delete(AUTH_TOKEN_KEY)
        await self.config.delete(USER_DATA_KEY)

    async def _hydrate(self) -> bool:
        session = await self._load_session()
        if session is None:
            return False
        token, user, perms, rights = session
        self._authenticated(user, token, perms, rights)
        logger.info("Session restored for '%s'", user.login)
        return True

    # ---------- lifecycle ----------

    async def initialize(self) -> AuthSessionState:
        """
        Startup transition: restore the previous session when its stored
        credential still passes introspection.
        """
        token = await self.credential()
        if not token:
            return self._state

        try:
            await self.gateway.introspect(token)
        except NewDoliError as exc:
            logger.warning("Stored Dolibarr token is unusable, clearing auth data: %s", exc)
            await self.clear_auth_data()
            return self._state

        if not await self._hydrate():
            logger.info("Valid Dolibarr token but no usable session record; staying logged out")
        return self._state

    async def check_authenticated(self) -> bool:
        """
        ``isUserAuthenticated`` probe.

        Only mutates state to restore a session whose credential survived a
        restart while the in-memory state says logged out.
        """
        if self.is_authenticated:
            return True
        if self._state.status is AuthStatus.AUTHENTICATING:
            return False

        token = await self.credential()
        if not token:
            return False
        try:
            await self.gateway.introspect(token)
        except NewDoliError as exc:
            logger.debug("Stored Dolibarr token not usable: %s", exc)
            return False
        return await self._hydrate()

    async def login(self, login: str, password: str) -> bool:
        """
        Exchange credentials, mirror the user locally and open the session.

        Failures move the session to ``AUTH_ERROR`` and are re-raised. A
        logout that lands while the login is in flight cancels it: nothing
        it stored is kept and it returns False.
        """
        if self._state.status is AuthStatus.AUTHENTICATING:
            raise AuthenticationInProgressError("A login is already in progress")

        login = (login or "").strip()
        if not login:
            raise FieldValidationError("login", "Username is required")
        if not password:
            raise FieldValidationError("password", "Password is required")

        self._set_state(
            status=AuthStatus.AUTHENTICATING,
            user=None,
            token=None,
            permissions=(),
            rights={},
            is_loading=True,
            error=None,
        )

        # clear_auth_data bumps the epoch; a login that sees it move was cancelled
        epoch = self._epoch
        credential = marker = None
        try:
            result = await self.gateway.login(login, password)
            self._ensure_epoch(epoch)
            credential = result.token
            await self.config.set(DOLIBARR_TOKEN_KEY, result.token, "string", "Dolibarr API token")
            self._ensure_epoch(epoch)

            info = await self._user_info(result)
            self._ensure_epoch(epoch)
            row = await self._mirror_user(info)
            if info.permissions is not None:
                perms = list(dict.fromkeys(info.permissions))
            else:
                perms = await self.get_user_permissions(row)
            rights = info.rights or rules.derive_rights(perms)

            marker = self._session_token(info)
            self._ensure_epoch(epoch)
            await self._store_session(marker, info, perms, rights)
            self._ensure_epoch(epoch)
        except Exception as exc:
            await self._discard_login(credential, marker)
            if self._epoch != epoch:
                logger.info("Login of '%s' cancelled by a logout", login)
                return False
            message = str(exc) or "Login failed"
            logger.error("Login error: %s", message)
            self._set_state(status=AuthStatus.AUTH_ERROR, is_loading=False, error=message)
            raise

        self._authenticated(info, marker, perms, rights)
        logger.info("User '%s' logged in", info.login)
        return True

    def _ensure_epoch(self, epoch: int) -> None:
        if self._epoch != epoch:
            raise _LoginCancelled()

    async def _discard_login(self, credential: Optional[str], marker: Optional[str]) -> None:
        """Remove what an unfinished login stored, unless a newer session replaced it."""
        if credential and await self.config.get(DOLIBARR_TOKEN_KEY) == credential:
            await self.config.delete(DOLIBARR_TOKEN_KEY)
        if marker and await self.config.get(AUTH_TOKEN_KEY) == marker:
            await self._clear_session_record()

    async def _user_info(self, result: LoginResult) -> UserInfo:
        """Full user info for a fresh credential, falling back to the login payload."""
        try:
            return await self.gateway.introspect(result.token)
        except AuthError:
            raise
        except APIError as exc:
            if result.user is None:
                raise
            logger.warning("users/info unavailable (%s); using login payload", exc)
            return result.user

    async def _mirror_user(self, info: UserInfo):
        now = utcnow()
        row = info.to_row()
        existing = await self.store.get("users", info.id)
        if existing is None:
            return await self.store.add("users", {**row, "last_login": now})
        return await self.store.update("users", info.id, {**row, "last_login": now})

    async def logout(self) -> None:
        """Tear the session down. Never raises, whatever the remote says."""
        try:
            token = await self.credential()
            if token:
                await self.gateway.logout(token)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error during logout: %s", exc)
        finally:
            await self.clear_auth_data()
        logger.info("Logged out")

    async def clear_auth_data(self) -> None:
        """Forget the credential, the session record and the in-memory state."""
        self._epoch += 1
        self._state = AuthSessionState()
        try:
            await self.config.delete(DOLIBARR_TOKEN_KEY)
            await self._clear_session_record()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not clear stored auth data: %s", exc)

    async def refresh_user_data(self) -> bool:
        """Reload the current user from the local mirror and recompute permissions."""
        user = self._state.user
        if user is None or not self.is_authenticated:
            return False
        row = await self.store.get("users", user.id)
        if row is None:
            return False

        refreshed = UserInfo(
            id=row.id,
            login=row.login,
            firstname=row.firstname,
            lastname=row.lastname,
            email=row.email,
            admin=row.admin,
            active=row.active,
            groups=row.groups or [],
            permissions=row.permissions or [],
            rights=user.rights,
        )
        perms = await self.get_user_permissions(row)
        rights = refreshed.rights or rules.derive_rights(perms)
        await self._store_session(self._state.token, refreshed, perms, rights)
        self._authenticated(refreshed, self._state.token, perms, rights)
        return True

    # ---------- permissions ----------

    async def get_user_permissions(self, user: Any) -> List[str]:
        """Effective permissions per the admin/groups/direct rule, read from the local mirror."""
        if user is None:
            return []
        if getattr(user, "admin", False):
            names = [p.name for p in await self.store.list("permissions")]
            return rules.derive_permissions(user, (), names)

        groups = []
        for group_id in getattr(user, "groups", None) or []:
            group = await self.store.get("groups", group_id)
            if group is not None:
                groups.append(group)
        return rules.derive_permissions(user, groups)

    def has_permission(self, name: str) -> bool:
        return rules.has_permission(self._state.permissions, name, admin=self.is_admin)

    def has_all_permissions(self, names: Iterable[str]) -> bool:
        return rules.has_all_permissions(self._state.permissions, names, admin=self.is_admin)

    def has_any_permission(self, names: Iterable[str]) -> bool:
        return rules.has_any_permission(self._state.permissions, names, admin=self.is_admin)

    def can_access_module(self, module: str) -> bool:
        return rules.can_access_module(
            module, self._state.permissions, self._state.rights, admin=self.is_admin
        )

    def accessible_modules(self) -> List[str]:
        return rules.accessible_modules(self._state.permissions, self._state.rights)
