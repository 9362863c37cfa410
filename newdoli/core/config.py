"""Runtime settings and the persisted key/value configuration store."""

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any, List, Optional
from urllib.parse import urlparse

import httpx
from dotenv import load_dotenv
from pydantic import BaseModel, Field
from sqlalchemy import delete, select

from .clock import utcnow
from .errors import ConfigurationError, FieldValidationError

if TYPE_CHECKING:
    from .database import Database
    from .models import Configuration

load_dotenv()

logger = logging.getLogger(__name__)

DATA_DIR = Path(os.getenv("NEWDOLI_DATA_DIR", Path.home() / ".newdoli"))

CONFIG_TYPES = ("string", "number", "boolean", "json")

DOLIBARR_URL_KEY = "dolibarr_url"
DOLIBARR_TOKEN_KEY = "dolibarr_token"


def _sqlite_url(p: Path) -> str:
    return "sqlite+aiosqlite:///" + p.as_posix()


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    database_url: str = Field(
        default=_sqlite_url(DATA_DIR / "newdoli.db"), alias="NEWDOLI_DATABASE_URL"
    )
    session_secret: str = Field(default="newdoli-local-session-marker-signing-key", alias="NEWDOLI_SESSION_SECRET")
    request_timeout: float = Field(default=10.0, alias="NEWDOLI_REQUEST_TIMEOUT")
    probe_url: Optional[str] = Field(default=None, alias="NEWDOLI_PROBE_URL")
    log_level: str = Field(default="INFO", alias="NEWDOLI_LOG_LEVEL")

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    env = {
        name: os.environ[field.alias]
        for name, field in Settings.model_fields.items()
        if field.alias and field.alias in os.environ
    }
    return Settings(**env)


def is_valid_url(url: Optional[str]) -> bool:
    """True for absolute http(s) URLs with a host that httpx can request."""
    if not url or any(ch.isspace() for ch in url):
        return False
    try:
        parsed = urlparse(url)
        httpx.URL(url)
    except (ValueError, httpx.InvalidURL):
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def encode_value(value: Any, type_: str) -> str:
    if type_ == "json":
        return json.dumps(value)
    if type_ == "boolean":
        return "true" if value is True or str(value).lower() == "true" else "false"
    return str(value)


def decode_value(raw: str, type_: str, default: Any = None) -> Any:
    """Decode a stored string per its type tag, falling back to ``default``."""
    if type_ == "number":
        try:
            return int(raw)
        except (TypeError, ValueError):
            pass
        try:
            return float(raw)
        except (TypeError, ValueError):
            return default
    if type_ == "boolean":
        return raw == "true"
    if type_ == "json":
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            return default
    return raw


class ConfigStore:
    """
    Persisted, typed key/value configuration.

    A missing key is a normal state (first run) and yields the caller's
    default rather than an error.
    """

    def __init__(self, db: "Database") -> None:
        self.db = db

    # ---------- raw rows ----------

    async def get_entry(self, key: str) -> Optional["Configuration"]:
        from .models import Configuration

        async with self.db.session() as session:
            result = await session.execute(select(Configuration).where(Configuration.key == key))
            return result.scalar_one_or_none()

    async def all(self) -> List["Configuration"]:
        from .models import Configuration

        async with self.db.session() as session:
            result = await session.execute(select(Configuration).order_by(Configuration.key))
            return list(result.scalars())

    # ---------- typed access ----------

    async def get(self, key: str, default: Any = None) -> Any:
        entry = await self.get_entry(key)
        if entry is None:
            return default
        return decode_value(entry.value, entry.type, default)

    async def set(
        self,
        key: str,
        value: Any,
        type: str = "string",
        description: Optional[str] = None,
    ) -> str:
        """Upsert ``key``; returns the key."""
        from .models import Configuration

        if type not in CONFIG_TYPES:
            raise FieldValidationError("type", f"Unknown configuration type '{type}'")

        stored = encode_value(value, type)
        async with self.db.transaction() as session:
            result = await session.execute(select(Configuration).where(Configuration.key == key))
            row = result.scalar_one_or_none()
            if row is None:
                row = Configuration(key=key)
                session.add(row)
            row.value = stored
            row.type = type
            row.description = description
            row.updated_at = utcnow()
        logger.debug("Configuration '%s' saved (%s)", key, type)
        return key

    async def delete(self, key: str) -> None:
        from .models import Configuration

        async with self.db.transaction() as session:
            await session.execute(delete(Configuration).where(Configuration.key == key))

    # ---------- Dolibarr endpoint ----------

    async def dolibarr_url(self) -> Optional[str]:
        return await self.get(DOLIBARR_URL_KEY)

    async def set_dolibarr_url(self, url: str) -> str:
        """Validate, normalise (trailing ``/``) and store the Dolibarr base URL."""
        url = (url or "").strip()
        if not is_valid_url(url):
            raise FieldValidationError(DOLIBARR_URL_KEY, "Invalid URL format")
        normalized = url if url.endswith("/") else url + "/"
        await self.set(DOLIBARR_URL_KEY, normalized, "string", "Dolibarr server URL")
        logger.info("Dolibarr URL set to %s", normalized)
        return normalized

    async def clear_dolibarr_url(self) -> None:
        await self.delete(DOLIBARR_URL_KEY)

    async def is_configuration_complete(self) -> bool:
        return is_valid_url(await self.dolibarr_url())

    async def api_url(self, endpoint: str = "") -> str:
        """``<base>api/index.php/<endpoint>`` for the configured server."""
        base = await self.dolibarr_url()
        if not base:
            raise ConfigurationError("Dolibarr URL not configured")
        if not is_valid_url(base):
            raise ConfigurationError(f"Invalid Dolibarr URL: {base}")
        return f"{base.rstrip('/')}/api/index.php/{endpoint.lstrip('/')}"
