"""Test fixtures: a fake Dolibarr backend and a fresh local store per test."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI, Header, HTTPException, Response
from pydantic import BaseModel

from newdoli.core.config import ConfigStore
from newdoli.core.context import AppContext
from newdoli.core.database import Database
from newdoli.core.store import LocalStore
from newdoli.services.api_client import RemoteGateway

BASE_URL = "http://dolibarr.test/"
API = "/api/index.php"
SECRET = "test-session-secret-with-enough-length-for-hs256"

TOTO = {
    "id": 1,
    "login": "toto",
    "firstname": "Toto",
    "lastname": "Tester",
    "email": "toto@example.com",
    "admin": "0",
    "statut": "1",
    "groups": [10],
    "rights": {"societe": {"lire": 1, "creer": 1}, "produit": {"lire": 1, "supprimer": 0}},
}

ADMIN = {
    "id": 2,
    "login": "admin",
    "firstname": "Ada",
    "lastname": "Admin",
    "email": "admin@example.com",
    "admin": 1,
    "statut": 1,
    "groups": [],
}


def _users() -> List[Dict[str, Any]]:
    return [dict(TOTO), dict(ADMIN)]


def _groups() -> List[Dict[str, Any]]:
    return [
        {"id": 10, "nom": "Sales", "description": "Sales team", "permissions": ["thirdparty_read"]},
        {"id": 11, "nom": "Stock", "description": None, "permissions": ["product_read"]},
    ]


def _third_parties() -> List[Dict[str, Any]]:
    return [
        {
            "id": 1,
            "name": "Boulangerie Dupont",
            "address": "12 rue de Rivoli",
            "zip": "75001",
            "town": "Paris",
            "email": "contact@dupont.fr",
            "client": "1",
            "fournisseur": "0",
            "status": "1",
        },
        {
            "id": 2,
            "name": "Soieries Lyonnaises",
            "zip": "69000",
            "town": "Lyon",
            "client": 2,
            "fournisseur": 1,
            "status": "0",
        },
    ]


def _products() -> List[Dict[str, Any]]:
    return [
        {
            "id": 100,
            "ref": "BREAD-01",
            "label": "Baguette",
            "description": "Traditional baguette",
            "type": "0",
            "price": "1.10",
            "price_ttc": "1.16",
            "status": "1",
            "stock_reel": "40",
            "seuil_stock_alerte": "10",
            "date_modification": 1700000000,
        },
        {
            "id": 101,
            "ref": "SRV-DELIV",
            "label": "Delivery",
            "type": "1",
            "price": 5,
            "status": 0,
            "category": "Services",
        },
    ]


class LoginBody(BaseModel):
    login: str
    password: str


@dataclass
class FakeDolibarr:
    """Mutable state behind the fake Dolibarr API; tests flip the knobs."""

    passwords: Dict[str, str] = field(default_factory=lambda: {"toto": "Toto01", "admin": "Admin01"})
    users: List[Dict[str, Any]] = field(default_factory=_users)
    groups: List[Dict[str, Any]] = field(default_factory=_groups)
    third_parties: List[Dict[str, Any]] = field(default_factory=_third_parties)
    products: List[Dict[str, Any]] = field(default_factory=_products)
    tokens: Dict[str, int] = field(default_factory=dict)
    nested_login: bool = False
    fail_logout: bool = False
    info_status: Optional[int] = None
    list_status: Optional[int] = None
    list_payload: Any = None
    calls: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.app = self._build_app()

    def user(self, user_id: int) -> Dict[str, Any]:
        return next(u for u in self.users if u["id"] == user_id)

    def _authorise(self, dolapikey: Optional[str]) -> int:
        if not dolapikey or dolapikey not in self.tokens:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return self.tokens[dolapikey]

    def _listing(self, name: str, dolapikey: Optional[str]) -> Any:
        self.calls.append(name)
        self._authorise(dolapikey)
        if self.list_status is not None:
            raise HTTPException(status_code=self.list_status, detail="Server error")
        if self.list_payload is not None:
            return self.list_payload
        return getattr(self, name)

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="Fake Dolibarr")

        @app.api_route("/", methods=["GET", "HEAD"])
        async def root() -> Response:
            return Response(status_code=200)

        @app.post(f"{API}/login")
        async def login(body: LoginBody) -> Dict[str, Any]:
            self.calls.append("login")
            if self.passwords.get(body.login) != body.password:
                raise HTTPException(status_code=403, detail="Access denied")
            user = next(u for u in self.users if u["login"] == body.login)
            token = f"T{user['id']}"
            self.tokens[token] = user["id"]
            if self.nested_login:
                return {"success": {"code": 200, "token": token, "message": "Welcome"}}
            return {"token": token, "user": {"id": user["id"], "login": user["login"], "admin": user["admin"]}}

        @app.get(f"{API}/users/info")
        async def user_info(withrights: int = 0, dolapikey: Optional[str] = Header(default=None)):
            self.calls.append("users/info")
            user_id = self._authorise(dolapikey)
            if self.info_status is not None:
                raise HTTPException(status_code=self.info_status, detail="Unavailable")
            info = dict(self.user(user_id))
            if not withrights:
                info.pop("rights", None)
            return info

        @app.post(f"{API}/logout")
        async def logout(dolapikey: Optional[str] = Header(default=None)) -> Dict[str, Any]:
            self.calls.append("logout")
            if self.fail_logout:
                raise HTTPException(status_code=500, detail="Logout exploded")
            self.tokens.pop(dolapikey or "", None)
            return {"success": {"code": 200}}

        @app.get(f"{API}/users")
        async def users(dolapikey: Optional[str] = Header(default=None)):
            return self._listing("users", dolapikey)

        @app.get(f"{API}/groups")
        async def groups(dolapikey: Optional[str] = Header(default=None)):
            return self._listing("groups", dolapikey)

        @app.get(f"{API}/thirdparties")
        async def third_parties(dolapikey: Optional[str] = Header(default=None)):
            return self._listing("third_parties", dolapikey)

        @app.get(f"{API}/products")
        async def products(dolapikey: Optional[str] = Header(default=None)):
            return self._listing("products", dolapikey)

        @app.get(f"{API}/status")
        async def status() -> Dict[str, Any]:
            return {"success": {"code": 200, "dolibarr_version": "18.0.2"}}

        return app


def db_url(tmp_path, name: str = "newdoli.db") -> str:
    return "sqlite+aiosqlite:///" + (tmp_path / name).as_posix()


@pytest.fixture
def dolibarr() -> FakeDolibarr:
    return FakeDolibarr()


@pytest.fixture
def transport(dolibarr: FakeDolibarr) -> httpx.ASGITransport:
    return httpx.ASGITransport(app=dolibarr.app)


@pytest_asyncio.fixture
async def db(tmp_path) -> Database:
    """A fresh SQLite file with the schema created."""

    database = Database(db_url(tmp_path))
    await database.init()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def config(db: Database) -> ConfigStore:
    return ConfigStore(db)


@pytest_asyncio.fixture
async def store(db: Database) -> LocalStore:
    return LocalStore(db)


@pytest_asyncio.fixture
async def gateway(config: ConfigStore, transport: httpx.ASGITransport) -> RemoteGateway:
    await config.set_dolibarr_url(BASE_URL)
    client = RemoteGateway(config, transport=transport)
    yield client
    await client.close()


def make_context(tmp_path, dolibarr: FakeDolibarr) -> AppContext:
    return AppContext(
        db_url(tmp_path),
        transport=httpx.ASGITransport(app=dolibarr.app),
        probe_transport=httpx.ASGITransport(app=dolibarr.app),
        session_secret=SECRET,
    )


@pytest_asyncio.fixture
async def ctx(tmp_path, dolibarr: FakeDolibarr) -> AppContext:
    """A started AppContext pointed at the fake backend, nobody signed in."""

    context = make_context(tmp_path, dolibarr)
    await context.start()
    await context.config.set_dolibarr_url(BASE_URL)
    yield context
    await context.close()


@pytest_asyncio.fixture
async def logged_in(ctx: AppContext) -> AppContext:
    await ctx.auth.login("toto", "Toto01")
    return ctx

