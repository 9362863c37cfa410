"""Pydantic schemas for payloads received from the Dolibarr REST API.

Dolibarr is loose with scalars ("1"/"0" flags, epoch dates, ids as
strings), so coercion happens here and nowhere else.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PRODUCT_STATUS_LABELS = {0: "Draft", 1: "Active", -1: "Inactive", -2: "Obsolete"}

_TRUE_STRINGS = {"1", "true", "yes", "on"}


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in _TRUE_STRINGS


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _timestamp(value: Any) -> Optional[datetime]:
    if value in (None, "", 0, "0"):
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    return datetime.fromisoformat(str(value))


def status_label(status: int) -> str:
    return PRODUCT_STATUS_LABELS.get(status, "Unknown")


def _rights_actions(value: Any) -> List[str]:
    """Flatten one module's rights into action names."""
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value if v not in (None, "")]
    if isinstance(value, dict):
        actions = []
        for action, granted in value.items():
            if isinstance(granted, dict):
                # {"write": {"all": 1}} -> "write" when any sub-right is granted
                if any(_flag(v) for v in granted.values()):
                    actions.append(str(action))
            elif _flag(granted):
                actions.append(str(action))
        return actions
    if isinstance(value, str) and value:
        return [value]
    raise ValueError(f"unsupported rights entry: {value!r}")


def normalize_rights(raw: Any) -> Dict[str, List[str]]:
    """``module -> sorted unique actions``; modules with no actions are dropped."""
    if raw in (None, "", []):
        return {}
    if not isinstance(raw, dict):
        raise ValueError("rights must be an object keyed by module")
    rights: Dict[str, List[str]] = {}
    for module, value in raw.items():
        actions = sorted(set(_rights_actions(value)))
        if actions:
            rights[str(module)] = actions
    return rights


class RemoteModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class UserInfo(RemoteModel):
    """A Dolibarr user, as returned by ``users`` and ``users/info``."""

    id: int
    login: str
    firstname: str = ""
    lastname: str = ""
    email: str = ""
    admin: bool = False
    active: bool = True
    groups: List[int] = Field(default_factory=list)
    permissions: Optional[List[str]] = None
    rights: Optional[Dict[str, List[str]]] = None

    @model_validator(mode="before")
    @classmethod
    def _dolibarr_aliases(cls, data: Any) -> Any:
        if isinstance(data, dict) and "active" not in data and "statut" in data:
            data = {**data, "active": data["statut"]}
        return data

    @field_validator("firstname", "lastname", "email", mode="before")
    @classmethod
    def _strings(cls, v: Any) -> str:
        return _text(v)

    @field_validator("admin", "active", mode="before")
    @classmethod
    def _flags(cls, v: Any) -> bool:
        return _flag(v)

    @field_validator("groups", mode="before")
    @classmethod
    def _group_ids(cls, v: Any) -> List[Any]:
        if v in (None, ""):
            return []
        if isinstance(v, dict):
            return list(v.keys())
        return v

    @field_validator("rights", mode="before")
    @classmethod
    def _rights(cls, v: Any) -> Optional[Dict[str, List[str]]]:
        if v is None:
            return None
        return normalize_rights(v)

    def to_row(self) -> Dict[str, Any]:
        """Column values for the local ``users`` table."""
        return {
            "id": self.id,
            "login": self.login,
            "firstname": self.firstname,
            "lastname": self.lastname,
            "email": self.email,
            "admin": self.admin,
            "active": self.active,
            "groups": list(self.groups),
            "permissions": list(self.permissions or []),
        }


class LoginResult(RemoteModel):
    """Normalised answer of ``POST login``."""

    token: str
    user: Optional[UserInfo] = None

    @model_validator(mode="before")
    @classmethod
    def _unwrap_success(cls, data: Any) -> Any:
        # Dolibarr nests the token: {"success": {"code": 200, "token": "..."}}
        if isinstance(data, dict) and isinstance(data.get("success"), dict) and "token" not in data:
            return {**data, "token": data["success"].get("token")}
        return data

    @field_validator("token")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("empty token")
        return v


class RemoteGroup(RemoteModel):
    id: int
    name: str
    description: str = ""
    permissions: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _dolibarr_aliases(cls, data: Any) -> Any:
        if isinstance(data, dict) and "name" not in data and "nom" in data:
            data = {**data, "name": data["nom"]}
        return data

    @field_validator("description", mode="before")
    @classmethod
    def _strings(cls, v: Any) -> str:
        return _text(v)

    @field_validator("permissions", mode="before")
    @classmethod
    def _permissions(cls, v: Any) -> List[Any]:
        return [] if v in (None, "") else v

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump()


class RemoteThirdParty(RemoteModel):
    id: int
    name: str
    name_alias: str = ""
    address: str = ""
    zip: str = ""
    town: str = ""
    state: str = ""
    country: str = ""
    phone: str = ""
    email: str = ""
    website: str = ""
    client: bool = False
    supplier: bool = False
    prospect: bool = False
    status: str = "active"
    note_public: str = ""
    note_private: str = ""
    last_contact: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _dolibarr_codes(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "supplier" not in data and "fournisseur" in data:
            data["supplier"] = data["fournisseur"]
        if "notes" in data and "note_public" not in data:
            data["note_public"] = data["notes"]
        # client code: 0 none, 1 customer, 2 prospect, 3 both
        code = data.get("client")
        if isinstance(code, (int, str)) and not isinstance(code, bool) and str(code) in ("2", "3"):
            data["client"] = str(code) == "3"
            data.setdefault("prospect", True)
        return data

    @field_validator(
        "name_alias", "address", "zip", "town", "state", "country", "phone", "email",
        "website", "note_public", "note_private", mode="before",
    )
    @classmethod
    def _strings(cls, v: Any) -> str:
        return _text(v)

    @field_validator("client", "supplier", "prospect", mode="before")
    @classmethod
    def _flags(cls, v: Any) -> bool:
        return _flag(v)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v: Any) -> str:
        if v in (None, ""):
            return "active"
        if str(v) == "1":
            return "active"
        if str(v) == "0":
            return "inactive"
        return str(v)

    @field_validator("last_contact", mode="before")
    @classmethod
    def _date(cls, v: Any) -> Optional[datetime]:
        return _timestamp(v)

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump()


class RemoteProduct(RemoteModel):
    id: int
    ref: str = ""
    label: str = ""
    description: str = ""
    type: str = "product"
    price: float = 0.0
    price_ttc: float = 0.0
    status: int = 1
    category: str = "Uncategorized"
    stock: float = Field(default=0.0, alias="stock_reel")
    stock_alert: float = Field(default=0.0, alias="seuil_stock_alerte")
    image_url: Optional[str] = None
    date_creation: Optional[datetime] = None
    date_modification: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "stock" in data and "stock_reel" not in data:
            data["stock_reel"] = data.pop("stock")
        if "stock_alert" in data and "seuil_stock_alerte" not in data:
            data["seuil_stock_alerte"] = data.pop("stock_alert")
        return data

    @field_validator("ref", "label", "description", mode="before")
    @classmethod
    def _strings(cls, v: Any) -> str:
        return _text(v)

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v: Any) -> str:
        return _text(v) or "Uncategorized"

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, v: Any) -> str:
        # Dolibarr: 0 = product, 1 = service
        if v in (None, "", 0, "0"):
            return "product"
        if v in (1, "1"):
            return "service"
        return str(v)

    @field_validator("price", "price_ttc", "stock", "stock_alert", mode="before")
    @classmethod
    def _numbers(cls, v: Any) -> Any:
        return 0.0 if v in (None, "") else v

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v: Any) -> Any:
        return 1 if v in (None, "") else v

    @field_validator("date_creation", "date_modification", mode="before")
    @classmethod
    def _dates(cls, v: Any) -> Optional[datetime]:
        return _timestamp(v)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ref": self.ref,
            "label": self.label,
            "description": self.description,
            "type": self.type,
            "price": self.price,
            "price_ttc": self.price_ttc,
            "status": self.status,
            "status_label": status_label(self.status),
            "category": self.category,
            "stock": self.stock,
            "stock_alert": self.stock_alert,
            "image_url": self.image_url,
            "last_modified": self.date_modification,
        }
