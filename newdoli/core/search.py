"""Text search and facet filtering over mirrored collections.

Everything here is pure: inputs are never mutated and the output keeps the
input order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

SEARCH_FIELDS: Dict[str, Sequence[str]] = {
    "third_parties": (
        "name", "name_alias", "email", "address", "zip", "town", "phone",
        "note_public", "note_private",
    ),
    "products": ("ref", "label", "description", "category"),
    "users": ("login", "firstname", "lastname", "email"),
    "groups": ("name", "description"),
}

# facet name -> attribute it compares against
FACET_ALIASES: Dict[str, Dict[str, str]] = {
    "products": {"status": "status_label"},
}

_SCALARS = (str, int, float)


def tokenize(query: Optional[str]) -> List[str]:
    return (query or "").strip().lower().split()


def _get(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def _entity_type(item: Any) -> Optional[str]:
    return getattr(type(item), "__tablename__", None)


def searchable_text(item: Any, entity_type: Optional[str] = None) -> str:
    """Lowercased concatenation of ``item``'s searchable fields."""
    fields = SEARCH_FIELDS.get(entity_type or _entity_type(item) or "")
    if fields is None:
        if isinstance(item, Mapping):
            values = [v for v in item.values() if isinstance(v, _SCALARS) and not isinstance(v, bool)]
        else:
            values = []
    else:
        values = [_get(item, name) for name in fields]
    return " ".join(str(v) for v in values if v not in (None, "")).lower()


def _matches_facets(item: Any, facets: Mapping[str, Any], aliases: Mapping[str, str]) -> bool:
    for name, expected in facets.items():
        if expected is None:
            continue
        if _get(item, aliases.get(name, name)) != expected:
            return False
    return True


def apply(
    collection: Iterable[Any],
    query: Optional[str] = "",
    facets: Optional[Mapping[str, Any]] = None,
    *,
    entity_type: Optional[str] = None,
) -> List[Any]:
    """
    Items of ``collection`` matching every token of ``query`` and every
    non-None facet.

    A token matches when it is a substring of the item's searchable text;
    facets compare by equality. ``entity_type`` is inferred from ORM rows
    when not given.
    """
    tokens = tokenize(query)
    facets = facets or {}
    result = []
    for item in collection:
        kind = entity_type or _entity_type(item)
        if tokens:
            text = searchable_text(item, kind)
            if not all(token in text for token in tokens):
                continue
        if facets and not _matches_facets(item, facets, FACET_ALIASES.get(kind or "", {})):
            continue
        result.append(item)
    return result


@dataclass
class SearchResult:
    items: List[Any] = field(default_factory=list)
    total_count: int = 0
    query: str = ""
    is_online: bool = False
    last_sync: Optional[datetime] = None


def search(
    collection: Iterable[Any],
    query: Optional[str] = "",
    facets: Optional[Mapping[str, Any]] = None,
    *,
    entity_type: Optional[str] = None,
    is_online: bool = False,
    last_sync: Optional[datetime] = None,
) -> SearchResult:
    items = apply(collection, query, facets, entity_type=entity_type)
    return SearchResult(
        items=items,
        total_count=len(items),
        query=query or "",
        is_online=is_online,
        last_sync=last_sync,
    )
