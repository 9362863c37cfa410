"""Pure permission and rights rules.

Nothing here touches storage; AuthSession loads the inputs and keeps the
results in its state.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence


def _norm(s: Optional[str]) -> str:
    return (s or "").strip().lower()


def _attr(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def derive_permissions(
    user: Any,
    groups: Iterable[Any] = (),
    all_permission_names: Iterable[str] = (),
) -> List[str]:
    """
    Effective permission names for ``user``.

    Admins get every known permission. Everyone else gets the union of
    their groups' permissions and their direct permissions, first
    occurrence order, duplicates dropped.
    """
    if user is None:
        return []
    if _attr(user, "admin", False):
        return list(dict.fromkeys(all_permission_names))

    names: List[str] = []
    for group in groups:
        names.extend(_attr(group, "permissions", None) or [])
    names.extend(_attr(user, "permissions", None) or [])
    return list(dict.fromkeys(n for n in names if n))


def split_permission(name: str) -> tuple[str, str]:
    """``"thirdparty_read" -> ("thirdparty", "read")``; no underscore means no action."""
    module, sep, action = name.partition("_")
    return (module, action) if sep else (name, "")


def derive_rights(permissions: Iterable[str]) -> Dict[str, List[str]]:
    """``module -> [actions]`` from ``"<module>_<action>"`` permission names."""
    rights: Dict[str, List[str]] = {}
    for name in permissions:
        module, action = split_permission(name)
        if not module or not action:
            continue
        actions = rights.setdefault(module, [])
        if action not in actions:
            actions.append(action)
    return rights


def has_permission(permissions: Sequence[str], name: str, *, admin: bool = False) -> bool:
    return admin or name in permissions


def has_all_permissions(permissions: Sequence[str], names: Iterable[str], *, admin: bool = False) -> bool:
    return admin or all(n in permissions for n in names)


def has_any_permission(permissions: Sequence[str], names: Iterable[str], *, admin: bool = False) -> bool:
    return admin or any(n in permissions for n in names)


def can_access_module(
    module: str,
    permissions: Sequence[str],
    rights: Mapping[str, Sequence[str]],
    *,
    admin: bool = False,
) -> bool:
    """
    True iff admin, or ``rights[module]`` is non-empty, or some permission
    is ``"<module>_*"`` (``"<module>_all"`` included).
    """
    if admin:
        return True
    if rights.get(module):
        return True
    prefix = f"{module}_"
    return any(p.startswith(prefix) for p in permissions)


def accessible_modules(
    permissions: Iterable[str],
    rights: Optional[Mapping[str, Sequence[str]]] = None,
) -> List[str]:
    modules = [m for m, actions in (rights or {}).items() if actions]
    for name in permissions:
        module, action = split_permission(name)
        if action and module not in modules:
            modules.append(module)
    return sorted(modules, key=_norm)
