"""Storage helpers shared between the memory and postgres implementations.

Holds the default RBAC catalogue seeded into every fresh store and the
permission-pattern expansion used when permissions are materialised.
"""

from __future__ import annotations

from typing import Iterable, List, Sequence, Tuple

from tessera.storage.models import Permission

# (resource, action, display name)
DEFAULT_PERMISSIONS: Tuple[Tuple[str, str, str], ...] = (
    ("users", "create", "Create users"),
    ("users", "read", "View users"),
    ("users", "update", "Update users"),
    ("users", "delete", "Delete users"),
    ("roles", "create", "Create roles"),
    ("roles", "read", "View roles"),
    ("roles", "update", "Update roles"),
    ("roles", "delete", "Delete roles"),
    ("data", "create", "Create data"),
    ("data", "read", "View data"),
    ("data", "update", "Update data"),
    ("data", "delete", "Delete data"),
    ("system", "admin", "System administration"),
)

# (name, display name, description, permission patterns)
DEFAULT_ROLES: Tuple[Tuple[str, str, str, Tuple[str, ...]], ...] = (
    ("admin", "Administrator", "Full system access", ("*",)),
    (
        "manager",
        "Manager",
        "Manages users and data",
        ("users.read", "users.update", "data.*", "roles.read"),
    ),
    ("user", "User", "Standard user access", ("data.read", "data.create")),
)


def permission_name(resource: str, action: str) -> str:
    return f"{resource}.{action}"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def expand_permission_patterns(
    patterns: Iterable[str], catalogue: Sequence[Permission]
) -> List[str]:
    """Resolve role permission patterns into concrete permission names.

    ``*`` expands to the whole catalogue and ``resource.*`` to every action
    of that resource. Any other entry is kept verbatim, so scoped strings
    such as ``delete:own`` survive untouched. Order follows first appearance.
    """
    resolved: List[str] = []
    seen = set()

    def _add(name: str) -> None:
        if name not in seen:
            seen.add(name)
            resolved.append(name)

    for pattern in patterns:
        if pattern == "*":
            for perm in catalogue:
                _add(perm.name)
        elif pattern.endswith(".*"):
            resource = pattern[:-2]
            for perm in catalogue:
                if perm.resource == resource:
                    _add(perm.name)
        else:
            _add(pattern)
    return resolved


def search_matches(term: str, *values: str) -> bool:
    needle = term.strip().lower()
    return any(needle in (value or "").lower() for value in values)
