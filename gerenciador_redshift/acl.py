from __future__ import annotations

"""Decode textual ACL entries from the Redshift catalog.

ACL arrays (``relacl``, ``nspacl``, ``proacl``, ``lanacl``,
``defaclacl``) are read as ``array_to_string(acl, '|')`` and look like::

    rdsdb=arwdRxtDPA/rdsdb|group loaders=rwa/etl_svc|=X/rdsdb|"Mixed Case"=r/rdsdb

Each entry is ``[group |role ]<grantee>=<codes>/<grantor>``; an empty grantee
means PUBLIC and a ``*`` after a code marks the grant option.
"""

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional

from .data_models import ObjectType, Principal, PrincipalKind

logger = logging.getLogger(__name__)
logger.propagate = True

# Single-letter privilege codes per object type
RELATION_CODES = {
    "r": "select",
    "w": "update",
    "a": "insert",
    "d": "delete",
    "x": "references",
    "R": "rule",
    "t": "trigger",
    "D": "drop",
    "P": "truncate",
    "A": "alter",
}
CALLABLE_CODES = {"X": "execute"}
LANGUAGE_CODES = {"U": "usage"}
SCHEMA_CODES = {"U": "usage", "C": "create", "A": "alter"}
DATABASE_CODES = {"C": "create", "T": "temporary"}

CODES_BY_OBJECT_TYPE: Dict[ObjectType, Dict[str, str]] = {
    ObjectType.TABLE: RELATION_CODES,
    ObjectType.FUNCTION: CALLABLE_CODES,
    ObjectType.PROCEDURE: CALLABLE_CODES,
    ObjectType.LANGUAGE: LANGUAGE_CODES,
    ObjectType.SCHEMA: SCHEMA_CODES,
    ObjectType.DATABASE: DATABASE_CODES,
}


@dataclass(frozen=True)
class AclItem:
    kind: Optional[PrincipalKind]  # None for PUBLIC
    grantee: str
    codes: str
    grantor: str

    def matches(self, principal: Principal) -> bool:
        if principal.is_public:
            return self.kind is None
        if self.kind is not principal.kind:
            return False
        return self.grantee.lower() == principal.name.lower()


def parse_item(entry: str) -> Optional[AclItem]:
    """Parse one ACL entry; return ``None`` when it cannot be understood."""

    entry = entry.strip().replace('"', "")
    if not entry or "=" not in entry:
        return None
    left, _, right = entry.rpartition("=")
    codes, sep, grantor = right.partition("/")
    if not sep:
        return None
    kind: Optional[PrincipalKind]
    if left.startswith("group "):
        kind, name = PrincipalKind.GROUP, left[len("group "):]
    elif left.startswith("role "):
        kind, name = PrincipalKind.ROLE, left[len("role "):]
    elif left == "":
        kind, name = None, ""
    else:
        kind, name = PrincipalKind.USER, left
    return AclItem(kind, name, codes, grantor)


def parse_acl(text: Optional[str]) -> List[AclItem]:
    if not text:
        return []
    items = []
    for entry in text.strip("{}").split("|"):
        item = parse_item(entry)
        if item is None:
            if entry.strip():
                logger.debug("Ignoring unparsable ACL entry %r", entry)
            continue
        items.append(item)
    return items


def decode_codes(codes: str, code_map: Dict[str, str]) -> FrozenSet[str]:
    # grant option markers ("r*") are irrelevant for the managed state
    return frozenset(code_map[c] for c in codes if c in code_map)


def privileges_for(
    text: Optional[str], principal: Principal, object_type: ObjectType
) -> FrozenSet[str]:
    """Return the privileges *principal* holds according to ACL *text*.

    Only the entry scoped to exactly that grantee is considered: a user
    ``loaders`` never matches ``group loaders``.  No matching entry yields
    an empty set.
    """

    code_map = CODES_BY_OBJECT_TYPE[object_type]
    held: set = set()
    for item in parse_acl(text):
        if item.matches(principal):
            held |= decode_codes(item.codes, code_map)
    return frozenset(held)
