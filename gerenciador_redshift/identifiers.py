from __future__ import annotations

"""Canonical identifiers for managed grants.

Layouts::

    grant              <tag>:<principal>_<schema>_ot:<object_type>[_<object>...]
    default privileges <tag>:<grantee>_<schema>_ot:<object_type>_ow:<owner>
    role grant         rl:<role>_<tag>:<grantee>

``<tag>`` is ``gn`` (group), ``un`` (user) or ``rn`` (role) and ``<schema>``
is the literal ``noschema`` when the rule is not scoped to a schema.  Object
lists are sorted before encoding so the identifier does not depend on the
declaration order.

Inside every component ``%``, ``_`` and ``:`` are percent-escaped, which
keeps the encoding injective (``a_b`` + ``c`` and ``a`` + ``b_c`` would
otherwise collide).  Names without those characters are written verbatim.
"""

import re
from typing import Iterable, NamedTuple, Optional, Tuple

from .data_models import ObjectType, Principal, PrincipalKind, Target
from .errors import MalformedIDError, ValidationError

SEPARATOR = "_"
NO_SCHEMA = "noschema"
OBJECT_TYPE_TAG = "ot"
OWNER_TAG = "ow"
ROLE_TAG = "rl"

_ESCAPES = {"%": "%25", "_": "%5F", ":": "%3A"}
_UNESCAPE_RE = re.compile(r"%(25|5F|3A|6E)", re.IGNORECASE)
_UNESCAPES = {"25": "%", "5F": "_", "3A": ":", "6E": "n"}


class DecodedGrantID(NamedTuple):
    principal: Principal
    schema: Optional[str]
    object_type: ObjectType
    objects: Tuple[str, ...]


class DecodedDefaultPrivilegesID(NamedTuple):
    grantee: Principal
    schema: Optional[str]
    object_type: ObjectType
    owner: str


class DecodedRoleGrantID(NamedTuple):
    role: str
    grantee: Principal


# ---------------------------------------------------------------------------
# Component escaping


def escape(component: str) -> str:
    return "".join(_ESCAPES.get(ch, ch) for ch in component)


def unescape(component: str) -> str:
    return _UNESCAPE_RE.sub(lambda m: _UNESCAPES[m.group(1).upper()], component)


def _schema_token(schema: Optional[str]) -> str:
    if not schema:
        return NO_SCHEMA
    if schema == NO_SCHEMA:
        # a real schema called "noschema" must not read as the placeholder
        return "%6E" + escape(schema[1:])
    return escape(schema)


def _parse_schema_token(token: str) -> Optional[str]:
    if token == NO_SCHEMA:
        return None
    return unescape(token)


def _tagged(tag: str, value: str) -> str:
    return f"{tag}:{escape(value)}"


def _split_tagged(part: str, raw_id: str) -> Tuple[str, str]:
    tag, sep, value = part.partition(":")
    if not sep or not value:
        raise MalformedIDError(f"unexpected ID format ({raw_id!r}): bad segment {part!r}")
    return tag, unescape(value)


def _principal_from(part: str, raw_id: str) -> Principal:
    tag, name = _split_tagged(part, raw_id)
    try:
        kind = PrincipalKind.from_tag(tag)
    except ValueError:
        raise MalformedIDError(f"unexpected ID format ({raw_id!r}): unknown tag {tag!r}") from None
    try:
        return Principal(kind, name)
    except ValidationError as e:
        raise MalformedIDError(f"unexpected ID format ({raw_id!r}): {e}") from None


def _object_type_from(part: str, raw_id: str) -> ObjectType:
    tag, value = _split_tagged(part, raw_id)
    if tag != OBJECT_TYPE_TAG:
        raise MalformedIDError(f"unexpected ID format ({raw_id!r}): expected {OBJECT_TYPE_TAG}: segment")
    try:
        return ObjectType(value)
    except ValueError:
        raise MalformedIDError(f"unexpected ID format ({raw_id!r}): unknown object type {value!r}") from None


# ---------------------------------------------------------------------------
# Grants


def encode_grant_id(
    principal: Principal,
    object_type: ObjectType,
    schema: Optional[str] = None,
    objects: Iterable[str] = (),
) -> str:
    parts = [
        _tagged(principal.kind.tag, principal.name),
        _schema_token(schema),
        _tagged(OBJECT_TYPE_TAG, ObjectType.parse(object_type).value),
    ]
    parts.extend(escape(obj) for obj in sorted(objects))
    return SEPARATOR.join(parts)


def decode_grant_id(raw_id: str) -> DecodedGrantID:
    parts = raw_id.split(SEPARATOR) if raw_id else []
    if len(parts) < 3:
        raise MalformedIDError(
            f"unexpected ID format ({raw_id!r}), expected <tag>:<principal>_<schema>_ot:<type>[_<object>...]"
        )
    principal = _principal_from(parts[0], raw_id)
    schema = _parse_schema_token(parts[1])
    object_type = _object_type_from(parts[2], raw_id)
    objects = []
    for part in parts[3:]:
        if not part or ":" in part:
            raise MalformedIDError(f"unexpected ID format ({raw_id!r}): bad object segment {part!r}")
        objects.append(unescape(part))
    if objects != sorted(objects):
        raise MalformedIDError(f"unexpected ID format ({raw_id!r}): objects are not in canonical order")
    try:
        Target(object_type, schema, tuple(objects))
    except ValidationError as e:
        raise MalformedIDError(f"unexpected ID format ({raw_id!r}): {e}") from None
    return DecodedGrantID(principal, schema, object_type, tuple(objects))


# ---------------------------------------------------------------------------
# Default privileges


def encode_default_privileges_id(
    grantee: Principal,
    owner: str,
    object_type: ObjectType,
    schema: Optional[str] = None,
) -> str:
    return SEPARATOR.join(
        [
            _tagged(grantee.kind.tag, grantee.name),
            _schema_token(schema),
            _tagged(OBJECT_TYPE_TAG, ObjectType.parse(object_type).value),
            _tagged(OWNER_TAG, owner),
        ]
    )


def decode_default_privileges_id(raw_id: str) -> DecodedDefaultPrivilegesID:
    parts = raw_id.split(SEPARATOR) if raw_id else []
    if len(parts) != 4:
        raise MalformedIDError(
            f"unexpected ID format ({raw_id!r}), expected <tag>:<grantee>_<schema>_ot:<type>_ow:<owner>"
        )
    grantee = _principal_from(parts[0], raw_id)
    schema = _parse_schema_token(parts[1])
    object_type = _object_type_from(parts[2], raw_id)
    tag, owner = _split_tagged(parts[3], raw_id)
    if tag != OWNER_TAG:
        raise MalformedIDError(f"unexpected ID format ({raw_id!r}): expected {OWNER_TAG}: segment")
    return DecodedDefaultPrivilegesID(grantee, schema, object_type, owner)


# ---------------------------------------------------------------------------
# Role grants


def encode_role_grant_id(role: str, grantee: Principal) -> str:
    return SEPARATOR.join([_tagged(ROLE_TAG, role), _tagged(grantee.kind.tag, grantee.name)])


def decode_role_grant_id(raw_id: str) -> DecodedRoleGrantID:
    parts = raw_id.split(SEPARATOR) if raw_id else []
    if len(parts) != 2:
        raise MalformedIDError(
            f"unexpected ID format ({raw_id!r}), expected rl:<role>_<tag>:<grantee>"
        )
    tag, role = _split_tagged(parts[0], raw_id)
    if tag != ROLE_TAG:
        raise MalformedIDError(f"unexpected ID format ({raw_id!r}): expected {ROLE_TAG}: segment")
    grantee = _principal_from(parts[1], raw_id)
    if grantee.kind is PrincipalKind.GROUP:
        raise MalformedIDError(f"unexpected ID format ({raw_id!r}): roles are not granted to groups")
    return DecodedRoleGrantID(role, grantee)


# ---------------------------------------------------------------------------
# Callable signatures

TYPE_ALIASES = {
    "int": "integer",
    "int4": "integer",
    "int8": "bigint",
    "int2": "smallint",
    "float": "double precision",
    "float8": "double precision",
    "float4": "real",
    "bool": "boolean",
    "varchar": "character varying",
    "char": "character",
    "bpchar": "character",
    "decimal": "numeric",
    "timestamp": "timestamp without time zone",
    "timestamptz": "timestamp with time zone",
}

KNOWN_TYPES = set(TYPE_ALIASES) | set(TYPE_ALIASES.values()) | {
    "text", "numeric", "date", "smallint", "bigint", "integer", "real",
}

_SIGNATURE_RE = re.compile(r"^\s*([^()]+?)\s*\((.*)\)\s*$", re.DOTALL)


def split_signature(signature: str) -> Tuple[str, Optional[str]]:
    """Split ``name(args)`` into ``(name, args)``; ``args`` is ``None`` without parentheses."""
    match = _SIGNATURE_RE.match(signature)
    if not match:
        return signature.strip(), None
    return match.group(1), match.group(2)


def _normalize_type(type_name: str) -> str:
    base = re.sub(r"\([^)]*\)", "", type_name)  # varchar(10) -> varchar
    words = base.strip().lower().split()
    # drop parameter names such as "x int"
    if len(words) > 1 and " ".join(words[1:]) in KNOWN_TYPES:
        words = words[1:]
    base = " ".join(words)
    return TYPE_ALIASES.get(base, base)


def normalize_signature(signature: str) -> str:
    """Canonical form of a callable signature used for catalog comparison.

    ``F( int, INT4 )`` and ``f(integer,integer)`` normalise to the same value;
    ``f(int,int)`` and ``f(float,float)`` stay distinct.
    """

    name, args = split_signature(signature)
    name = name.strip().strip('"').lower()
    if args is None:
        return name
    types = [_normalize_type(a) for a in _split_args(args)]
    return f"{name}({','.join(t for t in types if t)})"


def _split_args(args: str):
    depth = 0
    current = []
    for ch in args:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            yield "".join(current)
            current = []
        else:
            current.append(ch)
    if current:
        yield "".join(current)
