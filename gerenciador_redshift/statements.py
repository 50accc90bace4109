from __future__ import annotations

"""Structured GRANT/REVOKE statement builder.

This is the only module that turns declared names into SQL.  Identifiers
are always quoted through :class:`psycopg2.sql.Identifier`; privilege
keywords come from the validated vocabularies in :mod:`data_models` and
callable argument lists are checked against a conservative pattern before
being embedded.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

import psycopg2
from psycopg2 import sql

from .data_models import CALLABLE_TYPES, ObjectType, Principal, PrincipalKind, Target
from .errors import ValidationError
from .identifiers import split_signature

logger = logging.getLogger(__name__)
logger.propagate = True

# Plural keywords used by "ON ALL ... IN SCHEMA" and ALTER DEFAULT PRIVILEGES
PLURAL_KEYWORDS = {
    ObjectType.TABLE: "TABLES",
    ObjectType.FUNCTION: "FUNCTIONS",
    ObjectType.PROCEDURE: "PROCEDURES",
}

_ARGLIST_RE = re.compile(r'^[A-Za-z0-9_ ,."\[\]()]*$')


@dataclass(frozen=True)
class Statement:
    """A single planned statement.

    ``action`` is one of ``grant``, ``revoke``, ``revoke_all``,
    ``grant_role`` or ``revoke_role``; ``privileges`` lists the (sorted)
    tokens the statement carries so plans can be inspected without
    rendering SQL.
    """

    action: str
    query: sql.Composable
    privileges: Tuple[str, ...] = ()

    def render(self, context=None) -> str:
        """Return the SQL text, using *context* (connection or cursor) when given."""
        if context is not None:
            try:
                return self.query.as_string(context)
            except (psycopg2.Error, TypeError) as e:
                logger.debug("Rendering %s statement without a connection: %s", self.action, e)
        return str(self.query)


# ---------------------------------------------------------------------------
# Quoting helpers


def quote_name(name: str) -> sql.Identifier:
    return sql.Identifier(name)


def qualified(schema: Optional[str], name: str) -> sql.Composable:
    if schema:
        return sql.Identifier(schema, name)
    return sql.Identifier(name)


def callable_ref(schema: Optional[str], signature: str) -> sql.Composable:
    """Render ``"schema"."name"(argtypes)`` for a function or procedure."""
    name, args = split_signature(signature)
    ident = qualified(schema, name.strip().strip('"'))
    if args is None:
        raise ValidationError(f"Missing argument list in signature {signature!r}")
    if not _ARGLIST_RE.match(args):
        raise ValidationError(f"Invalid argument list in signature {signature!r}")
    return sql.Composed([ident, sql.SQL("("), sql.SQL(args.strip()), sql.SQL(")")])


def grantee_clause(principal: Principal) -> sql.Composable:
    if principal.is_public:
        return sql.SQL("PUBLIC")
    if principal.kind is PrincipalKind.GROUP:
        return sql.SQL("GROUP {}").format(quote_name(principal.name))
    if principal.kind is PrincipalKind.ROLE:
        return sql.SQL("ROLE {}").format(quote_name(principal.name))
    return quote_name(principal.name)


def privilege_list(privileges: Iterable[str]) -> sql.Composable:
    return sql.SQL(", ").join(sql.SQL(p.upper()) for p in sorted(privileges))


def object_clause(target: Target, database: Optional[str] = None) -> sql.Composable:
    """Render the ``ON ...`` part of a GRANT/REVOKE for *target*."""

    ot = target.object_type
    if ot is ObjectType.DATABASE:
        if not database:
            raise ValidationError("database name is required for database grants")
        return sql.SQL("DATABASE {}").format(quote_name(database))
    if ot is ObjectType.SCHEMA:
        return sql.SQL("SCHEMA {}").format(quote_name(target.schema))
    if target.all_objects:
        return sql.SQL("ALL {} IN SCHEMA {}").format(
            sql.SQL(PLURAL_KEYWORDS[ot]), quote_name(target.schema)
        )
    if ot is ObjectType.LANGUAGE:
        refs = [quote_name(obj) for obj in sorted(target.objects)]
    elif ot in CALLABLE_TYPES:
        refs = [callable_ref(target.schema, obj) for obj in sorted(target.objects)]
    else:
        refs = [qualified(target.schema, obj) for obj in sorted(target.objects)]
    return sql.SQL("{} {}").format(sql.SQL(ot.value.upper()), sql.SQL(", ").join(refs))


# ---------------------------------------------------------------------------
# Object privileges


def grant(principal: Principal, target: Target, privileges: Iterable[str],
          database: Optional[str] = None) -> Statement:
    privs = tuple(sorted(privileges))
    query = sql.SQL("GRANT {privs} ON {obj} TO {grantee}").format(
        privs=privilege_list(privs),
        obj=object_clause(target, database),
        grantee=grantee_clause(principal),
    )
    return Statement("grant", query, privs)


def revoke(principal: Principal, target: Target, privileges: Iterable[str],
           database: Optional[str] = None) -> Statement:
    privs = tuple(sorted(privileges))
    query = sql.SQL("REVOKE {privs} ON {obj} FROM {grantee}").format(
        privs=privilege_list(privs),
        obj=object_clause(target, database),
        grantee=grantee_clause(principal),
    )
    return Statement("revoke", query, privs)


def revoke_all(principal: Principal, target: Target,
               database: Optional[str] = None) -> Statement:
    query = sql.SQL("REVOKE ALL PRIVILEGES ON {obj} FROM {grantee}").format(
        obj=object_clause(target, database),
        grantee=grantee_clause(principal),
    )
    return Statement("revoke_all", query)


# ---------------------------------------------------------------------------
# Default privileges


def _alter_default_prefix(owner: str, schema: Optional[str]) -> sql.Composable:
    prefix = sql.SQL("ALTER DEFAULT PRIVILEGES FOR USER {}").format(quote_name(owner))
    if schema:
        prefix = sql.SQL("{} IN SCHEMA {}").format(prefix, quote_name(schema))
    return prefix


def _plural(object_type: ObjectType) -> sql.SQL:
    try:
        return sql.SQL(PLURAL_KEYWORDS[object_type])
    except KeyError:
        raise ValidationError(
            f"Default privileges are not supported for object type {object_type.value}"
        ) from None


def alter_default_grant(grantee: Principal, owner: str, object_type: ObjectType,
                        privileges: Iterable[str], schema: Optional[str] = None) -> Statement:
    privs = tuple(sorted(privileges))
    query = sql.SQL("{prefix} GRANT {privs} ON {objs} TO {grantee}").format(
        prefix=_alter_default_prefix(owner, schema),
        privs=privilege_list(privs),
        objs=_plural(object_type),
        grantee=grantee_clause(grantee),
    )
    return Statement("grant", query, privs)


def alter_default_revoke_all(grantee: Principal, owner: str, object_type: ObjectType,
                             schema: Optional[str] = None) -> Statement:
    query = sql.SQL("{prefix} REVOKE ALL PRIVILEGES ON {objs} FROM {grantee}").format(
        prefix=_alter_default_prefix(owner, schema),
        objs=_plural(object_type),
        grantee=grantee_clause(grantee),
    )
    return Statement("revoke_all", query)


# ---------------------------------------------------------------------------
# Role membership


def grant_role(role: str, grantee: Principal) -> Statement:
    query = sql.SQL("GRANT ROLE {} TO {}").format(quote_name(role), grantee_clause(grantee))
    return Statement("grant_role", query)


def revoke_role(role: str, grantee: Principal) -> Statement:
    query = sql.SQL("REVOKE ROLE {} FROM {}").format(quote_name(role), grantee_clause(grantee))
    return Statement("revoke_role", query)
