from __future__ import annotations

"""Utilities to read the current privilege state from the Redshift catalog.

The functions are intentionally lightweight and depend only on a DB-API
compatible connection object (``psycopg2`` connection in practice).  Names
are matched case-insensitively because Redshift folds identifiers to
lowercase, while results are keyed by the names exactly as declared.

Missing principals or objects raise :class:`NotFoundError`; a principal
without any entry in an ACL simply holds nothing.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence

from psycopg2.extensions import connection

from . import acl
from .data_models import (
    CALLABLE_TYPES,
    DefaultPrivilegeConfig,
    GrantConfig,
    ObjectType,
    PRIVILEGE_VOCABULARY,
    Principal,
    PrincipalKind,
    RoleGrantConfig,
)
from .errors import NotFoundError
from .identifiers import normalize_signature

logger = logging.getLogger(__name__)
logger.propagate = True

# pg_default_acl.defaclnamespace for rules that apply to every schema
ALL_SCHEMAS_ID = 0

RELATION_KINDS = ["r", "v", "m"]
PROKIND_CODES = {
    ObjectType.FUNCTION: ["f"],
    ObjectType.PROCEDURE: ["p"],
}
DEFAULT_ACL_OBJTYPES = {
    ObjectType.TABLE: "r",
    ObjectType.FUNCTION: "f",
    ObjectType.PROCEDURE: "p",
}
IDENTITY_TYPES = {
    PrincipalKind.USER: "user",
    PrincipalKind.GROUP: "group",
    PrincipalKind.ROLE: "role",
}

# Whole-target privileges (database, schema) are stored under this key
TARGET_KEY = ""


@dataclass
class CurrentState:
    """Privileges currently held by a principal, per object of a target."""

    per_object: Dict[str, FrozenSet[str]] = field(default_factory=dict)

    @property
    def held_by_all(self) -> FrozenSet[str]:
        """Privileges held on every object (empty when there are no objects)."""
        sets = list(self.per_object.values())
        if not sets:
            return frozenset()
        return frozenset(set.intersection(*map(set, sets)))

    @property
    def held_by_any(self) -> FrozenSet[str]:
        held: set = set()
        for privs in self.per_object.values():
            held |= privs
        return frozenset(held)


# ---------------------------------------------------------------------------
# Name -> internal id resolution


def _scalar(conn: connection, query: str, params: Sequence[object]):
    with conn.cursor() as cur:
        cur.execute(query, tuple(params))
        row = cur.fetchone()
    if not row:
        return None
    return row[0]


def get_schema_id(conn: connection, schema: str) -> int:
    oid = _scalar(
        conn,
        "SELECT oid FROM pg_namespace WHERE lower(nspname) = lower(%s)",
        (schema,),
    )
    if oid is None:
        raise NotFoundError(f"schema '{schema}' does not exist")
    return int(oid)


def get_user_id(conn: connection, user: str) -> int:
    uid = _scalar(
        conn,
        "SELECT usesysid FROM pg_user WHERE lower(usename) = lower(%s)",
        (user,),
    )
    if uid is None:
        raise NotFoundError(f"user '{user}' does not exist")
    return int(uid)


def get_group_id(conn: connection, group: str) -> int:
    gid = _scalar(
        conn,
        "SELECT grosysid FROM pg_group WHERE lower(groname) = lower(%s)",
        (group,),
    )
    if gid is None:
        raise NotFoundError(f"group '{group}' does not exist")
    return int(gid)


def get_role_id(conn: connection, role: str) -> int:
    rid = _scalar(
        conn,
        "SELECT role_id FROM svv_roles WHERE lower(role_name) = lower(%s)",
        (role,),
    )
    if rid is None:
        raise NotFoundError(f"role '{role}' does not exist")
    return int(rid)


def get_principal_id(conn: connection, principal: Principal) -> int:
    if principal.kind is PrincipalKind.USER:
        return get_user_id(conn, principal.name)
    if principal.kind is PrincipalKind.ROLE:
        return get_role_id(conn, principal.name)
    return get_group_id(conn, principal.name)


def principal_exists(conn: connection, principal: Principal) -> bool:
    if principal.is_public:
        return True
    try:
        get_principal_id(conn, principal)
    except NotFoundError:
        return False
    return True


def _identity(principal: Principal) -> tuple:
    if principal.is_public:
        return ("public", "public")
    return (principal.name, IDENTITY_TYPES[principal.kind])


def _managed(tokens: Iterable[str], object_type: ObjectType, where: str) -> FrozenSet[str]:
    """Keep the privilege tokens this tool manages for *object_type*."""
    observed = frozenset(t.lower() for t in tokens)
    vocabulary = PRIVILEGE_VOCABULARY[object_type]
    extra = observed - vocabulary
    if extra:
        logger.debug("Ignoring unmanaged privileges on %s: %s", where, sorted(extra))
    return observed & vocabulary


# ---------------------------------------------------------------------------
# Object privileges


def get_database_privileges(
    conn: connection, database: str, principal: Principal
) -> FrozenSet[str]:
    name, identity_type = _identity(principal)
    query = """
        SELECT privilege_type
        FROM svv_database_privileges
        WHERE lower(database_name) = lower(%s)
          AND lower(identity_name) = lower(%s)
          AND identity_type = %s
    """
    with conn.cursor() as cur:
        cur.execute(query, (database, name, identity_type))
        rows = cur.fetchall()
    privs = _managed((row[0] for row in rows if row), ObjectType.DATABASE, database)
    logger.debug("Collected database privileges for %s: %s", name, sorted(privs))
    return privs


def get_schema_privileges(
    conn: connection, schema: str, principal: Principal
) -> FrozenSet[str]:
    get_schema_id(conn, schema)
    name, identity_type = _identity(principal)
    query = """
        SELECT privilege_type
        FROM svv_schema_privileges
        WHERE lower(namespace_name) = lower(%s)
          AND lower(identity_name) = lower(%s)
          AND identity_type = %s
    """
    with conn.cursor() as cur:
        cur.execute(query, (schema, name, identity_type))
        rows = cur.fetchall()
    privs = _managed((row[0] for row in rows if row), ObjectType.SCHEMA, schema)
    logger.debug("Collected schema '%s' privileges for %s: %s", schema, name, sorted(privs))
    return privs


def list_relations(conn: connection, schema: str) -> List[str]:
    query = """
        SELECT c.relname
        FROM pg_class c
        JOIN pg_namespace n ON n.oid = c.relnamespace
        WHERE lower(n.nspname) = lower(%s) AND c.relkind = ANY(%s)
        ORDER BY c.relname
    """
    with conn.cursor() as cur:
        cur.execute(query, (schema, RELATION_KINDS))
        return [row[0] for row in cur.fetchall() if row]


def get_table_privileges(
    conn: connection,
    schema: str,
    principal: Principal,
    objects: Iterable[str] = (),
) -> Dict[str, FrozenSet[str]]:
    """Return ``{relation: privileges}`` for *principal* in *schema*.

    With *objects* the result is keyed by the declared names; without it
    every relation of the schema is reported.
    """

    existing = {rel.lower(): rel for rel in list_relations(conn, schema)}
    wanted = list(objects) or list(existing.values())
    missing = [obj for obj in wanted if obj.lower() not in existing]
    if missing:
        raise NotFoundError(f"relations not found in schema '{schema}': {missing}")

    name, identity_type = _identity(principal)
    query = """
        SELECT relation_name, privilege_type
        FROM svv_relation_privileges
        WHERE lower(namespace_name) = lower(%s)
          AND lower(identity_name) = lower(%s)
          AND identity_type = %s
    """
    with conn.cursor() as cur:
        cur.execute(query, (schema, name, identity_type))
        rows = cur.fetchall()

    held: Dict[str, set] = {}
    for row in rows:
        try:
            relname, priv = row[0], row[1]
        except (TypeError, IndexError):
            continue
        held.setdefault(relname.lower(), set()).add(priv.lower())

    result = {
        obj: _managed(held.get(obj.lower(), ()), ObjectType.TABLE, f"{schema}.{obj}")
        for obj in wanted
    }
    logger.debug("Collected table grants for %s in %s: %s", name, schema, result)
    return result


def get_callable_privileges(
    conn: connection,
    schema: str,
    principal: Principal,
    object_type: ObjectType,
    objects: Iterable[str] = (),
) -> Dict[str, FrozenSet[str]]:
    """Return ``{signature: privileges}`` for functions or procedures.

    Overloads are distinct objects: declared signatures are compared with
    the catalog ``name(argtypes)`` after :func:`normalize_signature`.
    """

    get_schema_id(conn, schema)
    query = """
        SELECT p.proname,
               oidvectortypes(p.proargtypes),
               array_to_string(p.proacl, '|')
        FROM pg_proc_info p
        JOIN pg_namespace n ON n.oid = p.pronamespace
        WHERE lower(n.nspname) = lower(%s) AND p.prokind = ANY(%s)
    """
    with conn.cursor() as cur:
        cur.execute(query, (schema, PROKIND_CODES[object_type]))
        rows = cur.fetchall()

    catalog: Dict[str, FrozenSet[str]] = {}
    for row in rows:
        try:
            proname, argtypes, acl_text = row[0], row[1], row[2]
        except (TypeError, IndexError):
            continue
        signature = normalize_signature(f"{proname}({argtypes or ''})")
        catalog[signature] = acl.privileges_for(acl_text, principal, object_type)

    declared = list(objects)
    if not declared:
        return catalog

    result: Dict[str, FrozenSet[str]] = {}
    missing = []
    for obj in declared:
        key = normalize_signature(obj)
        if key not in catalog:
            missing.append(obj)
            continue
        result[obj] = catalog[key]
    if missing:
        raise NotFoundError(f"{object_type.value}s not found in schema '{schema}': {missing}")
    logger.debug("Collected callable grants for %s in %s: %s", principal.name, schema, result)
    return result


def get_language_privileges(
    conn: connection, principal: Principal, objects: Iterable[str]
) -> Dict[str, FrozenSet[str]]:
    with conn.cursor() as cur:
        cur.execute("SELECT lanname, array_to_string(lanacl, '|') FROM pg_language")
        rows = cur.fetchall()
    catalog = {
        row[0].lower(): acl.privileges_for(row[1], principal, ObjectType.LANGUAGE)
        for row in rows
        if row
    }
    declared = list(objects)
    missing = [obj for obj in declared if obj.lower() not in catalog]
    if missing:
        raise NotFoundError(f"languages not found: {missing}")
    return {obj: catalog[obj.lower()] for obj in declared}


# ---------------------------------------------------------------------------
# Default privileges


def get_default_privileges(conn: connection, rule: DefaultPrivilegeConfig) -> FrozenSet[str]:
    """Decode the privileges *rule.grantee* receives on objects *rule.owner* creates.

    ``pg_default_acl`` stores internal ids, so the schema, owner and grantee
    names are resolved first; schema id ``0`` selects the rule that applies
    to every schema.
    """

    schema_id = ALL_SCHEMAS_ID
    if rule.schema:
        logger.debug("getting ID for schema %s", rule.schema)
        schema_id = get_schema_id(conn, rule.schema)
    logger.debug("getting ID for grantee %s", rule.grantee.name)
    get_principal_id(conn, rule.grantee)
    logger.debug("getting ID for owner %s", rule.owner)
    owner_id = get_user_id(conn, rule.owner)

    query = """
        SELECT array_to_string(defaclacl, '|')
        FROM pg_default_acl
        WHERE defaclnamespace = %s
          AND defacluser = %s
          AND defaclobjtype = %s
    """
    with conn.cursor() as cur:
        cur.execute(query, (schema_id, owner_id, DEFAULT_ACL_OBJTYPES[rule.object_type]))
        rows = cur.fetchall()

    held: set = set()
    for row in rows:
        if row:
            held |= acl.privileges_for(row[0], rule.grantee, rule.object_type)
    logger.debug("Collected default privileges for %s: %s", rule.grantee.name, sorted(held))
    return frozenset(held)


# ---------------------------------------------------------------------------
# Role membership


def role_grant_exists(conn: connection, rule: RoleGrantConfig) -> bool:
    if rule.grantee.kind is PrincipalKind.USER:
        query = """
            SELECT role_name
            FROM svv_user_grants
            WHERE lower(role_name) = lower(%s) AND lower(user_name) = lower(%s)
        """
    else:
        query = """
            SELECT granted_role_name
            FROM svv_role_grants
            WHERE lower(granted_role_name) = lower(%s) AND lower(role_name) = lower(%s)
        """
    return _scalar(conn, query, (rule.role, rule.grantee.name)) is not None


# ---------------------------------------------------------------------------
# Optional metadata


def get_external_schema_options(conn: connection, schema: str) -> dict:
    """Return the JSON options of an external schema.

    A missing row, a NULL payload or invalid JSON all degrade to ``{}``.
    """

    raw = _scalar(
        conn,
        "SELECT esoptions FROM svv_external_schemas WHERE lower(schemaname) = lower(%s)",
        (schema,),
    )
    if not raw:
        return {}
    try:
        options = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning("Invalid options payload for external schema %s: %s", schema, e)
        return {}
    return options if isinstance(options, dict) else {}


# ---------------------------------------------------------------------------


def fetch_current(
    conn: connection, config: GrantConfig, database: Optional[str] = None
) -> CurrentState:
    """Read what *config.principal* currently holds on *config.target*.

    Raises :class:`NotFoundError` when the principal or a declared object
    does not exist.
    """

    principal = config.principal
    target = config.target
    if not principal_exists(conn, principal):
        raise NotFoundError(f"principal '{principal.name}' does not exist")

    ot = target.object_type
    if ot is ObjectType.DATABASE:
        return CurrentState({TARGET_KEY: get_database_privileges(conn, database, principal)})
    if ot is ObjectType.SCHEMA:
        return CurrentState({TARGET_KEY: get_schema_privileges(conn, target.schema, principal)})
    if ot is ObjectType.TABLE:
        return CurrentState(get_table_privileges(conn, target.schema, principal, target.objects))
    if ot in CALLABLE_TYPES:
        return CurrentState(
            get_callable_privileges(conn, target.schema, principal, ot, target.objects)
        )
    return CurrentState(get_language_privileges(conn, principal, target.objects))
