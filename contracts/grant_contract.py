"""Grant contract schema and helpers.

A contract is a YAML (or JSON) document declaring the desired privileges::

    contract_version: "1.0"
    database: dev
    grants:
      - group: reporters
        object_type: schema
        schema: analytics
        privileges: [usage, create]
    default_privileges:
      - group: loaders
        owner: etl_svc
        object_type: table
        privileges: []
    role_grants:
      - role: analyst
        user: alice

The structure is checked with :mod:`jsonschema`; privilege vocabularies and
the "exactly one principal" rule are enforced when the entries are turned
into typed configurations.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, List, NamedTuple

import yaml
from jsonschema import Draft7Validator

from gerenciador_redshift.data_models import (
    DefaultPrivilegeConfig,
    GrantConfig,
    Principal,
    RoleGrantConfig,
)

SCHEMA_VERSION = "1.0"

_NAME = {"type": "string", "minLength": 1}
_NAME_LIST = {"type": "array", "items": _NAME}
_PRINCIPAL_PROPS = {"user": _NAME, "group": _NAME, "role": _NAME}

GRANT_CONTRACT_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Grant Contract",
    "type": "object",
    "properties": {
        "contract_version": {"type": "string", "const": SCHEMA_VERSION},
        "database": _NAME,
        "grants": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    **_PRINCIPAL_PROPS,
                    "object_type": {
                        "type": "string",
                        "enum": ["database", "schema", "table", "function", "procedure", "language"],
                    },
                    "schema": _NAME,
                    "objects": _NAME_LIST,
                    "privileges": _NAME_LIST,
                },
                "required": ["object_type", "privileges"],
                "additionalProperties": False,
            },
        },
        "default_privileges": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    **_PRINCIPAL_PROPS,
                    "owner": _NAME,
                    "object_type": {"type": "string", "enum": ["table", "function", "procedure"]},
                    "schema": _NAME,
                    "privileges": _NAME_LIST,
                },
                "required": ["owner", "object_type", "privileges"],
                "additionalProperties": False,
            },
        },
        "role_grants": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "role": _NAME,
                    "user": _NAME,
                    "grantee_role": _NAME,
                },
                "required": ["role"],
                "additionalProperties": False,
            },
        },
    },
    "required": ["contract_version"],
    "additionalProperties": False,
}


class ContractRules(NamedTuple):
    database: str | None
    grants: List[GrantConfig]
    default_privileges: List[DefaultPrivilegeConfig]
    role_grants: List[RoleGrantConfig]


def validate_contract(data: dict[str, Any]) -> dict[str, Any]:
    """Validate *data* against :data:`GRANT_CONTRACT_SCHEMA`.

    Raises ``jsonschema.ValidationError`` if invalid and returns the data
    when successful.
    """

    Draft7Validator(GRANT_CONTRACT_SCHEMA).validate(data)
    return data


def build_rules(data: dict[str, Any]) -> ContractRules:
    """Convert a validated contract into typed configurations.

    Raises ``ValueError`` (``ValidationError``) for invalid privileges,
    ambiguous principals or two entries managing the same rule.
    """

    grants = [
        GrantConfig.build(
            object_type=entry["object_type"],
            privileges=entry["privileges"],
            user=entry.get("user"),
            group=entry.get("group"),
            role=entry.get("role"),
            schema=entry.get("schema"),
            objects=entry.get("objects", []),
        )
        for entry in data.get("grants", [])
    ]
    defaults = [
        DefaultPrivilegeConfig(
            grantee=Principal.from_fields(
                user=entry.get("user"), group=entry.get("group"), role=entry.get("role")
            ),
            owner=entry["owner"],
            object_type=entry["object_type"],
            privileges=frozenset(entry["privileges"]),
            schema=entry.get("schema"),
        )
        for entry in data.get("default_privileges", [])
    ]
    roles = [
        RoleGrantConfig.build(
            entry["role"], user=entry.get("user"), grantee_role=entry.get("grantee_role")
        )
        for entry in data.get("role_grants", [])
    ]
    for kind, rules in (("grant", grants), ("default_privileges", defaults), ("role_grant", roles)):
        seen = set()
        for rule in rules:
            key = rule.identity()
            if key in seen:
                raise ValueError(f"Duplicate {kind} entry for {key}")
            seen.add(key)
    return ContractRules(data.get("database"), grants, defaults, roles)


def load_contract(path: str | Path) -> ContractRules:
    """Load, validate and convert a contract file (YAML or JSON)."""

    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    return build_rules(validate_contract(data))
