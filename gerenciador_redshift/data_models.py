from __future__ import annotations

import re
from dataclasses import dataclass, fields
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from .errors import ValidationError

PUBLIC = "public"


class PrincipalKind(Enum):
    USER = "un"
    GROUP = "gn"
    ROLE = "rn"

    @property
    def tag(self) -> str:
        return self.value

    @classmethod
    def from_tag(cls, tag: str) -> "PrincipalKind":
        for kind in cls:
            if kind.value == tag:
                return kind
        raise ValueError(f"Unknown principal tag: {tag!r}")


class ObjectType(str, Enum):
    DATABASE = "database"
    SCHEMA = "schema"
    TABLE = "table"
    FUNCTION = "function"
    PROCEDURE = "procedure"
    LANGUAGE = "language"

    @classmethod
    def parse(cls, value: "ObjectType | str") -> "ObjectType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            allowed = ", ".join(o.value for o in cls)
            raise ValidationError(
                f"Invalid object type {value!r} (one of: {allowed})"
            ) from None


CALLABLE_TYPES = {ObjectType.FUNCTION, ObjectType.PROCEDURE}

# GRANT ... ON FUNCTION needs the argument list, even when it is empty
_CALLABLE_SIGNATURE_RE = re.compile(r"^[^()]+\(.*\)\s*$")

PRIVILEGE_VOCABULARY: Dict[ObjectType, FrozenSet[str]] = {
    ObjectType.DATABASE: frozenset({"create", "temporary"}),
    ObjectType.SCHEMA: frozenset({"create", "usage", "alter"}),
    ObjectType.TABLE: frozenset(
        {
            "select", "insert", "update", "delete", "references",
            "rule", "trigger", "truncate", "alter", "drop",
        }
    ),
    ObjectType.FUNCTION: frozenset({"execute"}),
    ObjectType.PROCEDURE: frozenset({"execute"}),
    ObjectType.LANGUAGE: frozenset({"usage"}),
}

# Privileges accepted by ALTER DEFAULT PRIVILEGES ... ON TABLES | FUNCTIONS | PROCEDURES
DEFAULT_PRIVILEGE_VOCABULARY: Dict[ObjectType, FrozenSet[str]] = {
    ObjectType.TABLE: frozenset(
        {
            "select", "insert", "update", "delete", "references",
            "drop", "alter", "truncate",
        }
    ),
    ObjectType.FUNCTION: frozenset({"execute"}),
    ObjectType.PROCEDURE: frozenset({"execute"}),
}


def normalize_privileges(
    privileges: Iterable[str], object_type: ObjectType, default: bool = False
) -> FrozenSet[str]:
    """Lowercase *privileges* and check them against the vocabulary.

    Raises :class:`ValidationError` naming every offending token.
    """

    vocab_map = DEFAULT_PRIVILEGE_VOCABULARY if default else PRIVILEGE_VOCABULARY
    vocabulary = vocab_map.get(object_type)
    if vocabulary is None:
        raise ValidationError(
            f"Default privileges are not supported for object type {object_type.value}"
        )
    normalized = frozenset(p.strip().lower() for p in privileges)
    invalid = normalized - vocabulary
    if invalid:
        raise ValidationError(
            f"Invalid privileges {sorted(invalid)} for object of type {object_type.value}"
        )
    return normalized


# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Principal:
    kind: PrincipalKind
    name: str

    def __post_init__(self):
        if not self.name:
            raise ValidationError("Principal name cannot be empty")
        if self.kind is PrincipalKind.USER and self.name.lower() == PUBLIC:
            raise ValidationError(
                "User name cannot be 'public'. To grant to PUBLIC set the group name to 'public' instead."
            )
        if self.kind is PrincipalKind.GROUP and self.name.lower() == PUBLIC:
            object.__setattr__(self, "name", PUBLIC)

    @property
    def is_public(self) -> bool:
        return self.kind is PrincipalKind.GROUP and self.name == PUBLIC

    @classmethod
    def from_fields(
        cls,
        user: Optional[str] = None,
        group: Optional[str] = None,
        role: Optional[str] = None,
    ) -> "Principal":
        """Build the principal of a rule, requiring exactly one of the fields."""
        given = [
            (kind, name)
            for kind, name in (
                (PrincipalKind.USER, user),
                (PrincipalKind.GROUP, group),
                (PrincipalKind.ROLE, role),
            )
            if name
        ]
        if len(given) != 1:
            raise ValidationError("Exactly one of `user`, `group` or `role` must be set")
        kind, name = given[0]
        return cls(kind, name)


@dataclass(frozen=True)
class Target:
    object_type: ObjectType
    schema: Optional[str] = None
    objects: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "object_type", ObjectType.parse(self.object_type))
        object.__setattr__(self, "objects", tuple(self.objects or ()))
        ot = self.object_type
        if ot in (ObjectType.TABLE, ObjectType.FUNCTION, ObjectType.PROCEDURE, ObjectType.SCHEMA) and not self.schema:
            raise ValidationError(
                f"parameter `schema` is required for objects of type {ot.value}"
            )
        if ot in (ObjectType.DATABASE, ObjectType.SCHEMA) and self.objects:
            raise ValidationError(
                f"cannot specify `objects` when `object_type` is `{ot.value}`"
            )
        if ot in (ObjectType.DATABASE, ObjectType.LANGUAGE) and self.schema:
            raise ValidationError(f"cannot specify `schema` when `object_type` is `{ot.value}`")
        if ot is ObjectType.LANGUAGE and not self.objects:
            raise ValidationError("parameter `objects` is required for objects of type language")
        if ot in CALLABLE_TYPES:
            bare = [obj for obj in self.objects if not _CALLABLE_SIGNATURE_RE.match(obj)]
            if bare:
                raise ValidationError(
                    f"{ot.value} objects need an argument list such as `name(int)` or `name()`: {bare}"
                )
        if len(set(self.objects)) != len(self.objects):
            raise ValidationError(f"duplicate entries in `objects`: {list(self.objects)}")

    @property
    def all_objects(self) -> bool:
        """``True`` when the rule covers every object of its type in the schema."""
        return not self.objects and self.object_type in (
            ObjectType.TABLE, ObjectType.FUNCTION, ObjectType.PROCEDURE,
        )


@dataclass(frozen=True)
class GrantConfig:
    principal: Principal
    target: Target
    privileges: FrozenSet[str] = frozenset()

    def __post_init__(self):
        object.__setattr__(
            self,
            "privileges",
            normalize_privileges(self.privileges, self.target.object_type),
        )

    @classmethod
    def build(
        cls,
        object_type: str,
        privileges: Iterable[str],
        user: Optional[str] = None,
        group: Optional[str] = None,
        role: Optional[str] = None,
        schema: Optional[str] = None,
        objects: Iterable[str] = (),
    ) -> "GrantConfig":
        return cls(
            principal=Principal.from_fields(user=user, group=group, role=role),
            target=Target(ObjectType.parse(object_type), schema, tuple(objects)),
            privileges=frozenset(privileges),
        )

    def identity(self) -> tuple:
        return (self.principal, self.target.object_type, self.target.schema,
                tuple(sorted(self.target.objects)))


@dataclass(frozen=True)
class DefaultPrivilegeConfig:
    """Privileges applied to objects *owner* creates in the future."""

    grantee: Principal
    owner: str
    object_type: ObjectType
    privileges: FrozenSet[str] = frozenset()
    schema: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "object_type", ObjectType.parse(self.object_type))
        if not self.owner:
            raise ValidationError("parameter `owner` is required for default privileges")
        if self.grantee.is_public:
            raise ValidationError("default privileges cannot be granted to PUBLIC")
        object.__setattr__(
            self,
            "privileges",
            normalize_privileges(self.privileges, self.object_type, default=True),
        )

    def identity(self) -> tuple:
        return (self.grantee, self.owner, self.object_type, self.schema)


@dataclass(frozen=True)
class RoleGrantConfig:
    """Membership of a user or role in *role*."""

    role: str
    grantee: Principal

    def __post_init__(self):
        if not self.role:
            raise ValidationError("parameter `role_to_assign` is required")
        if self.grantee.kind is PrincipalKind.GROUP:
            raise ValidationError("roles can only be granted to a user or another role")

    @classmethod
    def build(cls, role: str, user: Optional[str] = None, grantee_role: Optional[str] = None):
        if bool(user) == bool(grantee_role):
            raise ValidationError("one of `user` or `role` must be set")
        return cls(role, Principal.from_fields(user=user, role=grantee_role))

    def identity(self) -> tuple:
        return (self.role, self.grantee)


@dataclass
class GrantRecord:
    """Declared state of a managed rule plus the last privileges observed."""

    id: str
    config: object
    actual: FrozenSet[str] = frozenset()

    @property
    def in_sync(self) -> bool:
        desired = getattr(self.config, "privileges", None)
        return desired is None or set(desired) == set(self.actual)

    def changed_fields(self, prior: object) -> List[str]:
        """Return the names of the config fields that differ from *prior*."""
        if prior is None:
            return [f.name for f in fields(self.config)]
        if type(prior) is not type(self.config):
            raise ValidationError("cannot compare configurations of different kinds")
        return [
            f.name
            for f in fields(self.config)
            if getattr(self.config, f.name) != getattr(prior, f.name)
        ]
