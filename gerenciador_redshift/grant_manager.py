from __future__ import annotations

"""Lifecycle operations (create/read/update/delete/exists) for managed rules.

Every mutating call runs the whole read-plan-execute cycle through
:func:`retry.run_with_retry`, so a transient failure discards the in-flight
transaction and the next attempt re-reads the catalog before planning
again.  Create and update finish with a read-back whose result is recorded
in :attr:`_LifecycleManager.records`.
"""

import logging
import time
from typing import Callable, Dict, Optional

from . import identifiers, reconciler, state_reader
from .connection_manager import ConnectionRegistry
from .data_models import (
    DefaultPrivilegeConfig,
    GrantConfig,
    GrantRecord,
    RoleGrantConfig,
    Target,
)
from .errors import NotFoundError, ValidationError
from .executor import Executor, transaction
from .reconciler import Plan
from .retry import run_with_retry

logger = logging.getLogger(__name__)
logger.propagate = True


class _LifecycleManager:
    """Shared plumbing: connection lookup, retry policy and tracked records."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        database: Optional[str] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.database = database or registry.config.database
        self.max_attempts = max_attempts or registry.config.retry_max_attempts
        self.base_delay = (
            registry.config.retry_base_delay if base_delay is None else base_delay
        )
        self.sleep = sleep
        self.records: Dict[str, GrantRecord] = {}

    # ------------------------------------------------------------------
    def _retry(self, operation):
        result = run_with_retry(
            operation,
            max_attempts=self.max_attempts,
            sleep=self.sleep,
            base_delay=self.base_delay,
        )
        return result.unwrap()

    def _in_transaction(self, work):
        """Run ``work(conn, cur)`` in a fresh transaction on a pooled connection."""
        db = self.registry.connect(self.database)
        with db.connection() as conn:
            with transaction(conn) as cur:
                return work(conn, cur)

    def _apply(self, planner) -> int:
        """Plan and execute atomically; *planner* receives the connection."""

        def attempt():
            def work(conn, cur):
                plan = planner(conn)
                return Executor(conn).run(cur, plan)

            return self._in_transaction(work)

        return self._retry(attempt)

    def _forget(self, rule_id: str) -> None:
        if self.records.pop(rule_id, None) is not None:
            logger.info("Cleared tracked state for %s", rule_id)

    def _log_changes(self, rule_id: str, config, prior) -> None:
        if prior is None:
            return
        changed = GrantRecord(rule_id, config).changed_fields(prior)
        logger.info("Updating %s, changed fields: %s", rule_id, ", ".join(changed) or "none")

    @staticmethod
    def _check_identity(config, prior) -> None:
        if prior is not None and prior.identity() != config.identity():
            raise ValidationError(
                "identity fields changed; the rule must be deleted and re-created"
            )


# ----------------------------------------------------------------------
# Object privileges


class GrantManager(_LifecycleManager):
    """Manage the privileges of one principal over one target."""

    def plan(self, config: GrantConfig) -> Plan:
        """Return the plan *config* would apply now, without executing it."""
        return self._in_transaction(
            lambda conn, cur: reconciler.plan_grant(
                config, state_reader.fetch_current(conn, config, self.database), self.database
            )
        )

    def _plan_apply(self, config: GrantConfig):
        def planner(conn):
            current = state_reader.fetch_current(conn, config, self.database)
            return reconciler.plan_grant(config, current, self.database)

        return planner

    def create(self, config: GrantConfig) -> str:
        rule_id = identifiers.encode_grant_id(
            config.principal,
            config.target.object_type,
            config.target.schema,
            config.target.objects,
        )
        count = self._apply(self._plan_apply(config))
        logger.info("Created grant %s (%s statements)", rule_id, count)
        self._read_back(rule_id, config)
        return rule_id

    def update(self, config: GrantConfig, prior: Optional[GrantConfig] = None) -> None:
        self._check_identity(config, prior)
        rule_id = identifiers.encode_grant_id(
            config.principal,
            config.target.object_type,
            config.target.schema,
            config.target.objects,
        )
        self._log_changes(rule_id, config, prior)
        count = self._apply(self._plan_apply(config))
        logger.info("Updated grant %s (%s statements)", rule_id, count)
        self._read_back(rule_id, config)

    def read(self, rule_id: str, prior: Optional[GrantConfig] = None) -> Optional[GrantConfig]:
        """Return the observed configuration, or ``None`` when the rule is gone.

        The privileges reported are those held on every object of the target.
        """

        decoded = identifiers.decode_grant_id(rule_id)
        target = Target(decoded.object_type, decoded.schema, decoded.objects)
        if prior is not None and prior.target.object_type is decoded.object_type:
            if tuple(sorted(prior.target.objects)) == decoded.objects:
                target = prior.target  # keep the declared order
        probe = GrantConfig(decoded.principal, target)
        try:
            current = self._retry(
                lambda: self._in_transaction(
                    lambda conn, cur: state_reader.fetch_current(conn, probe, self.database)
                )
            )
        except NotFoundError as e:
            logger.warning("Grant %s no longer exists: %s", rule_id, e)
            self._forget(rule_id)
            return None
        observed = GrantConfig(decoded.principal, target, current.held_by_all)
        self.records[rule_id] = GrantRecord(rule_id, prior or observed, observed.privileges)
        return observed

    def delete(self, rule_id: str, config: Optional[GrantConfig] = None) -> None:
        if config is None:
            decoded = identifiers.decode_grant_id(rule_id)
            config = GrantConfig(
                decoded.principal,
                Target(decoded.object_type, decoded.schema, decoded.objects),
            )

        def planner(conn):
            current = state_reader.fetch_current(conn, config, self.database)
            return reconciler.plan_grant_delete(config, current, self.database)

        try:
            count = self._apply(planner)
        except NotFoundError as e:
            logger.info("Grant %s already gone: %s", rule_id, e)
        else:
            logger.info("Deleted grant %s (%s statements)", rule_id, count)
        self._forget(rule_id)

    def exists(self, rule_id: str, config: Optional[GrantConfig] = None) -> bool:
        """``True`` while the principal and every declared object exist."""
        decoded = identifiers.decode_grant_id(rule_id)
        probe = config or GrantConfig(
            decoded.principal, Target(decoded.object_type, decoded.schema, decoded.objects)
        )
        try:
            self._retry(
                lambda: self._in_transaction(
                    lambda conn, cur: state_reader.fetch_current(conn, probe, self.database)
                )
            )
        except NotFoundError:
            return False
        return True

    def _read_back(self, rule_id: str, config: GrantConfig) -> None:
        observed = self.read(rule_id, config)
        if observed is None:
            raise NotFoundError(f"grant {rule_id} disappeared right after being applied")
        record = self.records[rule_id]
        if not record.in_sync:
            logger.warning(
                "Grant %s not in sync after apply: desired=%s actual=%s",
                rule_id, sorted(config.privileges), sorted(record.actual),
            )


# ----------------------------------------------------------------------
# Default privileges


class DefaultPrivilegesManager(_LifecycleManager):
    """Manage ``ALTER DEFAULT PRIVILEGES`` rules."""

    def plan(self, config: DefaultPrivilegeConfig) -> Plan:
        return reconciler.plan_default_privileges(config)

    @staticmethod
    def _id(config: DefaultPrivilegeConfig) -> str:
        return identifiers.encode_default_privileges_id(
            config.grantee, config.owner, config.object_type, config.schema
        )

    def _set(self, config: DefaultPrivilegeConfig) -> int:
        def planner(conn):
            # resolves every referenced name so a missing one fails before any statement
            state_reader.get_default_privileges(conn, config)
            return reconciler.plan_default_privileges(config)

        return self._apply(planner)

    def create(self, config: DefaultPrivilegeConfig) -> str:
        rule_id = self._id(config)
        count = self._set(config)
        logger.info("Created default privileges %s (%s statements)", rule_id, count)
        self._read_back(rule_id, config)
        return rule_id

    def update(
        self, config: DefaultPrivilegeConfig, prior: Optional[DefaultPrivilegeConfig] = None
    ) -> None:
        self._check_identity(config, prior)
        rule_id = self._id(config)
        self._log_changes(rule_id, config, prior)
        count = self._set(config)
        logger.info("Updated default privileges %s (%s statements)", rule_id, count)
        self._read_back(rule_id, config)

    def read(
        self, rule_id: str, prior: Optional[DefaultPrivilegeConfig] = None
    ) -> Optional[DefaultPrivilegeConfig]:
        decoded = identifiers.decode_default_privileges_id(rule_id)
        probe = DefaultPrivilegeConfig(
            decoded.grantee, decoded.owner, decoded.object_type, frozenset(), decoded.schema
        )
        try:
            held = self._retry(
                lambda: self._in_transaction(
                    lambda conn, cur: state_reader.get_default_privileges(conn, probe)
                )
            )
        except NotFoundError as e:
            logger.warning("Default privileges %s no longer apply: %s", rule_id, e)
            self._forget(rule_id)
            return None
        observed = DefaultPrivilegeConfig(
            decoded.grantee, decoded.owner, decoded.object_type, held, decoded.schema
        )
        self.records[rule_id] = GrantRecord(rule_id, prior or observed, held)
        return observed

    def delete(self, rule_id: str, config: Optional[DefaultPrivilegeConfig] = None) -> None:
        if config is None:
            decoded = identifiers.decode_default_privileges_id(rule_id)
            config = DefaultPrivilegeConfig(
                decoded.grantee, decoded.owner, decoded.object_type, frozenset(), decoded.schema
            )

        def planner(conn):
            state_reader.get_default_privileges(conn, config)
            return reconciler.plan_default_privileges_delete(config)

        try:
            self._apply(planner)
        except NotFoundError as e:
            logger.info("Default privileges %s already gone: %s", rule_id, e)
        self._forget(rule_id)

    def exists(self, rule_id: str, config: Optional[DefaultPrivilegeConfig] = None) -> bool:
        """``True`` when the rule currently grants anything."""
        observed = self.read(rule_id, config)
        return observed is not None and bool(observed.privileges)

    def _read_back(self, rule_id: str, config: DefaultPrivilegeConfig) -> None:
        observed = self.read(rule_id, config)
        if observed is None:
            raise NotFoundError(f"default privileges {rule_id} disappeared after being applied")
        if observed.privileges != config.privileges:
            logger.warning(
                "Default privileges %s not in sync after apply: desired=%s actual=%s",
                rule_id, sorted(config.privileges), sorted(observed.privileges),
            )


# ----------------------------------------------------------------------
# Role membership


class RoleGrantManager(_LifecycleManager):
    """Manage ``GRANT ROLE`` memberships.  Any change means replace."""

    def plan(self, config: RoleGrantConfig) -> Plan:
        return self._in_transaction(
            lambda conn, cur: reconciler.plan_role_grant(
                config, state_reader.role_grant_exists(conn, config)
            )
        )

    def _check_principals(self, conn, config: RoleGrantConfig) -> None:
        state_reader.get_role_id(conn, config.role)
        state_reader.get_principal_id(conn, config.grantee)

    def create(self, config: RoleGrantConfig) -> str:
        rule_id = identifiers.encode_role_grant_id(config.role, config.grantee)

        def planner(conn):
            self._check_principals(conn, config)
            return reconciler.plan_role_grant(config, state_reader.role_grant_exists(conn, config))

        self._apply(planner)
        if self.read(rule_id, config) is None:
            raise NotFoundError(f"role grant {rule_id} not found after being applied")
        logger.info("Granted role %s to %s", config.role, config.grantee.name)
        return rule_id

    def update(self, config: RoleGrantConfig, prior: Optional[RoleGrantConfig] = None) -> None:
        self._check_identity(config, prior)
        # every field is part of the identity, nothing can change in place

    def read(self, rule_id: str, prior: Optional[RoleGrantConfig] = None) -> Optional[RoleGrantConfig]:
        decoded = identifiers.decode_role_grant_id(rule_id)
        config = RoleGrantConfig(decoded.role, decoded.grantee)
        try:
            found = self._retry(
                lambda: self._in_transaction(
                    lambda conn, cur: state_reader.role_grant_exists(conn, config)
                )
            )
        except NotFoundError:
            found = False
        if not found:
            self._forget(rule_id)
            return None
        self.records[rule_id] = GrantRecord(rule_id, config)
        return config

    def delete(self, rule_id: str, config: Optional[RoleGrantConfig] = None) -> None:
        if config is None:
            decoded = identifiers.decode_role_grant_id(rule_id)
            config = RoleGrantConfig(decoded.role, decoded.grantee)
        self._apply(
            lambda conn: reconciler.plan_role_revoke(
                config, state_reader.role_grant_exists(conn, config)
            )
        )
        logger.info("Revoked role %s from %s", config.role, config.grantee.name)
        self._forget(rule_id)

    def exists(self, rule_id: str, config: Optional[RoleGrantConfig] = None) -> bool:
        return self.read(rule_id, config) is not None
