import pathlib
import sys

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from conftest import render
from gerenciador_redshift import reconciler
from gerenciador_redshift.data_models import (
    DefaultPrivilegeConfig,
    GrantConfig,
    ObjectType,
    Principal,
    PrincipalKind,
    RoleGrantConfig,
)
from gerenciador_redshift.state_reader import TARGET_KEY, CurrentState


def _schema_rule(privs):
    return GrantConfig.build("schema", privs, group="reporters", schema="analytics")


def test_update_adds_only_missing_privilege():
    current = CurrentState({TARGET_KEY: frozenset({"usage"})})
    plan = reconciler.plan_grant(_schema_rule(["usage", "create"]), current)
    assert [render(s.query) for s in plan] == [
        'GRANT CREATE ON SCHEMA "analytics" TO GROUP "reporters"'
    ]
    assert plan.revokes == []


def test_second_apply_is_a_no_op():
    current = CurrentState({TARGET_KEY: frozenset({"usage", "create"})})
    plan = reconciler.plan_grant(_schema_rule(["usage", "create"]), current)
    assert plan.is_empty


def test_revoke_is_planned_before_grant():
    current = CurrentState({TARGET_KEY: frozenset({"usage"})})
    plan = reconciler.plan_grant(_schema_rule(["create"]), current)
    assert [s.action for s in plan] == ["revoke", "grant"]
    assert plan.revokes[0].privileges == ("usage",)
    assert plan.grants[0].privileges == ("create",)


def test_non_uniform_objects_converge_with_two_statements():
    config = GrantConfig.build("table", ["select"], group="g", schema="s", objects=["a", "b"])
    current = CurrentState({"a": frozenset({"select", "delete"}), "b": frozenset()})
    plan = reconciler.plan_grant(config, current)
    assert [render(s.query) for s in plan] == [
        'REVOKE DELETE ON TABLE "s"."a", "s"."b" FROM GROUP "g"',
        'GRANT SELECT ON TABLE "s"."a", "s"."b" TO GROUP "g"',
    ]


def test_database_grant_uses_connection_database():
    config = GrantConfig.build("database", ["temporary"], user="bob")
    plan = reconciler.plan_grant(config, CurrentState({TARGET_KEY: frozenset()}), "dev")
    assert render(plan.statements[0].query) == 'GRANT TEMPORARY ON DATABASE "dev" TO "bob"'


def test_delete_revokes_everything_held():
    config = _schema_rule(["usage"])
    plan = reconciler.plan_grant_delete(config, CurrentState({TARGET_KEY: frozenset({"usage", "create"})}))
    assert [render(s.query) for s in plan] == [
        'REVOKE CREATE, USAGE ON SCHEMA "analytics" FROM GROUP "reporters"'
    ]
    assert reconciler.plan_grant_delete(config, CurrentState({TARGET_KEY: frozenset()})).is_empty


def test_default_privileges_with_empty_set_only_revokes():
    rule = DefaultPrivilegeConfig(
        Principal(PrincipalKind.GROUP, "loaders"), "etl_svc", ObjectType.TABLE, frozenset()
    )
    plan = reconciler.plan_default_privileges(rule)
    assert len(plan) == 1
    assert plan.grants == []
    assert render(plan.statements[0].query) == (
        'ALTER DEFAULT PRIVILEGES FOR USER "etl_svc" REVOKE ALL PRIVILEGES ON TABLES FROM GROUP "loaders"'
    )


def test_default_privileges_always_revoke_then_grant():
    rule = DefaultPrivilegeConfig(
        Principal(PrincipalKind.USER, "bob"), "etl_svc", ObjectType.TABLE,
        frozenset({"select", "insert"}), "s",
    )
    plan = reconciler.plan_default_privileges(rule)
    assert [s.action for s in plan] == ["revoke_all", "grant"]
    assert render(plan.statements[1].query) == (
        'ALTER DEFAULT PRIVILEGES FOR USER "etl_svc" IN SCHEMA "s" GRANT INSERT, SELECT ON TABLES TO "bob"'
    )
    assert len(reconciler.plan_default_privileges_delete(rule)) == 1


def test_role_plans_depend_on_membership():
    rule = RoleGrantConfig.build("analyst", user="alice")
    assert reconciler.plan_role_grant(rule, exists=True).is_empty
    assert [s.action for s in reconciler.plan_role_grant(rule, exists=False)] == ["grant_role"]
    assert reconciler.plan_role_revoke(rule, exists=False).is_empty
    assert [s.action for s in reconciler.plan_role_revoke(rule, exists=True)] == ["revoke_role"]
