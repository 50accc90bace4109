import logging
import pathlib
import sys

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from conftest import render
from gerenciador_redshift import statements
from gerenciador_redshift.data_models import ObjectType, Principal, PrincipalKind, Target
from gerenciador_redshift.errors import ValidationError

GROUP = Principal(PrincipalKind.GROUP, "reporters")


def test_grant_on_schema_to_group():
    stmt = statements.grant(GROUP, Target("schema", "analytics"), {"usage", "create"})
    assert render(stmt.query) == 'GRANT CREATE, USAGE ON SCHEMA "analytics" TO GROUP "reporters"'
    assert stmt.privileges == ("create", "usage")


def test_grant_lists_all_objects_qualified():
    stmt = statements.grant(GROUP, Target("table", "s", ("b", "a")), {"select"})
    assert render(stmt.query) == 'GRANT SELECT ON TABLE "s"."a", "s"."b" TO GROUP "reporters"'


def test_empty_object_list_means_all_in_schema():
    stmt = statements.revoke(GROUP, Target("function", "s"), {"execute"})
    assert render(stmt.query) == 'REVOKE EXECUTE ON ALL FUNCTIONS IN SCHEMA "s" FROM GROUP "reporters"'


def test_callable_signature_kept():
    stmt = statements.grant(
        Principal(PrincipalKind.USER, "bob"),
        Target("procedure", "s", ("p(int, varchar)",)),
        {"execute"},
    )
    assert render(stmt.query) == 'GRANT EXECUTE ON PROCEDURE "s"."p"(int, varchar) TO "bob"'


def test_callable_signature_rejects_injection():
    with pytest.raises(ValidationError):
        statements.callable_ref("s", "f(int); DROP TABLE x; --)")


def test_callable_without_argument_list_is_rejected():
    with pytest.raises(ValidationError):
        statements.callable_ref("s", "f")
    assert render(statements.callable_ref("s", "f()")) == '"s"."f"()'


def test_database_and_public():
    public = Principal(PrincipalKind.GROUP, "public")
    stmt = statements.grant(public, Target("database"), {"temporary"}, database="dev")
    assert render(stmt.query) == 'GRANT TEMPORARY ON DATABASE "dev" TO PUBLIC'
    with pytest.raises(ValidationError):
        statements.grant(public, Target("database"), {"temporary"})


def test_identifiers_are_quoted():
    stmt = statements.grant(Principal(PrincipalKind.USER, 'we"ird'), Target("schema", "s"), {"usage"})
    assert render(stmt.query).endswith('TO "we""ird"')


def test_language_and_role_grantee():
    stmt = statements.revoke_all(Principal(PrincipalKind.ROLE, "r"), Target("language", None, ("plpythonu",)))
    assert render(stmt.query) == 'REVOKE ALL PRIVILEGES ON LANGUAGE "plpythonu" FROM ROLE "r"'


def test_alter_default_privileges():
    loaders = Principal(PrincipalKind.GROUP, "loaders")
    revoke = statements.alter_default_revoke_all(loaders, "etl_svc", ObjectType.TABLE)
    assert render(revoke.query) == (
        'ALTER DEFAULT PRIVILEGES FOR USER "etl_svc" REVOKE ALL PRIVILEGES ON TABLES FROM GROUP "loaders"'
    )
    grant = statements.alter_default_grant(loaders, "etl_svc", ObjectType.TABLE, {"select"}, "s")
    assert render(grant.query) == (
        'ALTER DEFAULT PRIVILEGES FOR USER "etl_svc" IN SCHEMA "s" GRANT SELECT ON TABLES TO GROUP "loaders"'
    )
    with pytest.raises(ValidationError):
        statements.alter_default_revoke_all(loaders, "etl_svc", ObjectType.SCHEMA)


def test_role_statements():
    assert render(statements.grant_role("analyst", Principal(PrincipalKind.USER, "alice")).query) == (
        'GRANT ROLE "analyst" TO "alice"'
    )
    assert render(statements.revoke_role("analyst", Principal(PrincipalKind.ROLE, "junior")).query) == (
        'REVOKE ROLE "analyst" FROM ROLE "junior"'
    )


def test_render_without_a_usable_context_logs_and_falls_back(caplog):
    stmt = statements.grant(GROUP, Target("schema", "analytics"), {"usage"})
    with caplog.at_level(logging.DEBUG, logger="gerenciador_redshift.statements"):
        assert stmt.render(object()) == str(stmt.query)
    assert "without a connection" in caplog.text
