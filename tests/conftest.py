import os
import pathlib
import sys

import psycopg2
import pytest
from psycopg2 import sql

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

# DSN do cluster usado pelos testes de integração
REDSHIFT_DSN_ENV = "REDSHIFT_DSN"


def render(query):
    """Render a ``psycopg2.sql`` object without a live connection."""
    if isinstance(query, str):
        return query
    if isinstance(query, sql.Composed):
        return "".join(render(part) for part in query.seq)
    if isinstance(query, sql.Identifier):
        return ".".join('"' + s.replace('"', '""') + '"' for s in query.strings)
    if isinstance(query, sql.Literal):
        return repr(query.wrapped)
    if isinstance(query, sql.SQL):
        return query.string
    return str(query)


class FakePgError(psycopg2.OperationalError):
    """Driver error carrying an arbitrary SQLSTATE."""

    def __init__(self, code, message="boom"):
        super().__init__(message)
        self._code = code

    @property
    def pgcode(self):
        return self._code


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rows = []
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        self.closed = True

    def execute(self, query, params=None):
        text = render(query)
        self.conn.executed.append((text, params))
        self.rows = []
        for needle, result in self.conn.responses:
            if needle in text:
                if isinstance(result, BaseException):
                    raise result
                self.rows = result(params) if callable(result) else list(result)
                break

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConn:
    """Connection double answering catalog queries by substring match.

    ``responses`` is a list of ``(needle, rows)`` pairs; ``rows`` may be a
    callable receiving the query parameters or an exception to raise.
    """

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = 0

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    @property
    def statements(self):
        """Executed GRANT/REVOKE/ALTER statements, in order."""
        return [
            text for text, _ in self.executed
            if text.startswith(("GRANT", "REVOKE", "ALTER"))
        ]


@pytest.fixture
def fake_conn():
    return FakeConn()


@pytest.fixture(scope="session")
def redshift_dsn():
    dsn = os.environ.get(REDSHIFT_DSN_ENV)
    if not dsn:
        pytest.skip("Defina REDSHIFT_DSN para testes de integração")
    return dsn


@pytest.fixture(scope="session")
def redshift_conn(redshift_dsn):
    conn = psycopg2.connect(redshift_dsn)
    yield conn
    conn.close()
