import os
import sys
import threading

import pytest

# Ensure project root is on path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from conftest import FakeConn, FakePgError
from gerenciador_redshift import connection_manager
from gerenciador_redshift.config_manager import ProviderConfig
from gerenciador_redshift.errors import FatalDBError


class FakePool:
    instances = []

    def __init__(self, minconn, maxconn, dsn):
        self.minconn = minconn
        self.maxconn = maxconn
        self.dsn = dsn
        self.conn = FakeConn()
        self.returned = []
        self.closed = False
        FakePool.instances.append(self)

    def getconn(self):
        return self.conn

    def putconn(self, conn, close=False):
        self.returned.append((conn, close))

    def closeall(self):
        self.closed = True


@pytest.fixture(autouse=True)
def fake_pool(monkeypatch):
    FakePool.instances = []
    monkeypatch.setattr(connection_manager, "ThreadedConnectionPool", FakePool)
    yield FakePool


@pytest.fixture
def registry():
    cfg = ProviderConfig(host="cluster.example", user="admin", password="p@ss word")
    return connection_manager.ConnectionRegistry(cfg)


def test_one_pool_per_database(registry):
    a = registry.connect("dev")
    b = registry.connect("dev")
    c = registry.connect("analytics")
    assert a is b
    assert a is not c
    assert len(FakePool.instances) == 2
    assert registry.connect() is a


def test_pools_do_not_keep_idle_connections(registry):
    db = registry.connect("dev")
    pool = FakePool.instances[0]
    assert pool.minconn == 0
    assert pool.maxconn == 20
    assert "connect_timeout=180" in pool.dsn
    assert "p%40ss%20word" in pool.dsn
    with db.connection() as conn:
        assert conn is pool.conn
    assert pool.returned == [(pool.conn, False)]


def test_concurrent_lookup_creates_single_pool(registry):
    results = []

    def worker():
        results.append(registry.connect("dev"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len({id(r) for r in results}) == 1
    assert len(FakePool.instances) == 1


def test_close_all(registry):
    registry.connect("dev")
    registry.connect("other")
    registry.close_all()
    assert all(p.closed for p in FakePool.instances)


def test_serverless_probe_success_is_cached(registry):
    db = registry.connect("dev")
    assert db.is_serverless() is True
    assert db.is_serverless() is True
    probes = [q for q, _ in FakePool.instances[0].conn.executed if "sys_serverless_usage" in q]
    assert len(probes) == 1


def test_insufficient_privilege_means_provisioned(registry):
    db = registry.connect("dev")
    FakePool.instances[0].conn.responses.append(
        ("sys_serverless_usage", FakePgError("42501", "permission denied"))
    )
    assert db.is_serverless() is False


def test_other_probe_errors_propagate(registry):
    db = registry.connect("dev")
    FakePool.instances[0].conn.responses.append(
        ("sys_serverless_usage", FakePgError("42601", "syntax error"))
    )
    with pytest.raises(FatalDBError):
        db.is_serverless()


def test_full_pool_makes_borrowers_wait():
    db = connection_manager.DBConnection("dsn", "dev", max_connections=1)
    holding = threading.Event()
    release = threading.Event()
    borrowed = threading.Event()
    errors = []

    def holder():
        with db.connection():
            holding.set()
            release.wait(5)

    def borrower():
        try:
            with db.connection():
                borrowed.set()
        except Exception as e:  # pragma: no cover - reported below
            errors.append(e)

    first = threading.Thread(target=holder)
    first.start()
    assert holding.wait(5)
    second = threading.Thread(target=borrower)
    second.start()
    assert not borrowed.wait(0.2)
    release.set()
    first.join(5)
    second.join(5)
    assert borrowed.is_set()
    assert errors == []


def test_non_positive_max_connections_is_unlimited():
    for value in (0, -1):
        db = connection_manager.DBConnection("dsn", "dev", max_connections=value)
        pool = FakePool.instances[-1]
        assert pool.maxconn == connection_manager.UNLIMITED_CONNECTIONS
        with db.connection() as conn:
            with db.connection() as other:
                assert conn is other is pool.conn
        assert len(pool.returned) == 2


def test_failed_borrow_frees_its_slot():
    db = connection_manager.DBConnection("dsn", "dev", max_connections=1)
    pool = FakePool.instances[-1]
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise FakePgError("57P03", "cannot connect now")
        return pool.conn

    pool.getconn = flaky
    with pytest.raises(FatalDBError):
        with db.connection():
            pass
    with db.connection() as conn:
        assert conn is pool.conn
