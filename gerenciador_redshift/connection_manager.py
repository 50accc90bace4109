"""Registro de conexões Redshift compartilhado entre operações concorrentes.

Um ``ConnectionRegistry`` é construído uma única vez no início do processo e
injetado em cada gerenciador.  Ele mantém um ``ThreadedConnectionPool`` por
DSN (ou seja, por banco de dados de destino), criado sob um ``Lock``.  Os
pools usam ``minconn=0``: conexões devolvidas são fechadas em vez de ficarem
ociosas, de modo que um ``DROP DATABASE`` posterior nunca é bloqueado por uma
conexão esquecida por este processo.

Quem pede uma conexão com o pool cheio espera por um ``BoundedSemaphore``
até outra ser devolvida; ``max_connections <= 0`` significa sem limite.
"""

from __future__ import annotations

import logging
import sys
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import psycopg2
from psycopg2.extensions import connection
from psycopg2.pool import ThreadedConnectionPool

from .config_manager import ProviderConfig
from .errors import INSUFFICIENT_PRIVILEGE, has_code, translate

logger = logging.getLogger(__name__)
logger.propagate = True

SERVERLESS_PROBE = "SELECT 1 FROM sys_serverless_usage"

# limite repassado ao ThreadedConnectionPool quando max_connections <= 0
UNLIMITED_CONNECTIONS = sys.maxsize


class DBConnection:
    """Pool de conexões para um único DSN."""

    def __init__(self, dsn: str, database: str, max_connections: int = 20):
        self.dsn = dsn
        self.database = database
        if max_connections and max_connections > 0:
            self._slots: Optional[threading.BoundedSemaphore] = threading.BoundedSemaphore(
                max_connections
            )
            maxconn = max_connections
        else:
            self._slots = None
            maxconn = UNLIMITED_CONNECTIONS
        self._pool = ThreadedConnectionPool(0, maxconn, dsn)
        self._serverless: Optional[bool] = None
        self._probe_lock = threading.Lock()

    # ------------------------------------------------------------------
    @contextmanager
    def connection(self) -> Iterator[connection]:
        """Empresta uma conexão do pool e a devolve ao final do bloco.

        Bloqueia enquanto todas as ``max_connections`` estiverem emprestadas.
        """

        if self._slots is not None:
            self._slots.acquire()
        try:
            try:
                conn = self._pool.getconn()
            except psycopg2.Error as e:
                logger.exception("Erro ao conectar ao banco %s", self.database)
                raise translate(e) from e
            try:
                yield conn
            finally:
                # conexões quebradas não voltam para o pool
                self._pool.putconn(conn, close=bool(getattr(conn, "closed", 0)))
        finally:
            if self._slots is not None:
                self._slots.release()

    # ------------------------------------------------------------------
    def is_serverless(self) -> bool:
        """Detecta se o cluster é Redshift Serverless.

        ``sys_serverless_usage`` só é visível no modo serverless; em clusters
        provisionados a consulta falha com ``insufficient_privilege``.  O
        resultado é guardado após a primeira verificação.
        """

        with self._probe_lock:
            if self._serverless is not None:
                return self._serverless
            with self.connection() as conn:
                try:
                    with conn.cursor() as cur:
                        cur.execute(SERVERLESS_PROBE)
                    conn.rollback()
                    self._serverless = True
                except psycopg2.Error as e:
                    conn.rollback()
                    if not has_code(e, INSUFFICIENT_PRIVILEGE):
                        raise translate(e) from e
                    self._serverless = False
            logger.debug("Banco %s serverless=%s", self.database, self._serverless)
            return self._serverless

    def close(self) -> None:
        self._pool.closeall()


class ConnectionRegistry:
    """Mapa DSN -> :class:`DBConnection`, protegido por ``threading.Lock``."""

    def __init__(self, config: ProviderConfig):
        self.config = config
        self._connections: Dict[str, DBConnection] = {}
        self._lock = threading.Lock()

    def connect(self, database: Optional[str] = None) -> DBConnection:
        """Retorna (criando se necessário) o pool para *database*."""

        database = database or self.config.database
        dsn = self.config.dsn(database)
        with self._lock:
            db = self._connections.get(dsn)
            if db is None:
                logger.info(
                    "Abrindo pool para %s:%s/%s (timeout=%ss)",
                    self.config.host, self.config.port, database,
                    self.config.connect_timeout,
                )
                db = DBConnection(dsn, database, self.config.max_connections)
                self._connections[dsn] = db
            return db

    def close_all(self) -> None:
        with self._lock:
            for db in self._connections.values():
                try:
                    db.close()
                except psycopg2.Error:
                    logger.exception("Erro ao fechar pool de %s", db.database)
            self._connections.clear()
