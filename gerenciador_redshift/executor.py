from __future__ import annotations

"""Apply planned GRANT/REVOKE statements to a Redshift database."""

import logging
from contextlib import contextmanager
from typing import Iterable, Iterator

import psycopg2
from psycopg2.extensions import connection, cursor

from .errors import translate
from .statements import Statement

logger = logging.getLogger(__name__)
logger.propagate = True


@contextmanager
def transaction(conn: connection) -> Iterator[cursor]:
    """Run the block in a transaction and yield a cursor.

    Commits when the block finishes and rolls back on any exception,
    including ``KeyboardInterrupt`` and generator close.  Driver errors
    leave as :class:`TransientDBError` or :class:`FatalDBError`.
    """

    cur = conn.cursor()
    try:
        yield cur
        conn.commit()
    except BaseException as exc:
        try:
            conn.rollback()
        except psycopg2.Error:
            logger.exception("Rollback failed")
        if isinstance(exc, psycopg2.Error):
            raise translate(exc) from exc
        raise
    finally:
        cur.close()


class Executor:
    """Execute a plan's statements in order within a single transaction.

    Parameters
    ----------
    conn:
        psycopg2 connection used to execute statements.
    dry_run:
        Only log the statements; nothing is sent to the server.
    """

    def __init__(self, conn: connection, dry_run: bool = False):
        self.conn = conn
        self.dry_run = dry_run

    # ------------------------------------------------------------------
    def apply(self, plan: Iterable[Statement]) -> int:
        """Run *plan* in its own transaction and return the statement count."""
        stmts = list(plan)
        if not stmts:
            return 0
        if self.dry_run:
            for stmt in stmts:
                logger.info("[dry-run] %s", stmt.render(self.conn))
            return len(stmts)
        with transaction(self.conn) as cur:
            return self.run(cur, stmts)

    # ------------------------------------------------------------------
    def run(self, cur: cursor, plan: Iterable[Statement]) -> int:
        """Execute *plan* on *cur* inside a transaction owned by the caller."""
        count = 0
        for stmt in plan:
            logger.debug("Executing: %s", stmt.render(cur))
            try:
                cur.execute(stmt.query)
            except psycopg2.Error as e:
                logger.error("Statement failed (%s): %s", getattr(e, "pgcode", None), e)
                raise
            count += 1
        return count
