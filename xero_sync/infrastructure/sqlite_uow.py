from __future__ import annotations

import contextlib
import sqlite3
import threading
import uuid
from collections.abc import Iterator

# Sync runs share one connection across worker threads; sqlite3 keeps a single
# transaction per connection, so writers take turns for the whole block.
_WRITE_LOCK = threading.RLock()


@contextlib.contextmanager
def transaction(connection: sqlite3.Connection, *, immediate: bool = False) -> Iterator[None]:
    """Runs the block atomically, nesting through SAVEPOINT when this thread already has one open.

    ``immediate`` takes the database write lock up front (BEGIN IMMEDIATE) so
    that read-then-write decisions such as number allocation cannot interleave
    with a writer on another connection.
    """
    with _WRITE_LOCK:
        if connection.in_transaction:
            savepoint_name = f"sp_{uuid.uuid4().hex}"
            connection.execute(f"SAVEPOINT {savepoint_name}")
            try:
                yield
                connection.execute(f"RELEASE SAVEPOINT {savepoint_name}")
            except Exception:
                connection.execute(f"ROLLBACK TO SAVEPOINT {savepoint_name}")
                connection.execute(f"RELEASE SAVEPOINT {savepoint_name}")
                raise
            return

        connection.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        try:
            yield
            connection.commit()
        except Exception:
            connection.rollback()
            raise
