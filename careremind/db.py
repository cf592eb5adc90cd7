from __future__ import annotations
import os
import sqlite3
import logging
from contextlib import contextmanager
from typing import Iterator

from .utils.errors import StoreUnavailable

logger = logging.getLogger(__name__)


def get_db_connection(db_path: str) -> sqlite3.Connection:
    """
    Return a sqlite3.Connection with dict-like rows.
    Raises StoreUnavailable when the database cannot be opened.
    """
    directory = os.path.dirname(db_path)
    try:
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = sqlite3.connect(db_path, timeout=30)
    except (OSError, sqlite3.Error) as e:
        logger.error(f"Cannot open database {db_path}: {e}")
        raise StoreUnavailable(f"Cannot open database {db_path}: {e}") from e
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction(db_path: str, action: str = "database operation") -> Iterator[sqlite3.Cursor]:
    """
    Run a block inside one sqlite transaction.
    Commits on success; on any sqlite error rolls back and raises StoreUnavailable,
    so an aborted operation leaves no partial state behind.
    """
    conn = get_db_connection(db_path)
    try:
        cursor = conn.cursor()
        yield cursor
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        logger.error(f"Error during {action}: {e}")
        raise StoreUnavailable(f"Error during {action}: {e}") from e
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
