"""
Descriptor Store Module

This module persists exactly one face embedding per enrolled account and
serves it back for verification.

Records are stored in a SQLite database:
- identities: account_id (primary key), embedding as a JSON float array,
  embedding dimension, enrollment and last-update timestamps

The store never interprets embedding contents. It guarantees:
- get_embedding has no side effects and takes no per-account lock; the stored
  value is only ever replaced, never mutated in place.
- put_embedding is serialized per account (single writer per key) and
  atomically replaces any existing record, so an account never has two
  embeddings.

The DescriptorStore class provides:
- get_embedding: Read the enrolled embedding (raises AccountNotFoundError)
- put_embedding: Create or replace the enrolled embedding
- delete_embedding: Remove an account's record
- list_accounts / get_record / get_stats: Management views (no raw vectors)

Usage:
    from core.descriptor_store import DescriptorStore

    store = DescriptorStore(db_path="storage/face_auth.sqlite")
    store.put_embedding("alice@example.com", embedding)
    enrolled = store.get_embedding("alice@example.com")
"""

import json
import sqlite3
import threading
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import List, Dict, Any, Iterator, Optional

import numpy as np

from core.embedding import to_embedding, embedding_to_list
from core.errors import (
    AccountNotFoundError,
    StoreConflictError,
    StoreUnavailableError,
)

# Setup logging
logger = logging.getLogger(__name__)


class DescriptorStore:
    """
    SQLite-backed store of one embedding per account.

    A single connection is shared between request threads; access to it is
    serialized by an internal lock. Writers additionally hold a per-account
    lock so that two enrollments for the same account cannot interleave.

    Attributes:
        db_path: Path to the SQLite database file.
        lock_timeout_sec: How long put_embedding waits for the account's write
                          lock before raising StoreConflictError.
        embedding_dim: If set, put_embedding rejects vectors of other lengths.
    """

    def __init__(
        self,
        db_path: str,
        lock_timeout_sec: float = 5.0,
        embedding_dim: Optional[int] = None,
    ):
        """
        Initialize the DescriptorStore.

        Creates the database file and schema if they don't exist.

        Args:
            db_path: Path to SQLite database file.
            lock_timeout_sec: Per-account write lock timeout in seconds.
            embedding_dim: Expected embedding dimension (None = any).
        """
        self.db_path = Path(db_path)
        self.lock_timeout_sec = lock_timeout_sec
        self.embedding_dim = embedding_dim

        self._conn: Optional[sqlite3.Connection] = None
        self._db_lock = threading.RLock()
        self._key_locks: Dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

        logger.info(f"DescriptorStore initialized: db={self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get or create the SQLite connection.

        Returns:
            SQLite connection with Row factory for dict-like access.
        """
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        Run a block of statements as one transaction.

        Commits on success and rolls back on failure. Database errors are
        re-raised as StoreUnavailableError so callers can tell infrastructure
        failures apart from authentication outcomes.
        """
        with self._db_lock:
            try:
                conn = self._get_connection()
                cursor = conn.cursor()
                yield cursor
                conn.commit()
            except sqlite3.Error as e:
                if self._conn is not None:
                    self._conn.rollback()
                logger.error(f"Descriptor store error: {e}")
                raise StoreUnavailableError(f"Descriptor store unavailable: {e}") from e

    def _init_database(self) -> None:
        """Create the identities table if it doesn't exist."""
        with self._transaction() as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS identities (
                    account_id TEXT PRIMARY KEY,
                    embedding TEXT NOT NULL,
                    embedding_dim INTEGER NOT NULL,
                    enrolled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
        logger.debug("Database schema initialized")

    def _account_lock(self, account_id: str) -> threading.Lock:
        """Return the write lock for one account, creating it on first use."""
        with self._key_locks_guard:
            lock = self._key_locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[account_id] = lock
            return lock

    def get_embedding(self, account_id: str) -> np.ndarray:
        """
        Load the enrolled embedding for an account.

        Args:
            account_id: Stable external identifier (email or user id).

        Returns:
            Read-only float64 embedding.

        Raises:
            AccountNotFoundError: If the account has no identity record.
            StoreUnavailableError: If the database cannot be read or the stored
                record is corrupt.
        """
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT embedding FROM identities WHERE account_id = ?",
                (account_id,),
            )
            row = cursor.fetchone()

        if row is None:
            raise AccountNotFoundError(account_id)

        try:
            return to_embedding(json.loads(row["embedding"]))
        except (ValueError, TypeError) as e:
            # JSONDecodeError and InvalidEmbeddingError are both ValueErrors
            logger.error(f"Corrupt identity record for account {account_id}: {e}")
            raise StoreUnavailableError(
                f"Stored embedding for {account_id} is unreadable"
            ) from e

    def put_embedding(self, account_id: str, embedding: np.ndarray) -> bool:
        """
        Create or atomically replace the enrolled embedding for an account.

        Args:
            account_id: Stable external identifier.
            embedding: The embedding to store.

        Returns:
            True if an existing record was replaced, False if newly created.

        Raises:
            InvalidEmbeddingError: If the embedding is malformed or has the
                wrong dimension.
            StoreConflictError: If another writer holds the account lock for
                longer than lock_timeout_sec.
            StoreUnavailableError: If the database cannot be written.
        """
        embedding = to_embedding(embedding, self.embedding_dim)
        payload = json.dumps(embedding_to_list(embedding))

        lock = self._account_lock(account_id)
        if not lock.acquire(timeout=self.lock_timeout_sec):
            logger.warning(f"Write lock busy for account {account_id}")
            raise StoreConflictError(
                f"Another enrollment is writing the record for {account_id}"
            )

        try:
            with self._transaction() as cursor:
                cursor.execute(
                    "SELECT 1 FROM identities WHERE account_id = ?", (account_id,)
                )
                replaced = cursor.fetchone() is not None

                cursor.execute("""
                    INSERT INTO identities (account_id, embedding, embedding_dim)
                    VALUES (?, ?, ?)
                    ON CONFLICT(account_id) DO UPDATE SET
                        embedding = excluded.embedding,
                        embedding_dim = excluded.embedding_dim,
                        updated_at = CURRENT_TIMESTAMP
                """, (account_id, payload, int(embedding.shape[0])))
        finally:
            lock.release()

        logger.info(
            f"{'Replaced' if replaced else 'Stored'} embedding for account {account_id} "
            f"(dim={embedding.shape[0]})"
        )
        return replaced

    def has_embedding(self, account_id: str) -> bool:
        """Check whether an account has an identity record."""
        with self._transaction() as cursor:
            cursor.execute("SELECT 1 FROM identities WHERE account_id = ?", (account_id,))
            return cursor.fetchone() is not None

    def delete_embedding(self, account_id: str) -> bool:
        """
        Delete an account's identity record.

        Returns:
            True if a record was deleted, False if the account was not enrolled.
        """
        lock = self._account_lock(account_id)
        if not lock.acquire(timeout=self.lock_timeout_sec):
            raise StoreConflictError(
                f"Another enrollment is writing the record for {account_id}"
            )

        try:
            with self._transaction() as cursor:
                cursor.execute("DELETE FROM identities WHERE account_id = ?", (account_id,))
                deleted = cursor.rowcount > 0
        finally:
            lock.release()

        if deleted:
            logger.info(f"Deleted embedding for account {account_id}")
        else:
            logger.warning(f"Cannot delete: account {account_id} not enrolled")
        return deleted

    def get_record(self, account_id: str) -> Optional[Dict[str, Any]]:
        """
        Get metadata about an account's identity record.

        The embedding itself is not included.

        Returns:
            Dictionary with account_id, embedding_dim, enrolled_at and
            updated_at, or None if not found.
        """
        with self._transaction() as cursor:
            cursor.execute("""
                SELECT account_id, embedding_dim, enrolled_at, updated_at
                FROM identities
                WHERE account_id = ?
            """, (account_id,))
            row = cursor.fetchone()

        if row is None:
            return None

        return {
            "account_id": row["account_id"],
            "embedding_dim": row["embedding_dim"],
            "enrolled_at": row["enrolled_at"],
            "updated_at": row["updated_at"],
        }

    def list_accounts(self) -> List[Dict[str, Any]]:
        """
        List all enrolled accounts, most recently updated first.

        Returns:
            List of record metadata dictionaries (see get_record).
        """
        with self._transaction() as cursor:
            cursor.execute("""
                SELECT account_id, embedding_dim, enrolled_at, updated_at
                FROM identities
                ORDER BY updated_at DESC, account_id
            """)
            rows = cursor.fetchall()

        return [
            {
                "account_id": row["account_id"],
                "embedding_dim": row["embedding_dim"],
                "enrolled_at": row["enrolled_at"],
                "updated_at": row["updated_at"],
            }
            for row in rows
        ]

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the store.

        Returns:
            Dictionary with total_accounts.
        """
        with self._transaction() as cursor:
            cursor.execute("SELECT COUNT(*) AS count FROM identities")
            row = cursor.fetchone()

        return {"total_accounts": row["count"] or 0}

    def close(self) -> None:
        """Close the database connection."""
        with self._db_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.debug("Database connection closed")


# Singleton instance for the store
_store_instance: Optional[DescriptorStore] = None
_store_guard = threading.Lock()


def get_descriptor_store(db_path: Optional[str] = None) -> DescriptorStore:
    """
    Get or create the singleton DescriptorStore instance.

    Args:
        db_path: Path to SQLite database. If None, uses storage.db_path from
                 config, resolved against the project root.

    Returns:
        The shared DescriptorStore instance.
    """
    global _store_instance

    with _store_guard:
        if _store_instance is None:
            from core.config import (
                get_matching_config,
                get_storage_config,
                resolve_project_path,
            )

            storage_config = get_storage_config()
            if db_path is None:
                db_path = str(resolve_project_path(storage_config["db_path"]))

            _store_instance = DescriptorStore(
                db_path,
                lock_timeout_sec=storage_config.get("lock_timeout_sec", 5.0),
                embedding_dim=get_matching_config().get("embedding_dim"),
            )

    return _store_instance
