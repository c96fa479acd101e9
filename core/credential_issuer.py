"""
Credential Issuer Module

Mints single-use, time-limited login tokens for accounts that passed face
verification. The core only depends on the narrow CredentialIssuer contract
(issue an opaque token for an account id); token format, storage and transport
belong to the issuer.

MagicLinkIssuer is the bundled implementation. It behaves like a magic-link
provider:
- tokens are random url-safe strings handed to the caller once
- only a SHA-256 hash of each token is persisted
- a token expires after ttl_sec and can be redeemed exactly once

Usage:
    from core.credential_issuer import MagicLinkIssuer

    issuer = MagicLinkIssuer(db_path="storage/face_auth.sqlite", ttl_sec=300)
    credential = issuer.issue("alice@example.com")
    account_id = issuer.redeem(credential.token)   # second call raises
"""

import hashlib
import secrets
import sqlite3
import threading
import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from core.errors import CredentialIssuerError, InvalidCredentialError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    """
    A one-time login token bound to one account.

    Attributes:
        token: Opaque token to present at session establishment.
        account_id: Account the token was issued for.
        expires_at: UTC time after which the token is no longer accepted.
    """

    token: str
    account_id: str
    expires_at: datetime

    def __repr__(self) -> str:
        return (
            f"Credential(account_id={self.account_id!r}, "
            f"expires_at={self.expires_at.isoformat()!r})"
        )


class CredentialIssuer(ABC):
    """Contract for minting and consuming one-time login tokens."""

    @abstractmethod
    def issue(self, account_id: str) -> Credential:
        """
        Mint a new single-use credential for an account.

        Raises:
            CredentialIssuerError: If the token could not be created.
        """
        pass

    @abstractmethod
    def redeem(self, token: str) -> str:
        """
        Consume a credential.

        Returns:
            The account id the token was issued for.

        Raises:
            InvalidCredentialError: If the token is unknown, expired or
                already redeemed.
            CredentialIssuerError: If the backing store is unavailable.
        """
        pass


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a token, the only form that is persisted."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class MagicLinkIssuer(CredentialIssuer):
    """
    SQLite-backed issuer of hashed, expiring, single-use tokens.

    Args:
        db_path: Path to the SQLite database (may be shared with the
                 descriptor store; the issuer uses its own table).
        ttl_sec: Token lifetime in seconds.
        token_bytes: Random bytes per token.
        clock: Epoch-seconds time source, injectable for tests.
    """

    def __init__(
        self,
        db_path: str,
        ttl_sec: float = 300,
        token_bytes: int = 32,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.db_path = Path(db_path)
        self.ttl_sec = float(ttl_sec)
        self.token_bytes = int(token_bytes)
        self._clock = clock or time.time

        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_database(self) -> None:
        try:
            with self._lock:
                conn = self._get_connection()
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS credentials (
                        token_hash TEXT PRIMARY KEY,
                        account_id TEXT NOT NULL,
                        issued_at REAL NOT NULL,
                        expires_at REAL NOT NULL,
                        redeemed_at REAL
                    )
                """)
                conn.commit()
        except sqlite3.Error as e:
            raise CredentialIssuerError(f"Credential store unavailable: {e}") from e

    def issue(self, account_id: str) -> Credential:
        token = secrets.token_urlsafe(self.token_bytes)
        now = self._clock()
        expires_at = now + self.ttl_sec

        try:
            with self._lock:
                conn = self._get_connection()
                conn.execute(
                    """
                    INSERT INTO credentials (token_hash, account_id, issued_at, expires_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (hash_token(token), account_id, now, expires_at),
                )
                conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to issue credential: {e}")
            raise CredentialIssuerError(f"Failed to generate auth token: {e}") from e

        logger.info(f"Issued credential for account {account_id} (ttl={self.ttl_sec:.0f}s)")
        return Credential(
            token=token,
            account_id=account_id,
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
        )

    def redeem(self, token: str) -> str:
        token_hash = hash_token(token)
        now = self._clock()

        try:
            with self._lock:
                conn = self._get_connection()
                # Single UPDATE so two concurrent redemptions cannot both succeed
                cursor = conn.execute(
                    """
                    UPDATE credentials SET redeemed_at = ?
                    WHERE token_hash = ? AND redeemed_at IS NULL AND expires_at > ?
                    """,
                    (now, token_hash, now),
                )
                conn.commit()
                if cursor.rowcount == 0:
                    raise InvalidCredentialError("Token is invalid, expired or already used")

                row = conn.execute(
                    "SELECT account_id FROM credentials WHERE token_hash = ?",
                    (token_hash,),
                ).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Failed to redeem credential: {e}")
            raise CredentialIssuerError(f"Credential store unavailable: {e}") from e

        logger.info(f"Redeemed credential for account {row['account_id']}")
        return row["account_id"]

    def purge_expired(self) -> int:
        """Delete expired and redeemed tokens. Returns the number removed."""
        now = self._clock()
        try:
            with self._lock:
                conn = self._get_connection()
                cursor = conn.execute(
                    "DELETE FROM credentials WHERE expires_at <= ? OR redeemed_at IS NOT NULL",
                    (now,),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise CredentialIssuerError(f"Credential store unavailable: {e}") from e

        if cursor.rowcount:
            logger.debug(f"Purged {cursor.rowcount} spent credentials")
        return cursor.rowcount

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


# Singleton instance for the issuer
_issuer_instance: Optional[CredentialIssuer] = None
_issuer_guard = threading.Lock()


def get_credential_issuer() -> CredentialIssuer:
    """
    Get or create the singleton credential issuer.

    Uses the credentials section of config.yaml and stores tokens next to the
    descriptor store database.
    """
    global _issuer_instance

    with _issuer_guard:
        if _issuer_instance is None:
            from core.config import (
                get_credentials_config,
                get_storage_config,
                resolve_project_path,
            )

            cred_config = get_credentials_config()
            db_path = resolve_project_path(get_storage_config()["db_path"])
            _issuer_instance = MagicLinkIssuer(
                str(db_path),
                ttl_sec=cred_config.get("ttl_sec", 300),
                token_bytes=cred_config.get("token_bytes", 32),
            )

    return _issuer_instance
