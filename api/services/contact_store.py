"""
Contact Store for the identity service.

SQLite-backed repository of contact records. Exposes the narrow contract the
consolidation logic needs: predicate reads, single-record insert and
single-record precedence/link updates. No multi-record transactions.
"""
import sqlite3
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from api.services.resilience import (
    StoreError,
    StoreTimeoutError,
    STORE_RETRY,
    is_busy_error,
    retry_sync,
)
from api.utils import get_contacts_db_path, parse_utc_text, to_utc_text, utc_now
from config.settings import settings

logger = logging.getLogger(__name__)


class LinkPrecedence(str, Enum):
    """Role of a contact inside its cluster."""
    PRIMARY = "primary"
    SECONDARY = "secondary"


@dataclass
class Contact:
    """A single contact record."""
    id: int
    email: Optional[str]
    phone_number: Optional[str]
    linked_id: Optional[int]  # Set iff secondary; points at the cluster primary
    link_precedence: LinkPrecedence
    created_at: datetime
    updated_at: Optional[datetime] = None

    @property
    def is_primary(self) -> bool:
        return self.link_precedence == LinkPrecedence.PRIMARY

    @property
    def primary_pointer(self) -> Optional[int]:
        """Own id for a primary, linked id for a secondary."""
        return self.id if self.is_primary else self.linked_id

    @property
    def sort_key(self) -> tuple[datetime, int]:
        """Age ordering: creation time, then id."""
        return (self.created_at, self.id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "phoneNumber": self.phone_number,
            "linkedId": self.linked_id,
            "linkPrecedence": self.link_precedence.value,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class ContactInsertData:
    """Fields supplied by the caller when creating a contact."""
    email: Optional[str]
    phone_number: Optional[str]
    linked_id: Optional[int] = None
    link_precedence: LinkPrecedence = LinkPrecedence.PRIMARY


def _row_to_contact(row: sqlite3.Row) -> Contact:
    return Contact(
        id=row['id'],
        email=row['email'],
        phone_number=row['phone_number'],
        linked_id=row['linked_id'],
        link_precedence=LinkPrecedence(row['link_precedence']),
        created_at=parse_utc_text(row['created_at']),
        updated_at=parse_utc_text(row['updated_at']),
    )


class ContactStore:
    """
    SQLite-based contact store.

    Every read returns contacts ordered by (created_at, id) ascending. Every
    sqlite3 failure surfaces as StoreError carrying the driver's message;
    busy/locked failures surface as StoreTimeoutError.
    """

    def __init__(self, db_path: Optional[str] = None, timeout: Optional[float] = None):
        """
        Initialize contact store.

        Args:
            db_path: Path to SQLite database (default from settings)
            timeout: Seconds a single round trip may wait on a locked database
        """
        self.db_path = str(db_path or get_contacts_db_path())
        self.timeout = timeout if timeout is not None else settings.store_timeout_seconds
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self, operation: str):
        """Open a connection, translating driver errors into StoreError."""
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as e:
            if is_busy_error(e):
                raise StoreTimeoutError(operation, str(e)) from e
            raise StoreError(operation, str(e)) from e
        finally:
            if conn is not None:
                conn.close()

    def _init_db(self):
        """Create the contacts table if it doesn't exist."""
        with self._connect("init") as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS contacts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT,
                    phone_number TEXT,
                    linked_id INTEGER REFERENCES contacts(id),
                    link_precedence TEXT NOT NULL
                        CHECK (link_precedence IN ('primary', 'secondary')),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_contacts_email ON contacts(email)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_contacts_phone ON contacts(phone_number)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_contacts_linked ON contacts(linked_id)")
            conn.commit()

    @retry_sync(STORE_RETRY)
    def find_by_email_or_phone(
        self,
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> list[Contact]:
        """
        Find every contact sharing the given email OR the given phone number.

        Only the provided fields are used as filter terms.
        """
        clauses = []
        params = []
        if email is not None:
            clauses.append("email = ?")
            params.append(email)
        if phone_number is not None:
            clauses.append("phone_number = ?")
            params.append(phone_number)
        if not clauses:
            raise ValueError("find_by_email_or_phone needs an email or a phone number")

        query = (
            f"SELECT * FROM contacts WHERE {' OR '.join(clauses)} "
            "ORDER BY created_at ASC, id ASC"
        )
        with self._connect("find_by_email_or_phone") as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_contact(row) for row in rows]

    @retry_sync(STORE_RETRY)
    def find_by_primary_or_linked(self, primary_id: int) -> list[Contact]:
        """Find the contact with the given id plus every contact linked to it."""
        with self._connect("find_by_primary_or_linked") as conn:
            rows = conn.execute(
                """
                SELECT * FROM contacts
                WHERE id = ? OR linked_id = ?
                ORDER BY created_at ASC, id ASC
                """,
                (primary_id, primary_id)
            ).fetchall()
        return [_row_to_contact(row) for row in rows]

    @retry_sync(STORE_RETRY)
    def get(self, contact_id: int) -> Optional[Contact]:
        """Get a contact by id."""
        with self._connect("get") as conn:
            row = conn.execute(
                "SELECT * FROM contacts WHERE id = ?", (contact_id,)
            ).fetchone()
        return _row_to_contact(row) if row else None

    @retry_sync(STORE_RETRY)
    def list_all(self) -> list[Contact]:
        """Get every contact, oldest first."""
        with self._connect("list_all") as conn:
            rows = conn.execute(
                "SELECT * FROM contacts ORDER BY created_at ASC, id ASC"
            ).fetchall()
        return [_row_to_contact(row) for row in rows]

    def insert(self, data: ContactInsertData, created_at: Optional[datetime] = None) -> Contact:
        """
        Insert a new contact.

        Args:
            data: Contact fields; the store assigns id and created_at
            created_at: Explicit creation time (imports and seeding)

        Returns:
            The created contact
        """
        if data.link_precedence == LinkPrecedence.PRIMARY and data.linked_id is not None:
            raise ValueError("A primary contact cannot have a linked_id")
        if data.link_precedence == LinkPrecedence.SECONDARY and data.linked_id is None:
            raise ValueError("A secondary contact requires a linked_id")

        created = created_at or utc_now()
        timestamp = to_utc_text(created)

        with self._connect("insert") as conn:
            cursor = conn.execute(
                """
                INSERT INTO contacts (email, phone_number, linked_id, link_precedence, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    data.email,
                    data.phone_number,
                    data.linked_id,
                    data.link_precedence.value,
                    timestamp,
                    timestamp,
                )
            )
            conn.commit()
            contact_id = cursor.lastrowid

        logger.debug(f"Inserted {data.link_precedence.value} contact {contact_id}")
        return Contact(
            id=contact_id,
            email=data.email,
            phone_number=data.phone_number,
            linked_id=data.linked_id,
            link_precedence=data.link_precedence,
            created_at=parse_utc_text(timestamp),
            updated_at=parse_utc_text(timestamp),
        )

    def update_precedence_and_link(
        self,
        contact_id: int,
        precedence: LinkPrecedence,
        linked_id: Optional[int],
    ) -> bool:
        """
        Set a contact's precedence and link. Email and phone are never touched.

        Returns:
            True if a row was updated
        """
        if precedence == LinkPrecedence.PRIMARY and linked_id is not None:
            raise ValueError("A primary contact cannot have a linked_id")

        with self._connect("update_precedence_and_link") as conn:
            cursor = conn.execute(
                """
                UPDATE contacts
                SET link_precedence = ?, linked_id = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    precedence.value,
                    linked_id,
                    to_utc_text(utc_now()),
                    contact_id,
                )
            )
            conn.commit()
            updated = cursor.rowcount > 0
        return updated

    def ping(self) -> bool:
        """Check that the database answers a trivial query."""
        try:
            with self._connect("ping") as conn:
                conn.execute("SELECT 1 FROM contacts LIMIT 1")
            return True
        except StoreError as e:
            logger.error(f"Contact store unavailable: {e}")
            return False


# Singleton instance
_contact_store: Optional[ContactStore] = None


def get_contact_store() -> ContactStore:
    """Get singleton ContactStore instance."""
    global _contact_store
    if _contact_store is None:
        _contact_store = ContactStore()
    return _contact_store


def reset_contact_store() -> None:
    """Reset the singleton (for testing)."""
    global _contact_store
    _contact_store = None
