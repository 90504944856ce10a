import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional

from db_models import Contact, LinkPrecedence
from errors import StoreUnavailable
from log_setup import get_logger
from settings import get_settings

logger = get_logger(__name__)

_UPDATABLE = ("linkedId", "linkPrecedence")


def init_db(db_path: str = None):
    conn = get_db_connection(db_path)
    try:
        conn.execute('''
            CREATE TABLE IF NOT EXISTS Contact (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                phoneNumber TEXT,
                email TEXT,
                linkedId INTEGER,
                linkPrecedence TEXT NOT NULL CHECK(linkPrecedence IN ('secondary', 'primary')),
                createdAt DATETIME NOT NULL,
                updatedAt DATETIME NOT NULL,
                deletedAt DATETIME,
                FOREIGN KEY (linkedId) REFERENCES Contact (id)
            )
        ''')
        conn.execute("CREATE INDEX IF NOT EXISTS idx_contact_email ON Contact (email)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_contact_phone ON Contact (phoneNumber)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_contact_linked ON Contact (linkedId)")
    finally:
        conn.close()


def get_db_connection(db_path: str = None):
    settings = get_settings()
    # Autocommit: ContactStore.transaction() opens explicit transactions.
    conn = sqlite3.connect(
        db_path or settings.database_path,
        timeout=settings.database_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ContactStore:
    """Data access for Contact rows over a single sqlite connection.

    Every read skips rows with ``deletedAt`` set. Lists come back ordered by
    ``createdAt`` then ``id``. Any sqlite failure is raised as
    :class:`StoreUnavailable`.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @classmethod
    def open(cls, db_path: str = None) -> "ContactStore":
        try:
            return cls(get_db_connection(db_path))
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Could not open contact database: {exc}") from exc

    def close(self):
        self.conn.close()

    def _execute(self, query: str, params: Iterable = ()) -> sqlite3.Cursor:
        try:
            return self.conn.execute(query, tuple(params))
        except sqlite3.Error as exc:
            logger.error("Contact store query failed: %s", exc)
            raise StoreUnavailable(f"Contact store failure: {exc}") from exc

    def _fetch(self, query: str, params: Iterable = ()) -> List[Contact]:
        rows = self._execute(query, params).fetchall()
        return [Contact.model_validate(dict(row)) for row in rows]

    @contextmanager
    def transaction(self) -> Iterator["ContactStore"]:
        """Run the enclosed calls as one atomic unit holding the write lock."""
        self._execute("BEGIN IMMEDIATE")
        try:
            yield self
        except BaseException:
            try:
                self.conn.execute("ROLLBACK")
            except sqlite3.Error:
                logger.exception("Rollback failed")
            raise
        self._execute("COMMIT")

    def get(self, contact_id: int) -> Optional[Contact]:
        found = self._fetch(
            "SELECT * FROM Contact WHERE id = ? AND deletedAt IS NULL", (contact_id,)
        )
        return found[0] if found else None

    def find_by_match(self, email: str = None, phone: str = None) -> List[Contact]:
        """Exact-equality lookup on whichever of email/phone is given."""
        conditions = []
        params = []
        if email is not None:
            conditions.append("email = ?")
            params.append(email)
        if phone is not None:
            conditions.append("phoneNumber = ?")
            params.append(phone)
        if not conditions:
            return []

        query = f"""
            SELECT * FROM Contact
            WHERE deletedAt IS NULL
            AND ({" OR ".join(conditions)})
            ORDER BY createdAt ASC, id ASC
        """
        return self._fetch(query, params)

    def find_by_group_ids(self, primary_ids: Iterable[int]) -> List[Contact]:
        """Every visible record whose id or linkedId is in primary_ids."""
        ids = sorted(set(primary_ids))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        query = f"""
            SELECT * FROM Contact
            WHERE deletedAt IS NULL
            AND (id IN ({placeholders}) OR linkedId IN ({placeholders}))
            ORDER BY createdAt ASC, id ASC
        """
        return self._fetch(query, ids + ids)

    def create(
        self,
        email: str = None,
        phone: str = None,
        linked_id: int = None,
        precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
        contact_id: int = None,
    ) -> Contact:
        now = _now()
        precedence = LinkPrecedence(precedence).value

        if contact_id is not None:
            cursor = self._execute("""
                INSERT INTO Contact (id, phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (contact_id, phone, email, linked_id, precedence, now, now))
        else:
            cursor = self._execute("""
                INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (phone, email, linked_id, precedence, now, now))

        return Contact(
            id=contact_id if contact_id is not None else cursor.lastrowid,
            email=email,
            phoneNumber=phone,
            linkedId=linked_id,
            linkPrecedence=precedence,
            createdAt=now,
            updatedAt=now,
        )

    def _assignments(self, fields: Dict[str, object]):
        unknown = set(fields) - set(_UPDATABLE)
        if unknown:
            raise ValueError(f"Contact fields are not updatable: {sorted(unknown)}")
        values = {
            key: value.value if isinstance(value, LinkPrecedence) else value
            for key, value in fields.items()
        }
        values["updatedAt"] = _now()
        clause = ", ".join(f"{key} = ?" for key in values)
        return clause, list(values.values())

    def update(self, contact_id: int, fields: Dict[str, object]) -> int:
        clause, params = self._assignments(fields)
        cursor = self._execute(
            f"UPDATE Contact SET {clause} WHERE id = ? AND deletedAt IS NULL",
            params + [contact_id],
        )
        return cursor.rowcount

    def update_many(self, linked_id: int, fields: Dict[str, object]) -> int:
        """Update every visible record whose linkedId equals linked_id."""
        clause, params = self._assignments(fields)
        cursor = self._execute(
            f"UPDATE Contact SET {clause} WHERE linkedId = ? AND deletedAt IS NULL",
            params + [linked_id],
        )
        return cursor.rowcount
