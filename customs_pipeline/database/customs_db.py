"""
Database module for the customs pipeline.

Provides SQLite-based storage for:
- Invoices and their line items
- Classification history (audit trail)
- Declaration submissions
- User notifications
"""
import sqlite3
from pathlib import Path
from typing import List, Dict, Any, Optional, Tuple
from datetime import datetime, date, time
from decimal import Decimal
from contextlib import contextmanager

from ..models.errors import NotFoundError

LINE_COLUMNS = (
    "l.id, l.invoice_id, l.description, l.quantity, l.unit_price, l.hs_code, "
    "l.classification_method, l.flagged, l.created_at, l.updated_at"
)


def _now() -> str:
    return datetime.now().isoformat()


def _line_row(row: sqlite3.Row) -> Dict[str, Any]:
    """Convert an invoice_lines row (optionally joined with invoices) to a dict."""
    data = dict(row)
    data["flagged"] = bool(data["flagged"])
    invoice = {}
    for key in list(data):
        if key.startswith("inv_"):
            invoice[key[4:]] = data.pop(key)
    if invoice:
        invoice["id"] = data["invoice_id"]
        data["invoice"] = invoice
    return data


def _history_row(row: sqlite3.Row) -> Dict[str, Any]:
    """Convert a classification_history row with joined user/line columns."""
    data = dict(row)
    user_name = data.pop("user_full_name", None)
    user_email = data.pop("user_email", None)
    data["user"] = (
        {"id": data["changed_by"], "full_name": user_name, "email": user_email}
        if data.get("changed_by") is not None and user_email is not None else None
    )
    line = {}
    for key in list(data):
        if key.startswith("line_"):
            line[key[5:]] = data.pop(key)
    if line:
        line["id"] = data["invoice_line_id"]
        data["invoice_line"] = line
    return data


class CustomsDatabase:
    """SQLite database for invoice lines, audit history and submissions."""

    def __init__(self, db_path: str = "data/customs.db", busy_timeout: float = 10.0):
        """Initialize database file and schema."""
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout
        self._create_tables()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def get_connection(self):
        """Get database connection with automatic commit/rollback."""
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """
        Open a write transaction that holds the database write lock from the start.

        Everything executed on the yielded connection is committed together,
        or rolled back together if the block raises.
        """
        conn = self._connect()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def _create_tables(self):
        """Create database tables if they don't exist."""
        with self.get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT UNIQUE NOT NULL,
                    full_name TEXT,
                    created_at TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS invoices (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER REFERENCES users(id),
                    supplier TEXT,
                    invoice_date TEXT,
                    total_amount TEXT,
                    status TEXT DEFAULT 'Draft',
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS invoice_lines (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    invoice_id INTEGER NOT NULL REFERENCES invoices(id) ON DELETE CASCADE,
                    description TEXT,
                    quantity INTEGER CHECK (quantity IS NULL OR quantity > 0),
                    unit_price TEXT,
                    hs_code TEXT,
                    classification_method TEXT,
                    flagged BOOLEAN DEFAULT 0,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            # Audit trail: rows are only ever inserted
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS classification_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    invoice_line_id INTEGER NOT NULL REFERENCES invoice_lines(id) ON DELETE CASCADE,
                    previous_hs_code TEXT,
                    new_hs_code TEXT,
                    changed_by INTEGER REFERENCES users(id),
                    changed_at TEXT,
                    comment TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS submissions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    invoice_id INTEGER NOT NULL REFERENCES invoices(id) ON DELETE CASCADE,
                    method TEXT,
                    status TEXT,
                    response_message TEXT,
                    submitted_at TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER REFERENCES users(id),
                    type TEXT,
                    message TEXT,
                    read BOOLEAN DEFAULT 0,
                    created_at TEXT
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_invoices_status ON invoices(status)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_lines_invoice ON invoice_lines(invoice_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_lines_flagged ON invoice_lines(flagged)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_history_line ON classification_history(invoice_line_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_history_changed ON classification_history(changed_at)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_submissions_invoice ON submissions(invoice_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id)")

    # ============== Users / Invoices / Lines ==============

    def create_user(self, email: str, full_name: Optional[str] = None) -> int:
        """Insert a user and return its id."""
        with self.get_connection() as conn:
            cursor = conn.execute(
                "INSERT INTO users (email, full_name, created_at) VALUES (?, ?, ?)",
                (email, full_name, _now())
            )
            return cursor.lastrowid

    def create_invoice(self, user_id: Optional[int] = None, supplier: Optional[str] = None,
                       invoice_date: Optional[date] = None,
                       total_amount: Optional[Decimal] = None,
                       status: str = "Draft") -> int:
        """Insert an invoice header and return its id."""
        with self.get_connection() as conn:
            cursor = conn.execute("""
                INSERT INTO invoices (
                    user_id, supplier, invoice_date, total_amount, status,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                user_id,
                supplier,
                invoice_date.isoformat() if invoice_date else None,
                str(total_amount) if total_amount is not None else None,
                status,
                _now(),
                _now()
            ))
            return cursor.lastrowid

    def create_line(self, invoice_id: int, description: str, quantity: int = 1,
                    unit_price: Decimal = Decimal("0"), hs_code: Optional[str] = None,
                    classification_method: Optional[str] = None,
                    flagged: bool = False) -> int:
        """Insert an invoice line and return its id."""
        with self.get_connection() as conn:
            cursor = conn.execute("""
                INSERT INTO invoice_lines (
                    invoice_id, description, quantity, unit_price, hs_code,
                    classification_method, flagged, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                invoice_id,
                description,
                quantity,
                str(unit_price),
                hs_code,
                classification_method,
                flagged,
                _now(),
                _now()
            ))
            return cursor.lastrowid

    def get_invoice(self, invoice_id: int) -> Optional[Dict]:
        """Get invoice by ID."""
        with self.get_connection() as conn:
            return self.fetch_invoice(conn, invoice_id)

    def update_invoice_status(self, invoice_id: int, status: str) -> None:
        """Update invoice status. Raises NotFoundError for unknown invoices."""
        with self.get_connection() as conn:
            cursor = conn.execute(
                "UPDATE invoices SET status = ?, updated_at = ? WHERE id = ?",
                (status, _now(), invoice_id)
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Invoice with ID {invoice_id} not found")

    def get_line(self, line_id: int) -> Optional[Dict]:
        """Get invoice line by ID."""
        with self.get_connection() as conn:
            return self.fetch_line(conn, line_id)

    # ============== Transaction-scoped helpers ==============

    def fetch_invoice(self, conn: sqlite3.Connection, invoice_id: int) -> Optional[Dict]:
        row = conn.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,)).fetchone()
        return dict(row) if row else None

    def fetch_line(self, conn: sqlite3.Connection, line_id: int) -> Optional[Dict]:
        row = conn.execute(
            f"SELECT {LINE_COLUMNS} FROM invoice_lines l WHERE l.id = ?", (line_id,)
        ).fetchone()
        return _line_row(row) if row else None

    def update_line_classification(self, conn: sqlite3.Connection, line_id: int,
                                   hs_code: Optional[str], method: Optional[str],
                                   flagged: bool) -> None:
        conn.execute("""
            UPDATE invoice_lines
            SET hs_code = ?, classification_method = ?, flagged = ?, updated_at = ?
            WHERE id = ?
        """, (hs_code, method, flagged, _now(), line_id))

    def set_line_flag(self, conn: sqlite3.Connection, line_id: int, flagged: bool) -> None:
        conn.execute(
            "UPDATE invoice_lines SET flagged = ?, updated_at = ? WHERE id = ?",
            (flagged, _now(), line_id)
        )

    def insert_history(self, conn: sqlite3.Connection, line_id: int,
                       previous_hs_code: Optional[str], new_hs_code: Optional[str],
                       changed_by: Optional[int], comment: Optional[str] = None) -> Dict:
        changed_at = _now()
        cursor = conn.execute("""
            INSERT INTO classification_history (
                invoice_line_id, previous_hs_code, new_hs_code, changed_by,
                changed_at, comment
            ) VALUES (?, ?, ?, ?, ?, ?)
        """, (line_id, previous_hs_code, new_hs_code, changed_by, changed_at, comment))
        return {
            "id": cursor.lastrowid,
            "invoice_line_id": line_id,
            "previous_hs_code": previous_hs_code,
            "new_hs_code": new_hs_code,
            "changed_by": changed_by,
            "changed_at": changed_at,
            "comment": comment,
        }

    def insert_notification(self, conn: sqlite3.Connection, user_id: int,
                            notification_type: str, message: str) -> Dict:
        created_at = _now()
        cursor = conn.execute("""
            INSERT INTO notifications (user_id, type, message, read, created_at)
            VALUES (?, ?, ?, 0, ?)
        """, (user_id, notification_type, message, created_at))
        return {
            "id": cursor.lastrowid,
            "user_id": user_id,
            "type": notification_type,
            "message": message,
            "read": False,
            "created_at": created_at,
        }

    # ============== History / Notifications ==============

    def get_line_history(self, line_id: int) -> List[Dict]:
        """Get classification history for a line, newest first."""
        with self.get_connection() as conn:
            rows = conn.execute("""
                SELECT h.*, u.full_name AS user_full_name, u.email AS user_email
                FROM classification_history h
                LEFT JOIN users u ON u.id = h.changed_by
                WHERE h.invoice_line_id = ?
                ORDER BY h.changed_at DESC, h.id DESC
            """, (line_id,)).fetchall()
            return [_history_row(row) for row in rows]

    def get_history_page(self, limit: int, offset: int) -> Tuple[int, List[Dict]]:
        """Get all classification history, newest first, with line and user details."""
        with self.get_connection() as conn:
            total = conn.execute(
                "SELECT COUNT(*) AS total FROM classification_history"
            ).fetchone()["total"]
            rows = conn.execute("""
                SELECT h.*, u.full_name AS user_full_name, u.email AS user_email,
                       l.description AS line_description, l.hs_code AS line_hs_code,
                       l.invoice_id AS line_invoice_id
                FROM classification_history h
                LEFT JOIN users u ON u.id = h.changed_by
                JOIN invoice_lines l ON l.id = h.invoice_line_id
                ORDER BY h.changed_at DESC, h.id DESC
                LIMIT ? OFFSET ?
            """, (limit, offset)).fetchall()
            return total, [_history_row(row) for row in rows]

    def count_history_since(self, since: datetime) -> int:
        with self.get_connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) AS total FROM classification_history WHERE changed_at >= ?",
                (since.isoformat(),)
            ).fetchone()["total"]

    def get_notifications(self, user_id: int) -> List[Dict]:
        """Get notifications for a user, newest first."""
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications WHERE user_id = ? ORDER BY id DESC",
                (user_id,)
            ).fetchall()
            return [dict(row, read=bool(row["read"])) for row in rows]

    # ============== Review Queue ==============

    def get_flagged_lines(self, limit: int, offset: int, sort_by: str,
                          sort_order: str) -> Tuple[int, List[Dict]]:
        """
        Page through flagged lines with their invoice summary.

        sort_by and sort_order must already be validated by the caller;
        they are interpolated into the ORDER BY clause.
        """
        with self.get_connection() as conn:
            total = conn.execute(
                "SELECT COUNT(*) AS total FROM invoice_lines WHERE flagged = 1"
            ).fetchone()["total"]
            rows = conn.execute(f"""
                SELECT {LINE_COLUMNS},
                       i.supplier AS inv_supplier, i.invoice_date AS inv_invoice_date,
                       i.status AS inv_status
                FROM invoice_lines l
                JOIN invoices i ON i.id = l.invoice_id
                WHERE l.flagged = 1
                ORDER BY l.{sort_by} {sort_order}, l.id {sort_order}
                LIMIT ? OFFSET ?
            """, (limit, offset)).fetchall()
            return total, [_line_row(row) for row in rows]

    def get_flagged_line(self, line_id: int) -> Optional[Dict]:
        """Get a line only if it is currently flagged."""
        with self.get_connection() as conn:
            row = conn.execute(f"""
                SELECT {LINE_COLUMNS},
                       i.supplier AS inv_supplier, i.invoice_date AS inv_invoice_date,
                       i.status AS inv_status, i.user_id AS inv_user_id
                FROM invoice_lines l
                JOIN invoices i ON i.id = l.invoice_id
                WHERE l.id = ? AND l.flagged = 1
            """, (line_id,)).fetchone()
            return _line_row(row) if row else None

    def count_flagged(self) -> int:
        with self.get_connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) AS total FROM invoice_lines WHERE flagged = 1"
            ).fetchone()["total"]

    def count_flagged_by_supplier(self) -> List[Dict]:
        with self.get_connection() as conn:
            rows = conn.execute("""
                SELECT i.supplier AS supplier, COUNT(l.id) AS count
                FROM invoice_lines l
                JOIN invoices i ON i.id = l.invoice_id
                WHERE l.flagged = 1
                GROUP BY i.supplier
                ORDER BY count DESC
            """).fetchall()
            return [dict(row) for row in rows]

    # ============== Submissions ==============

    def insert_submission(self, invoice_id: int, method: str, status: str,
                          response_message: Optional[str]) -> Dict:
        """Append a submission record and return it."""
        submitted_at = _now()
        with self.get_connection() as conn:
            cursor = conn.execute("""
                INSERT INTO submissions (invoice_id, method, status, response_message, submitted_at)
                VALUES (?, ?, ?, ?, ?)
            """, (invoice_id, method, status, response_message, submitted_at))
            return {
                "id": cursor.lastrowid,
                "invoice_id": invoice_id,
                "method": method,
                "status": status,
                "response_message": response_message,
                "submitted_at": submitted_at,
            }

    def get_submission(self, submission_id: int) -> Optional[Dict]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM submissions WHERE id = ?", (submission_id,)
            ).fetchone()
            return dict(row) if row else None

    def list_submissions(self, invoice_id: int) -> List[Dict]:
        """Get all submissions for an invoice, newest first."""
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM submissions WHERE invoice_id = ? ORDER BY submitted_at DESC, id DESC",
                (invoice_id,)
            ).fetchall()
            return [dict(row) for row in rows]

    def update_submission(self, submission_id: int, status: str,
                          response_message: Optional[str]) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "UPDATE submissions SET status = ?, response_message = ? WHERE id = ?",
                (status, response_message, submission_id)
            )
