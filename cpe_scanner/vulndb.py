# cpe_scanner/vulndb.py
"""
Local vulnerability store: CVE records, the CPE entries they affect, and the
properties table holding per-segment feed timestamps.

One sqlite connection per thread (WAL journal); writers serialize on
`write_lock` so a segment lands in a single transaction.
"""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Optional

from .cpe import Cpe, parse_cpe
from .exceptions import DatabaseError
from .models import Reference, Vulnerability, VulnerableSoftware

logger = logging.getLogger(__name__)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS vulnerabilities (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        cve TEXT NOT NULL UNIQUE,
        description TEXT,
        cvss_score REAL,
        cvss_vector TEXT,
        cwe TEXT,
        published TEXT,
        last_modified TEXT
    );
    CREATE TABLE IF NOT EXISTS vuln_references (
        vuln_id INTEGER NOT NULL REFERENCES vulnerabilities(id) ON DELETE CASCADE,
        source TEXT,
        name TEXT,
        url TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_references_vuln ON vuln_references (vuln_id);
    CREATE TABLE IF NOT EXISTS cpe_entries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        cpe TEXT NOT NULL UNIQUE,
        vendor TEXT NOT NULL,
        product TEXT NOT NULL,
        version TEXT,
        dictionary INTEGER NOT NULL DEFAULT 0
    );
    CREATE INDEX IF NOT EXISTS idx_cpe_vendor_product ON cpe_entries (vendor, product);
    CREATE TABLE IF NOT EXISTS software (
        vuln_id INTEGER NOT NULL REFERENCES vulnerabilities(id) ON DELETE CASCADE,
        cpe_entry_id INTEGER NOT NULL REFERENCES cpe_entries(id),
        previous_versions INTEGER NOT NULL DEFAULT 0,
        version_start_including TEXT,
        version_start_excluding TEXT,
        version_end_including TEXT,
        version_end_excluding TEXT,
        PRIMARY KEY (vuln_id, cpe_entry_id)
    );
    CREATE INDEX IF NOT EXISTS idx_software_cpe ON software (cpe_entry_id);
    CREATE TABLE IF NOT EXISTS properties (
        key TEXT PRIMARY KEY,
        value TEXT
    );
"""


class CveDB:
    def __init__(self, path, timeout: float = 30.0):
        self.path = Path(path)
        self.timeout = timeout
        self.write_lock = threading.RLock()
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DatabaseError(f"Could not create data directory '{self.path.parent}': {e}") from e
        self._initialize_database()

    # --- Connections ---

    def _connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = sqlite3.connect(str(self.path), timeout=self.timeout, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA foreign_keys=ON")
            except sqlite3.Error as e:
                raise DatabaseError(f"Error connecting to database {self.path}: {e}") from e
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
            logger.debug(f"Database connection established to {self.path}")
        return conn

    def _initialize_database(self):
        try:
            conn = self._connection()
            with self.write_lock:
                conn.executescript(SCHEMA)
                conn.commit()
        except sqlite3.Error as e:
            raise DatabaseError(f"Error initializing database tables in {self.path}: {e}") from e

    @contextmanager
    def transaction(self):
        """Serialized write transaction on this thread's connection; commits on success, rolls back on error."""
        conn = self._connection()
        with self.write_lock:
            try:
                with conn:
                    yield conn
            except sqlite3.Error as e:
                raise DatabaseError(f"Database transaction failed: {e}") from e

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            return self._connection().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(f"Database query failed: {e}") from e

    def release_thread_connection(self):
        """Closes the calling thread's connection; worker threads call this before they exit."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            return
        self._local.conn = None
        with self._connections_lock:
            if conn in self._connections:
                self._connections.remove(conn)
        try:
            conn.close()
        except sqlite3.Error as e:
            logger.debug(f"Error closing database connection: {e}")

    def close(self):
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.debug(f"Error closing database connection: {e}")
            self._connections.clear()
        self._local = threading.local()
        logger.debug("Database connections closed.")

    # --- Writes (call inside transaction()) ---

    def _cpe_entry_id(self, conn: sqlite3.Connection, cpe: Cpe, dictionary: bool = False) -> int:
        uri = cpe.to_uri()
        row = conn.execute("SELECT id, dictionary FROM cpe_entries WHERE cpe = ?", (uri,)).fetchone()
        if row is not None:
            if dictionary and not row["dictionary"]:
                conn.execute("UPDATE cpe_entries SET dictionary = 1 WHERE id = ?", (row["id"],))
            return row["id"]
        cursor = conn.execute(
            "INSERT INTO cpe_entries (cpe, vendor, product, version, dictionary) VALUES (?, ?, ?, ?, ?)",
            (uri, cpe.vendor, cpe.product, cpe.version, 1 if dictionary else 0))
        return cursor.lastrowid

    def update_vulnerability(self, vulnerability: Vulnerability, conn: Optional[sqlite3.Connection] = None):
        """Inserts or replaces a CVE along with its references and vulnerable software."""
        conn = conn or self._connection()
        try:
            row = conn.execute("SELECT id FROM vulnerabilities WHERE cve = ?", (vulnerability.name,)).fetchone()
            values = (vulnerability.description, vulnerability.cvss_score, vulnerability.cvss_vector,
                      vulnerability.cwe, vulnerability.published, vulnerability.last_modified)
            if row is not None:
                vuln_id = row["id"]
                conn.execute("""UPDATE vulnerabilities SET description = ?, cvss_score = ?, cvss_vector = ?,
                                cwe = ?, published = ?, last_modified = ? WHERE id = ?""", values + (vuln_id,))
                conn.execute("DELETE FROM vuln_references WHERE vuln_id = ?", (vuln_id,))
                conn.execute("DELETE FROM software WHERE vuln_id = ?", (vuln_id,))
            else:
                cursor = conn.execute("""INSERT INTO vulnerabilities
                    (description, cvss_score, cvss_vector, cwe, published, last_modified, cve)
                    VALUES (?, ?, ?, ?, ?, ?, ?)""", values + (vulnerability.name,))
                vuln_id = cursor.lastrowid

            conn.executemany("INSERT INTO vuln_references (vuln_id, source, name, url) VALUES (?, ?, ?, ?)",
                             ((vuln_id, r.source, r.name, r.url) for r in vulnerability.references))
            for software in vulnerability.vulnerable_software:
                cpe = parse_cpe(software.cpe)
                if cpe is None:
                    logger.debug(f"Skipping unparsable CPE '{software.cpe}' for {vulnerability.name}")
                    continue
                entry_id = self._cpe_entry_id(conn, cpe)
                conn.execute("""INSERT OR REPLACE INTO software (vuln_id, cpe_entry_id, previous_versions,
                                version_start_including, version_start_excluding,
                                version_end_including, version_end_excluding)
                                VALUES (?, ?, ?, ?, ?, ?, ?)""",
                             (vuln_id, entry_id, 1 if software.previous_versions else 0,
                              software.version_start_including, software.version_start_excluding,
                              software.version_end_including, software.version_end_excluding))
        except sqlite3.Error as e:
            raise DatabaseError(f"DB error inserting {vulnerability.name}: {e}") from e

    def add_cpe_entries(self, cpes: Iterable[str], conn: Optional[sqlite3.Connection] = None) -> int:
        """Records dictionary CPEs (known products that may have no CVE yet)."""
        conn = conn or self._connection()
        count = 0
        try:
            for cpe_string in cpes:
                cpe = parse_cpe(cpe_string)
                if cpe is None or cpe.part != "a":
                    continue
                self._cpe_entry_id(conn, cpe, dictionary=True)
                count += 1
        except sqlite3.Error as e:
            raise DatabaseError(f"DB error inserting CPE dictionary entries: {e}") from e
        return count

    # --- Properties ---

    def get_properties(self) -> dict[str, str]:
        return {row["key"]: row["value"] for row in self._query("SELECT key, value FROM properties")}

    def get_property(self, key: str, default: Optional[str] = None) -> Optional[str]:
        rows = self._query("SELECT value FROM properties WHERE key = ?", (key,))
        return rows[0]["value"] if rows else default

    def save_property(self, key: str, value, conn: Optional[sqlite3.Connection] = None):
        """Stores a property; with `conn` it joins that open transaction instead of committing on its own."""
        sql = "INSERT OR REPLACE INTO properties (key, value) VALUES (?, ?)"
        if conn is not None:
            try:
                conn.execute(sql, (key, str(value)))
            except sqlite3.Error as e:
                raise DatabaseError(f"Error saving property '{key}': {e}") from e
        else:
            with self.transaction() as tx:
                tx.execute(sql, (key, str(value)))
        logger.debug(f"Property '{key}' set to {value}")

    # --- Reads ---

    def has_data(self) -> bool:
        return bool(self._query("SELECT 1 FROM vulnerabilities LIMIT 1"))

    def get_vendor_product_list(self) -> set[tuple[str, str]]:
        return {(row["vendor"], row["product"])
                for row in self._query("SELECT DISTINCT vendor, product FROM cpe_entries")}

    def get_cpes(self, vendor: str, product: str) -> list[Cpe]:
        rows = self._query("SELECT cpe FROM cpe_entries WHERE vendor = ? AND product = ? ORDER BY cpe",
                           (vendor.lower(), product.lower()))
        return [cpe for cpe in (parse_cpe(row["cpe"]) for row in rows) if cpe is not None]

    def _references(self, vuln_id: int) -> tuple:
        rows = self._query("SELECT source, name, url FROM vuln_references WHERE vuln_id = ? ORDER BY rowid",
                           (vuln_id,))
        return tuple(Reference(row["source"], row["name"], row["url"]) for row in rows)

    def _software(self, vuln_id: int) -> tuple:
        rows = self._query("""SELECT c.cpe, c.vendor, c.product, c.version, s.previous_versions,
                                     s.version_start_including, s.version_start_excluding,
                                     s.version_end_including, s.version_end_excluding
                              FROM software s JOIN cpe_entries c ON c.id = s.cpe_entry_id
                              WHERE s.vuln_id = ? ORDER BY c.cpe""", (vuln_id,))
        return tuple(VulnerableSoftware(cpe=row["cpe"], vendor=row["vendor"], product=row["product"],
                                        version=row["version"], previous_versions=bool(row["previous_versions"]),
                                        version_start_including=row["version_start_including"],
                                        version_start_excluding=row["version_start_excluding"],
                                        version_end_including=row["version_end_including"],
                                        version_end_excluding=row["version_end_excluding"])
                     for row in rows)

    def _vulnerability_from_row(self, row) -> Vulnerability:
        return Vulnerability(name=row["cve"], description=row["description"] or "",
                             cvss_score=row["cvss_score"], cvss_vector=row["cvss_vector"], cwe=row["cwe"],
                             published=row["published"], last_modified=row["last_modified"],
                             references=self._references(row["id"]),
                             vulnerable_software=self._software(row["id"]))

    def get_vulnerability(self, cve: str) -> Optional[Vulnerability]:
        rows = self._query("SELECT * FROM vulnerabilities WHERE cve = ?", (cve,))
        return self._vulnerability_from_row(rows[0]) if rows else None

    def get_vulnerabilities_for(self, vendor: str, product: str) -> list[Vulnerability]:
        """Every vulnerability with at least one affected CPE for vendor:product."""
        rows = self._query("""SELECT DISTINCT v.* FROM vulnerabilities v
                              JOIN software s ON s.vuln_id = v.id
                              JOIN cpe_entries c ON c.id = s.cpe_entry_id
                              WHERE c.vendor = ? AND c.product = ?
                              ORDER BY v.cve""", (vendor.lower(), product.lower()))
        return [self._vulnerability_from_row(row) for row in rows]

    # --- Maintenance ---

    def cleanup(self) -> int:
        """Removes CPE entries no vulnerability references, except dictionary entries."""
        with self.transaction() as conn:
            cursor = conn.execute("""DELETE FROM cpe_entries WHERE dictionary = 0
                                     AND id NOT IN (SELECT DISTINCT cpe_entry_id FROM software)""")
            removed = cursor.rowcount
        logger.info(f"Database cleanup removed {removed} orphaned CPE entries.")
        return removed

    def vacuum(self):
        conn = self._connection()
        with self.write_lock:
            try:
                conn.execute("VACUUM")
            except sqlite3.Error as e:
                raise DatabaseError(f"VACUUM failed: {e}") from e
