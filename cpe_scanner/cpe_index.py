# cpe_scanner/cpe_index.py
"""
Full-text index over the known CPE vendor/product pairs, kept in its own
sqlite file next to the vulnerability store.

Each pair is a document with a vendor field and a product field. Terms are
weighted tf-idf; a query scores every document by cosine similarity per field,
both fields must match, and the two field scores are combined with a
geometric mean.
"""
import logging
import math
import re
import sqlite3
import threading
from collections import Counter, defaultdict
from pathlib import Path
from typing import Iterable

from .exceptions import SearchUnavailableError
from .models import IndexEntry
from .search import FIELD_PRODUCT, FIELD_VENDOR, parse_query

logger = logging.getLogger(__name__)

MAX_QUERY_RESULTS = 25
MIN_SEARCH_SCORE = 0.08
FIELDS = (FIELD_VENDOR, FIELD_PRODUCT)

_TOKEN_SPLIT_RX = re.compile(r"[^a-z0-9]+")


def tokenize(text: str) -> list[str]:
    """Lowercased alphanumeric runs, plus the joined form when there is more than one ('struts2-core' -> struts2, core, struts2core)."""
    words = [w for w in _TOKEN_SPLIT_RX.split((text or "").lower()) if w]
    if len(words) > 1:
        words.append("".join(words))
    return words


class CpeIndex:
    def __init__(self, path, timeout: float = 30.0):
        self.path = Path(path)
        self._lock = threading.Lock()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.path), timeout=timeout, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._create_schema()
        except (sqlite3.Error, OSError) as e:
            raise SearchUnavailableError(f"Unable to open CPE index '{self.path}': {e}") from e

    def _create_schema(self):
        with self._conn:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS entries (
                    id INTEGER PRIMARY KEY,
                    vendor TEXT NOT NULL,
                    product TEXT NOT NULL,
                    UNIQUE(vendor, product)
                );
                CREATE TABLE IF NOT EXISTS index_terms (
                    field TEXT NOT NULL,
                    term TEXT NOT NULL,
                    entry_id INTEGER NOT NULL,
                    weight REAL NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_index_terms_lookup ON index_terms (field, term);
                CREATE TABLE IF NOT EXISTS term_stats (
                    field TEXT NOT NULL,
                    term TEXT NOT NULL,
                    idf REAL NOT NULL,
                    PRIMARY KEY (field, term)
                );
                CREATE TABLE IF NOT EXISTS index_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT
                );
            """)

    def rebuild(self, entries: Iterable) -> int:
        """
        Replaces the whole index with `entries` ((vendor, product) pairs or IndexEntry)
        in a single transaction. Returns the number of documents indexed.
        """
        pairs = set()
        for entry in entries:
            vendor, product = (entry.vendor, entry.product) if isinstance(entry, IndexEntry) else entry
            if vendor and product:
                pairs.add((vendor, product))
        documents = sorted(pairs)
        total = len(documents)

        doc_terms = []
        document_frequency = {field: Counter() for field in FIELDS}
        for vendor, product in documents:
            terms = {FIELD_VENDOR: Counter(tokenize(vendor)), FIELD_PRODUCT: Counter(tokenize(product))}
            for field in FIELDS:
                document_frequency[field].update(terms[field].keys())
            doc_terms.append(terms)

        idf = {field: {term: 1.0 + math.log(total / (df + 1)) for term, df in document_frequency[field].items()}
               for field in FIELDS}

        logger.info(f"Rebuilding CPE index with {total} vendor/product pairs...")
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute("DELETE FROM index_terms")
                    self._conn.execute("DELETE FROM term_stats")
                    self._conn.execute("DELETE FROM entries")
                    self._conn.executemany("INSERT INTO entries (id, vendor, product) VALUES (?, ?, ?)",
                                           ((i, v, p) for i, (v, p) in enumerate(documents, start=1)))
                    for field in FIELDS:
                        self._conn.executemany("INSERT INTO term_stats (field, term, idf) VALUES (?, ?, ?)",
                                               ((field, term, value) for term, value in idf[field].items()))
                    rows = []
                    for entry_id, terms in enumerate(doc_terms, start=1):
                        for field in FIELDS:
                            weights = {t: tf * idf[field][t] for t, tf in terms[field].items()}
                            norm = math.sqrt(sum(w * w for w in weights.values())) or 1.0
                            rows.extend((field, t, entry_id, w / norm) for t, w in weights.items())
                    self._conn.executemany(
                        "INSERT INTO index_terms (field, term, entry_id, weight) VALUES (?, ?, ?, ?)", rows)
                    self._conn.execute("INSERT OR REPLACE INTO index_meta (key, value) VALUES ('document_count', ?)",
                                       (str(total),))
            except sqlite3.Error as e:
                raise SearchUnavailableError(f"Unable to rebuild CPE index: {e}") from e
        logger.info(f"CPE index rebuilt ({total} entries).")
        return total

    def _document_count(self) -> int:
        if self._conn is None:
            raise SearchUnavailableError("The CPE index is closed.")
        row = self._conn.execute("SELECT value FROM index_meta WHERE key = 'document_count'").fetchone()
        if row is None:
            raise SearchUnavailableError("The CPE index has not been built; run an update first.")
        return int(row["value"])

    def entry_count(self) -> int:
        with self._lock:
            try:
                return self._document_count()
            except sqlite3.Error as e:
                raise SearchUnavailableError(f"Unable to read CPE index: {e}") from e

    def _field_scores(self, field: str, terms: list[tuple[str, float]], total: int) -> dict[int, float]:
        query_weights = defaultdict(float)
        for raw_term, boost in terms:
            for token in tokenize(raw_term):
                query_weights[token] += boost
        if not query_weights:
            return {}

        known_idf = {}
        placeholders = ",".join("?" for _ in query_weights)
        for row in self._conn.execute(
                f"SELECT term, idf FROM term_stats WHERE field = ? AND term IN ({placeholders})",
                (field, *query_weights.keys())):
            known_idf[row["term"]] = row["idf"]
        # unseen terms count as the rarest possible term
        max_idf = 1.0 + math.log(max(total, 1))
        for term in query_weights:
            query_weights[term] *= known_idf.get(term, max_idf)
        query_norm = math.sqrt(sum(w * w for w in query_weights.values()))
        if query_norm == 0:
            return {}

        scores = defaultdict(float)
        for term in known_idf:
            for row in self._conn.execute(
                    "SELECT entry_id, weight FROM index_terms WHERE field = ? AND term = ?", (field, term)):
                scores[row["entry_id"]] += query_weights[term] * row["weight"]
        return {entry_id: score / query_norm for entry_id, score in scores.items()}

    def search(self, query_text: str, max_results: int = MAX_QUERY_RESULTS,
               min_score: float = MIN_SEARCH_SCORE) -> list[IndexEntry]:
        """
        Runs a query produced by search.build_search. Raises SearchUnavailableError
        when the index is missing, unbuilt or unreadable.
        """
        query = parse_query(query_text)
        if not query.get(FIELD_VENDOR) or not query.get(FIELD_PRODUCT):
            return []
        with self._lock:
            try:
                total = self._document_count()
                if total == 0:
                    return []
                vendor_scores = self._field_scores(FIELD_VENDOR, query[FIELD_VENDOR], total)
                product_scores = self._field_scores(FIELD_PRODUCT, query[FIELD_PRODUCT], total)
                combined = {}
                for entry_id in vendor_scores.keys() & product_scores.keys():
                    score = math.sqrt(vendor_scores[entry_id] * product_scores[entry_id])
                    if score >= min_score:
                        combined[entry_id] = score
                if not combined:
                    return []
                placeholders = ",".join("?" for _ in combined)
                rows = self._conn.execute(
                    f"SELECT id, vendor, product FROM entries WHERE id IN ({placeholders})",
                    tuple(combined.keys())).fetchall()
            except sqlite3.Error as e:
                raise SearchUnavailableError(f"CPE index search failed: {e}") from e

        results = [IndexEntry(row["vendor"], row["product"], combined[row["id"]]) for row in rows]
        results.sort(key=lambda e: (-e.search_score, e.vendor, e.product))
        logger.debug(f"Search returned {len(results)} candidates (showing up to {max_results})")
        return results[:max_results]

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
