# cpe_scanner/cpe_analyzer.py
"""
CPE identification: turns a dependency's vendor/product/version evidence into
a CPE identifier.

For each confidence level, most certain first, the evidence seen so far is
turned into a full-text query against the CPE index. Each ranked candidate is
verified against the evidence that fed the query, and its version is resolved
against the CPEs the store knows for that vendor:product. The first candidate
that resolves becomes the dependency's identifier.
"""
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import quote

from .config import Settings
from .cpe import Cpe, to_versionless_uri
from .cpe_index import CpeIndex
from .exceptions import DatabaseError, SearchUnavailableError
from .models import Confidence, Dependency, Evidence, EvidenceCollection, Identifier, IndexEntry
from .search import build_search
from .versions import DependencyVersion, is_unspecified, parse_version
from .vulndb import CveDB

logger = logging.getLogger(__name__)

NVD_SEARCH_URL = "https://web.nvd.nist.gov/view/vuln/search-results?adv_search=true&cves=on&cpe_version=%s"
CPE_IDENTIFIER_TYPE = "cpe"

_WORD_SPLIT_RX = re.compile(r"[\s_-]")
_WEIGHTING_WORD_RX = re.compile(r"[A-Za-z0-9]+")


class IdentificationState(Enum):
    NO_EVIDENCE = "no_evidence"
    CANDIDATES_FOUND = "candidates_found"
    VERSION_RESOLVED = "version_resolved"
    IDENTIFIED = "identified"
    NO_MATCH = "no_match"


@dataclass(frozen=True)
class IdentificationResult:
    state: IdentificationState
    identifier: Optional[Identifier] = None
    consulted: frozenset = frozenset()
    candidates: tuple = ()
    transitions: tuple = ()

    @property
    def identified(self) -> bool:
        return self.state == IdentificationState.IDENTIFIED


def add_evidence_without_duplicate_terms(text: str, collection: EvidenceCollection, confidence: Confidence) -> str:
    """Appends the values of `collection` at `confidence` to `text`, skipping values already present."""
    buffer = f" {text or ''} "
    for evidence in collection.iter(confidence):
        value = evidence.value
        for prefix in ("http://", "https://"):
            if value.startswith(prefix):
                value = value[len(prefix):].replace(".", " ")
        if f" {value} " not in buffer:
            buffer += value + " "
    return buffer.strip()


def _candidate_words(text: str) -> list[str]:
    # words of two characters or fewer are glued to the following word ("ms sql" -> "mssql")
    words = []
    pending = None
    for word in _WORD_SPLIT_RX.split(text or ""):
        if pending is not None:
            words.append(pending + word)
            pending = None
        elif len(word) <= 2:
            pending = word
        else:
            words.append(word)
    if pending is not None:
        words.append(words[-1] + pending if words else pending)
    return words


def collection_contains_string(consulted, text: str) -> bool:
    words = _candidate_words(text)
    if not words:
        return False
    return all(EvidenceCollection.contains_used_string(word, consulted) for word in words)


class CpeAnalyzer:
    """Identifies dependencies against the CPE index and the vulnerability store."""

    def __init__(self, cve_db: CveDB, cpe_index: CpeIndex, settings: Optional[Settings] = None):
        self.cve_db = cve_db
        self.cpe_index = cpe_index
        self.settings = settings or Settings()

    # --- weighting and verification ---

    @staticmethod
    def _weightings(collection: EvidenceCollection) -> set[str]:
        terms = set(collection.weightings)
        for evidence in collection.at_least(Confidence.HIGH):
            terms.update(_WEIGHTING_WORD_RX.findall(evidence.value))
        return terms

    @staticmethod
    def verify_entry(entry: IndexEntry, consulted_vendor, consulted_product) -> bool:
        return (collection_contains_string(consulted_product, entry.product)
                and collection_contains_string(consulted_vendor, entry.vendor))

    # --- version resolution ---

    def _resolve_version(self, dependency: Dependency, entry: IndexEntry) -> tuple[Optional[str], Optional[Evidence]]:
        """
        The store CPE for entry whose version equals a version in the evidence, preferring
        the most specific version, then the more certain evidence. Falls back to the
        versionless CPE when the store knows the product but not the version.
        """
        known = self.cve_db.get_cpes(entry.vendor, entry.product)
        if not known:
            return None, None

        versioned: list[tuple[Cpe, DependencyVersion]] = []
        for cpe in known:
            if is_unspecified(cpe.version):
                continue
            raw = f"{cpe.version}.{cpe.update}" if cpe.update and cpe.update not in ("-", "*") else cpe.version
            db_version = parse_version(raw) or DependencyVersion(raw)
            versioned.append((cpe, db_version))

        best = None
        for evidence in dependency.version_evidence.iter():
            evidence_version = parse_version(evidence.value)
            if evidence_version is None:
                continue
            for cpe, db_version in versioned:
                if evidence_version != db_version:
                    continue
                rank = (-len(db_version.parts), evidence.confidence, cpe.to_uri())
                if best is None or rank < best[0]:
                    best = (rank, cpe, evidence)

        if best is not None:
            _, cpe, evidence = best
            return cpe.to_uri(), evidence
        return to_versionless_uri(entry.vendor, entry.product), None

    # --- identification ---

    def determine_identifiers(self, dependency: Dependency, vendor: str, product: str,
                              confidence: Confidence) -> IdentificationResult:
        """
        Searches the index with `vendor`/`product` text and adds the first candidate that
        verifies and resolves as a CPE identifier at `confidence`.
        """
        if not vendor or not vendor.strip() or not product or not product.strip():
            return IdentificationResult(IdentificationState.NO_MATCH, transitions=(IdentificationState.NO_MATCH,))

        consulted_vendor = frozenset(dependency.vendor_evidence.at_least(confidence))
        consulted_product = frozenset(dependency.product_evidence.at_least(confidence))
        consulted = consulted_vendor | consulted_product

        query = build_search(vendor, product,
                             self._weightings(dependency.vendor_evidence),
                             self._weightings(dependency.product_evidence))
        if query is None:
            return IdentificationResult(IdentificationState.NO_MATCH, consulted=consulted,
                                        transitions=(IdentificationState.NO_MATCH,))

        candidates = tuple(self.cpe_index.search(query))
        if not candidates:
            logger.debug(f"No CPE candidates for {dependency.name} at {confidence.name}")
            return IdentificationResult(IdentificationState.NO_MATCH, consulted=consulted,
                                        transitions=(IdentificationState.NO_MATCH,))
        transitions = [IdentificationState.CANDIDATES_FOUND]
        logger.debug(f"{len(candidates)} CPE candidates for {dependency.name} at {confidence.name}: "
                     f"{', '.join(str(c) for c in candidates[:5])}")

        for candidate in candidates:
            if not self.verify_entry(candidate, consulted_vendor, consulted_product):
                continue
            cpe_value, version_evidence = self._resolve_version(dependency, candidate)
            if cpe_value is None:
                logger.debug(f"Candidate {candidate} has no known CPE in the store")
                continue
            transitions.append(IdentificationState.VERSION_RESOLVED)
            if version_evidence is not None:
                consulted = consulted | {version_evidence}
            identifier = Identifier(type=CPE_IDENTIFIER_TYPE, value=cpe_value,
                                    url=NVD_SEARCH_URL % quote(cpe_value, safe=""),
                                    confidence=confidence)
            dependency.add_identifier(identifier)
            logger.debug(f"Identified {dependency.name} as {cpe_value} ({confidence.name})")
            transitions.append(IdentificationState.IDENTIFIED)
            return IdentificationResult(IdentificationState.IDENTIFIED, identifier, consulted, candidates,
                                        tuple(transitions))

        transitions.append(IdentificationState.NO_MATCH)
        return IdentificationResult(IdentificationState.NO_MATCH, consulted=consulted, candidates=candidates,
                                    transitions=tuple(transitions))

    def determine_cpe(self, dependency: Dependency) -> IdentificationResult:
        """Walks the confidence levels and stops at the first one that identifies the dependency."""
        if not len(dependency.vendor_evidence) or not len(dependency.product_evidence):
            return IdentificationResult(IdentificationState.NO_EVIDENCE,
                                        transitions=(IdentificationState.NO_EVIDENCE,))

        vendors = ""
        products = ""
        result = IdentificationResult(IdentificationState.NO_MATCH)
        for confidence in Confidence:
            if dependency.vendor_evidence.contains(confidence):
                vendors = add_evidence_without_duplicate_terms(vendors, dependency.vendor_evidence, confidence)
            if dependency.product_evidence.contains(confidence):
                products = add_evidence_without_duplicate_terms(products, dependency.product_evidence, confidence)
            if not vendors or not products:
                continue
            result = self.determine_identifiers(dependency, vendors, products, confidence)
            dependency.evidence_used.update(result.consulted)
            if result.identified:
                break
        return result

    def analyze(self, dependency: Dependency) -> Optional[Identifier]:
        """determine_cpe with store and index failures contained to this dependency."""
        try:
            return self.determine_cpe(dependency).identifier
        except SearchUnavailableError as e:
            logger.warning(f"CPE index unavailable; {dependency.name} was not identified: {e}")
        except DatabaseError as e:
            logger.warning(f"Database error while identifying {dependency.name}: {e}")
        return None
