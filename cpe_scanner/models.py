# cpe_scanner/models.py
import hashlib
import logging
import re
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Iterable, Iterator, Optional

logger = logging.getLogger(__name__)


class Confidence(IntEnum):
    """Ordinal certainty of a piece of evidence or an identifier. Lower value is more certain."""
    HIGHEST = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4


# --- Evidence ---

def evidence_key(evidence: "Evidence") -> tuple:
    """Normalized comparison key: case-insensitive over source/name/value, then confidence."""
    return (
        (evidence.source or "").lower(),
        (evidence.name or "").lower(),
        (evidence.value or "").lower(),
        evidence.confidence,
    )


@dataclass(frozen=True, eq=False)
class Evidence:
    source: str
    name: str
    value: str
    confidence: Confidence

    def __eq__(self, other):
        if not isinstance(other, Evidence):
            return NotImplemented
        return evidence_key(self) == evidence_key(other)

    def __hash__(self):
        return hash(evidence_key(self))

    def __lt__(self, other: "Evidence") -> bool:
        return evidence_key(self) < evidence_key(other)


class EvidenceCollection:
    """
    Set of Evidence for one axis (vendor, product or version) of a dependency.
    Also carries weighting terms that analyzers flag as likely CPE words.
    """

    def __init__(self, evidence: Optional[Iterable[Evidence]] = None):
        self._evidence: set[Evidence] = set(evidence or ())
        self._weightings: set[str] = set()

    def add(self, evidence: Evidence):
        self._evidence.add(evidence)

    def add_evidence(self, source: str, name: str, value: str, confidence: Confidence):
        if value is None or not str(value).strip():
            return
        self._evidence.add(Evidence(source=source, name=name, value=str(value).strip(), confidence=confidence))

    def add_weighting(self, term: str):
        if term and term.strip():
            self._weightings.add(term.strip())

    @property
    def weightings(self) -> frozenset:
        return frozenset(self._weightings)

    def iter(self, confidence: Optional[Confidence] = None) -> list[Evidence]:
        """Evidence ordered by confidence (most certain first), optionally only one confidence level."""
        selected = (e for e in self._evidence if confidence is None or e.confidence == confidence)
        return sorted(selected, key=lambda e: (e.confidence, evidence_key(e)))

    def at_least(self, confidence: Confidence) -> list[Evidence]:
        return [e for e in self.iter() if e.confidence <= confidence]

    def contains(self, confidence: Confidence) -> bool:
        return any(e.confidence == confidence for e in self._evidence)

    @staticmethod
    def contains_used_string(text: str, consulted: Iterable[Evidence]) -> bool:
        """
        True when `text` occurs in one of the consulted evidence values, ignoring case,
        whitespace, underscores and hyphens.
        """
        if not text:
            return False
        needle = _squash(text)
        return any(needle in _squash(e.value) for e in consulted)

    def __or__(self, other: "EvidenceCollection") -> "EvidenceCollection":
        merged = EvidenceCollection(self._evidence | other._evidence)
        merged._weightings = self._weightings | other._weightings
        return merged

    def __contains__(self, evidence) -> bool:
        return evidence in self._evidence

    def __iter__(self) -> Iterator[Evidence]:
        return iter(self.iter())

    def __len__(self) -> int:
        return len(self._evidence)

    def __repr__(self):
        return f"EvidenceCollection({len(self._evidence)} items, weightings={sorted(self._weightings)})"


def _squash(value: str) -> str:
    return re.sub(r"[\s_-]", "", (value or "").lower())


# --- Identifiers ---

def identifier_key(identifier: "Identifier") -> tuple:
    return ((identifier.type or "").lower(), (identifier.value or "").lower())


@dataclass(frozen=True, eq=False)
class Identifier:
    type: str
    value: str
    url: Optional[str] = None
    confidence: Optional[Confidence] = None

    def __eq__(self, other):
        if not isinstance(other, Identifier):
            return NotImplemented
        return identifier_key(self) == identifier_key(other)

    def __hash__(self):
        return hash(identifier_key(self))

    def __lt__(self, other: "Identifier") -> bool:
        return (self.value.lower(), self.type.lower()) < (other.value.lower(), other.type.lower())


@dataclass(frozen=True)
class IndexEntry:
    vendor: str
    product: str
    search_score: float = field(default=0.0, compare=False)

    def __str__(self):
        return f"{self.vendor}:{self.product}"


# --- Vulnerabilities ---

@dataclass(frozen=True)
class Reference:
    source: str
    name: str
    url: str


@dataclass(frozen=True)
class VulnerableSoftware:
    cpe: str
    vendor: str
    product: str
    version: Optional[str] = None
    previous_versions: bool = False
    version_start_including: Optional[str] = None
    version_start_excluding: Optional[str] = None
    version_end_including: Optional[str] = None
    version_end_excluding: Optional[str] = None

    @property
    def has_range(self) -> bool:
        return any((self.version_start_including, self.version_start_excluding,
                    self.version_end_including, self.version_end_excluding))


@dataclass(frozen=True, eq=False)
class Vulnerability:
    name: str
    description: str = ""
    cvss_score: float | None = None
    cvss_vector: str | None = None
    cwe: str | None = None
    published: str | None = None
    last_modified: str | None = None
    references: tuple = ()
    vulnerable_software: tuple = ()
    matched_cpe: str | None = None

    def __eq__(self, other):
        if not isinstance(other, Vulnerability):
            return NotImplemented
        return self.name == other.name

    def __hash__(self):
        return hash(self.name)

    def __lt__(self, other: "Vulnerability") -> bool:
        return self.name < other.name

    @property
    def severity(self) -> str:
        # CVSS v2 qualitative bands, as published in the NVD XML feeds
        if self.cvss_score is None:
            return "UNKNOWN"
        elif self.cvss_score >= 7.0:
            return "HIGH"
        elif self.cvss_score >= 4.0:
            return "MEDIUM"
        elif self.cvss_score > 0.0:
            return "LOW"
        else:
            return "NONE"


# --- Dependency ---

@dataclass(eq=False)
class Dependency:
    """One scanned artifact and everything learned about it during a scan."""
    actual_file_path: Optional[str] = None
    file_path: Optional[str] = None
    file_name: Optional[str] = None
    file_extension: Optional[str] = None
    md5sum: Optional[str] = None
    sha1sum: Optional[str] = None
    display_file_name: Optional[str] = None
    vendor_evidence: EvidenceCollection = field(default_factory=EvidenceCollection)
    product_evidence: EvidenceCollection = field(default_factory=EvidenceCollection)
    version_evidence: EvidenceCollection = field(default_factory=EvidenceCollection)
    evidence_used: set = field(default_factory=set)
    identifiers: set = field(default_factory=set)
    suppressed_identifiers: set = field(default_factory=set)
    vulnerabilities: set = field(default_factory=set)
    suppressed_vulnerabilities: set = field(default_factory=set)
    description: Optional[str] = None
    license: Optional[str] = None
    related_dependencies: set = field(default_factory=set)
    project_references: set = field(default_factory=set)
    available_versions: list = field(default_factory=list)

    @classmethod
    def from_file(cls, path) -> "Dependency":
        path = Path(path)
        dependency = cls(
            actual_file_path=str(path.resolve()),
            file_path=str(path),
            file_name=path.name,
            file_extension=path.suffix[1:].lower() if path.suffix else None,
        )
        dependency.md5sum, dependency.sha1sum = _file_hashes(path)
        return dependency

    @property
    def name(self) -> str:
        return self.display_file_name or self.file_name or "<unnamed>"

    @property
    def evidence(self) -> EvidenceCollection:
        return self.vendor_evidence | self.product_evidence | self.version_evidence

    def add_identifier(self, identifier: Identifier):
        self.identifiers.add(identifier)

    def add_suppressed_identifier(self, identifier: Identifier):
        self.suppressed_identifiers.add(identifier)

    def add_vulnerability(self, vulnerability: Vulnerability):
        self.vulnerabilities.add(vulnerability)

    def add_suppressed_vulnerability(self, vulnerability: Vulnerability):
        self.suppressed_vulnerabilities.add(vulnerability)

    def sorted_identifiers(self) -> list[Identifier]:
        return sorted(self.identifiers)

    def sorted_vulnerabilities(self) -> list[Vulnerability]:
        return sorted(self.vulnerabilities)

    def add_related_dependency(self, dependency: "Dependency"):
        if dependency is self:
            logger.warning(f"Attempted to add a circular reference for {self.name}")
            return
        self.related_dependencies.add(dependency)


def _file_hashes(path: Path) -> tuple[str | None, str | None]:
    md5 = hashlib.md5()
    sha1 = hashlib.sha1()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                md5.update(chunk)
                sha1.update(chunk)
    except OSError as e:
        logger.warning(f"Unable to read '{path.name}' to determine hashes: {e}")
        return None, None
    return md5.hexdigest(), sha1.hexdigest()
