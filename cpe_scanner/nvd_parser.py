# cpe_scanner/nvd_parser.py
"""
Streaming parsers for the NVD CVE XML feeds (schema 2.0 and the legacy 1.2
schema) and the CPE dictionary. Elements are cleared as soon as they are
consumed so a full yearly feed never sits in memory.
"""
import gzip
import logging
from pathlib import Path
from typing import Iterator, Optional
from urllib.parse import quote

from cvss import CVSS2
from cvss.exceptions import CVSSError
from lxml import etree as ET

from .exceptions import InvalidDataError
from .models import Reference, Vulnerability, VulnerableSoftware
from .cpe import parse_cpe

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"

# NVD 2.0 base_metrics element -> (CVSS v2 metric, value abbreviations)
CVSS2_METRICS = (
    ("access-vector", "AV", {"NETWORK": "N", "ADJACENT_NETWORK": "A", "LOCAL": "L"}),
    ("access-complexity", "AC", {"LOW": "L", "MEDIUM": "M", "HIGH": "H"}),
    ("authentication", "Au", {"NONE": "N", "SINGLE_INSTANCE": "S", "MULTIPLE_INSTANCES": "M"}),
    ("confidentiality-impact", "C", {"NONE": "N", "PARTIAL": "P", "COMPLETE": "C"}),
    ("integrity-impact", "I", {"NONE": "N", "PARTIAL": "P", "COMPLETE": "C"}),
    ("availability-impact", "A", {"NONE": "N", "PARTIAL": "P", "COMPLETE": "C"}),
)


def _open(path):
    path = Path(path)
    with open(path, "rb") as f:
        magic = f.read(2)
    if magic == GZIP_MAGIC:
        return gzip.open(path, "rb")
    return open(path, "rb")


def _local(element) -> str:
    return ET.QName(element).localname


def _child(element, name: str):
    for child in element:
        if isinstance(child.tag, str) and _local(child) == name:
            return child
    return None


def _children(element, name: str):
    return [child for child in element if isinstance(child.tag, str) and _local(child) == name]


def _text(element) -> Optional[str]:
    if element is None or element.text is None:
        return None
    return element.text.strip() or None


def _iter_elements(path, localname: str) -> Iterator:
    """iterparse over every element named `localname` in any namespace, freeing memory as it goes."""
    try:
        with _open(path) as source:
            for _, element in ET.iterparse(source, events=("end",), tag=f"{{*}}{localname}",
                                           huge_tree=True, resolve_entities=False):
                yield element
                element.clear()
                while element.getprevious() is not None:
                    del element.getparent()[0]
    except ET.XMLSyntaxError as e:
        raise InvalidDataError(f"Malformed XML in '{path}': {e}") from e
    except (OSError, EOFError) as e:
        raise InvalidDataError(f"Unable to read feed file '{path}': {e}") from e


def cvss2_vector(base_metrics) -> Optional[str]:
    parts = []
    for element_name, metric, values in CVSS2_METRICS:
        value = _text(_child(base_metrics, element_name))
        abbreviation = values.get((value or "").upper())
        if abbreviation is None:
            return None
        parts.append(f"{metric}:{abbreviation}")
    return "/".join(parts)


def _cvss(entry) -> tuple[Optional[float], Optional[str]]:
    cvss_element = _child(entry, "cvss")
    base_metrics = _child(cvss_element, "base_metrics") if cvss_element is not None else None
    if base_metrics is None:
        return None, None
    vector = cvss2_vector(base_metrics)
    score_text = _text(_child(base_metrics, "score"))
    score = None
    if score_text:
        try:
            score = float(score_text)
        except ValueError:
            logger.debug(f"Invalid CVSS score '{score_text}'")
    if score is None and vector:
        try:
            score = float(CVSS2(vector).base_score)
        except CVSSError as e:
            logger.warning(f"Failed CVSS parse for vector '{vector}': {e}")
    return score, vector


def parse_nvd_20(path, previous_versions: Optional[dict] = None) -> Iterator[Vulnerability]:
    """
    Yields one Vulnerability per <entry> of an NVD CVE 2.0 feed. `previous_versions`
    (from parse_nvd_12_previous_versions) flags affected CPEs that also cover older releases.
    """
    previous_versions = previous_versions or {}
    for entry in _iter_elements(path, "entry"):
        name = entry.get("id")
        if not name:
            continue
        flagged = previous_versions.get(name, set())

        software = []
        software_list = _child(entry, "vulnerable-software-list")
        for product in _children(software_list, "product") if software_list is not None else []:
            cpe_string = _text(product)
            cpe = parse_cpe(cpe_string)
            if cpe is None:
                continue
            software.append(VulnerableSoftware(cpe=cpe.to_uri(), vendor=cpe.vendor, product=cpe.product,
                                               version=cpe.version or None,
                                               previous_versions=cpe.to_uri() in flagged))

        references = []
        for refs in _children(entry, "references"):
            source = _text(_child(refs, "source"))
            for reference in _children(refs, "reference"):
                references.append(Reference(source=source, name=_text(reference), url=reference.get("href")))

        cwe_element = _child(entry, "cwe")
        score, vector = _cvss(entry)
        yield Vulnerability(
            name=name,
            description=_text(_child(entry, "summary")) or "",
            cvss_score=score,
            cvss_vector=vector,
            cwe=cwe_element.get("id") if cwe_element is not None else None,
            published=_text(_child(entry, "published-datetime")),
            last_modified=_text(_child(entry, "last-modified-datetime")),
            references=tuple(references),
            vulnerable_software=tuple(software),
        )


def _legacy_cpe(vendor: str, product: str, version: str) -> str:
    values = [quote(v.strip().lower().replace(" ", "_"), safe="._-~") for v in (vendor, product, version)]
    return "cpe:/a:" + ":".join(values)


def parse_nvd_12_previous_versions(path) -> dict[str, set[str]]:
    """Reads a legacy 1.2 feed and returns {cve: {cpe uri, ...}} for versions marked prev="1"."""
    flagged: dict[str, set[str]] = {}
    for entry in _iter_elements(path, "entry"):
        name = entry.get("name")
        if not name:
            continue
        vuln_soft = _child(entry, "vuln_soft")
        if vuln_soft is None:
            continue
        for prod in _children(vuln_soft, "prod"):
            vendor, product = prod.get("vendor"), prod.get("name")
            if not vendor or not product:
                continue
            for vers in _children(prod, "vers"):
                if vers.get("prev") == "1" and vers.get("num"):
                    flagged.setdefault(name, set()).add(_legacy_cpe(vendor, product, vers.get("num")))
    logger.debug(f"Found previous-version flags for {len(flagged)} CVEs in '{path}'")
    return flagged


def parse_cpe_dictionary(path) -> Iterator[str]:
    """Yields the CPE name of every <cpe-item> in an NVD official CPE dictionary."""
    for item in _iter_elements(path, "cpe-item"):
        name = item.get("name")
        if name:
            yield name
