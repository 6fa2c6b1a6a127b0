# cpe_scanner/scanner.py
import logging
from dataclasses import replace

from .cpe import parse_cpe
from .models import Dependency, Identifier, Vulnerability, VulnerableSoftware
from .versions import DependencyVersion, is_unspecified, version_in_range
from .vulndb import CveDB

logger = logging.getLogger(__name__)

CPE_IDENTIFIER_TYPE = "cpe"


def software_matches(software: VulnerableSoftware, version: str) -> bool:
    """Whether one affected-software row of a CVE covers `version` of the same vendor:product."""
    if software.has_range:
        return version_in_range(version,
                                software.version_start_including, software.version_start_excluding,
                                software.version_end_including, software.version_end_excluding)
    if is_unspecified(software.version):
        return True
    detected = DependencyVersion(version)
    affected = DependencyVersion(software.version)
    if software.previous_versions:
        return detected <= affected
    return detected == affected


def _update_matches(software: VulnerableSoftware, update: str) -> bool:
    """An affected row with no update component covers every update of its version."""
    if is_unspecified(update):
        return True
    row = parse_cpe(software.cpe)
    return row is None or is_unspecified(row.update) or row.update == update.lower()


def find_vulnerabilities(cve_db: CveDB, identifier: Identifier) -> list[Vulnerability]:
    """Vulnerabilities recorded for a CPE identifier, with matched_cpe set to the identifier value."""
    if identifier.type != CPE_IDENTIFIER_TYPE:
        return []
    cpe = parse_cpe(identifier.value)
    if cpe is None:
        logger.debug(f"Identifier '{identifier.value}' is not a valid CPE; skipping lookup")
        return []

    matches = []
    for vulnerability in cve_db.get_vulnerabilities_for(cpe.vendor, cpe.product):
        if not is_unspecified(cpe.version):
            relevant = [s for s in vulnerability.vulnerable_software
                        if s.vendor == cpe.vendor and s.product == cpe.product
                        and _update_matches(s, cpe.update)]
            if not any(software_matches(s, cpe.version) for s in relevant):
                continue
        matches.append(replace(vulnerability, matched_cpe=identifier.value))
    return matches


def attach_vulnerabilities(cve_db: CveDB, dependency: Dependency) -> int:
    """Looks up every CPE identifier of `dependency` and adds what matches. Returns how many were new."""
    added = 0
    for identifier in dependency.sorted_identifiers():
        for vulnerability in find_vulnerabilities(cve_db, identifier):
            if vulnerability not in dependency.vulnerabilities:
                dependency.add_vulnerability(vulnerability)
                added += 1
                logger.info(f"  VULN FOUND: {dependency.name} ({identifier.value}) is vulnerable to "
                            f"{vulnerability.name} (Severity: {vulnerability.severity})")
    return added
