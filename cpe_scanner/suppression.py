# cpe_scanner/suppression.py
import logging
from dataclasses import dataclass, field
from typing import Iterable

from .models import Dependency, Identifier, Vulnerability

logger = logging.getLogger(__name__)


def _cpe_matches(rule: str, value: str) -> bool:
    """A rule suppresses the identical CPE and every more specific one ('cpe:/a:apache:struts' covers 'cpe:/a:apache:struts:2.1.2')."""
    rule = rule.lower().rstrip(":")
    value = value.lower()
    return value == rule or value.startswith(rule + ":")


@dataclass
class SuppressionRules:
    cpes: list = field(default_factory=list)
    cves: set = field(default_factory=set)

    @classmethod
    def from_settings(cls, settings) -> "SuppressionRules":
        return cls(cpes=list(settings.suppress_cpes), cves={c.upper() for c in settings.suppress_cves})

    def suppresses_identifier(self, identifier: Identifier) -> bool:
        return identifier.type == "cpe" and any(_cpe_matches(rule, identifier.value) for rule in self.cpes)

    def suppresses_vulnerability(self, vulnerability: Vulnerability) -> bool:
        if vulnerability.name.upper() in self.cves:
            return True
        return bool(vulnerability.matched_cpe) and any(_cpe_matches(rule, vulnerability.matched_cpe)
                                                        for rule in self.cpes)

    def apply(self, dependency: Dependency) -> int:
        """Moves suppressed identifiers and vulnerabilities into the dependency's suppressed sets."""
        moved = 0
        for identifier in [i for i in dependency.identifiers if self.suppresses_identifier(i)]:
            dependency.identifiers.discard(identifier)
            dependency.add_suppressed_identifier(identifier)
            moved += 1
        for vulnerability in [v for v in dependency.vulnerabilities if self.suppresses_vulnerability(v)]:
            dependency.vulnerabilities.discard(vulnerability)
            dependency.add_suppressed_vulnerability(vulnerability)
            moved += 1
        if moved:
            logger.info(f"Suppressed {moved} identifiers/vulnerabilities for {dependency.name}")
        return moved


def apply_suppressions(rules: SuppressionRules, dependencies: Iterable[Dependency]) -> int:
    return sum(rules.apply(dependency) for dependency in dependencies)
