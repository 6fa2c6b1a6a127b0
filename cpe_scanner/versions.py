# cpe_scanner/versions.py
"""
Version handling for CPE identification and vulnerability matching.

Evidence versions come from file names, manifests and headers, so they are
rarely PEP 440 clean. DependencyVersion splits a version into parts the same
way regardless of origin; packaging is used where real range semantics are
needed and the version parses.
"""
import re
from functools import total_ordering
from typing import Optional

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion
from packaging.version import parse as parse_pep440

# Something that looks like a dotted version, optionally with a short qualifier (1.0.1c, 2.3.16-beta)
RX_VERSION = re.compile(r"\d+(\.\d{1,6})+(\.?([_-](release|beta|alpha|\d+)|[a-zA-Z_-]{1,3}\d{0,8}))?")
RX_SINGLE_VERSION = re.compile(r"\d+(\.?([_-](release|beta|alpha)|[a-zA-Z_-]{1,3}\d{1,8}))?")
RX_VERSION_PART = re.compile(r"(\d+[a-z]{1,3}$|[a-z]+\d+|\d+|(release|beta|alpha)$)")

UNSPECIFIED_VERSIONS = ("", "-", "*")


@total_ordering
class DependencyVersion:
    """A version split into comparable parts, e.g. '1.0.1c' -> ['1', '0', '1c']."""

    def __init__(self, version: Optional[str] = None, parts: Optional[list[str]] = None):
        if parts is not None:
            self.parts = list(parts)
        else:
            self.parts = _split_parts(version)

    def __str__(self):
        return ".".join(self.parts)

    def __repr__(self):
        return f"DependencyVersion('{self}')"

    def __hash__(self):
        # trailing zeros do not change equality, so they must not change the hash
        parts = list(self.parts)
        while len(parts) > 1 and parts[-1] == "0":
            parts.pop()
        return hash(tuple(parts))

    def __eq__(self, other):
        if not isinstance(other, DependencyVersion):
            return NotImplemented
        shortest = min(len(self.parts), len(other.parts))
        longest = max(len(self.parts), len(other.parts))
        # '2' and '2.3.1' name different releases
        if shortest == 1 and longest >= 3:
            return False
        for i in range(shortest):
            if self.parts[i] != other.parts[i]:
                return False
        for extra in self.parts[shortest:] + other.parts[shortest:]:
            if extra != "0":
                return False
        return True

    def __lt__(self, other: "DependencyVersion") -> bool:
        return self.compare(other) < 0

    def compare(self, other: "DependencyVersion") -> int:
        for left, right in zip(self.parts, other.parts):
            if left == right:
                continue
            if left.isdigit() and right.isdigit():
                return -1 if int(left) < int(right) else 1
            return -1 if left < right else 1
        if len(self.parts) == len(other.parts):
            return 0
        return -1 if len(self.parts) < len(other.parts) else 1


def _split_parts(version: Optional[str]) -> list[str]:
    if version is None:
        return []
    parts = [m.group(0) for m in RX_VERSION_PART.finditer(version.lower())]
    return parts or [version]


def _find_version(text: str) -> Optional[re.Match]:
    """The single version-looking match in text, or None when there is none or more than one."""
    for pattern in (RX_VERSION, RX_SINGLE_VERSION):
        matches = pattern.finditer(text)
        first = next(matches, None)
        if first is not None:
            return None if next(matches, None) is not None else first
    return None


def parse_version(text: Optional[str]) -> Optional[DependencyVersion]:
    """
    Extracts a single version from free text. Returns None when nothing looks like
    a version or when the text holds two different version-looking strings.
    """
    if text is None:
        return None
    # '-' is how the CVE data spells "no particular version"
    if text == "-":
        return DependencyVersion(parts=["-"])
    match = _find_version(text)
    if match is None:
        return None
    version = match.group(0)
    if version.endswith("-py2") and len(version) > 4:
        version = version[:-4]
    return DependencyVersion(version)


def parse_pre_version(text: Optional[str]) -> Optional[str]:
    """The text before the version, e.g. 'struts2-core' for 'struts2-core-2.1.2'."""
    if text is None:
        return None
    match = _find_version(text)
    if match is None:
        return text
    prefix = text[:match.start()].rstrip("-_. ")
    return prefix or text


def is_unspecified(version: Optional[str]) -> bool:
    return version is None or version.strip() in UNSPECIFIED_VERSIONS


def _is_canonical_pep440(version: str) -> bool:
    try:
        return str(parse_pep440(version)) == version.strip().lower()
    except InvalidVersion:
        return False


def version_in_range(version: str, start_including: str | None = None, start_excluding: str | None = None,
                     end_including: str | None = None, end_excluding: str | None = None) -> bool:
    """
    Range check used for affected-version ranges. PEP 440 semantics when the version
    and every bound are already in canonical PEP 440 form, DependencyVersion ordering
    otherwise (so '1.0.1c' sorts after '1.0.1' instead of being read as a release candidate).
    """
    spec_parts = []
    if start_including: spec_parts.append(f">={start_including}")
    if start_excluding: spec_parts.append(f">{start_excluding}")
    if end_including: spec_parts.append(f"<={end_including}")
    if end_excluding: spec_parts.append(f"<{end_excluding}")
    if not spec_parts:
        return True
    bounds = [b for b in (start_including, start_excluding, end_including, end_excluding) if b]
    if all(_is_canonical_pep440(v) for v in [version] + bounds):
        try:
            spec_set = SpecifierSet(",".join(spec_parts))
            return spec_set.contains(parse_pep440(version), prereleases=True)
        except (InvalidSpecifier, InvalidVersion):
            pass

    detected = DependencyVersion(version)
    if start_including and detected < DependencyVersion(start_including):
        return False
    if start_excluding and detected <= DependencyVersion(start_excluding):
        return False
    if end_including and detected > DependencyVersion(end_including):
        return False
    if end_excluding and detected >= DependencyVersion(end_excluding):
        return False
    return True
