# cpe_scanner/file_name.py
"""Evidence taken from the file name alone, e.g. 'struts2-core-2.1.2.jar'."""
import logging
import re

from .models import Confidence, Dependency
from .versions import parse_pre_version, parse_version

logger = logging.getLogger(__name__)

EVIDENCE_SOURCE = "file"

# Names that say nothing about the component they belong to
IGNORED_FILES = {
    "__init__.py", "__init__.pyc", "__init__.pyo", "__main__.py",
    "metadata", "pkg-info", "requires.txt", "top_level.txt", "setup.py",
}

_ARCHIVE_EXTENSION_RX = re.compile(r"(\.tar)?\.[A-Za-z][A-Za-z0-9]{0,4}$")


def strip_extension(file_name: str) -> str:
    return _ARCHIVE_EXTENSION_RX.sub("", file_name) or file_name


def collect_file_name_evidence(dependency: Dependency):
    file_name = dependency.file_name
    if not file_name:
        return
    base_name = strip_extension(file_name)
    version = parse_version(base_name)
    package_name = parse_pre_version(base_name)

    if version is not None:
        # a lone number is a weak signal; 1.2 or better is not
        confidence = Confidence.HIGHEST if len(version.parts) >= 2 else Confidence.MEDIUM
        dependency.version_evidence.add_evidence(EVIDENCE_SOURCE, "version", str(version), confidence)
        dependency.version_evidence.add_evidence(EVIDENCE_SOURCE, "name", package_name, Confidence.MEDIUM)

    if file_name.lower() not in IGNORED_FILES:
        dependency.product_evidence.add_evidence(EVIDENCE_SOURCE, "name", package_name, Confidence.HIGH)
        dependency.vendor_evidence.add_evidence(EVIDENCE_SOURCE, "name", package_name, Confidence.HIGH)
    logger.debug(f"File name evidence for {file_name}: name={package_name!r}, version={version}")
