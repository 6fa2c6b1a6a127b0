# tests/support.py
from pathlib import Path

from cpe_scanner.config import Settings
from cpe_scanner.cpe_index import CpeIndex
from cpe_scanner.cpe import parse_cpe
from cpe_scanner.models import Confidence, Dependency, Reference, Vulnerability, VulnerableSoftware
from cpe_scanner.vulndb import CveDB

DATA_DIR = Path(__file__).parent / "data"
NVD_20_SAMPLE = DATA_DIR / "nvdcve-2.0-sample.xml"
NVD_12_SAMPLE = DATA_DIR / "nvdcve-1.2-sample.xml"
CPE_DICTIONARY_SAMPLE = DATA_DIR / "cpe-dictionary-sample.xml"


def make_settings(data_dir, **overrides) -> Settings:
    return Settings(data_directory=Path(data_dir), **overrides)


def software(cpe_string, **kwargs) -> VulnerableSoftware:
    cpe = parse_cpe(cpe_string)
    return VulnerableSoftware(cpe=cpe.to_uri(), vendor=cpe.vendor, product=cpe.product,
                              version=cpe.version or None, **kwargs)


def vulnerability(name, *cpes, score=5.0, description="", software_rows=()) -> Vulnerability:
    rows = tuple(software(c) for c in cpes) + tuple(software_rows)
    return Vulnerability(name=name, description=description or f"{name} description", cvss_score=score,
                         references=(Reference("CONFIRM", f"{name} advisory", f"https://example.org/{name}"),),
                         vulnerable_software=rows)


def populate(cve_db, vulnerabilities):
    with cve_db.transaction() as conn:
        for vuln in vulnerabilities:
            cve_db.update_vulnerability(vuln, conn)


SAMPLE_VULNERABILITIES = [
    vulnerability("CVE-2012-2333", "cpe:/a:openssl:openssl:1.0.1c", score=4.3),
    vulnerability("CVE-2012-2110", "cpe:/a:openssl:openssl:1.0.1", "cpe:/a:openssl:openssl:1.0.1a", score=7.5),
    vulnerability("CVE-2012-4431", "cpe:/a:apache:struts:2.1.2"),
    vulnerability("CVE-2013-2067", "cpe:/a:apache:tomcat:7.0"),
    vulnerability("CVE-2012-0814", "cpe:/a:openbsd:openssh:6.0"),
]


def dependency_with_evidence(vendor=None, product=None, version=None,
                             confidence=Confidence.HIGH, version_confidence=Confidence.HIGHEST) -> Dependency:
    dependency = Dependency(file_name="test-dependency", file_path="test-dependency")
    if vendor:
        dependency.vendor_evidence.add_evidence("file", "name", vendor, confidence)
    if product:
        dependency.product_evidence.add_evidence("file", "name", product, confidence)
    if version:
        dependency.version_evidence.add_evidence("file", "version", version, version_confidence)
    return dependency


def prepare_store(settings):
    """Writes the sample vulnerabilities and a matching CPE index into settings.data_directory."""
    cve_db = CveDB(settings.database_file)
    cpe_index = CpeIndex(settings.cpe_index_file)
    try:
        populate(cve_db, SAMPLE_VULNERABILITIES)
        cpe_index.rebuild(cve_db.get_vendor_product_list())
    finally:
        cpe_index.close()
        cve_db.close()
