import tempfile
import unittest
from pathlib import Path

from cpe_scanner.cpe import parse_cpe, to_versionless_uri
from cpe_scanner.models import (Confidence, Dependency, Evidence, EvidenceCollection, Identifier, IndexEntry,
                                Vulnerability)


class TestEvidence(unittest.TestCase):
    def test_equality_ignores_case(self):
        a = Evidence("Manifest", "Vendor", "Apache", Confidence.HIGH)
        b = Evidence("manifest", "vendor", "apache", Confidence.HIGH)
        self.assertEqual(a, b)
        self.assertEqual(len({a, b}), 1)

    def test_confidence_is_part_of_identity(self):
        self.assertNotEqual(Evidence("file", "name", "x", Confidence.HIGH),
                            Evidence("file", "name", "x", Confidence.LOW))

    def test_confidence_order(self):
        self.assertEqual(list(Confidence), [Confidence.HIGHEST, Confidence.HIGH, Confidence.MEDIUM, Confidence.LOW])
        self.assertLess(Confidence.HIGHEST, Confidence.LOW)


class TestEvidenceCollection(unittest.TestCase):
    def setUp(self):
        self.collection = EvidenceCollection()
        self.collection.add_evidence("file", "name", "struts2-core", Confidence.HIGH)
        self.collection.add_evidence("manifest", "title", "Struts 2 Core", Confidence.MEDIUM)
        self.collection.add_evidence("pom", "artifactid", "struts2-core", Confidence.HIGHEST)

    def test_blank_values_are_skipped(self):
        self.collection.add_evidence("file", "name", "   ", Confidence.LOW)
        self.assertEqual(len(self.collection), 3)

    def test_iter_is_ordered_by_confidence(self):
        self.assertEqual([e.confidence for e in self.collection],
                         [Confidence.HIGHEST, Confidence.HIGH, Confidence.MEDIUM])

    def test_iter_filter_and_contains(self):
        self.assertEqual([e.value for e in self.collection.iter(Confidence.MEDIUM)], ["Struts 2 Core"])
        self.assertTrue(self.collection.contains(Confidence.HIGH))
        self.assertFalse(self.collection.contains(Confidence.LOW))

    def test_at_least(self):
        self.assertEqual(len(self.collection.at_least(Confidence.HIGH)), 2)

    def test_weightings(self):
        self.collection.add_weighting("struts2")
        self.collection.add_weighting(" ")
        self.assertEqual(self.collection.weightings, frozenset({"struts2"}))

    def test_union(self):
        other = EvidenceCollection()
        other.add_evidence("file", "name", "struts2-core", Confidence.HIGH)
        other.add_evidence("file", "name", "xwork", Confidence.LOW)
        other.add_weighting("xwork")
        merged = self.collection | other
        self.assertEqual(len(merged), 4)
        self.assertIn("xwork", merged.weightings)

    def test_contains_used_string(self):
        consulted = self.collection.at_least(Confidence.HIGH)
        self.assertTrue(EvidenceCollection.contains_used_string("struts2core", consulted))
        self.assertTrue(EvidenceCollection.contains_used_string("STRUTS2", consulted))
        self.assertFalse(EvidenceCollection.contains_used_string("xwork", consulted))
        self.assertFalse(EvidenceCollection.contains_used_string("", consulted))


class TestIdentifierAndVulnerability(unittest.TestCase):
    def test_identifier_identity_is_type_and_value(self):
        a = Identifier("cpe", "cpe:/a:apache:struts:2.1.2", confidence=Confidence.HIGH)
        b = Identifier("CPE", "cpe:/a:Apache:struts:2.1.2", url="https://example.org", confidence=Confidence.LOW)
        self.assertEqual(a, b)
        self.assertEqual(len({a, b}), 1)

    def test_index_entry_equality_ignores_score(self):
        self.assertEqual(IndexEntry("apache", "struts", 0.5), IndexEntry("apache", "struts", 0.9))
        self.assertEqual(str(IndexEntry("apache", "struts")), "apache:struts")

    def test_severity_bands(self):
        self.assertEqual(Vulnerability("CVE-1", cvss_score=7.5).severity, "HIGH")
        self.assertEqual(Vulnerability("CVE-2", cvss_score=4.3).severity, "MEDIUM")
        self.assertEqual(Vulnerability("CVE-3", cvss_score=2.1).severity, "LOW")
        self.assertEqual(Vulnerability("CVE-4", cvss_score=0.0).severity, "NONE")
        self.assertEqual(Vulnerability("CVE-5").severity, "UNKNOWN")

    def test_vulnerabilities_sort_by_name(self):
        dependency = Dependency(file_name="x.jar")
        dependency.add_vulnerability(Vulnerability("CVE-2014-0002"))
        dependency.add_vulnerability(Vulnerability("CVE-2012-0001"))
        dependency.add_vulnerability(Vulnerability("CVE-2012-0001", description="duplicate"))
        self.assertEqual([v.name for v in dependency.sorted_vulnerabilities()], ["CVE-2012-0001", "CVE-2014-0002"])


class TestDependency(unittest.TestCase):
    def test_from_file_computes_hashes(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "openssl-1.0.1c.tar.gz"
            path.write_bytes(b"hello")
            dependency = Dependency.from_file(path)
        self.assertEqual(dependency.file_name, "openssl-1.0.1c.tar.gz")
        self.assertEqual(dependency.file_extension, "gz")
        self.assertEqual(dependency.md5sum, "5d41402abc4b2a76b9719d911017c592")
        self.assertEqual(dependency.sha1sum, "aaf4c61ddcc5e8a2dabede0f3b482cd9aea9434d")

    def test_unreadable_file_leaves_hashes_empty(self):
        with self.assertLogs("cpe_scanner.models", level="WARNING"):
            dependency = Dependency.from_file("/nonexistent/path/lib.jar")
        self.assertIsNone(dependency.md5sum)
        self.assertIsNone(dependency.sha1sum)

    def test_related_dependency_rejects_self(self):
        dependency = Dependency(file_name="a.jar")
        with self.assertLogs("cpe_scanner.models", level="WARNING"):
            dependency.add_related_dependency(dependency)
        self.assertEqual(len(dependency.related_dependencies), 0)


class TestCpe(unittest.TestCase):
    def test_parse_uri(self):
        cpe = parse_cpe("cpe:/a:openssl:openssl:1.0.1c")
        self.assertEqual((cpe.part, cpe.vendor, cpe.product, cpe.version), ("a", "openssl", "openssl", "1.0.1c"))
        self.assertEqual(cpe.to_uri(), "cpe:/a:openssl:openssl:1.0.1c")

    def test_parse_formatted_string(self):
        cpe = parse_cpe("cpe:2.3:a:apache:struts:2.3.16:*:*:*:*:*:*:*")
        self.assertEqual(cpe.vendor_product, "apache:struts")
        self.assertEqual(cpe.to_uri(), "cpe:/a:apache:struts:2.3.16")

    def test_invalid(self):
        self.assertIsNone(parse_cpe("not-a-cpe"))
        self.assertIsNone(parse_cpe("cpe:/a:vendor_only"))
        self.assertIsNone(parse_cpe(""))

    def test_versionless(self):
        self.assertEqual(to_versionless_uri("apache", "struts"), "cpe:/a:apache:struts")


if __name__ == '__main__':
    unittest.main()
