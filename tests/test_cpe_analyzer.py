import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from cpe_scanner.cpe_analyzer import (CpeAnalyzer, IdentificationState, _candidate_words,
                                      add_evidence_without_duplicate_terms, collection_contains_string)
from cpe_scanner.cpe_index import CpeIndex
from cpe_scanner.exceptions import DatabaseError, SearchUnavailableError
from cpe_scanner.models import Confidence, Dependency, Evidence, EvidenceCollection, IndexEntry
from cpe_scanner.scanner import attach_vulnerabilities
from cpe_scanner.vulndb import CveDB

from tests.support import SAMPLE_VULNERABILITIES, dependency_with_evidence, populate


class TestEvidenceHelpers(unittest.TestCase):
    def test_candidate_words_glue_short_words(self):
        self.assertEqual(_candidate_words("ms_sql_server"), ["mssql", "server"])
        self.assertEqual(_candidate_words("struts 2"), ["struts", "struts2"])
        self.assertEqual(_candidate_words(""), [])

    def test_collection_contains_string(self):
        consulted = {Evidence("file", "name", "Microsoft SQL Server", Confidence.HIGH),
                     Evidence("file", "name", "mssql", Confidence.HIGH)}
        self.assertTrue(collection_contains_string(consulted, "ms_sql_server"))
        self.assertFalse(collection_contains_string(consulted, "oracle_database"))

    def test_add_evidence_without_duplicate_terms(self):
        collection = EvidenceCollection()
        collection.add_evidence("manifest", "vendor", "apache", Confidence.HIGH)
        collection.add_evidence("manifest", "url", "http://jakarta.apache.org", Confidence.HIGH)
        collection.add_evidence("manifest", "title", "ignored", Confidence.LOW)
        text = add_evidence_without_duplicate_terms("apache", collection, Confidence.HIGH)
        self.assertEqual(text, "apache jakarta apache org")


class TestCpeAnalyzer(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        tmp = Path(self._tmp.name)
        self.cve_db = CveDB(tmp / "vuln_db.sqlite")
        populate(self.cve_db, SAMPLE_VULNERABILITIES)
        self.cpe_index = CpeIndex(tmp / "cpe_index.sqlite")
        self.cpe_index.rebuild(self.cve_db.get_vendor_product_list())
        self.analyzer = CpeAnalyzer(self.cve_db, self.cpe_index)

    def tearDown(self):
        self.cpe_index.close()
        self.cve_db.close()
        self._tmp.cleanup()

    def test_identifies_exact_version(self):
        dependency = dependency_with_evidence("openssl", "openssl", "1.0.1c")
        result = self.analyzer.determine_cpe(dependency)

        self.assertEqual(result.state, IdentificationState.IDENTIFIED)
        self.assertEqual(result.identifier.value, "cpe:/a:openssl:openssl:1.0.1c")
        self.assertEqual(result.identifier.confidence, Confidence.HIGH)
        self.assertEqual(result.transitions, (IdentificationState.CANDIDATES_FOUND,
                                              IdentificationState.VERSION_RESOLVED,
                                              IdentificationState.IDENTIFIED))
        self.assertIn("cpe%3A%2Fa%3Aopenssl%3Aopenssl%3A1.0.1c", result.identifier.url)
        self.assertEqual(len(dependency.identifiers), 1)

        used_values = {e.value for e in dependency.evidence_used}
        self.assertEqual(used_values, {"openssl", "1.0.1c"})

        self.assertEqual(attach_vulnerabilities(self.cve_db, dependency), 1)
        self.assertEqual([v.name for v in dependency.sorted_vulnerabilities()], ["CVE-2012-2333"])

    def test_identifies_at_highest_confidence(self):
        dependency = dependency_with_evidence("openssl", "openssl", "1.0.1c", confidence=Confidence.HIGHEST)
        result = self.analyzer.determine_identifiers(dependency, "openssl", "openssl", Confidence.HIGHEST)

        self.assertEqual(result.state, IdentificationState.IDENTIFIED)
        self.assertEqual(result.identifier.value, "cpe:/a:openssl:openssl:1.0.1c")
        self.assertEqual(result.identifier.confidence, Confidence.HIGHEST)
        self.assertEqual([i.confidence for i in dependency.identifiers], [Confidence.HIGHEST])

    def test_identification_is_idempotent(self):
        dependency = dependency_with_evidence("openssl", "openssl", "1.0.1c")
        self.analyzer.determine_cpe(dependency)
        self.analyzer.determine_cpe(dependency)
        self.assertEqual(len(dependency.identifiers), 1)

    def test_unknown_version_falls_back_to_product(self):
        dependency = dependency_with_evidence("apache", "tomcat", "9.9.9")
        identifier = self.analyzer.analyze(dependency)
        self.assertEqual(identifier.value, "cpe:/a:apache:tomcat")

    def test_missing_evidence(self):
        result = self.analyzer.determine_cpe(dependency_with_evidence(vendor="openssl"))
        self.assertEqual(result.state, IdentificationState.NO_EVIDENCE)
        self.assertEqual(result.transitions, (IdentificationState.NO_EVIDENCE,))
        self.assertIsNone(result.identifier)
        self.assertIsNone(self.analyzer.analyze(Dependency(file_name="empty")))

    def test_first_verified_candidate_wins(self):
        index = MagicMock()
        index.search.return_value = [IndexEntry("apache", "tomcat", 0.9), IndexEntry("apache", "struts", 0.8)]
        analyzer = CpeAnalyzer(self.cve_db, index)
        dependency = dependency_with_evidence("apache", "struts tomcat", "2.1.2")

        result = analyzer.determine_cpe(dependency)
        self.assertEqual(result.identifier.value, "cpe:/a:apache:tomcat")
        self.assertEqual(len(result.candidates), 2)

    def test_unverified_candidate_is_rejected(self):
        index = MagicMock()
        index.search.return_value = [IndexEntry("apache", "tomcat", 0.9)]
        analyzer = CpeAnalyzer(self.cve_db, index)

        result = analyzer.determine_cpe(dependency_with_evidence("apache", "struts", "2.1.2"))
        self.assertEqual(result.state, IdentificationState.NO_MATCH)
        self.assertIsNone(result.identifier)
        self.assertEqual(result.transitions, (IdentificationState.CANDIDATES_FOUND, IdentificationState.NO_MATCH))

    def test_no_candidates(self):
        index = MagicMock()
        index.search.return_value = []
        analyzer = CpeAnalyzer(self.cve_db, index)

        result = analyzer.determine_cpe(dependency_with_evidence("acme", "widget", "1.0"))
        self.assertEqual(result.state, IdentificationState.NO_MATCH)
        self.assertEqual(result.candidates, ())
        self.assertEqual(result.transitions, (IdentificationState.NO_MATCH,))

    def test_candidate_unknown_to_store_is_skipped(self):
        index = MagicMock()
        index.search.return_value = [IndexEntry("acme", "widget", 0.9)]
        analyzer = CpeAnalyzer(self.cve_db, index)

        result = analyzer.determine_cpe(dependency_with_evidence("acme", "widget", "1.0"))
        self.assertEqual(result.state, IdentificationState.NO_MATCH)

    def test_search_failure_is_contained(self):
        index = MagicMock()
        index.search.side_effect = SearchUnavailableError("index not built")
        analyzer = CpeAnalyzer(self.cve_db, index)
        with self.assertLogs("cpe_scanner.cpe_analyzer", level="WARNING"):
            self.assertIsNone(analyzer.analyze(dependency_with_evidence("openssl", "openssl", "1.0.1c")))

    def test_database_failure_is_contained(self):
        cve_db = MagicMock()
        cve_db.get_cpes.side_effect = DatabaseError("locked")
        analyzer = CpeAnalyzer(cve_db, self.cpe_index)
        with self.assertLogs("cpe_scanner.cpe_analyzer", level="WARNING"):
            self.assertIsNone(analyzer.analyze(dependency_with_evidence("openssl", "openssl", "1.0.1c")))


if __name__ == '__main__':
    unittest.main()
