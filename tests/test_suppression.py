import unittest

from cpe_scanner.models import Dependency, Identifier, Vulnerability
from cpe_scanner.suppression import SuppressionRules, apply_suppressions

from tests.support import make_settings


class TestSuppressionRules(unittest.TestCase):
    def setUp(self):
        self.rules = SuppressionRules(cpes=["cpe:/a:apache:struts"], cves={"CVE-2012-2110"})

    def test_cpe_rule_covers_more_specific_identifiers(self):
        self.assertTrue(self.rules.suppresses_identifier(Identifier("cpe", "cpe:/a:apache:struts:2.1.2")))
        self.assertTrue(self.rules.suppresses_identifier(Identifier("cpe", "cpe:/a:Apache:Struts")))
        self.assertFalse(self.rules.suppresses_identifier(Identifier("cpe", "cpe:/a:apache:struts2")))
        self.assertFalse(self.rules.suppresses_identifier(Identifier("maven", "cpe:/a:apache:struts")))

    def test_vulnerability_rules(self):
        self.assertTrue(self.rules.suppresses_vulnerability(Vulnerability("cve-2012-2110")))
        self.assertTrue(self.rules.suppresses_vulnerability(
            Vulnerability("CVE-2012-4431", matched_cpe="cpe:/a:apache:struts:2.1.2")))
        self.assertFalse(self.rules.suppresses_vulnerability(
            Vulnerability("CVE-2012-2333", matched_cpe="cpe:/a:openssl:openssl:1.0.1c")))

    def test_apply_moves_items_to_suppressed_sets(self):
        struts = Dependency(file_name="struts2-core-2.1.2.jar")
        struts.add_identifier(Identifier("cpe", "cpe:/a:apache:struts:2.1.2"))
        struts.add_vulnerability(Vulnerability("CVE-2012-4431", matched_cpe="cpe:/a:apache:struts:2.1.2"))
        openssl = Dependency(file_name="openssl-1.0.1c.tar.gz")
        openssl.add_vulnerability(Vulnerability("CVE-2012-2333"))
        openssl.add_vulnerability(Vulnerability("CVE-2012-2110"))

        with self.assertLogs("cpe_scanner.suppression", level="INFO"):
            self.assertEqual(apply_suppressions(self.rules, [struts, openssl]), 3)

        self.assertEqual(struts.identifiers, set())
        self.assertEqual(struts.vulnerabilities, set())
        self.assertEqual([v.name for v in struts.suppressed_vulnerabilities], ["CVE-2012-4431"])
        self.assertEqual([v.name for v in openssl.sorted_vulnerabilities()], ["CVE-2012-2333"])
        self.assertEqual([v.name for v in openssl.suppressed_vulnerabilities], ["CVE-2012-2110"])

    def test_from_settings(self):
        settings = make_settings("/tmp/unused", suppress_cpes=["cpe:/a:openssl:openssl"],
                                 suppress_cves=["cve-2014-0160"])
        rules = SuppressionRules.from_settings(settings)
        self.assertEqual(rules.cves, {"CVE-2014-0160"})
        self.assertTrue(rules.suppresses_identifier(Identifier("cpe", "cpe:/a:openssl:openssl:1.0.1f")))


if __name__ == '__main__':
    unittest.main()
