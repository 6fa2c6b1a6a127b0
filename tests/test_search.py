import unittest

from cpe_scanner.search import build_search, cleanse_text, escape_query, parse_query


class TestBuildSearch(unittest.TestCase):
    def test_without_weightings(self):
        """Plain vendor/product text produces the product AND vendor query."""
        result = build_search("apache software foundation", "struts 2 core")
        self.assertEqual(result, " product:( struts 2 core )  AND  vendor:( apache software foundation ) ")

    def test_product_weighting(self):
        """A product weighting boosts the matching token and adds the weighting term itself."""
        result = build_search("apache software foundation", "struts 2 core", None, {"struts2"})
        self.assertEqual(result, " product:(  struts^5 struts2^5 2 core )  AND  vendor:( apache software foundation ) ")

    def test_vendor_weighting(self):
        result = build_search("apache software foundation", "struts 2 core", {"apache"}, None)
        self.assertEqual(result, " product:( struts 2 core )  AND  vendor:(  apache^5 software foundation ) ")

    def test_vendor_and_product_weighting(self):
        result = build_search("apache software foundation", "struts 2 core", {"apache"}, {"struts2"})
        self.assertEqual(result,
                         " product:(  struts^5 struts2^5 2 core )  AND  vendor:(  apache^5 software foundation ) ")

    def test_empty_text_builds_no_query(self):
        """Nothing left after cleansing means there is nothing to search for."""
        self.assertIsNone(build_search("", "struts"))
        self.assertIsNone(build_search("apache", "  "))
        self.assertIsNone(build_search("apache", None))
        self.assertIsNone(build_search("$$$", "struts"))

    def test_special_characters_are_cleansed_and_escaped(self):
        self.assertEqual(cleanse_text("foo(bar)!"), "foo bar  ")
        result = build_search("jquery-ui", "core")
        self.assertEqual(result, " product:( core )  AND  vendor:( jquery\\-ui ) ")

    def test_escape_query(self):
        self.assertEqual(escape_query("a+b:c"), "a\\+b\\:c")
        self.assertEqual(escape_query("plain"), "plain")


class TestParseQuery(unittest.TestCase):
    def test_parse_weighted_query(self):
        query = build_search("apache software foundation", "struts 2 core", {"apache"}, {"struts2"})
        parsed = parse_query(query)
        self.assertEqual(parsed["product"], [("struts", 5.0), ("struts2", 5.0), ("2", 1.0), ("core", 1.0)])
        self.assertEqual(parsed["vendor"], [("apache", 5.0), ("software", 1.0), ("foundation", 1.0)])

    def test_parse_unescapes_terms(self):
        parsed = parse_query(build_search("jquery-ui", "core"))
        self.assertEqual(parsed["vendor"], [("jquery-ui", 1.0)])

    def test_parse_empty(self):
        self.assertEqual(parse_query(None), {})
        self.assertEqual(parse_query(""), {})


if __name__ == '__main__':
    unittest.main()
