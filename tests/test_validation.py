"""Tests for goal target inference and value plausibility."""

import unittest

from autoscrape.validation import infer_targets, score_value, validate_extraction


class TestInferTargets(unittest.TestCase):
    """Verify goals map onto named targets."""

    def test_single_keyword(self):
        """A title goal asks for one title."""
        self.assertEqual([t.name for t in infer_targets("extract the article title")], ["title"])

    def test_multiple_keywords_keep_table_order(self):
        """Several keywords produce several targets."""
        names = [t.name for t in infer_targets("get price and product name")]
        self.assertEqual(names, ["price", "name"])

    def test_unknown_goal_falls_back_to_content(self):
        """Goals with no known keyword ask for generic content."""
        [target] = infer_targets("tell me what this page is about")
        self.assertEqual(target.name, "content")
        self.assertIn("tell me what this page is about", target.expected)

    def test_current_values_are_attached(self):
        """Already-extracted values are reported with confidence."""
        [target] = infer_targets("title", {"title": "Hello world"})
        self.assertEqual(target.current_value, "Hello world")
        self.assertEqual(target.confidence, 0.9)


class TestScoreValue(unittest.TestCase):
    """Verify per-field plausibility scoring."""

    def test_plausible_title(self):
        """A headline-length title scores near 1."""
        result = score_value("  Researchers Map   Deep Ocean Currents ", "title")
        self.assertTrue(result.is_valid)
        self.assertEqual(result.cleaned, "Researchers Map Deep Ocean Currents")
        self.assertAlmostEqual(result.confidence, 1.0)

    def test_empty_value_is_invalid(self):
        """Blank values never validate."""
        for value in (None, "", "   "):
            self.assertFalse(score_value(value, "title").is_valid)

    def test_price_is_cleaned(self):
        """Prices are reduced to the amount."""
        result = score_value("Now only $29.99 while stocks last", "price")
        self.assertTrue(result.is_valid)
        self.assertEqual(result.cleaned, "$29.99")
        self.assertAlmostEqual(result.confidence, 0.8)

    def test_price_without_amount_is_invalid(self):
        """Text with no amount is not a price."""
        result = score_value("Contact us for pricing", "price")
        self.assertFalse(result.is_valid)
        self.assertEqual(result.confidence, 0.1)

    def test_unknown_target_is_neutral(self):
        """Targets without a pattern get a neutral score."""
        result = score_value("Navy", "colour")
        self.assertTrue(result.is_valid)
        self.assertEqual(result.confidence, 0.5)


class TestValidateExtraction(unittest.TestCase):
    """Verify whole-goal validation reports."""

    def test_complete_extraction_is_valid(self):
        """All targets present and plausible."""
        report = validate_extraction("extract title", {"title": "Researchers Map Deep Ocean Currents"})
        self.assertTrue(report.is_valid)
        self.assertEqual(report.missing, [])
        self.assertGreater(report.confidence, 0.9)

    def test_missing_target_is_reported(self):
        """A missing field invalidates the report and is suggested."""
        report = validate_extraction("extract title and price", {"title": "Researchers Map Deep Ocean Currents"})
        self.assertFalse(report.is_valid)
        self.assertEqual(report.missing, ["price"])
        self.assertTrue(any("price" in s for s in report.suggestions))

    def test_implausible_value_is_reported(self):
        """A present but implausible value lowers confidence."""
        report = validate_extraction("price", {"price": "call us"})
        self.assertFalse(report.is_valid)
        self.assertFalse(report.fields["price"].is_valid)
        self.assertEqual(report.confidence, 0.0)


if __name__ == "__main__":
    unittest.main()
