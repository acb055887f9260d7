import unittest

from tally.entry_filters import (
    matches_labels,
    normalize_label_ids,
    normalize_label_mode,
    normalize_payment_method_filter,
    validate_optional_category_id,
    validate_payment_selection,
)
from tally.report_models import (
    CardNotAllowed,
    CardSelectorConflict,
    InvalidCardID,
    InvalidCategoryID,
    InvalidLabelID,
    InvalidLabelMode,
    InvalidPaymentFilter,
)


class LabelFilterTests(unittest.TestCase):
    def test_label_ids_are_deduplicated_and_sorted(self) -> None:
        self.assertEqual(normalize_label_ids([9, 3, 9]), (3, 9))
        self.assertEqual(normalize_label_ids(None), ())

    def test_non_positive_label_id_raises(self) -> None:
        with self.assertRaises(InvalidLabelID):
            normalize_label_ids([4, 0])

    def test_label_mode_defaults_to_any(self) -> None:
        self.assertEqual(normalize_label_mode(""), "ANY")
        self.assertEqual(normalize_label_mode(" all "), "ALL")
        with self.assertRaises(InvalidLabelMode):
            normalize_label_mode("some")

    def test_matches_labels_modes(self) -> None:
        self.assertTrue(matches_labels((1, 2), (2, 5), "ANY"))
        self.assertFalse(matches_labels((1,), (2, 5), "ANY"))
        self.assertTrue(matches_labels((2, 5, 7), (2, 5), "ALL"))
        self.assertFalse(matches_labels((2,), (2, 5), "ALL"))
        self.assertTrue(matches_labels((1,), (2, 5), "NONE"))
        self.assertFalse(matches_labels((5,), (2, 5), "NONE"))
        self.assertTrue(matches_labels((), (), "ALL"))


class PaymentFilterTests(unittest.TestCase):
    def test_payment_method_is_normalized(self) -> None:
        self.assertEqual(normalize_payment_method_filter(" CASH "), "cash")
        self.assertEqual(normalize_payment_method_filter(None), "")
        with self.assertRaises(InvalidPaymentFilter):
            normalize_payment_method_filter("paypal")

    def test_only_one_card_selector_allowed(self) -> None:
        with self.assertRaises(CardSelectorConflict):
            validate_payment_selection("card", 3, "Travel Visa", "")

    def test_card_id_must_be_positive(self) -> None:
        with self.assertRaises(InvalidCardID):
            validate_payment_selection("card", 0, "", "")

    def test_cash_rejects_card_selector(self) -> None:
        with self.assertRaises(CardNotAllowed):
            validate_payment_selection("cash", None, "", "visa")

    def test_card_selector_without_method_is_allowed(self) -> None:
        validate_payment_selection("", 3, "", "")


class CategoryFilterTests(unittest.TestCase):
    def test_category_id_must_be_positive(self) -> None:
        validate_optional_category_id(None)
        validate_optional_category_id(4)
        with self.assertRaises(InvalidCategoryID):
            validate_optional_category_id(-1)


if __name__ == "__main__":
    unittest.main()
