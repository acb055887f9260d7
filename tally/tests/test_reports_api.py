import os
import tempfile
import unittest

_DB_DIR = tempfile.TemporaryDirectory()
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR.name, 'reports.db')}"
os.environ["FX_PROVIDER"] = "static"
os.environ["LOG_LEVEL"] = "WARNING"

from fastapi.testclient import TestClient  # noqa: E402

from tally import main  # noqa: E402


def tearDownModule() -> None:
    main.engine.dispose()
    _DB_DIR.cleanup()


class ReportsApiTests(unittest.TestCase):
    def setUp(self) -> None:
        main.metadata.drop_all(main.engine)
        main.metadata.create_all(main.engine)
        with main.engine.begin() as conn:
            conn.execute(
                main.categories.insert(),
                [{"id": 1, "name": "Salary"}, {"id": 2, "name": "Groceries"}],
            )
            conn.execute(
                main.cards.insert(),
                [
                    {"id": 1, "nickname": "Travel Visa", "card_type": "credit"},
                    {"id": 2, "nickname": "Daily Debit", "card_type": "debit"},
                ],
            )
            conn.execute(
                main.entries.insert(),
                [
                    _entry_row(1, "income", 10000, "USD", "2026-02-10T09:00:00Z", 1),
                    _entry_row(2, "expense", 3000, "USD", "2026-02-11T10:00:00Z", None, "cash"),
                    _entry_row(3, "expense", 2000, "EUR", "2026-02-11T11:00:00Z", 2, "card", 1),
                    _entry_row(4, "income", 5000, "EUR", "2026-02-12T11:00:00Z", None),
                    _entry_row(5, "expense", 1000, "USD", "2026-02-10T12:00:00Z", 2, "card", 2),
                    _entry_row(6, "expense", 999, "USD", "2026-03-01T00:00:00Z", 2),
                ],
            )
            conn.execute(
                main.entry_labels.insert(),
                [
                    {"entry_id": 3, "label_id": 7},
                    {"entry_id": 3, "label_id": 8},
                    {"entry_id": 5, "label_id": 7},
                ],
            )
            conn.execute(
                main.monthly_caps.insert(),
                [{"id": 1, "month_key": "2026-02", "amount_minor": 3500, "currency_code": "USD"}],
            )
            conn.execute(
                main.monthly_cap_changes.insert(),
                [
                    {
                        "id": 2,
                        "month_key": "2026-02",
                        "old_amount_minor": 3000,
                        "new_amount_minor": 3500,
                        "currency_code": "USD",
                        "changed_at_utc": "2026-02-11T00:00:00Z",
                    },
                    {
                        "id": 1,
                        "month_key": "2026-02",
                        "old_amount_minor": None,
                        "new_amount_minor": 3000,
                        "currency_code": "USD",
                        "changed_at_utc": "2026-02-01T00:00:00Z",
                    },
                ],
            )
        self.client = TestClient(main.app)

    def test_health(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_monthly_report(self) -> None:
        response = self.client.get(
            "/reports", params={"scope": "monthly", "month": "2026-02", "group_by": "day"}
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        report = payload["report"]
        self.assertEqual(
            report["period"],
            {
                "scope": "monthly",
                "month_key": "2026-02",
                "from_utc": "2026-02-01T00:00:00Z",
                "to_utc": "2026-02-28T23:59:59.999999999Z",
            },
        )
        self.assertEqual(report["grouping"], "day")
        self.assertEqual(
            report["spending"]["by_currency"],
            [
                {"currency_code": "EUR", "total_minor": 2000},
                {"currency_code": "USD", "total_minor": 4000},
            ],
        )
        self.assertEqual(
            report["net"]["by_currency"],
            [
                {"currency_code": "EUR", "total_minor": 3000},
                {"currency_code": "USD", "total_minor": 6000},
            ],
        )
        self.assertEqual(
            [(row["category_key"], row["category_label"]) for row in report["spending"]["categories"]],
            [("orphan", "Orphan"), ("category:2", "Groceries"), ("category:2", "Groceries")],
        )
        self.assertEqual(report["cap_status"][0]["spend_total_minor"], 4000)
        self.assertEqual(report["cap_status"][0]["overspend_minor"], 500)
        self.assertTrue(report["cap_status"][0]["is_exceeded"])
        self.assertEqual([change["id"] for change in report["cap_changes"]], [1, 2])
        self.assertIsNone(report["converted"])

        self.assertEqual(len(payload["warnings"]), 1)
        details = payload["warnings"][0]["details"]
        self.assertEqual(payload["warnings"][0]["code"], "ORPHAN_SPENDING_THRESHOLD_EXCEEDED")
        self.assertEqual(details["triggered_by"], ["MONTH_SPEND", "MONTH_CAP"])
        self.assertEqual(details["cap_amount_minor"], 3500)

    def test_converted_summary(self) -> None:
        response = self.client.get(
            "/reports", params={"scope": "monthly", "month": "2026-02", "convert_to": "eur"}
        )

        self.assertEqual(response.status_code, 200)
        converted = response.json()["report"]["converted"]
        self.assertEqual(converted["target_currency"], "EUR")
        # 100.00 USD at the static 0.92 rate plus 50.00 EUR.
        self.assertEqual(converted["earnings_minor"], 9200 + 5000)

    def test_label_filter_all(self) -> None:
        response = self.client.get(
            "/reports",
            params=[
                ("scope", "monthly"),
                ("month", "2026-02"),
                ("label_id", "7"),
                ("label_id", "8"),
                ("label_mode", "all"),
            ],
        )

        self.assertEqual(response.status_code, 200)
        report = response.json()["report"]
        self.assertEqual(report["earnings"]["by_currency"], [])
        self.assertEqual(
            report["spending"]["by_currency"], [{"currency_code": "EUR", "total_minor": 2000}]
        )

    def test_label_filter_none(self) -> None:
        response = self.client.get(
            "/reports",
            params={"scope": "monthly", "month": "2026-02", "label_id": 7, "label_mode": "none"},
        )

        self.assertEqual(response.status_code, 200)
        report = response.json()["report"]
        self.assertEqual(
            report["spending"]["by_currency"], [{"currency_code": "USD", "total_minor": 3000}]
        )

    def test_credit_payment_filter(self) -> None:
        response = self.client.get(
            "/reports",
            params={"scope": "monthly", "month": "2026-02", "payment_method": "credit"},
        )

        self.assertEqual(response.status_code, 200)
        report = response.json()["report"]
        self.assertEqual(
            report["spending"]["by_currency"], [{"currency_code": "EUR", "total_minor": 2000}]
        )
        self.assertEqual(report["earnings"]["by_currency"], [])

    def test_card_nickname_filter(self) -> None:
        response = self.client.get(
            "/reports",
            params={"scope": "monthly", "month": "2026-02", "payment_card_nickname": "daily debit"},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json()["report"]["spending"]["by_currency"],
            [{"currency_code": "USD", "total_minor": 1000}],
        )

    def test_range_report_by_category(self) -> None:
        response = self.client.get(
            "/reports",
            params={
                "scope": "range",
                "date_from": "2026-02-01",
                "date_to": "2026-03-01",
                "category_id": 2,
            },
        )

        self.assertEqual(response.status_code, 200)
        groups = response.json()["report"]["spending"]["groups"]
        self.assertEqual(
            groups,
            [
                {"period_key": "2026-02", "currency_code": "EUR", "total_minor": 2000},
                {"period_key": "2026-02", "currency_code": "USD", "total_minor": 1000},
                {"period_key": "2026-03", "currency_code": "USD", "total_minor": 999},
            ],
        )

    def test_stored_settings_change_thresholds(self) -> None:
        with main.engine.begin() as conn:
            conn.execute(
                main.settings.insert(),
                [
                    {
                        "default_currency_code": "USD",
                        "orphan_count_threshold": 1,
                        "orphan_spending_threshold_bps": 9000,
                    }
                ],
            )

        response = self.client.get("/reports", params={"scope": "monthly", "month": "2026-02"})

        self.assertEqual(response.status_code, 200)
        warnings = response.json()["warnings"]
        self.assertEqual([warning["code"] for warning in warnings], ["ORPHAN_COUNT_THRESHOLD_EXCEEDED"])
        self.assertEqual(warnings[0]["details"]["orphan_count"], 2)

    def test_rows_outside_period_with_bad_dates_are_not_read(self) -> None:
        with main.engine.begin() as conn:
            conn.execute(
                main.entries.insert(),
                [
                    _entry_row(20, "expense", 700, "USD", "2019-01-05", None),
                    _entry_row(21, "expense", 800, "USD", "not-a-date", None),
                ],
            )

        response = self.client.get("/reports", params={"scope": "monthly", "month": "2026-02"})

        self.assertEqual(response.status_code, 200)
        report = response.json()["report"]
        self.assertEqual(
            report["spending"]["by_currency"],
            [
                {"currency_code": "EUR", "total_minor": 2000},
                {"currency_code": "USD", "total_minor": 4000},
            ],
        )
        self.assertEqual(report["cap_status"][0]["spend_total_minor"], 4000)

    def test_bad_date_inside_period_still_fails(self) -> None:
        with main.engine.begin() as conn:
            conn.execute(
                main.entries.insert(),
                [_entry_row(22, "expense", 700, "USD", "2026-02-14 noon", None)],
            )

        response = self.client.get("/reports", params={"scope": "monthly", "month": "2026-02"})

        self.assertEqual(response.status_code, 400)

    def test_offset_timestamps_near_month_edges_use_utc(self) -> None:
        with main.engine.begin() as conn:
            conn.execute(
                main.entries.insert(),
                [
                    # 2026-02-28T23:00:00Z
                    _entry_row(23, "expense", 50, "USD", "2026-03-01T01:00:00+02:00", 2),
                    # 2026-01-31T23:00:00Z
                    _entry_row(24, "expense", 60, "USD", "2026-02-01T01:00:00+02:00", 2),
                ],
            )

        response = self.client.get("/reports", params={"scope": "monthly", "month": "2026-02"})

        self.assertEqual(response.status_code, 200)
        report = response.json()["report"]
        self.assertIn(
            {"currency_code": "USD", "total_minor": 4050}, report["spending"]["by_currency"]
        )
        self.assertEqual(report["cap_status"][0]["spend_total_minor"], 4050)

    def test_sql_category_reader(self) -> None:
        reader = main.SqlCategoryReader(main.engine)

        self.assertEqual([category.name for category in reader.list()], ["Salary", "Groceries"])
        self.assertEqual(
            [category.name for category in reader.list_by_ids([2, 9])], ["Groceries"]
        )
        self.assertEqual(reader.list_by_ids([]), [])

    def test_invalid_scope_returns_400(self) -> None:
        response = self.client.get("/reports", params={"scope": "yearly", "month": "2026-02"})

        self.assertEqual(response.status_code, 400)
        self.assertIn("scope", response.json()["detail"].lower())

    def test_cash_with_card_selector_returns_400(self) -> None:
        response = self.client.get(
            "/reports",
            params={
                "scope": "monthly",
                "month": "2026-02",
                "payment_method": "cash",
                "payment_card_id": 1,
            },
        )

        self.assertEqual(response.status_code, 400)

    def test_unsupported_conversion_currency_returns_503(self) -> None:
        response = self.client.get(
            "/reports", params={"scope": "monthly", "month": "2026-02", "convert_to": "XYZ"}
        )

        self.assertEqual(response.status_code, 503)


def _entry_row(entry_id, entry_type, amount, currency, when, category_id, method=None, card_id=None):
    return {
        "id": entry_id,
        "type": entry_type,
        "amount_minor": amount,
        "currency_code": currency,
        "transaction_date_utc": when,
        "category_id": category_id,
        "note": "",
        "payment_method": method,
        "payment_card_id": card_id,
    }


if __name__ == "__main__":
    unittest.main()
