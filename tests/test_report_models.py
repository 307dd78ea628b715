import datetime as dt
import unittest

import report_models as m


class StatusHistogramTests(unittest.TestCase):
    def test_counts_only_recognized_statuses(self):
        apartments = [
            {"status": "bosh"},
            {"status": "band"},
            {"status": "sold_out"},
            {"status": None},
            {},
            "not-a-record",
            {"status": "muddatli"},
            {"status": "bosh"},
        ]
        counts = m.count_statuses(apartments)
        self.assertEqual(counts, {"bosh": 2, "band": 1, "sotilgan": 0, "muddatli": 1})
        recognized = [a for a in apartments if isinstance(a, dict) and a.get("status") in m.APARTMENT_STATUSES]
        self.assertEqual(sum(counts.values()), len(recognized))

    def test_empty_input_gives_all_zero_buckets(self):
        self.assertEqual(m.count_statuses([]), {s: 0 for s in m.APARTMENT_STATUSES})
        self.assertEqual(m.count_statuses(None), {s: 0 for s in m.APARTMENT_STATUSES})


class TodaysPaymentsTests(unittest.TestCase):
    def test_prefix_match_across_day_boundary(self):
        payments = [
            {"amount": 1, "created_at": "2024-01-01T00:00:00"},
            {"amount": 2, "created_at": "2024-01-01T23:59:59"},
            {"amount": 3, "created_at": "2023-12-31T23:59:59"},
            {"amount": 4, "created_at": "2024-01-02T00:00:00"},
            {"amount": 5, "date_created": "2024-01-01"},
        ]
        todays = m.payments_for_day(payments, "2024-01-01")
        self.assertEqual([p["amount"] for p in todays], [1, 2, 5])

    def test_missing_or_malformed_dates_are_excluded(self):
        payments = [
            {"amount": 1},
            {"amount": 2, "created_at": ""},
            {"amount": 3, "created_at": None},
            {"amount": 4, "created_at": 20240101},
            {"amount": 5, "created_at": "01.01.2024"},
            {"amount": 6, "created_at": "", "date_created": "2024-01-01 10:00"},
        ]
        todays = m.payments_for_day(payments, "2024-01-01")
        self.assertEqual([p["amount"] for p in todays], [6])


class DebtAndExpensesTests(unittest.TestCase):
    def test_to_number_coerces_non_numeric_to_zero(self):
        self.assertEqual(m.to_number("50"), 50.0)
        self.assertEqual(m.to_number("12.5"), 12.5)
        self.assertEqual(m.to_number("bad"), 0.0)
        self.assertEqual(m.to_number(None), 0.0)
        self.assertEqual(m.to_number("nan"), 0.0)
        self.assertEqual(m.to_number("inf"), 0.0)

    def test_total_client_debt_skips_other_user_types(self):
        users = [
            {"balance": "50", "user_type": "mijoz"},
            {"balance": 25},
            {"balance": 1000, "user_type": "admin"},
            {"balance": "bad"},
        ]
        self.assertEqual(m.total_client_debt(users, "mijoz"), 75.0)

    def test_expense_totals_default_to_zero(self):
        self.assertEqual(m.expense_totals(None), (0.0, 0.0, 0.0))
        self.assertEqual(m.expense_totals({}), (0.0, 0.0, 0.0))
        self.assertEqual(m.expense_totals({"total_amount": 10}), (10.0, 0.0, 0.0))

    def test_expense_totals_coerce_upstream_strings(self):
        stats = {"total_amount": "500", "paid_amount": "bad", "pending_amount": "200.5"}
        self.assertEqual(m.expense_totals(stats), (500.0, 0.0, 200.5))


class BuildReportTests(unittest.TestCase):
    def test_end_to_end_aggregate(self):
        report = m.build_report(
            day="2024-01-01",
            generated_at=dt.datetime(2024, 1, 1, 12, 0),
            apartments=[
                {"status": "bosh"},
                {"status": "band"},
                {"status": "sotilgan"},
                {"status": "muddatli"},
                {"status": "bosh"},
            ],
            payments=[{"amount": 100, "created_at": "2024-01-01T10:00:00"}],
            expense_stats={"total_amount": 500, "paid_amount": 300, "pending_amount": 200},
            users=[{"balance": "50"}, {"balance": "bad"}],
        )
        self.assertEqual(report.statuses, {"bosh": 2, "band": 1, "sotilgan": 1, "muddatli": 1})
        self.assertEqual(report.payments_count, 1)
        self.assertEqual(report.payments_sum, 100)
        self.assertEqual(
            (report.expenses_total, report.expenses_paid, report.expenses_pending),
            (500, 300, 200),
        )
        self.assertEqual(report.total_debt, 50)
        self.assertFalse(report.is_degraded)

    def test_failed_sections_are_ordered_and_defaulted(self):
        report = m.build_report(
            day="2024-01-01",
            generated_at=dt.datetime(2024, 1, 1, 12, 0),
            apartments=None,
            payments=None,
            failed_sections=["debt", "apartments"],
        )
        self.assertEqual(report.failed_sections, ("apartments", "debt"))
        self.assertTrue(report.is_degraded)
        self.assertEqual(report.payments_count, 0)
        self.assertEqual(report.total_debt, 0)

        data = report.as_dict()
        self.assertEqual(data["generated_at"], "2024-01-01T12:00:00")
        self.assertEqual(data["failed_sections"], ["apartments", "debt"])


if __name__ == "__main__":
    unittest.main()
