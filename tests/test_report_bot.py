import asyncio
import datetime as dt
import unittest
from unittest.mock import AsyncMock, Mock

from aiogram.exceptions import TelegramBadRequest

import report_bot
import report_models as m


def make_report(**overrides) -> m.DailyReport:
    data = dict(
        day="2024-01-01",
        generated_at=dt.datetime(2024, 1, 1, 12, 0),
        statuses={"bosh": 2, "band": 1, "sotilgan": 1, "muddatli": 1},
        payments_count=1,
        payments_sum=1250000.0,
        expenses_total=500.0,
        expenses_paid=300.0,
        expenses_pending=200.5,
        total_debt=50.0,
    )
    data.update(overrides)
    return m.DailyReport(**data)


class FormatReportTests(unittest.TestCase):
    def test_full_report_text(self):
        text = report_bot.format_report(make_report())
        self.assertIn("<b>Kunlik hisobot (01.01.2024 12:00)</b>", text)
        self.assertIn("• Bo'sh: <code>2</code> ta", text)
        self.assertIn("• Muddatli to'lov: <code>1</code> ta", text)
        self.assertIn("• Soni: <code>1</code> ta", text)
        self.assertIn("• Jami: <code>1 250 000</code> so&#x27;m", text)
        self.assertIn("• Qarz: <code>200.50</code> $", text)
        self.assertIn("<b>Umumiy qarzdorlik:</b> <b>50</b>", text)
        self.assertNotIn("Ma'lumot olinmadi", text)

    def test_no_payments_today_message(self):
        text = report_bot.format_report(make_report(payments_count=0, payments_sum=0.0))
        self.assertIn("Bugun to'lovlar mavjud emas", text)
        self.assertNotIn("• Soni:", text)

    def test_degraded_report_names_failed_sections(self):
        text = report_bot.format_report(make_report(failed_sections=("payments", "debt")))
        self.assertIn("Ma'lumot olinmadi:</b> To&#x27;lovlar, Qarzdorlik", text)

    def test_markup_in_values_is_escaped(self):
        text = report_bot.format_report(make_report(), debt_currency="<i>UZS</i>", expense_currency="&")
        self.assertIn("&lt;i&gt;UZS&lt;/i&gt;", text)
        self.assertIn("<code>500</code> &amp;", text)
        self.assertNotIn("<i>UZS</i>", text)

    def test_format_amount(self):
        self.assertEqual(report_bot.format_amount(0), "0")
        self.assertEqual(report_bot.format_amount(1234567), "1 234 567")
        self.assertEqual(report_bot.format_amount(1234.5), "1 234.50")

    def test_strip_tags_for_console(self):
        plain = report_bot.strip_tags("<b>Qarz:</b> <code>1 &amp; 2</code>")
        self.assertEqual(plain, "Qarz: 1 & 2")


class DeliveryTests(unittest.TestCase):
    def tearDown(self):
        report_bot.set_bot(None)

    def test_sends_html_without_link_preview(self):
        fake_bot = Mock()
        fake_bot.send_message = AsyncMock()
        report_bot.set_bot(fake_bot)

        delivered = asyncio.run(report_bot.deliver_report("<b>hi</b>", [101, 202]))

        self.assertEqual(delivered, 2)
        self.assertEqual(fake_bot.send_message.await_count, 2)
        kwargs = fake_bot.send_message.await_args.kwargs
        self.assertEqual(kwargs["chat_id"], 202)
        self.assertEqual(kwargs["parse_mode"], "HTML")
        self.assertTrue(kwargs["link_preview_options"].is_disabled)

    def test_failed_chat_does_not_stop_others_and_is_not_retried(self):
        fake_bot = Mock()
        fake_bot.send_message = AsyncMock(
            side_effect=[TelegramBadRequest(method=Mock(), message="chat not found"), None]
        )
        report_bot.set_bot(fake_bot)

        with self.assertLogs("report_bot", level="ERROR") as logs:
            delivered = asyncio.run(report_bot.deliver_report("text", [1, 2]))

        self.assertEqual(delivered, 1)
        self.assertEqual(fake_bot.send_message.await_count, 2)
        self.assertIn("chat not found", "\n".join(logs.output))

    def test_send_report_wraps_network_errors(self):
        fake_bot = Mock()
        fake_bot.send_message = AsyncMock(side_effect=OSError("connection reset"))
        report_bot.set_bot(fake_bot)

        with self.assertRaises(report_bot.DeliveryError):
            asyncio.run(report_bot.send_report(1, "text"))

    def test_get_bot_requires_registration(self):
        report_bot.set_bot(None)
        with self.assertRaises(RuntimeError):
            report_bot.get_bot()


if __name__ == "__main__":
    unittest.main()
