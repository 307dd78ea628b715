"""report_bot.py

Текст ежедневного отчёта и отправка в Telegram.

Этот модуль НЕ запускает polling. Бот создаётся в app.py и
регистрируется через set_bot(bot).
"""

from __future__ import annotations

import html
import logging
import re
from typing import Iterable, Optional

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError, TelegramForbiddenError
from aiogram.types import LinkPreviewOptions

from report_config import ReportError
from report_models import (
    SECTION_APARTMENTS,
    SECTION_DEBT,
    SECTION_EXPENSES,
    SECTION_PAYMENTS,
    DailyReport,
)

logger = logging.getLogger(__name__)

_BOT: Optional[Bot] = None

SECTION_TITLES = {
    SECTION_APARTMENTS: "Xonadonlar",
    SECTION_PAYMENTS: "To'lovlar",
    SECTION_EXPENSES: "Xarajatlar",
    SECTION_DEBT: "Qarzdorlik",
}

TAG_RE = re.compile(r"<[^>]*>")


class DeliveryError(ReportError):
    pass


def set_bot(bot: Optional[Bot]) -> None:
    global _BOT
    _BOT = bot


def get_bot() -> Bot:
    if _BOT is None:
        raise RuntimeError("Bot is not set. Call report_bot.set_bot(bot) from app.py")
    return _BOT


def format_amount(x: float) -> str:
    # 1 250 000 / 1 250.50
    s = f"{x:,.2f}".replace(",", " ")
    if s.endswith(".00"):
        s = s[:-3]
    return s


def _b(value: object) -> str:
    return f"<b>{html.escape(str(value))}</b>"


def _code(value: object) -> str:
    return f"<code>{html.escape(str(value))}</code>"


def format_report(report: DailyReport, debt_currency: str = "so'm", expense_currency: str = "$") -> str:
    debt_cur = html.escape(debt_currency)
    exp_cur = html.escape(expense_currency)
    statuses = report.statuses

    lines = [
        f"📊 <b>Kunlik hisobot ({html.escape(report.generated_at.strftime('%d.%m.%Y %H:%M'))})</b>",
        "",
        "🏢 <b>Xonadonlar holati:</b>",
        f"• Bo'sh: {_code(statuses.get('bosh', 0))} ta",
        f"• Band: {_code(statuses.get('band', 0))} ta",
        f"• Sotilgan: {_code(statuses.get('sotilgan', 0))} ta",
        f"• Muddatli to'lov: {_code(statuses.get('muddatli', 0))} ta",
        "",
        "💵 <b>Bugungi to'lovlar:</b>",
    ]
    if report.payments_count > 0:
        lines.append(f"• Soni: {_code(report.payments_count)} ta")
        lines.append(f"• Jami: {_code(format_amount(report.payments_sum))} {debt_cur}")
    else:
        lines.append("• Bugun to'lovlar mavjud emas")

    lines += [
        "",
        "💸 <b>Xarajatlar:</b>",
        f"• Umumiy xarajatlar: {_code(format_amount(report.expenses_total))} {exp_cur}",
        f"• To'langan: {_code(format_amount(report.expenses_paid))} {exp_cur}",
        f"• Qarz: {_code(format_amount(report.expenses_pending))} {exp_cur}",
        "",
        f"🏦 <b>Umumiy qarzdorlik:</b> {_b(format_amount(report.total_debt))} {debt_cur}",
    ]

    if report.is_degraded:
        failed = ", ".join(SECTION_TITLES.get(s, s) for s in report.failed_sections)
        lines += [
            "",
            f"⚠️ <b>Ma'lumot olinmadi:</b> {html.escape(failed)}",
            "<i>Ushbu bo'limlar nol qiymat bilan ko'rsatilgan.</i>",
        ]
    return "\n".join(lines)


def strip_tags(text: str) -> str:
    return html.unescape(TAG_RE.sub("", text))


async def send_report(chat_id: int, text: str) -> None:
    bot = get_bot()
    try:
        await bot.send_message(
            chat_id=chat_id,
            text=text,
            parse_mode="HTML",
            link_preview_options=LinkPreviewOptions(is_disabled=True),
        )
    except TelegramForbiddenError as exc:
        raise DeliveryError(f"Bot is blocked or not a member of chat {chat_id}: {exc}") from exc
    except TelegramAPIError as exc:
        raise DeliveryError(f"Telegram rejected message for chat {chat_id}: {exc}") from exc
    except Exception as exc:
        raise DeliveryError(f"Failed to send message to chat {chat_id}: {exc}") from exc


async def deliver_report(text: str, chat_ids: Iterable[int]) -> int:
    """Sends the report to every chat once; failures are logged, not retried."""
    delivered = 0
    for chat_id in chat_ids:
        try:
            await send_report(int(chat_id), text)
        except DeliveryError as exc:
            logger.error("Report delivery failed: %s", exc)
            continue
        delivered += 1
        logger.info("Report sent to chat %s", chat_id)
    return delivered
