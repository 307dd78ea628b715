"""report_models.py

Сводка ежедневного отчёта: чистые функции над ответами API.

- Квартиры: гистограмма по статусам bosh / band / sotilgan / muddatli.
- Платежи: только сегодняшние, сравнение даты как строкового префикса.
- Расходы: итоги приходят из API уже посчитанными и передаются как есть.
- Долг: сумма balance по клиентам, нечисловые значения считаются нулём.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

# empty, reserved, sold, installment
APARTMENT_STATUSES: Tuple[str, ...] = ("bosh", "band", "sotilgan", "muddatli")

SECTION_APARTMENTS = "apartments"
SECTION_PAYMENTS = "payments"
SECTION_EXPENSES = "expenses"
SECTION_DEBT = "debt"
SECTIONS: Tuple[str, ...] = (SECTION_APARTMENTS, SECTION_PAYMENTS, SECTION_EXPENSES, SECTION_DEBT)

PAYMENT_DATE_FIELDS: Tuple[str, ...] = ("created_at", "date_created")


@dataclasses.dataclass(frozen=True)
class DailyReport:
    day: str
    generated_at: dt.datetime
    statuses: Dict[str, int]
    payments_count: int
    payments_sum: float
    expenses_total: float
    expenses_paid: float
    expenses_pending: float
    total_debt: float
    failed_sections: Tuple[str, ...] = ()

    @property
    def is_degraded(self) -> bool:
        return bool(self.failed_sections)

    def as_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data["generated_at"] = self.generated_at.isoformat()
        data["failed_sections"] = list(self.failed_sections)
        return data


def to_number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return number


def count_statuses(apartments: Iterable[Any]) -> Dict[str, int]:
    counts = {status: 0 for status in APARTMENT_STATUSES}
    for apt in apartments or ():
        if not isinstance(apt, Mapping):
            continue
        status = apt.get("status")
        if isinstance(status, str) and status in counts:
            counts[status] += 1
    return counts


def payment_date(payment: Mapping[str, Any]) -> str:
    for field in PAYMENT_DATE_FIELDS:
        value = payment.get(field)
        if isinstance(value, str) and value:
            return value
    return ""


def payments_for_day(payments: Iterable[Any], day: str) -> List[Mapping[str, Any]]:
    """Payments whose date string starts with `day` (YYYY-MM-DD).

    Deliberately a prefix match, not a parsed date range: a timestamp stored
    in another zone or format is not converted.
    """
    if not day:
        return []
    result = []
    for p in payments or ():
        if not isinstance(p, Mapping):
            continue
        date_value = payment_date(p)
        if date_value and date_value.startswith(day):
            result.append(p)
    return result


def total_client_debt(users: Iterable[Any], client_type: Optional[str] = None) -> float:
    total = 0.0
    for user in users or ():
        if not isinstance(user, Mapping):
            continue
        user_type = user.get("user_type")
        if client_type and user_type is not None and user_type != client_type:
            continue
        total += to_number(user.get("balance"))
    return total


def expense_totals(stats: Optional[Mapping[str, Any]]) -> Tuple[float, float, float]:
    """Upstream totals as numbers; strings are coerced, non-numeric values become 0."""
    if not stats:
        return 0.0, 0.0, 0.0
    return (
        to_number(stats.get("total_amount")),
        to_number(stats.get("paid_amount")),
        to_number(stats.get("pending_amount")),
    )


def build_report(
    *,
    day: str,
    generated_at: dt.datetime,
    apartments: Optional[Sequence[Any]] = None,
    payments: Optional[Sequence[Any]] = None,
    expense_stats: Optional[Mapping[str, Any]] = None,
    users: Optional[Sequence[Any]] = None,
    client_type: Optional[str] = None,
    failed_sections: Iterable[str] = (),
) -> DailyReport:
    todays = payments_for_day(payments or [], day)
    total, paid, pending = expense_totals(expense_stats)
    failed = set(failed_sections)
    return DailyReport(
        day=day,
        generated_at=generated_at,
        statuses=count_statuses(apartments or []),
        payments_count=len(todays),
        payments_sum=sum(to_number(p.get("amount")) for p in todays),
        expenses_total=total,
        expenses_paid=paid,
        expenses_pending=pending,
        total_debt=total_client_debt(users or [], client_type),
        failed_sections=tuple(s for s in SECTIONS if s in failed),
    )
