"""
Настройки приложения.

Все значения читаются из переменных окружения; значения по умолчанию
подходят для локального запуска с SQLite.
"""

import os
from dataclasses import dataclass
from decimal import Decimal

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./library.db")

SECRET_KEY = os.getenv("SECRET_KEY", "your_secret_key")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOAN_MIN_DAYS = float(os.getenv("LOAN_MIN_DAYS", "7"))
LOAN_MAX_DAYS = float(os.getenv("LOAN_MAX_DAYS", "90"))
LOAN_DEFAULT_DAYS = float(os.getenv("LOAN_DEFAULT_DAYS", "14"))
LATE_FEE_PER_DAY = Decimal(os.getenv("LATE_FEE_PER_DAY", "0.50"))
LATE_FEE_CAP = Decimal(os.getenv("LATE_FEE_CAP", "25.00"))
MAX_ACTIVE_LOANS = int(os.getenv("MAX_ACTIVE_LOANS", "5"))


@dataclass(frozen=True)
class LendingPolicy:
    """
    Правила выдачи книг.

    Attributes:
        min_days (float): Минимальный срок займа в днях (может быть дробным).
        max_days (float): Максимальный срок займа в днях.
        default_days (float): Срок по умолчанию, если студент его не указал.
        late_fee_per_day (Decimal): Штраф за день просрочки, фиксируется при выдаче.
        late_fee_cap (Decimal): Максимальный штраф по одному займу.
        max_active_loans (int): Сколько книг студент может держать одновременно.
    """
    min_days: float = 7
    max_days: float = 90
    default_days: float = 14
    late_fee_per_day: Decimal = Decimal("0.50")
    late_fee_cap: Decimal = Decimal("25.00")
    max_active_loans: int = 5


def default_policy() -> LendingPolicy:
    return LendingPolicy(
        min_days=LOAN_MIN_DAYS,
        max_days=LOAN_MAX_DAYS,
        default_days=LOAN_DEFAULT_DAYS,
        late_fee_per_day=LATE_FEE_PER_DAY,
        late_fee_cap=LATE_FEE_CAP,
        max_active_loans=MAX_ACTIVE_LOANS,
    )
