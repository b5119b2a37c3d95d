"""
Утилиты для валидации входных данных
"""
import logging
import re
from datetime import datetime
from typing import Optional

from shared.config import (
    CARD_BATCH_MAX,
    CARD_CODE_ALPHABET,
    CARD_CODE_GROUP,
    CARD_CODE_LENGTH,
)

logger = logging.getLogger(__name__)

CARD_TYPES = ("vip", "points")

_groups = CARD_CODE_LENGTH // CARD_CODE_GROUP
CARD_CODE_PATTERN = re.compile(
    rf"^[{CARD_CODE_ALPHABET}]{{{CARD_CODE_GROUP}}}(-[{CARD_CODE_ALPHABET}]{{{CARD_CODE_GROUP}}}){{{_groups - 1}}}$"
)


class ValidationError(Exception):
    """Ошибка валидации"""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def to_local_naive(value: Optional[datetime]) -> Optional[datetime]:
    """
    Время с часовым поясом -> локальное naive (колонки DateTime хранятся без пояса)
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def normalize_card_code(code: Optional[str]) -> str:
    """
    Нормализация кода карты (пробелы, регистр)

    Raises:
        ValidationError: пустой код
    """
    if not code or not isinstance(code, str) or not code.strip():
        raise ValidationError("Please provide a valid card key code")
    return code.strip().upper()


def is_well_formed_code(code: str) -> bool:
    """Код вида XXXX-XXXX-XXXX-XXXX из разрешённого алфавита"""
    return bool(CARD_CODE_PATTERN.match(code))


def validate_card_payload(
    card_type: str,
    vip_level: int = 0,
    vip_days: int = 0,
    points: int = 0
) -> None:
    """
    Валидация параметров генерации карт

    Raises:
        ValidationError
    """
    if card_type not in CARD_TYPES:
        raise ValidationError(f"Card type must be one of: {', '.join(CARD_TYPES)}")

    if card_type == "vip":
        if not vip_level or vip_level < 1:
            raise ValidationError("VIP cards require a valid VIP level")
        if vip_days is None or vip_days < 0:
            raise ValidationError("VIP days cannot be negative")

    if card_type == "points" and (not points or points <= 0):
        raise ValidationError("Points cards require a positive points amount")


def validate_batch_count(count: int) -> None:
    if not count or count <= 0 or count > CARD_BATCH_MAX:
        raise ValidationError(f"Batch size must be between 1 and {CARD_BATCH_MAX}")


def validate_positive_amount(amount: int, field: str = "amount") -> None:
    if not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"{field} must be a positive integer")


def parse_enum(enum_cls, value, field: str = "status"):
    """Значение перечисления из строки; неизвестное значение -> ValidationError"""
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"{field} must be one of: {allowed}")
