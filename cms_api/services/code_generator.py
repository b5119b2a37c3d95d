"""
Генерация кодов карт и идентификаторов партий
"""
import secrets
import time

from shared.config import CARD_CODE_ALPHABET, CARD_CODE_GROUP, CARD_CODE_LENGTH


def generate_code(length: int = CARD_CODE_LENGTH) -> str:
    """
    Случайный код из алфавита без похожих символов,
    сгруппированный по 4: XXXX-XXXX-XXXX-XXXX
    """
    raw = "".join(secrets.choice(CARD_CODE_ALPHABET) for _ in range(length))
    return "-".join(
        raw[i:i + CARD_CODE_GROUP] for i in range(0, length, CARD_CODE_GROUP)
    )


def generate_batch_id() -> str:
    """BATCH_<epoch ms>_<8 hex>"""
    return f"BATCH_{int(time.time() * 1000)}_{secrets.token_hex(4).upper()}"


def generate_order_no(prefix: str, user_id: int) -> str:
    """Номер заказа из времени и пользователя"""
    return f"{prefix}_{int(time.time() * 1000)}_{user_id}_{secrets.token_hex(2).upper()}"
