import re

import pytest

from shared.config import CARD_CODE_ALPHABET
from shared.validation import (
    ValidationError, is_well_formed_code, normalize_card_code, parse_enum, validate_card_payload
)
from shared.database import CardKeyStatus
from cms_api.services.code_generator import generate_batch_id, generate_code, generate_order_no
from cms_api.services.pagination import build_pagination


def test_generated_code_format() -> None:
    code = generate_code()

    assert re.fullmatch(r"[A-Z2-9]{4}(-[A-Z2-9]{4}){3}", code)
    assert set(code.replace("-", "")) <= set(CARD_CODE_ALPHABET)
    assert is_well_formed_code(code)


def test_alphabet_excludes_confusable_characters() -> None:
    assert not set("0O1I") & set(CARD_CODE_ALPHABET)


def test_custom_length_is_grouped() -> None:
    assert len(generate_code(8).split("-")) == 2


def test_batch_id_and_order_no_shapes() -> None:
    assert re.fullmatch(r"BATCH_\d{13}_[0-9A-F]{8}", generate_batch_id())
    assert re.fullmatch(r"CARD_\d{13}_42_[0-9A-F]{4}", generate_order_no("CARD", 42))
    assert generate_order_no("CARD", 1) != generate_order_no("CARD", 1)


def test_normalize_card_code() -> None:
    assert normalize_card_code("  abcd-efgh-jkmn-pqrs ") == "ABCD-EFGH-JKMN-PQRS"
    for bad in (None, "", "   "):
        with pytest.raises(ValidationError):
            normalize_card_code(bad)


def test_card_payload_validation() -> None:
    validate_card_payload("vip", vip_level=1, vip_days=0)
    validate_card_payload("points", points=10)

    with pytest.raises(ValidationError):
        validate_card_payload("vip", vip_level=0, vip_days=30)
    with pytest.raises(ValidationError):
        validate_card_payload("vip", vip_level=1, vip_days=-1)


def test_parse_enum() -> None:
    assert parse_enum(CardKeyStatus, "used") is CardKeyStatus.USED
    with pytest.raises(ValidationError):
        parse_enum(CardKeyStatus, "lost")


def test_pagination_edges() -> None:
    assert build_pagination(0, 20, 0) == {
        "total": 0, "limit": 20, "offset": 0, "page": 1,
        "totalPages": 0, "hasNext": False, "hasPrev": False
    }
    assert build_pagination(45, 20, 40)["page"] == 3
    assert build_pagination(45, 20, 40)["hasNext"] is False
