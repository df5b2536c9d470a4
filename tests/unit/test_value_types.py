from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from escrowline.types import BankingInfo, Deductions, to_money


def test_to_money_quantizes_to_cents() -> None:
    assert to_money("10") == Decimal("10.00")
    assert to_money(0.1) == Decimal("0.10")


def test_deductions_accept_camel_case_and_total() -> None:
    deductions = Deductions.model_validate({"bankFee": 10, "taxAmount": "20", "notes": "iibb"})
    assert deductions.total == Decimal("30.00")
    breakdown = deductions.breakdown()
    assert breakdown["bankFee"] == "10.00"
    assert breakdown["total"] == "30.00"
    assert breakdown["notes"] == "iibb"


def test_negative_deduction_is_rejected() -> None:
    with pytest.raises(PydanticValidationError):
        Deductions.model_validate({"bankFee": -1})


def test_banking_info_requires_22_digit_cbu() -> None:
    info = BankingInfo.model_validate(
        {"accountHolder": "Walter", "bankName": "Banco Nacion", "cbu": "0110599520000001234567"}
    )
    assert info.bank_type == "bank_transfer"
    assert info.masked_cbu.endswith("4567")
    with pytest.raises(PydanticValidationError):
        BankingInfo.model_validate({"accountHolder": "Walter", "bankName": "Banco", "cbu": "12345"})
    with pytest.raises(PydanticValidationError):
        BankingInfo.model_validate({"accountHolder": "Walter", "bankName": "Banco", "cbu": "01105995200000012345AB"})


def test_banking_info_rejects_blank_holder() -> None:
    with pytest.raises(PydanticValidationError):
        BankingInfo.model_validate({"accountHolder": "  ", "bankName": "Banco", "cbu": "0110599520000001234567"})


def test_banking_info_dumps_camel_case() -> None:
    info = BankingInfo(account_holder="Walter", bank_name="Banco", cbu="0110599520000001234567")
    dumped = info.model_dump(mode="json", by_alias=True)
    assert dumped["accountHolder"] == "Walter"
    assert dumped["accountType"] == "savings"
