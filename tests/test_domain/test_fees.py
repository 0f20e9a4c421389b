"""Tests for platform fee and identifier helpers."""

from __future__ import annotations

import re
from decimal import Decimal

import pytest

from milestone_escrow.domain.enums import TransactionType
from milestone_escrow.domain.fees import (
    amounts_equal,
    generate_agreement_code,
    generate_transaction_code,
    platform_fee,
    quantize_amount,
)


class TestPlatformFee:
    def test_default_percentage(self) -> None:
        assert platform_fee(Decimal("1000")) == Decimal("25")

    def test_custom_percentage(self) -> None:
        fee = platform_fee(Decimal("200"), TransactionType.MILESTONE_PAYMENT, Decimal("10"))
        assert fee == Decimal("20")

    @pytest.mark.parametrize(
        "transaction_type",
        [
            TransactionType.REFUND,
            TransactionType.WITHDRAWAL,
            TransactionType.PLATFORM_FEE,
            TransactionType.OTHER,
        ],
    )
    def test_fee_free_types(self, transaction_type: TransactionType) -> None:
        assert platform_fee(Decimal("1000"), transaction_type) == Decimal("0")

    def test_zero_amount(self) -> None:
        assert platform_fee(Decimal("0")) == Decimal("0")

    def test_negative_amount_rejected(self) -> None:
        with pytest.raises(ValueError, match="non-negative"):
            platform_fee(Decimal("-1"))

    def test_percentage_out_of_range(self) -> None:
        with pytest.raises(ValueError, match="percentage"):
            platform_fee(Decimal("10"), percentage=Decimal("101"))

    def test_fractional_amount(self) -> None:
        assert platform_fee(Decimal("0.1")) == Decimal("0.0025")

    def test_fee_is_quantized_to_wei(self) -> None:
        fee = platform_fee(Decimal("0.000000000000000001"))
        assert fee == quantize_amount(Decimal("0"))


class TestAmounts:
    def test_amounts_equal_ignores_trailing_zeros(self) -> None:
        assert amounts_equal(Decimal("1000"), Decimal("1000.000000000000000000"))

    def test_amounts_differ(self) -> None:
        assert not amounts_equal(Decimal("1000"), Decimal("999.99"))


class TestCodes:
    def test_agreement_code_format(self) -> None:
        assert re.fullmatch(r"AGR-\d{13}-[A-Z0-9]{6}", generate_agreement_code())

    def test_transaction_code_format(self) -> None:
        code = generate_transaction_code(TransactionType.MILESTONE_PAYMENT)
        assert re.fullmatch(r"TXN-MP-\d{13}-[A-Z0-9]{6}", code)

    def test_codes_are_unique(self) -> None:
        assert len({generate_agreement_code() for _ in range(50)}) == 50
