# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Fee arithmetic for escrow deals.

Integer smallest-unit amounts only. The fee is a fixed 1% of the deal amount
and the fee payer policy decides who bears it. Under SPLIT each side bears
fee // 2, so for an odd fee the remainder unit is neither deposited nor
withheld from the payout.
"""

from dataclasses import dataclass

from protocol import FEE_DIVISOR, FeePayer


def _check_amount(amount: int, name: str = "amount"):
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"{name} must be an integer smallest-unit amount, got {amount!r}")
    if amount < 0:
        raise ValueError(f"{name} cannot be negative: {amount}")


def fee(amount: int) -> int:
    """Fixed 1% fee, truncated."""
    _check_amount(amount)
    return amount // FEE_DIVISOR


def sender_share(fee_amount: int, payer: FeePayer) -> int:
    """Portion of the fee added on top of the sender's deposit."""
    shares = {
        FeePayer.SENDER: fee_amount,
        FeePayer.RECEIVER: 0,
        FeePayer.SPLIT: fee_amount // 2,
    }
    return shares[FeePayer(payer)]


def receiver_share(fee_amount: int, payer: FeePayer) -> int:
    """Portion of the fee withheld from the receiver's payout."""
    shares = {
        FeePayer.SENDER: 0,
        FeePayer.RECEIVER: fee_amount,
        FeePayer.SPLIT: fee_amount // 2,
    }
    return shares[FeePayer(payer)]


def deposit_amount(amount: int, fee_amount: int, payer: FeePayer) -> int:
    """What the sender must transfer into escrow."""
    _check_amount(amount)
    _check_amount(fee_amount, "fee")
    return amount + sender_share(fee_amount, payer)


def payout_amount(amount: int, fee_amount: int, payer: FeePayer) -> int:
    """What the receiver gets on release."""
    _check_amount(amount)
    _check_amount(fee_amount, "fee")
    return amount - receiver_share(fee_amount, payer)


def refund_amount(amount: int, fee_amount: int, payer: FeePayer) -> int:
    """Cancellation returns everything the sender deposited. No fee is taken."""
    return deposit_amount(amount, fee_amount, payer)


@dataclass(frozen=True)
class FeeQuote:
    amount: int
    fee: int
    fee_payer: FeePayer
    deposit: int
    payout: int

    @property
    def retained(self) -> int:
        """Fee units the escrow keeps on release (deposit - payout)."""
        return self.deposit - self.payout

    def to_dict(self) -> dict:
        return {
            "amount": str(self.amount),
            "fee": str(self.fee),
            "fee_payer": self.fee_payer.value,
            "deposit": str(self.deposit),
            "payout": str(self.payout),
        }


def quote(amount: int, payer: FeePayer) -> FeeQuote:
    payer = FeePayer(payer)
    f = fee(amount)
    return FeeQuote(
        amount=amount,
        fee=f,
        fee_payer=payer,
        deposit=deposit_amount(amount, f, payer),
        payout=payout_amount(amount, f, payer),
    )
