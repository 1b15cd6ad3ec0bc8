"""
Integer minor-unit money arithmetic for the escrow ledger.

All amounts are integers in the smallest currency unit (won, cents).
Fee rates are integer basis points so no float ever touches a balance.
Fees round down, so rounding loss is absorbed by the platform, never
the payee.

Usage:
    from payments.money import split_fee, split_stages

    fee, payee_share = split_fee(100000, 1200)  # (12000, 88000)
    split_stages(100000, 30)  # [("deposit", 30000), ("final", 70000)]
"""

from __future__ import annotations

from payments.exceptions import EscrowValidationError
from payments.state_machines import MilestoneType

BPS_DENOMINATOR = 10_000


def calculate_fee(amount: int, fee_bps: int) -> int:
    """
    Platform fee for an amount, floored.

    Example:
        calculate_fee(33333, 1200)  # 3999
    """
    return amount * fee_bps // BPS_DENOMINATOR


def split_fee(amount: int, fee_bps: int) -> tuple[int, int]:
    """Return (fee, payee share); the two always sum to amount."""
    fee = calculate_fee(amount, fee_bps)
    return fee, amount - fee


def allocate_fee(total_fee: int, stage_amounts: list[int], fee_bps: int) -> list[int]:
    """
    Spread a contract's platform fee over its stages.

    Every stage but the last pays its own floored fee; the last stage takes
    what is left of total_fee, so the allocation sums to total_fee and the
    stage net amounts sum to the contract's payee payout.

    Example:
        allocate_fee(2, [5, 12], 1200)  # [0, 2]; per-stage floors would give 1
    """
    if not stage_amounts:
        return []
    fees = [calculate_fee(amount, fee_bps) for amount in stage_amounts[:-1]]
    fees.append(total_fee - sum(fees))
    return fees


def split_stages(
    total_amount: int,
    deposit_percent: int,
    middle_percent: int | None = None,
) -> list[tuple[str, int]]:
    """
    Split a contract total into ordered payment stages.

    The deposit (and optional middle stage) are floored percentages of the
    total; the final stage takes the remainder, so the stage amounts always
    sum to the total.

    Args:
        total_amount: Contract total in minor units
        deposit_percent: Deposit share, 1-99
        middle_percent: Optional middle-stage share for a three-step schedule

    Returns:
        List of (milestone type, amount) in payment order

    Raises:
        EscrowValidationError: If a percentage is out of range or a stage
            would be empty
    """
    if not 1 <= deposit_percent <= 99:
        raise EscrowValidationError(
            "Deposit percent must be between 1 and 99",
            details={"deposit_percent": deposit_percent},
        )
    if middle_percent is not None and (
        middle_percent < 1 or deposit_percent + middle_percent > 99
    ):
        raise EscrowValidationError(
            "Middle percent must be at least 1 and leave a final stage",
            details={"deposit_percent": deposit_percent, "middle_percent": middle_percent},
        )

    stages = [(MilestoneType.DEPOSIT.value, total_amount * deposit_percent // 100)]
    if middle_percent is not None:
        stages.append((MilestoneType.MIDDLE.value, total_amount * middle_percent // 100))
    stages.append((MilestoneType.FINAL.value, total_amount - sum(a for _, a in stages)))

    if any(amount <= 0 for _, amount in stages):
        raise EscrowValidationError(
            "Total amount is too small to split into stages",
            details={"total_amount": total_amount},
        )
    return stages
