"""
Allocation Splitter

Splits a redeemable amount across weighted backup recipients.

amount = total * share_bps // 10000, integer arithmetic only.

The truncation remainder is dropped, not handed to any recipient, and
shares that don't sum to 10000 are not corrected: with 5000/3000 shares
only 80% of `total` leaves. Keeping shares at 10000 is the registry's job.
Whether the remainder should go somewhere is an open product decision.
"""

from typing import Iterable, Union

from pulsekeeper.models.grant import BPS_DENOMINATOR, BackupAllocation


def split_allocation(
    total: int,
    recipients: Iterable[Union[BackupAllocation, tuple[str, int]]],
) -> dict[str, int]:
    """
    Compute recipient -> amount.

    Recipients with a zero share or a zero computed amount are left out.
    Repeated recipients are merged by summing their amounts. The result is
    keyed in sorted recipient order, so the same input set always yields
    the same mapping regardless of input order.

    Raises:
        ValueError: If total is negative or a share is outside 0..10000
    """
    if total < 0:
        raise ValueError(f"Total must be non-negative, got {total}")

    amounts: dict[str, int] = {}
    for entry in recipients:
        if not isinstance(entry, BackupAllocation):
            recipient, share_bps = entry
            entry = BackupAllocation(recipient=recipient, share_bps=share_bps)

        if entry.share_bps == 0:
            continue

        amount = total * entry.share_bps // BPS_DENOMINATOR
        if amount == 0:
            continue

        amounts[entry.recipient] = amounts.get(entry.recipient, 0) + amount

    return {recipient: amounts[recipient] for recipient in sorted(amounts)}
