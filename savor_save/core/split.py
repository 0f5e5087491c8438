"""Bill splitting."""

from decimal import ROUND_FLOOR, Decimal

from savor_save.errors import SplitMismatchError
from savor_save.models.expense import SPLIT_TOLERANCE, SplitShare

CENT = Decimal("0.01")


def split_equally(total: Decimal, people: int) -> list[SplitShare]:
    """
    Divide a total between people, cent-exact.

    Every share is the total divided by people, rounded down to the cent;
    the leftover cents go to person 1 so the shares always add up to the
    total.

    Args:
        total: Amount to split, must be positive
        people: Number of participants, at least 2

    Returns:
        One SplitShare per person, person 1 first
    """
    total = Decimal(total)
    if total <= 0:
        raise SplitMismatchError(total, Decimal("0"), "total must be positive")
    if people < 2:
        raise SplitMismatchError(total, total, f"need at least 2 people, got {people}")

    base = (total / people).quantize(CENT, rounding=ROUND_FLOOR)
    remainder = total - base * people

    shares = [SplitShare(person=1, amount=base + remainder)]
    shares.extend(SplitShare(person=n, amount=base) for n in range(2, people + 1))
    return shares


def validate_manual_split(
    total: Decimal,
    shares: list[SplitShare],
    people: int,
) -> list[SplitShare]:
    """Accept caller-supplied shares if they cover the total within a cent."""
    total = Decimal(total)
    shares_sum = sum((share.amount for share in shares), Decimal("0"))

    if len(shares) != people:
        raise SplitMismatchError(
            total, shares_sum, f"expected {people} shares, got {len(shares)}"
        )
    if abs(shares_sum - total) > SPLIT_TOLERANCE:
        raise SplitMismatchError(total, shares_sum)

    return shares
