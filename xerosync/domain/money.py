from __future__ import annotations

from collections.abc import Sequence


def cents_to_dollars(cents: int) -> float:
    return round(cents / 100, 2)


def allocate_proportionally(total: int, weights: Sequence[int]) -> list[int]:
    """Split an amount in cents across weights, preserving each weight's sign.

    The rounding remainder is added to the first share so the shares sum to total.
    """
    if not weights:
        return []
    weight_sum = sum(weights)
    if weight_sum == 0:
        raise ValueError("cannot allocate across weights that sum to zero")

    shares = [round(total * weight / weight_sum) for weight in weights]
    difference = total - sum(shares)
    if difference:
        shares[0] += difference
    return shares
