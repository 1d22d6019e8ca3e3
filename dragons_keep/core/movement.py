from __future__ import annotations

import math
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Step:
    """Outcome of moving by a displacement vector against a budget.

    `fraction` is the share of the requested vector that was applied:
    1.0 for a move within budget, `budget / distance` when the move slides
    to a stop at the edge of reach, 0.0 for a no-op.
    """

    dx: float
    dy: float
    fraction: float
    applied_distance: float
    new_budget: float


def consume(budget: float, requested_distance: float) -> tuple[float, float]:
    """Consume `requested_distance` from `budget`.

    Returns `(applied_distance, new_budget)`. Total over its domain: non-positive
    requests and exhausted budgets are no-ops, and a request beyond the budget
    applies exactly what is left and zeroes the budget.
    """

    if requested_distance <= 0 or budget <= 0:
        return 0.0, budget
    if requested_distance <= budget:
        return requested_distance, budget - requested_distance
    return budget, 0.0


def fraction_of(budget: float, requested_distance: float) -> float:
    """Share of a requested move that `consume` would apply."""

    if requested_distance <= 0 or budget <= 0:
        return 0.0
    if requested_distance <= budget:
        return 1.0
    return budget / requested_distance


def apply_displacement(budget: float, dx: float, dy: float) -> Step:
    distance = math.hypot(dx, dy)
    applied, new_budget = consume(budget, distance)
    fraction = fraction_of(budget, distance)
    if fraction == 1.0:
        return Step(dx=dx, dy=dy, fraction=1.0, applied_distance=applied, new_budget=new_budget)
    return Step(dx=dx * fraction, dy=dy * fraction, fraction=fraction, applied_distance=applied, new_budget=new_budget)


def reset_for_new_round(default_speed: float) -> float:
    # Leftover movement never carries over; a negative speed still clamps.
    return max(0.0, float(default_speed))
