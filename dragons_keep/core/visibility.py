from __future__ import annotations

import math
from collections.abc import Iterable, Sequence

from dragons_keep.api.models import Marker, Position, RevealedArea, StatusEffects


def visible_markers(viewer: Position, sight_radius: float, markers: Iterable[Marker]) -> list[Marker]:
    """Markers within `sight_radius` (Euclidean, inclusive) of `viewer`.

    Pass `math.inf` when fog is disabled. Pure: callers recompute whenever the
    viewer moves or the radius changes.
    """

    if math.isinf(sight_radius) and sight_radius > 0:
        return list(markers)
    return [m for m in markers if viewer.distance_to(m.position) <= sight_radius]


def effective_sight_radius(*, fog_enabled: bool, sight_radius: float, status: StatusEffects) -> float:
    if not fog_enabled:
        return math.inf
    if status.blinded:
        return 0.0
    return max(0.0, sight_radius)


def revealed_markers(markers: Iterable[Marker], areas: Sequence[RevealedArea]) -> list[Marker]:
    """Markers lying inside any DM-revealed area, regardless of who is looking."""

    if not areas:
        return []
    return [m for m in markers if any(a.contains(m.position) for a in areas)]


def visible_marker_ids(
    *,
    viewer: Position,
    status: StatusEffects,
    fog_enabled: bool,
    sight_radius: float,
    markers: Sequence[Marker],
    revealed: Sequence[RevealedArea],
) -> list[str]:
    radius = effective_sight_radius(fog_enabled=fog_enabled, sight_radius=sight_radius, status=status)
    seen = {m.id for m in visible_markers(viewer, radius, markers)}
    if fog_enabled and not status.blinded:
        seen.update(m.id for m in revealed_markers(markers, revealed))
    # Stable order follows marker placement order.
    return [m.id for m in markers if m.id in seen]
