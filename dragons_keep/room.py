from __future__ import annotations

import logging
import math
import sys
import threading
import time
from datetime import UTC, datetime

from dragons_keep.api.models import (
    Marker,
    PlayerState,
    PlayerView,
    Position,
    RevealedArea,
    RoomSnapshot,
    StatusPatch,
    clamp_bleed,
)
from dragons_keep.core.movement import apply_displacement, reset_for_new_round
from dragons_keep.core.visibility import visible_marker_ids
from dragons_keep.errors import UnknownPlayer

logger = logging.getLogger(__name__)

DEFAULT_DISPLAY_NAME = "Player"


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _bounded(value: float) -> float:
    # Coordinates stay finite; a sum that overflows pins to the largest float.
    if math.isinf(value):
        return math.copysign(sys.float_info.max, value)
    return value


class CampaignRoom:
    """Authoritative state of one campaign.

    Every public method runs under the room's lock, so mutations from different
    connections apply in some total order. The lock is re-entrant and never
    held across I/O.

    Unknown player ids are healed rather than rejected: `apply_movement`,
    `set_status` and `merge_update` create a default entry first. This lets an
    `update` arrive before its `join`.
    """

    def __init__(self, code: str, *, default_speed: float = 30.0, sight_radius: float = 40.0) -> None:
        self.code = code
        self.default_speed = max(0.0, float(default_speed))
        self.sight_radius = max(0.0, float(sight_radius))
        self.fog_enabled = False
        self.round = 1
        self.game_master_id: str | None = None
        self.created_at = _now()
        self.last_activity = time.monotonic()

        self._players: dict[str, PlayerState] = {}
        self._markers: dict[str, Marker] = {}
        self._revealed: list[RevealedArea] = []
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        return f"CampaignRoom(code={self.code!r}, round={self.round}, players={len(self._players)})"

    def _touch(self) -> None:
        self.last_activity = time.monotonic()

    def _default_player(self, player_id: str, display_name: str | None = None) -> PlayerState:
        return PlayerState(
            id=player_id,
            display_name=display_name or DEFAULT_DISPLAY_NAME,
            movement_budget=self.default_speed,
        )

    def _require_player(self, player_id: str) -> PlayerState:
        player = self._players.get(player_id)
        if player is None:
            raise UnknownPlayer(player_id)
        return player

    def require_player(self, player_id: str) -> PlayerState:
        with self._lock:
            return self._require_player(player_id).model_copy(deep=True)

    def _ensure_player(self, player_id: str) -> PlayerState:
        try:
            return self._require_player(player_id)
        except UnknownPlayer:
            logger.debug("room=%s creating default entry for unknown player %s", self.code, player_id)
            player = self._default_player(player_id)
            self._players[player_id] = player
            return player

    # -- players -----------------------------------------------------------

    def join(self, player_id: str, display_name: str | None = None) -> PlayerState:
        """Insert or re-activate a player.

        A re-join renames the player and keeps position and status; the budget is
        set to the room's default speed either way.
        """

        with self._lock:
            player = self._players.get(player_id)
            if player is None:
                player = self._default_player(player_id, display_name)
                self._players[player_id] = player
                logger.info("room=%s player %s joined as %r", self.code, player_id, player.display_name)
            else:
                if display_name:
                    player.display_name = display_name
                player.movement_budget = self.default_speed
            self._touch()
            return player.model_copy(deep=True)

    def apply_movement(self, player_id: str, displacement: Position) -> PlayerState:
        with self._lock:
            player = self._ensure_player(player_id)
            step = apply_displacement(player.movement_budget, displacement.x, displacement.y)
            player.position = Position(
                x=_bounded(player.position.x + step.dx),
                y=_bounded(player.position.y + step.dy),
            )
            player.movement_budget = step.new_budget
            self._touch()
            return player.model_copy(deep=True)

    def set_status(self, player_id: str, patch: StatusPatch) -> PlayerState:
        """Merge a status patch. `bleed_level` is additive and clamped to [0, 100]."""

        with self._lock:
            player = self._ensure_player(player_id)
            if patch.blinded is not None:
                player.status.blinded = patch.blinded
            if patch.flashed is not None:
                player.status.flashed = patch.flashed
            if patch.bleed_level is not None:
                player.status.bleed_level = clamp_bleed(player.status.bleed_level + patch.bleed_level)
            self._touch()
            return player.model_copy(deep=True)

    def merge_update(
        self,
        player_id: str,
        *,
        position: Position | None = None,
        movement_budget: float | None = None,
        status: StatusPatch | None = None,
        display_name: str | None = None,
    ) -> PlayerState:
        """Overwrite supplied fields; absent ones stay as they are."""

        with self._lock:
            player = self._ensure_player(player_id)
            if position is not None:
                player.position = position.model_copy()
            if movement_budget is not None:
                player.movement_budget = max(0.0, movement_budget)
            if status is not None:
                if status.blinded is not None:
                    player.status.blinded = status.blinded
                if status.flashed is not None:
                    player.status.flashed = status.flashed
                if status.bleed_level is not None:
                    player.status.bleed_level = clamp_bleed(status.bleed_level)
            if display_name:
                player.display_name = display_name
            self._touch()
            return player.model_copy(deep=True)

    def remove(self, player_id: str) -> bool:
        with self._lock:
            removed = self._players.pop(player_id, None) is not None
            if player_id == self.game_master_id:
                logger.info("room=%s game master %s left", self.code, player_id)
                self.game_master_id = None
                removed = True
            if removed:
                self._touch()
            return removed

    def has_player(self, player_id: str) -> bool:
        with self._lock:
            return player_id in self._players

    def is_empty(self) -> bool:
        with self._lock:
            return not self._players and self.game_master_id is None

    # -- rounds and privilege ---------------------------------------------

    def start_new_round(self) -> tuple[int, RoomSnapshot]:
        with self._lock:
            self.round += 1
            budget = reset_for_new_round(self.default_speed)
            for player in self._players.values():
                player.movement_budget = budget
            self._touch()
            logger.info("room=%s round %d started", self.code, self.round)
            return self.round, self.snapshot()

    def claim_game_master(self, client_id: str) -> str | None:
        """Last writer wins. Returns the previous holder, if any."""

        with self._lock:
            previous = self.game_master_id
            self.game_master_id = client_id
            self._touch()
            if previous and previous != client_id:
                logger.info("room=%s game master %s replaced by %s", self.code, previous, client_id)
            else:
                logger.info("room=%s game master is %s", self.code, client_id)
            return previous

    def is_game_master(self, client_id: str | None) -> bool:
        with self._lock:
            return client_id is not None and client_id == self.game_master_id

    # -- map ---------------------------------------------------------------

    def configure(
        self,
        *,
        default_speed: float | None = None,
        fog_enabled: bool | None = None,
        sight_radius: float | None = None,
    ) -> None:
        # A new default speed takes effect at the next round reset.
        with self._lock:
            if default_speed is not None:
                self.default_speed = max(0.0, default_speed)
            if fog_enabled is not None:
                self.fog_enabled = fog_enabled
            if sight_radius is not None:
                self.sight_radius = max(0.0, sight_radius)
            self._touch()

    def reveal(self, area: RevealedArea) -> None:
        with self._lock:
            self._revealed.append(area.model_copy())
            self._touch()

    def place_marker(self, marker: Marker) -> None:
        with self._lock:
            self._markers[marker.id] = marker.model_copy(deep=True)
            self._touch()

    def remove_marker(self, marker_id: str) -> bool:
        with self._lock:
            removed = self._markers.pop(marker_id, None) is not None
            self._touch()
            return removed

    # -- views -------------------------------------------------------------

    def snapshot(self) -> RoomSnapshot:
        with self._lock:
            markers = [m.model_copy(deep=True) for m in self._markers.values()]
            revealed = [a.model_copy() for a in self._revealed]
            players: dict[str, PlayerView] = {}
            for pid, p in self._players.items():
                players[pid] = PlayerView(
                    **dict(p.model_copy(deep=True)),
                    visible_marker_ids=visible_marker_ids(
                        viewer=p.position,
                        status=p.status,
                        fog_enabled=self.fog_enabled,
                        sight_radius=self.sight_radius,
                        markers=markers,
                        revealed=revealed,
                    ),
                )
            return RoomSnapshot(
                room_code=self.code,
                round=self.round,
                default_speed=self.default_speed,
                game_master_id=self.game_master_id,
                fog_enabled=self.fog_enabled,
                sight_radius=self.sight_radius,
                players=players,
                markers=markers,
                revealed=revealed,
            )
