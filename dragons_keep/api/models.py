from __future__ import annotations

import math
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

BLEED_MIN = 0
BLEED_MAX = 100


def clamp_bleed(value: int) -> int:
    return max(BLEED_MIN, min(BLEED_MAX, int(value)))


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Position(WireModel):
    model_config = ConfigDict(allow_inf_nan=False)

    x: float = 0.0
    y: float = 0.0

    def distance_to(self, other: Position) -> float:
        return math.hypot(self.x - other.x, self.y - other.y)


class StatusEffects(WireModel):
    model_config = ConfigDict(validate_assignment=True)

    blinded: bool = False
    flashed: bool = Field(default=False, validation_alias=AliasChoices("flashed", "bright"))
    bleed_level: int = Field(default=0, validation_alias=AliasChoices("bleedLevel", "bleed_level", "bleeding"))

    @field_validator("bleed_level", mode="before")
    @classmethod
    def _clamp_bleed(cls, v: object) -> int:
        # Out-of-range values are clamped, never rejected.
        if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v):
            raise ValueError("bleedLevel must be a finite number")
        return clamp_bleed(int(v))


class StatusPatch(WireModel):
    """Partial status change. Absent fields are left alone.

    `bleed_level` is a delta for `CampaignRoom.set_status` and an absolute value
    for `CampaignRoom.merge_update`.
    """

    blinded: bool | None = None
    flashed: bool | None = Field(default=None, validation_alias=AliasChoices("flashed", "bright"))
    bleed_level: int | None = Field(default=None, validation_alias=AliasChoices("bleedLevel", "bleed_level", "bleeding"))


class PlayerState(WireModel):
    id: str
    display_name: str = "Player"
    position: Position = Field(default_factory=Position)
    movement_budget: float = Field(default=0.0, ge=0.0)
    status: StatusEffects = Field(default_factory=StatusEffects)


class PlayerView(PlayerState):
    # Filled in per snapshot from the player's current position.
    visible_marker_ids: list[str] = Field(default_factory=list)


class Marker(WireModel):
    id: str = Field(..., min_length=1)
    label: str = ""
    position: Position = Field(default_factory=Position)


class RevealedArea(WireModel):
    model_config = ConfigDict(allow_inf_nan=False)

    x: float
    y: float
    r: float

    @field_validator("r")
    @classmethod
    def _non_negative_radius(cls, v: float) -> float:
        return max(0.0, v)

    def contains(self, position: Position) -> bool:
        return math.hypot(position.x - self.x, position.y - self.y) <= self.r


class RoomSnapshot(WireModel):
    """Read-only, point-in-time view of a campaign room."""

    model_config = ConfigDict(frozen=True)

    room_code: str
    round: int
    default_speed: float
    game_master_id: str | None = None
    fog_enabled: bool = False
    sight_radius: float = 0.0
    players: dict[str, PlayerView] = Field(default_factory=dict)
    markers: list[Marker] = Field(default_factory=list)
    revealed: list[RevealedArea] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Inbound messages (client -> server)
# ---------------------------------------------------------------------------

RoomCode = Annotated[str, Field(min_length=1, max_length=64)]

_ROOM_CODE_ALIASES = AliasChoices("roomCode", "room_code", "campaignId")
_DISPLAY_NAME_ALIASES = AliasChoices("displayName", "display_name", "name")
_JOIN_OPTIONAL_KEYS = frozenset({"id", "displayName", "display_name", "name", "roomCode", "room_code", "campaignId"})


class JoinMessage(WireModel):
    type: Literal["join"]
    # Missing id falls back to the connection id; missing room to the default room.
    id: str | None = None
    display_name: str | None = Field(default=None, validation_alias=_DISPLAY_NAME_ALIASES)
    room_code: RoomCode | None = Field(default=None, validation_alias=_ROOM_CODE_ALIASES)

    @model_validator(mode="before")
    @classmethod
    def _blank_means_absent(cls, data: Any) -> Any:
        # Clients that have not picked a campaign yet send `campaignId: ""`.
        if not isinstance(data, dict):
            return data
        return {
            k: None if k in _JOIN_OPTIONAL_KEYS and isinstance(v, str) and not v.strip() else v
            for k, v in data.items()
        }


class UpdateMessage(WireModel):
    type: Literal["update"]
    id: str = Field(..., min_length=1)
    room_code: RoomCode = Field(..., validation_alias=_ROOM_CODE_ALIASES)
    position: Position | None = Field(default=None, validation_alias=AliasChoices("position", "pos"))
    movement_budget: float | None = Field(
        default=None,
        allow_inf_nan=False,
        validation_alias=AliasChoices("movementBudget", "movement_budget", "remaining"),
    )
    status: StatusPatch | None = None
    display_name: str | None = Field(default=None, validation_alias=_DISPLAY_NAME_ALIASES)


class MoveMessage(WireModel):
    type: Literal["move"]
    id: str = Field(..., min_length=1)
    room_code: RoomCode = Field(..., validation_alias=_ROOM_CODE_ALIASES)
    displacement: Position


class StatusMessage(WireModel):
    type: Literal["status"]
    id: str = Field(..., min_length=1)
    room_code: RoomCode = Field(..., validation_alias=_ROOM_CODE_ALIASES)
    status: StatusPatch


class LeaveMessage(WireModel):
    type: Literal["leave"]
    room_code: RoomCode = Field(..., validation_alias=_ROOM_CODE_ALIASES)


class DmCreateMessage(WireModel):
    type: Literal["dm_create"]
    room_code: RoomCode = Field(..., validation_alias=_ROOM_CODE_ALIASES)


class DmBroadcastMessage(WireModel):
    type: Literal["dm_broadcast"]
    room_code: RoomCode = Field(..., validation_alias=_ROOM_CODE_ALIASES)
    text: str = Field(..., max_length=2000)


class DmPrivateMessage(WireModel):
    type: Literal["dm_private"]
    target_id: str = Field(..., min_length=1, validation_alias=AliasChoices("targetId", "target_id", "to"))
    action: str = Field(..., min_length=1)
    amount: float | None = Field(default=None, allow_inf_nan=False)
    # Only used for attribution / optional GM enforcement.
    room_code: RoomCode | None = Field(default=None, validation_alias=_ROOM_CODE_ALIASES)


class RoundResetMessage(WireModel):
    type: Literal["round_reset"]
    room_code: RoomCode = Field(..., validation_alias=_ROOM_CODE_ALIASES)


class DmRevealMessage(WireModel):
    type: Literal["dm_reveal"]
    room_code: RoomCode = Field(..., validation_alias=_ROOM_CODE_ALIASES)
    area: RevealedArea


class DmMarkerMessage(WireModel):
    type: Literal["dm_marker"]
    room_code: RoomCode = Field(..., validation_alias=_ROOM_CODE_ALIASES)
    marker: Marker
    remove: bool = False


class DmSettingsMessage(WireModel):
    type: Literal["dm_settings"]
    room_code: RoomCode = Field(..., validation_alias=_ROOM_CODE_ALIASES)
    default_speed: float | None = Field(default=None, ge=0.0, allow_inf_nan=False)
    fog_enabled: bool | None = None
    sight_radius: float | None = Field(default=None, ge=0.0, allow_inf_nan=False)


InboundMessage = Annotated[
    Union[
        JoinMessage,
        UpdateMessage,
        MoveMessage,
        StatusMessage,
        LeaveMessage,
        DmCreateMessage,
        DmBroadcastMessage,
        DmPrivateMessage,
        RoundResetMessage,
        DmRevealMessage,
        DmMarkerMessage,
        DmSettingsMessage,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Outbound messages (server -> client)
# ---------------------------------------------------------------------------


class StateMessage(RoomSnapshot):
    type: Literal["state"] = "state"
    round_reset: bool = False

    @classmethod
    def from_snapshot(cls, snapshot: RoomSnapshot, *, round_reset: bool = False) -> StateMessage:
        return cls(**dict(snapshot), round_reset=round_reset)


class AnnounceMessage(WireModel):
    type: Literal["announce"] = "announce"
    text: str


class PrivateCommandMessage(WireModel):
    type: Literal["dm_private"] = "dm_private"
    action: str
    amount: float | None = None
    sender_id: str | None = Field(default=None, serialization_alias="from")


# ---------------------------------------------------------------------------
# HTTP bodies
# ---------------------------------------------------------------------------


class CampaignCreateRequest(WireModel):
    code: RoomCode | None = None
    default_speed: float | None = Field(default=None, ge=0.0, allow_inf_nan=False)


class CampaignCreateResponse(WireModel):
    ok: bool = True
    campaign_id: str


def to_wire(model: BaseModel) -> dict[str, object]:
    return model.model_dump(mode="json", by_alias=True)
