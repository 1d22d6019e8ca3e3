from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from dragons_keep.errors import CommandRejected
from dragons_keep.room import CampaignRoom

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CommandContext:
    """Who sent a message, of what type, and for which room.

    `joined` mirrors the connection FSM at the time the message arrived.
    """

    message_type: str
    sender_id: str
    joined: bool
    room_code: str | None = None


class CommandValidator(ABC):
    """A small, composable check run before a message touches room state."""

    @abstractmethod
    def validate(self, *, ctx: CommandContext, room: CampaignRoom | None) -> None:
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class JoinedValidator(CommandValidator):
    """Room-scoped DM commands need a connection that has joined something."""

    def validate(self, *, ctx: CommandContext, room: CampaignRoom | None) -> None:
        if not ctx.joined:
            raise CommandRejected(f"'{ctx.message_type}' received before join")


@dataclass(frozen=True, slots=True)
class GameMasterValidator(CommandValidator):
    """Only the room's current game master may issue privileged commands.

    With `enforce=False` the check is bookkeeping only: a non-GM sender is logged
    and the command goes through.
    """

    enforce: bool = False

    def validate(self, *, ctx: CommandContext, room: CampaignRoom | None) -> None:
        if room is None:
            if self.enforce:
                raise CommandRejected(f"'{ctx.message_type}' needs a room the sender is game master of")
            return
        if room.is_game_master(ctx.sender_id):
            return
        reason = f"'{ctx.message_type}' from {ctx.sender_id}, who is not game master of {room.code}"
        if self.enforce:
            raise CommandRejected(reason)
        logger.warning("Honoring %s", reason)


@dataclass(frozen=True, slots=True)
class ValidatorPipeline:
    validators: tuple[CommandValidator, ...] = ()

    def validate(self, *, ctx: CommandContext, room: CampaignRoom | None) -> None:
        for v in self.validators:
            v.validate(ctx=ctx, room=room)


PRIVILEGED_MESSAGES = frozenset({"dm_broadcast", "dm_private", "round_reset", "dm_reveal", "dm_marker", "dm_settings"})


def pipeline_for_message(message_type: str, *, enforce_game_master: bool = False) -> ValidatorPipeline:
    if message_type in PRIVILEGED_MESSAGES:
        return ValidatorPipeline(
            validators=(
                JoinedValidator(),
                GameMasterValidator(enforce=enforce_game_master),
            )
        )
    return ValidatorPipeline()
