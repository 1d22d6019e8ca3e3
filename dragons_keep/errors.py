from __future__ import annotations


class DragonsKeepError(Exception):
    """Base class for session-engine errors."""


class UnknownPlayer(DragonsKeepError, KeyError):
    """A player id is not present in the room.

    Mutating room operations heal this by creating a default entry; only
    `CampaignRoom.require_player` lets it escape.
    """

    def __init__(self, player_id: str) -> None:
        super().__init__(player_id)
        self.player_id = player_id

    def __str__(self) -> str:
        return f"Player not found: {self.player_id}"


class MalformedMessage(DragonsKeepError, ValueError):
    """An inbound frame could not be decoded into a known message."""


class CommandRejected(DragonsKeepError, ValueError):
    """A well-formed message was refused by the command validators."""


class TransportFailure(DragonsKeepError):
    """Sending to a subscriber failed; the subscriber is treated as gone."""
