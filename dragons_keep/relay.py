from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import TypeAdapter, ValidationError

from dragons_keep.api.models import (
    AnnounceMessage,
    DmBroadcastMessage,
    DmCreateMessage,
    DmMarkerMessage,
    DmPrivateMessage,
    DmRevealMessage,
    DmSettingsMessage,
    InboundMessage,
    JoinMessage,
    LeaveMessage,
    MoveMessage,
    PrivateCommandMessage,
    RoomSnapshot,
    RoundResetMessage,
    StateMessage,
    StatusMessage,
    UpdateMessage,
    to_wire,
)
from dragons_keep.config import Settings
from dragons_keep.errors import CommandRejected, DragonsKeepError, MalformedMessage
from dragons_keep.fsm import ConnectionFSM
from dragons_keep.registry import SessionRegistry
from dragons_keep.room import CampaignRoom
from dragons_keep.validators import CommandContext, pipeline_for_message
from dragons_keep.websocket_hub import Connection, RoomHub

logger = logging.getLogger(__name__)

_INBOUND: TypeAdapter[InboundMessage] = TypeAdapter(InboundMessage)


def decode_message(raw: str | bytes) -> InboundMessage:
    try:
        return _INBOUND.validate_json(raw)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ())) or "<frame>"
        raise MalformedMessage(f"{where}: {first.get('msg', 'invalid message')}") from e


class Relay:
    """Per-connection actor: decode a frame, apply it to a room, fan out the result.

    Room mutations are synchronous calls under the room lock; the only awaits are
    hub operations, which never wait on a subscriber's socket.
    """

    def __init__(self, *, registry: SessionRegistry, hub: RoomHub, connection: Connection, settings: Settings) -> None:
        self.registry = registry
        self.hub = hub
        self.connection = connection
        self.settings = settings
        self.fsm = ConnectionFSM(connection.connection_id)
        self._handlers: dict[str, Callable[[Any], Awaitable[None]]] = {
            "join": self._on_join,
            "update": self._on_update,
            "move": self._on_move,
            "status": self._on_status,
            "leave": self._on_leave,
            "dm_create": self._on_dm_create,
            "dm_broadcast": self._on_dm_broadcast,
            "dm_private": self._on_dm_private,
            "round_reset": self._on_round_reset,
            "dm_reveal": self._on_dm_reveal,
            "dm_marker": self._on_dm_marker,
            "dm_settings": self._on_dm_settings,
        }

    async def handle_raw(self, raw: str | bytes) -> None:
        logger.debug("%s <- %s", self.connection, raw)
        try:
            message = decode_message(raw)
        except MalformedMessage as e:
            logger.warning("Dropping malformed message from %s: %s", self.connection, e)
            return
        await self.handle(message)

    async def handle(self, message: InboundMessage) -> None:
        if self.fsm.is_closed:
            return

        room_code = getattr(message, "room_code", None)
        ctx = CommandContext(
            message_type=message.type,
            sender_id=self.connection.identity,
            joined=self.fsm.is_joined,
            room_code=room_code,
        )
        room = self.registry.get(room_code) if room_code else None
        try:
            pipeline_for_message(message.type, enforce_game_master=self.settings.enforce_game_master).validate(
                ctx=ctx, room=room
            )
        except CommandRejected as e:
            logger.warning("Dropping %s from %s: %s", message.type, self.connection, e)
            return

        try:
            await self._handlers[message.type](message)
        except (ValidationError, DragonsKeepError) as e:
            logger.warning("Dropping %s from %s: %s", message.type, self.connection, e)

    async def disconnect(self) -> None:
        """Leave every room this connection joined and tell the others."""

        if self.fsm.is_closed:
            return
        self.fsm.disconnect()
        identity = self.connection.identity
        rooms = await self.hub.disconnect(self.connection)

        # A reconnect under the same id has already taken over the player entry.
        if self.connection.client_id and await self.hub.is_connected(self.connection.client_id):
            logger.info("%s closed; %s lives on in a newer connection", self.connection, identity)
            return

        for code in sorted(rooms):
            room = self.registry.get(code)
            if room is None:
                continue
            if room.remove(identity):
                await self._broadcast_state(room)
        logger.info("%s disconnected from %s", self.connection, ", ".join(sorted(rooms)) or "no rooms")

    # -- helpers -----------------------------------------------------------

    async def _enter(self, room_code: str, client_id: str | None = None) -> CampaignRoom:
        """Subscribe this connection to `room_code` (creating the room) and mark it joined."""

        if self.connection.client_id is None:
            await self.hub.bind_client(self.connection, client_id or self.connection.connection_id)
        room = self.registry.get_or_create(room_code)
        if room_code not in self.connection.rooms:
            await self.hub.subscribe(room_code, self.connection)
        self.fsm.join()
        return room

    async def _broadcast_state(
        self,
        room: CampaignRoom,
        snapshot: RoomSnapshot | None = None,
        *,
        round_reset: bool = False,
    ) -> None:
        snapshot = room.snapshot() if snapshot is None else snapshot
        payload = to_wire(StateMessage.from_snapshot(snapshot, round_reset=round_reset))
        await self.hub.broadcast(room.code, payload)

    async def _announce(self, room_code: str, text: str) -> None:
        await self.hub.broadcast(room_code, to_wire(AnnounceMessage(text=text)))

    # -- player messages ---------------------------------------------------

    async def _on_join(self, msg: JoinMessage) -> None:
        player_id = msg.id or self.connection.client_id or self.connection.connection_id
        if self.connection.client_id is not None and self.connection.client_id != player_id:
            await self._rebind(player_id)
        room = await self._enter(msg.room_code or self.settings.default_room, player_id)
        room.join(player_id, msg.display_name)
        await self._broadcast_state(room)

    async def _rebind(self, player_id: str) -> None:
        # The client switched ids; its old entries would otherwise linger as ghosts.
        old_id = self.connection.client_id
        for code in sorted(self.connection.rooms):
            room = self.registry.get(code)
            if room is None or old_id is None:
                continue
            changed = room.is_game_master(old_id)
            if changed:
                room.claim_game_master(player_id)
            if room.remove(old_id) or changed:
                await self._broadcast_state(room)
        await self.hub.bind_client(self.connection, player_id)

    async def _on_update(self, msg: UpdateMessage) -> None:
        room = await self._enter(msg.room_code, msg.id)
        room.merge_update(
            msg.id,
            position=msg.position,
            movement_budget=msg.movement_budget,
            status=msg.status,
            display_name=msg.display_name,
        )
        await self._broadcast_state(room)

    async def _on_move(self, msg: MoveMessage) -> None:
        room = await self._enter(msg.room_code, msg.id)
        room.apply_movement(msg.id, msg.displacement)
        await self._broadcast_state(room)

    async def _on_status(self, msg: StatusMessage) -> None:
        room = await self._enter(msg.room_code, msg.id)
        room.set_status(msg.id, msg.status)
        await self._broadcast_state(room)

    async def _on_leave(self, msg: LeaveMessage) -> None:
        await self.hub.unsubscribe(msg.room_code, self.connection)
        room = self.registry.get(msg.room_code)
        if room is not None and room.remove(self.connection.identity):
            await self._broadcast_state(room)

    # -- game master messages ----------------------------------------------

    async def _on_dm_create(self, msg: DmCreateMessage) -> None:
        room = await self._enter(msg.room_code)
        room.claim_game_master(self.connection.identity)
        await self._announce(room.code, f"DM has started campaign {room.code}")
        await self._broadcast_state(room)

    async def _on_dm_broadcast(self, msg: DmBroadcastMessage) -> None:
        await self._announce(msg.room_code, msg.text)

    async def _on_dm_private(self, msg: DmPrivateMessage) -> None:
        payload = to_wire(PrivateCommandMessage(action=msg.action, amount=msg.amount, sender_id=self.connection.identity))
        if not await self.hub.send_to(msg.target_id, payload):
            logger.debug("dm_private %s for %s not delivered", msg.action, msg.target_id)

    async def _on_round_reset(self, msg: RoundResetMessage) -> None:
        room = self.registry.get_or_create(msg.room_code)
        _, snapshot = room.start_new_round()
        await self._broadcast_state(room, snapshot, round_reset=True)

    async def _on_dm_reveal(self, msg: DmRevealMessage) -> None:
        room = self.registry.get_or_create(msg.room_code)
        room.reveal(msg.area)
        await self._broadcast_state(room)

    async def _on_dm_marker(self, msg: DmMarkerMessage) -> None:
        room = self.registry.get_or_create(msg.room_code)
        if msg.remove:
            room.remove_marker(msg.marker.id)
        else:
            room.place_marker(msg.marker)
        await self._broadcast_state(room)

    async def _on_dm_settings(self, msg: DmSettingsMessage) -> None:
        room = self.registry.get_or_create(msg.room_code)
        room.configure(default_speed=msg.default_speed, fog_enabled=msg.fog_enabled, sight_radius=msg.sight_radius)
        await self._broadcast_state(room)
