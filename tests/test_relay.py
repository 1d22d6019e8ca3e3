from __future__ import annotations

import asyncio
import json
import sys
from typing import Any

import pytest

from dragons_keep.config import Settings
from dragons_keep.errors import DragonsKeepError
from dragons_keep.registry import SessionRegistry
from dragons_keep.relay import Relay
from dragons_keep.room import CampaignRoom
from dragons_keep.websocket_hub import RoomHub


class FakeWebSocket:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    async def accept(self) -> None:
        return None

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)

    def of_type(self, type_: str) -> list[dict[str, Any]]:
        return [p for p in self.sent if p.get("type") == type_]


async def _flush() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


async def _open(registry: SessionRegistry, hub: RoomHub, settings: Settings) -> tuple[Relay, FakeWebSocket]:
    ws = FakeWebSocket()
    conn = await hub.connect(ws)
    return Relay(registry=registry, hub=hub, connection=conn, settings=settings), ws


async def _send(relay: Relay, **frame: Any) -> None:
    await relay.handle_raw(json.dumps(frame))
    await _flush()


@pytest.mark.asyncio
async def test_join_broadcasts_state_to_the_room() -> None:
    registry, hub, settings = SessionRegistry(), RoomHub(), Settings()
    a, a_ws = await _open(registry, hub, settings)
    b, b_ws = await _open(registry, hub, settings)

    await _send(a, type="join", id="p1", displayName="Aria", roomCode="DRGN-AB12")
    await _send(b, type="join", id="p2", displayName="Borin", roomCode="DRGN-AB12")

    last = a_ws.of_type("state")[-1]
    assert set(last["players"]) == {"p1", "p2"}
    assert b_ws.of_type("state")[-1] == last
    assert a.fsm.is_joined

    await a.disconnect()
    await b.disconnect()


@pytest.mark.asyncio
async def test_join_without_room_uses_default_room() -> None:
    registry, hub = SessionRegistry(), RoomHub()
    relay, ws = await _open(registry, hub, Settings(default_room="tavern"))

    await _send(relay, type="join")

    state = ws.of_type("state")[-1]
    assert state["roomCode"] == "tavern"
    assert list(state["players"]) == [relay.connection.connection_id]

    await relay.disconnect()


@pytest.mark.asyncio
async def test_move_implicitly_joins_and_consumes_budget() -> None:
    registry, hub = SessionRegistry(default_speed=30.0), RoomHub()
    relay, ws = await _open(registry, hub, Settings())

    await _send(relay, type="move", id="p1", roomCode="DRGN-NEW1", displacement={"x": 3, "y": 4})

    assert "DRGN-NEW1" in registry
    p1 = ws.of_type("state")[-1]["players"]["p1"]
    assert p1["position"] == {"x": 3.0, "y": 4.0}
    assert p1["movementBudget"] == 25.0
    assert relay.fsm.is_joined

    await relay.disconnect()


@pytest.mark.asyncio
async def test_malformed_frames_are_dropped_and_the_connection_survives() -> None:
    registry, hub = SessionRegistry(), RoomHub()
    relay, ws = await _open(registry, hub, Settings())

    await relay.handle_raw("{not json")
    await relay.handle_raw(json.dumps({"type": "teleport"}))
    await _flush()
    assert ws.sent == []
    assert not relay.fsm.is_closed

    await _send(relay, type="join", id="p1", roomCode="r")
    assert ws.of_type("state")

    await relay.disconnect()


@pytest.mark.asyncio
async def test_round_reset_flags_the_state_and_restores_budgets() -> None:
    registry, hub = SessionRegistry(default_speed=30.0), RoomHub()
    dm, dm_ws = await _open(registry, hub, Settings())
    player, player_ws = await _open(registry, hub, Settings())

    await _send(dm, type="dm_create", roomCode="DRGN-RND1")
    await _send(player, type="join", id="p1", roomCode="DRGN-RND1")
    await _send(player, type="move", id="p1", roomCode="DRGN-RND1", displacement={"x": 30, "y": 0})
    assert player_ws.of_type("state")[-1]["players"]["p1"]["movementBudget"] == 0.0

    await _send(dm, type="round_reset", roomCode="DRGN-RND1")

    state = player_ws.of_type("state")[-1]
    assert state["roundReset"] is True
    assert state["round"] == 2
    assert state["players"]["p1"]["movementBudget"] == 30.0
    assert state["players"]["p1"]["position"] == {"x": 30.0, "y": 0.0}
    assert dm_ws.of_type("state")[-1] == state

    await dm.disconnect()
    await player.disconnect()


@pytest.mark.asyncio
async def test_dm_create_claims_game_master_and_announces() -> None:
    registry, hub = SessionRegistry(), RoomHub()
    dm, dm_ws = await _open(registry, hub, Settings())

    await _send(dm, type="dm_create", roomCode="DRGN-GM01")

    assert dm_ws.sent[0] == {"type": "announce", "text": "DM has started campaign DRGN-GM01"}
    assert dm_ws.sent[1]["type"] == "state"
    assert dm_ws.sent[1]["gameMasterId"] == dm.connection.identity

    await dm.disconnect()


@pytest.mark.asyncio
async def test_private_message_to_disconnected_id_is_harmless() -> None:
    registry, hub = SessionRegistry(), RoomHub()
    dm, dm_ws = await _open(registry, hub, Settings())
    player, player_ws = await _open(registry, hub, Settings())
    await _send(dm, type="dm_create", roomCode="DRGN-PRIV")
    await _send(player, type="join", id="p1", roomCode="DRGN-PRIV")

    await _send(dm, type="dm_private", targetId="gone", action="damage", amount=3)
    await _send(dm, type="dm_broadcast", roomCode="DRGN-PRIV", text="Roll initiative")

    assert player_ws.of_type("announce")[-1]["text"] == "Roll initiative"
    assert player_ws.of_type("dm_private") == []
    assert not dm.fsm.is_closed

    await _send(dm, type="dm_private", targetId="p1", action="damage", amount=3)
    private = player_ws.of_type("dm_private")
    assert private == [{"type": "dm_private", "action": "damage", "amount": 3.0, "from": dm.connection.identity}]
    assert dm_ws.of_type("dm_private") == []

    await dm.disconnect()
    await player.disconnect()


@pytest.mark.asyncio
async def test_dm_commands_before_join_are_dropped() -> None:
    registry, hub = SessionRegistry(), RoomHub()
    relay, ws = await _open(registry, hub, Settings())

    await _send(relay, type="round_reset", roomCode="DRGN-EARLY")

    assert "DRGN-EARLY" not in registry
    assert ws.sent == []

    await relay.disconnect()


@pytest.mark.asyncio
async def test_non_gm_commands_are_honored_unless_enforced() -> None:
    registry, hub = SessionRegistry(), RoomHub()
    dm, _ = await _open(registry, hub, Settings())
    await _send(dm, type="dm_create", roomCode="DRGN-AUTH")

    lax, _ = await _open(registry, hub, Settings())
    await _send(lax, type="join", id="p1", roomCode="DRGN-AUTH")
    await _send(lax, type="round_reset", roomCode="DRGN-AUTH")
    assert registry.get("DRGN-AUTH").round == 2

    strict, _ = await _open(registry, hub, Settings(enforce_game_master=True))
    await _send(strict, type="join", id="p2", roomCode="DRGN-AUTH")
    await _send(strict, type="round_reset", roomCode="DRGN-AUTH")
    assert registry.get("DRGN-AUTH").round == 2

    for relay in (dm, lax, strict):
        await relay.disconnect()


@pytest.mark.asyncio
async def test_map_commands_update_visibility() -> None:
    registry, hub = SessionRegistry(sight_radius=40.0), RoomHub()
    dm, _ = await _open(registry, hub, Settings())
    player, player_ws = await _open(registry, hub, Settings())
    await _send(dm, type="dm_create", roomCode="DRGN-FOG1")
    await _send(player, type="join", id="p1", roomCode="DRGN-FOG1")

    await _send(dm, type="dm_settings", roomCode="DRGN-FOG1", fogEnabled=True, sightRadius=10)
    await _send(dm, type="dm_marker", roomCode="DRGN-FOG1", marker={"id": "trap", "position": {"x": 5, "y": 0}})
    await _send(dm, type="dm_marker", roomCode="DRGN-FOG1", marker={"id": "hoard", "position": {"x": 90, "y": 0}})
    assert player_ws.of_type("state")[-1]["players"]["p1"]["visibleMarkerIds"] == ["trap"]

    await _send(dm, type="dm_reveal", roomCode="DRGN-FOG1", area={"x": 90, "y": 0, "r": 5})
    assert player_ws.of_type("state")[-1]["players"]["p1"]["visibleMarkerIds"] == ["trap", "hoard"]

    await _send(dm, type="dm_marker", roomCode="DRGN-FOG1", marker={"id": "trap"}, remove=True)
    state = player_ws.of_type("state")[-1]
    assert state["players"]["p1"]["visibleMarkerIds"] == ["hoard"]
    assert [m["id"] for m in state["markers"]] == ["hoard"]

    await dm.disconnect()
    await player.disconnect()


@pytest.mark.asyncio
async def test_disconnect_removes_player_and_notifies_the_room() -> None:
    registry, hub = SessionRegistry(), RoomHub()
    a, a_ws = await _open(registry, hub, Settings())
    b, _ = await _open(registry, hub, Settings())
    await _send(a, type="join", id="p1", roomCode="DRGN-BYE1")
    await _send(b, type="join", id="p2", roomCode="DRGN-BYE1")

    await b.disconnect()
    await _flush()

    assert list(a_ws.of_type("state")[-1]["players"]) == ["p1"]
    assert b.fsm.is_closed
    # Further frames on a closed relay are ignored.
    await _send(b, type="join", id="p2", roomCode="DRGN-BYE1")
    assert not registry.get("DRGN-BYE1").has_player("p2")

    await a.disconnect()


@pytest.mark.asyncio
async def test_reconnect_under_same_id_keeps_the_player() -> None:
    registry, hub = SessionRegistry(), RoomHub()
    old, _ = await _open(registry, hub, Settings())
    await _send(old, type="join", id="p1", roomCode="DRGN-BACK")
    await _send(old, type="move", id="p1", roomCode="DRGN-BACK", displacement={"x": 6, "y": 8})

    new, new_ws = await _open(registry, hub, Settings())
    await _send(new, type="join", id="p1", roomCode="DRGN-BACK")
    await old.disconnect()
    await _flush()

    room = registry.get("DRGN-BACK")
    assert room.has_player("p1")
    assert room.require_player("p1").position.x == 6.0
    assert new_ws.of_type("state")

    await new.disconnect()
    assert not room.has_player("p1")


@pytest.mark.asyncio
async def test_rejoin_under_new_id_moves_game_master_and_drops_old_entry() -> None:
    registry, hub = SessionRegistry(), RoomHub()
    relay, ws = await _open(registry, hub, Settings())
    await _send(relay, type="join", id="old", roomCode="DRGN-SWAP")
    registry.get("DRGN-SWAP").claim_game_master("old")

    await _send(relay, type="join", id="new", roomCode="DRGN-SWAP")

    state = ws.of_type("state")[-1]
    assert list(state["players"]) == ["new"]
    assert state["gameMasterId"] == "new"
    assert relay.connection.client_id == "new"

    await relay.disconnect()


@pytest.mark.asyncio
async def test_join_with_blank_campaign_id_lands_in_default_room() -> None:
    registry, hub = SessionRegistry(), RoomHub()
    relay, ws = await _open(registry, hub, Settings(default_room="lobby"))

    await _send(relay, type="join", id="p1", name="Aria", campaignId="")

    assert registry.codes() == ["lobby"]
    state = ws.of_type("state")[-1]
    assert state["roomCode"] == "lobby"
    assert state["players"]["p1"]["displayName"] == "Aria"
    assert relay.fsm.is_joined

    await relay.disconnect()


@pytest.mark.asyncio
async def test_move_past_the_largest_float_stays_finite() -> None:
    registry, hub = SessionRegistry(), RoomHub()
    relay, ws = await _open(registry, hub, Settings())

    await _send(
        relay, type="update", id="p1", roomCode="DRGN-HUGE", position={"x": 1.7e308, "y": 0}, movementBudget=1e308
    )
    await _send(relay, type="move", id="p1", roomCode="DRGN-HUGE", displacement={"x": 1e308, "y": 0})

    p1 = ws.of_type("state")[-1]["players"]["p1"]
    assert p1["position"]["x"] == sys.float_info.max
    assert p1["movementBudget"] == 0.0
    assert not relay.fsm.is_closed

    await relay.disconnect()


@pytest.mark.asyncio
async def test_failing_room_operation_drops_only_that_frame(monkeypatch: pytest.MonkeyPatch) -> None:
    def _boom(self: CampaignRoom, player_id: str, patch: Any) -> None:
        raise DragonsKeepError("status store unavailable")

    monkeypatch.setattr(CampaignRoom, "set_status", _boom)
    registry, hub = SessionRegistry(), RoomHub()
    relay, ws = await _open(registry, hub, Settings())
    await _send(relay, type="join", id="p1", roomCode="DRGN-OOPS")
    sent_before = len(ws.sent)

    await relay.handle_raw(json.dumps({"type": "status", "id": "p1", "roomCode": "DRGN-OOPS", "status": {"blinded": True}}))
    await _flush()
    assert len(ws.sent) == sent_before
    assert not relay.fsm.is_closed

    await _send(relay, type="move", id="p1", roomCode="DRGN-OOPS", displacement={"x": 1, "y": 0})
    assert ws.of_type("state")[-1]["players"]["p1"]["position"]["x"] == 1.0

    await relay.disconnect()
