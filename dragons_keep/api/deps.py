from __future__ import annotations

from fastapi.requests import HTTPConnection

from dragons_keep.config import Settings
from dragons_keep.registry import SessionRegistry
from dragons_keep.websocket_hub import RoomHub


# HTTPConnection covers both plain requests and websockets.
def get_registry(conn: HTTPConnection) -> SessionRegistry:
    return conn.app.state.registry


def get_hub(conn: HTTPConnection) -> RoomHub:
    return conn.app.state.hub


def get_settings(conn: HTTPConnection) -> Settings:
    return conn.app.state.settings
