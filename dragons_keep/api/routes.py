from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status

from dragons_keep.api.deps import get_hub, get_registry, get_settings
from dragons_keep.api.models import CampaignCreateRequest, CampaignCreateResponse, RoomSnapshot
from dragons_keep.config import Settings
from dragons_keep.registry import SessionRegistry
from dragons_keep.relay import Relay
from dragons_keep.websocket_hub import RoomHub

router = APIRouter()


async def _receive_frame(websocket: WebSocket) -> str | bytes:
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(code=message.get("code", 1000))
    text = message.get("text")
    if text is not None:
        return text
    return message.get("bytes") or b""


@router.websocket("/ws")
async def campaign_ws(
    websocket: WebSocket,
    registry: SessionRegistry = Depends(get_registry),
    hub: RoomHub = Depends(get_hub),
    settings: Settings = Depends(get_settings),
) -> None:
    conn = await hub.connect(websocket)
    relay = Relay(registry=registry, hub=hub, connection=conn, settings=settings)

    try:
        while True:
            await relay.handle_raw(await _receive_frame(websocket))
    except WebSocketDisconnect:
        await relay.disconnect()
    except Exception:
        await relay.disconnect()
        raise


@router.get("/healthcheck")
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/campaigns")
async def list_campaigns_route(registry: SessionRegistry = Depends(get_registry)) -> list[str]:
    """Liveness query: codes of every room the registry currently holds."""

    return registry.codes()


@router.post("/create-campaign", response_model=CampaignCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_campaign_route(
    payload: CampaignCreateRequest | None = None,
    registry: SessionRegistry = Depends(get_registry),
) -> CampaignCreateResponse:
    payload = payload or CampaignCreateRequest()
    room = registry.create(payload.code, default_speed=payload.default_speed)
    return CampaignCreateResponse(campaign_id=room.code)


@router.get("/campaigns/{code}", response_model=RoomSnapshot)
async def get_campaign_route(code: str, registry: SessionRegistry = Depends(get_registry)) -> RoomSnapshot:
    room = registry.get(code)
    if room is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Campaign not found")
    return room.snapshot()
