from fastapi import APIRouter, Depends, HTTPException, Request

from backend import SnapshotStore, normalize_code
from exceptions import DuplicateCode, RoomNotFound
from logging_config import get_logger
from schemas.rooms import (
    CreateRoomRequest,
    CreateRoomResponse,
    RoomResponse,
    UpdateRoomRequest,
    UpdateRoomResponse,
)

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/api/rooms", tags=["rooms"])


def get_store(request: Request) -> SnapshotStore:
    return request.app.state.store


@rooms_router.post("", status_code=201, response_model=CreateRoomResponse)
async def create_room(room: CreateRoomRequest, request: Request, store: SnapshotStore = Depends(get_store)):
    # Request body: { "code": "AB12CD", "mode": "SINGLE" | "COOP", "data": {...} }
    # Response 201: { "success": true, "code": "AB12CD" }
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Room creation request for {room.code} from {client_host}, mode: {room.mode}")

    try:
        await store.create(room.code, room.mode, room.data)
    except DuplicateCode:
        logger.warning(f"Room creation failed: code {room.code} already exists")
        raise HTTPException(status_code=409, detail="Room code already exists")
    except Exception as e:
        logger.error(f"Error creating room {room.code}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create room")

    logger.info(f"Room {room.code} created successfully on {store.backend_name} store")
    return CreateRoomResponse(code=room.code)


@rooms_router.get("/{code}", response_model=RoomResponse)
async def get_room(code: str, store: SnapshotStore = Depends(get_store)):
    room_code = normalize_code(code)
    try:
        room = await store.read(room_code)
    except RoomNotFound:
        logger.info(f"Room {room_code} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    except Exception as e:
        logger.error(f"Error reading room {room_code}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Server error")

    return RoomResponse(**room)


@rooms_router.put("/{code}", response_model=UpdateRoomResponse)
async def update_room(code: str, update: UpdateRoomRequest, store: SnapshotStore = Depends(get_store)):
    room_code = normalize_code(code)
    try:
        await store.update(room_code, update.data)
    except RoomNotFound:
        logger.warning(f"Room update failed: Room {room_code} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    except Exception as e:
        logger.error(f"Error updating room {room_code}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to update room")

    logger.debug(f"Room {room_code} updated")
    return UpdateRoomResponse()
