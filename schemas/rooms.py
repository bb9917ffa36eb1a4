from pydantic import BaseModel, Field, field_validator
from typing import Any, Literal, Optional

from backend import normalize_code

RoomMode = Literal["SINGLE", "COOP"]


class CreateRoomRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    mode: RoomMode
    data: Any

    @field_validator("code")
    @classmethod
    def normalize_room_code(cls, value: str) -> str:
        code = normalize_code(value)
        if not code.isalnum():
            raise ValueError("room code must be alphanumeric")
        return code

class CreateRoomResponse(BaseModel):
    success: bool = True
    code: str

class UpdateRoomRequest(BaseModel):
    data: Any
    # Accepted for compatibility with clients that echo it; the path code wins
    code: Optional[str] = None

class UpdateRoomResponse(BaseModel):
    success: bool = True

class RoomResponse(BaseModel):
    code: str
    mode: RoomMode
    data: Any
    createdAt: str
    updatedAt: str

class HealthResponse(BaseModel):
    status: str
    store: str
    degraded: bool
    live_rooms: int
    live_connections: int
