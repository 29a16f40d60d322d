from pydantic import BaseModel, Field


class ChatMessageIn(BaseModel):
    player_id: str = Field(min_length=1, max_length=32)
    text: str = Field(min_length=1, max_length=2000)
    chat_type: str = Field(default="say", min_length=1, max_length=16)


class ControlTargetIn(BaseModel):
    player_id: str = Field(min_length=1, max_length=32)
    target_id: str | None = Field(default=None, min_length=1, max_length=32)


class ControlCreatureAddIn(BaseModel):
    id: str | None = Field(default=None, min_length=1, max_length=32)
    name: str = Field(min_length=1, max_length=64)
    map_id: int = Field(default=0, ge=0)
    instance_id: int = Field(default=0, ge=0)
    pos_x: float | None = Field(default=None, ge=-20.0, le=20.0)
    pos_z: float | None = Field(default=None, ge=-20.0, le=20.0)


class ControlCreatureRemoveIn(BaseModel):
    creature_id: str = Field(min_length=1, max_length=32)
