"""공용 데이터 모델."""

from .dto import (
    RoomContext,
    ParticipantRecord,
    RoomRole,
    NegotiationState,
    decide_room_role,
    short_id,
)

__all__ = [
    "RoomContext",
    "ParticipantRecord",
    "RoomRole",
    "NegotiationState",
    "decide_room_role",
    "short_id",
]
