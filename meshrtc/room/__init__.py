"""룸 참가 모듈.

Classes:
    RoomSession: 룸 입장/퇴장 흐름
    RoomMembershipView: 원격 참가자 목록
    MediaPlayerSource, NullMediaSource: 로컬 미디어 소스
"""

from .media import LocalMediaSource, MediaPlayerSource, NullMediaSource
from .membership import RoomMembershipView
from .session import RoomSession

__all__ = [
    "LocalMediaSource",
    "MediaPlayerSource",
    "NullMediaSource",
    "RoomMembershipView",
    "RoomSession",
]
