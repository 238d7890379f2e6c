"""meshrtc - WebRTC 메시(P2P) 룸 참가 클라이언트.

Modules:
    signaling: 시그널링 메시지 모델 및 웹소켓 클라이언트
    webrtc: 피어 세션 및 협상 엔진
    room: 룸 입장/퇴장 흐름, 참가자 목록, 로컬 미디어
"""

from .room import MediaPlayerSource, NullMediaSource, RoomMembershipView, RoomSession
from .shared import RoomContext, RoomRole
from .webrtc import NegotiationEngine

__version__ = "0.1.0"

__all__ = [
    "MediaPlayerSource",
    "NullMediaSource",
    "RoomMembershipView",
    "RoomSession",
    "RoomContext",
    "RoomRole",
    "NegotiationEngine",
]
