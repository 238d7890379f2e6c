"""시그널링 모듈.

Classes:
    SignalingClient: 릴레이 서버 웹소켓 클라이언트
    MessageType: 시그널링 메시지 타입

Functions:
    parse_message: 수신 프레임 -> 메시지 모델
"""

from .messages import (
    MessageType,
    MessageParseError,
    SignalingMessage,
    JoinMessage,
    LeaveMessage,
    RoomJoinedMessage,
    RoomInfoMessage,
    UserJoinedMessage,
    UserLeftMessage,
    OfferMessage,
    AnswerMessage,
    IceCandidateMessage,
    MediaStateMessage,
    ErrorMessage,
    IceCandidateData,
    ParticipantInfo,
    parse_message,
)
from .transport import (
    SignalingClient,
    SignalingError,
    SignalingConnectionError,
    ConnectFailureReason,
    CONNECTED,
    DISCONNECTED,
    ERROR,
    ANY_MESSAGE,
)

__all__ = [
    "MessageType",
    "MessageParseError",
    "SignalingMessage",
    "JoinMessage",
    "LeaveMessage",
    "RoomJoinedMessage",
    "RoomInfoMessage",
    "UserJoinedMessage",
    "UserLeftMessage",
    "OfferMessage",
    "AnswerMessage",
    "IceCandidateMessage",
    "MediaStateMessage",
    "ErrorMessage",
    "IceCandidateData",
    "ParticipantInfo",
    "parse_message",
    "SignalingClient",
    "SignalingError",
    "SignalingConnectionError",
    "ConnectFailureReason",
    "CONNECTED",
    "DISCONNECTED",
    "ERROR",
    "ANY_MESSAGE",
]
