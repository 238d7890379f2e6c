"""시그널링 메시지 모델.

릴레이 서버와 주고받는 모든 메시지를 ``type`` 필드로 구분되는 닫힌 유니온으로
표현합니다. 수신 측은 ``parse_message()``로 검증된 모델을 얻고, 송신 측은
빌더 함수로 메시지를 만든 뒤 ``to_wire()``로 JSON 딕셔너리를 얻습니다.

Wire format:
    {"type": "OFFER", "from": "...", "to": "...", "roomId": "...",
     "data": {"sdp": "...", "type": "offer"}, "timestamp": 1700000000000}
"""
import json
import logging
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..shared import RoomContext

logger = logging.getLogger(__name__)


class MessageParseError(ValueError):
    """수신 프레임이 알려진 메시지 형식이 아닐 때 발생합니다."""


class MessageType(str, Enum):
    """시그널링 메시지 타입 (릴레이 서버와 동일해야 함)."""

    JOIN = "JOIN"
    LEAVE = "LEAVE"
    ROOM_JOINED = "ROOM_JOINED"
    ROOM_INFO = "ROOM_INFO"
    USER_JOINED = "USER_JOINED"
    USER_LEFT = "USER_LEFT"
    OFFER = "OFFER"
    ANSWER = "ANSWER"
    ICE_CANDIDATE = "ICE_CANDIDATE"
    MEDIA_STATE = "MEDIA_STATE"
    ERROR = "ERROR"


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class JoinData(_Payload):
    name: str = ""


class ParticipantInfo(_Payload):
    """ROOM_INFO 스냅샷에 포함되는 참가자 한 명."""

    user_id: str = Field(alias="userId")
    name: str = ""
    audio_enabled: bool = Field(default=True, alias="audioEnabled")
    video_enabled: bool = Field(default=True, alias="videoEnabled")


class RoomInfoData(_Payload):
    participants: List[ParticipantInfo] = Field(default_factory=list)
    room_id: Optional[str] = Field(default=None, alias="roomId")
    participant_count: Optional[int] = Field(default=None, alias="participantCount")


class UserJoinedData(_Payload):
    user_id: str = Field(alias="userId")
    name: str = ""


class UserLeftData(_Payload):
    user_id: str = Field(alias="userId")


class SessionDescriptionData(_Payload):
    sdp: str
    type: str


class IceCandidateData(_Payload):
    candidate: str = ""
    sdp_mid: Optional[str] = Field(default=None, alias="sdpMid")
    sdp_mline_index: Optional[int] = Field(default=None, alias="sdpMLineIndex")


class MediaStateData(_Payload):
    audio_enabled: bool = Field(default=True, alias="audioEnabled")
    video_enabled: bool = Field(default=True, alias="videoEnabled")
    user_id: Optional[str] = Field(default=None, alias="userId")


class ErrorData(_Payload):
    error: str = ""


class _Envelope(BaseModel):
    """모든 시그널링 메시지의 공통 필드."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sender: Optional[str] = Field(default=None, alias="from")
    room_id: Optional[str] = Field(default=None, alias="roomId")
    to: Optional[str] = None
    timestamp: Optional[int] = None

    def to_wire(self) -> Dict[str, Any]:
        """camelCase 키를 사용하는 JSON 직렬화용 딕셔너리를 반환합니다."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class JoinMessage(_Envelope):
    type: Literal["JOIN"] = "JOIN"
    data: JoinData = Field(default_factory=JoinData)


class LeaveMessage(_Envelope):
    type: Literal["LEAVE"] = "LEAVE"
    data: Dict[str, Any] = Field(default_factory=dict)


class RoomJoinedMessage(_Envelope):
    type: Literal["ROOM_JOINED"] = "ROOM_JOINED"
    data: Optional[Dict[str, Any]] = None


class RoomInfoMessage(_Envelope):
    type: Literal["ROOM_INFO"] = "ROOM_INFO"
    data: RoomInfoData = Field(default_factory=RoomInfoData)


class UserJoinedMessage(_Envelope):
    type: Literal["USER_JOINED"] = "USER_JOINED"
    data: UserJoinedData


class UserLeftMessage(_Envelope):
    type: Literal["USER_LEFT"] = "USER_LEFT"
    data: UserLeftData


class OfferMessage(_Envelope):
    type: Literal["OFFER"] = "OFFER"
    data: SessionDescriptionData


class AnswerMessage(_Envelope):
    type: Literal["ANSWER"] = "ANSWER"
    data: SessionDescriptionData


class IceCandidateMessage(_Envelope):
    type: Literal["ICE_CANDIDATE"] = "ICE_CANDIDATE"
    data: IceCandidateData


class MediaStateMessage(_Envelope):
    type: Literal["MEDIA_STATE"] = "MEDIA_STATE"
    data: MediaStateData = Field(default_factory=MediaStateData)

    @property
    def participant_id(self) -> Optional[str]:
        return self.data.user_id or self.sender


class ErrorMessage(_Envelope):
    type: Literal["ERROR"] = "ERROR"
    data: Optional[ErrorData] = None
    error: Optional[str] = None

    @property
    def reason(self) -> str:
        if self.data is not None and self.data.error:
            return self.data.error
        return self.error or "An error occurred"


SignalingMessage = Annotated[
    Union[
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
    ],
    Field(discriminator="type"),
]

_message_adapter: TypeAdapter = TypeAdapter(SignalingMessage)


def parse_message(raw: Union[str, bytes, Mapping[str, Any]]) -> SignalingMessage:
    """수신 프레임을 검증된 메시지 모델로 변환합니다.

    Args:
        raw: JSON 문자열/바이트 또는 이미 디코딩된 딕셔너리

    Returns:
        SignalingMessage: ``type``에 해당하는 메시지 모델

    Raises:
        MessageParseError: JSON이 아니거나 알 수 없는 타입, 필수 필드 누락 시
    """
    try:
        if isinstance(raw, (str, bytes)):
            raw = json.loads(raw)
        return _message_adapter.validate_python(raw)
    except (ValueError, ValidationError) as exc:
        raise MessageParseError(f"잘못된 시그널링 메시지: {exc}") from exc


# ============================================================
# 송신 메시지 빌더
# ============================================================

def join(context: RoomContext) -> JoinMessage:
    return JoinMessage(
        sender=context.participant_id,
        room_id=context.room_id,
        data=JoinData(name=context.display_name),
    )


def leave(context: RoomContext) -> LeaveMessage:
    return LeaveMessage(sender=context.participant_id, room_id=context.room_id)


def offer(context: RoomContext, to: str, sdp: str, sdp_type: str = "offer") -> OfferMessage:
    return OfferMessage(
        sender=context.participant_id,
        room_id=context.room_id,
        to=to,
        data=SessionDescriptionData(sdp=sdp, type=sdp_type),
    )


def answer(context: RoomContext, to: str, sdp: str, sdp_type: str = "answer") -> AnswerMessage:
    return AnswerMessage(
        sender=context.participant_id,
        room_id=context.room_id,
        to=to,
        data=SessionDescriptionData(sdp=sdp, type=sdp_type),
    )


def ice_candidate(context: RoomContext, to: str, candidate: IceCandidateData) -> IceCandidateMessage:
    return IceCandidateMessage(
        sender=context.participant_id,
        room_id=context.room_id,
        to=to,
        data=candidate,
    )


def media_state(context: RoomContext, audio_enabled: bool, video_enabled: bool) -> MediaStateMessage:
    return MediaStateMessage(
        sender=context.participant_id,
        room_id=context.room_id,
        data=MediaStateData(audio_enabled=audio_enabled, video_enabled=video_enabled),
    )
