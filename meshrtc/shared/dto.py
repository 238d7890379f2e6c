"""룸/참가자/협상 상태를 표현하는 공용 데이터 모델.

Classes:
    RoomContext: 룸 입장 시 결정되는 불변 컨텍스트
    ParticipantRecord: 원격 참가자 한 명의 상태
    RoomRole: 룸 전체에 대한 로컬 역할 (Initiator / Responder)
    NegotiationState: 원격 참가자별 협상 상태
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


class RoomRole(str, Enum):
    """로컬 참가자의 협상 역할.

    룸 스냅샷(ROOM_INFO)을 받았을 때 한 번만 결정되며, 같은 값이 세션 역할로도
    사용됩니다.
    """

    INITIATOR = "initiator"
    RESPONDER = "responder"


class NegotiationState(str, Enum):
    """원격 참가자 한 명과의 협상 상태.

    Initiator 경로: IDLE -> OFFER_SENT -> STABLE
    Responder 경로: IDLE -> ANSWER_SENT -> STABLE
    CLOSED는 어느 상태에서든 도달 가능하며 종착 상태입니다.
    """

    IDLE = "idle"
    OFFER_SENT = "offer_sent"
    ANSWER_SENT = "answer_sent"
    STABLE = "stable"
    CLOSED = "closed"


@dataclass(frozen=True)
class RoomContext:
    """엔진 수명 동안 바뀌지 않는 룸 정보.

    Attributes:
        room_id (str): 룸 식별자
        participant_id (str): 로컬 참가자 ID
        display_name (str): 로컬 참가자 표시 이름
    """

    room_id: str
    participant_id: str
    display_name: str


@dataclass
class ParticipantRecord:
    """현재 룸에 있다고 판단되는 원격 참가자.

    Attributes:
        participant_id (str): 참가자 고유 ID
        name (str): 표시 이름
        audio_enabled (bool): 오디오 활성화 여부
        video_enabled (bool): 비디오 활성화 여부
    """

    participant_id: str
    name: str = ""
    audio_enabled: bool = True
    video_enabled: bool = True


def decide_room_role(participants: Optional[Iterable[object]]) -> RoomRole:
    """룸 스냅샷으로부터 로컬 역할을 결정합니다.

    먼저 들어온 참가자가 offer를 보내는 규칙(first-joiner convention)을 따릅니다.
    빈 룸에 입장했다면 이후 들어오는 모든 참가자에 대해 Initiator가 되고,
    이미 참가자가 있다면 Responder로서 기존 참가자의 offer를 기다립니다.

    Args:
        participants: 입장 시점에 이미 룸에 있던 참가자 목록

    Returns:
        RoomRole: 결정된 역할

    Examples:
        >>> decide_room_role([])
        <RoomRole.INITIATOR: 'initiator'>
        >>> decide_room_role(["peer-a"])
        <RoomRole.RESPONDER: 'responder'>
    """
    if not list(participants or []):
        return RoomRole.INITIATOR
    return RoomRole.RESPONDER


def short_id(participant_id: Optional[str]) -> str:
    """로그 출력용으로 참가자 ID를 8자로 줄입니다."""
    return (participant_id or "?")[:8]
