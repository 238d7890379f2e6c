"""룸 참가자 목록 관리 모듈.

시그널링 이벤트로부터 "현재 룸에 있다고 판단되는" 원격 참가자 목록을 유지합니다.
협상 엔진은 이 목록을 읽기만 하며, 세션 수명은 엔진이 별도로 관리합니다.

Event Mapping:
    - ROOM_INFO: 참가자 목록 전체 교체 (입장 시점 스냅샷)
    - USER_JOINED: 참가자 추가 (중복 입장 무시)
    - USER_LEFT: 참가자 제거
    - MEDIA_STATE: 오디오/비디오 플래그 갱신
    - ROOM_JOINED: 로컬 입장 확인
    - ERROR: 마지막 서버 오류 기록

Examples:
    >>> view = RoomMembershipView(context)
    >>> view.bind(client)
    >>> for record in view.participants:
    ...     print(record.name, record.audio_enabled)
"""
import logging
from typing import Dict, List, Optional

from ..shared import ParticipantRecord, RoomContext, short_id
from ..signaling import (
    ErrorMessage,
    MediaStateMessage,
    MessageType,
    RoomInfoMessage,
    RoomJoinedMessage,
    UserJoinedMessage,
    UserLeftMessage,
)

logger = logging.getLogger(__name__)


class RoomMembershipView:
    """원격 참가자 레코드를 참가자 ID로 보관하는 클래스.

    로컬 참가자는 저장하지 않습니다.

    Attributes:
        context (RoomContext): 룸/로컬 참가자 정보
        joined (bool): 서버로부터 입장 확인(ROOM_JOINED)을 받았는지 여부
        last_error (Optional[str]): 마지막으로 수신한 서버 오류 메시지
    """

    def __init__(self, context: RoomContext):
        self.context = context
        self.joined = False
        self.last_error: Optional[str] = None
        # participant_id -> ParticipantRecord
        self._participants: Dict[str, ParticipantRecord] = {}

    @property
    def participants(self) -> List[ParticipantRecord]:
        return list(self._participants.values())

    def get(self, participant_id: str) -> Optional[ParticipantRecord]:
        return self._participants.get(participant_id)

    def __len__(self) -> int:
        return len(self._participants)

    def __contains__(self, participant_id: object) -> bool:
        return participant_id in self._participants

    # ------------------------------------------------------------
    # 시그널링 연결
    # ------------------------------------------------------------

    def bind(self, transport) -> None:
        transport.subscribe(MessageType.ROOM_JOINED, self.on_room_joined)
        transport.subscribe(MessageType.ROOM_INFO, self.on_room_info)
        transport.subscribe(MessageType.USER_JOINED, self.on_user_joined)
        transport.subscribe(MessageType.USER_LEFT, self.on_user_left)
        transport.subscribe(MessageType.MEDIA_STATE, self.on_media_state)
        transport.subscribe(MessageType.ERROR, self.on_error)

    def unbind(self, transport) -> None:
        transport.unsubscribe(MessageType.ROOM_JOINED, self.on_room_joined)
        transport.unsubscribe(MessageType.ROOM_INFO, self.on_room_info)
        transport.unsubscribe(MessageType.USER_JOINED, self.on_user_joined)
        transport.unsubscribe(MessageType.USER_LEFT, self.on_user_left)
        transport.unsubscribe(MessageType.MEDIA_STATE, self.on_media_state)
        transport.unsubscribe(MessageType.ERROR, self.on_error)

    # ------------------------------------------------------------
    # 이벤트 처리
    # ------------------------------------------------------------

    def on_room_joined(self, message: RoomJoinedMessage) -> None:
        self.joined = True
        logger.info(f"[Room] 룸 '{self.context.room_id}' 입장 확인")

    def on_room_info(self, message: RoomInfoMessage) -> None:
        """룸 스냅샷으로 참가자 목록을 교체합니다."""
        self._participants = {
            info.user_id: ParticipantRecord(
                participant_id=info.user_id,
                name=info.name,
                audio_enabled=info.audio_enabled,
                video_enabled=info.video_enabled,
            )
            for info in message.data.participants
            if info.user_id and info.user_id != self.context.participant_id
        }
        logger.info(f"[Room] 룸 '{self.context.room_id}' 기존 참가자 {len(self._participants)}명")

    def on_user_joined(self, message: UserJoinedMessage) -> None:
        participant_id = message.data.user_id
        if not participant_id or participant_id == self.context.participant_id:
            return
        if participant_id in self._participants:
            logger.debug(f"[Room] 중복 입장 알림 무시: {short_id(participant_id)}")
            return

        self._participants[participant_id] = ParticipantRecord(
            participant_id=participant_id, name=message.data.name
        )
        logger.info(
            f"[Room] 참가자 '{message.data.name}' ({short_id(participant_id)}) 입장. "
            f"Room has {len(self._participants) + 1} peers"
        )

    def on_user_left(self, message: UserLeftMessage) -> Optional[ParticipantRecord]:
        record = self._participants.pop(message.data.user_id, None)
        if record is not None:
            logger.info(
                f"[Room] 참가자 '{record.name}' ({short_id(record.participant_id)}) 퇴장. "
                f"Room has {len(self._participants) + 1} peers"
            )
        return record

    def on_media_state(self, message: MediaStateMessage) -> None:
        record = self._participants.get(message.participant_id or "")
        if record is None:
            logger.debug(f"[Room] 알 수 없는 참가자의 미디어 상태 무시: {short_id(message.participant_id)}")
            return
        record.audio_enabled = message.data.audio_enabled
        record.video_enabled = message.data.video_enabled
        logger.info(
            f"[Room] {short_id(record.participant_id)} 미디어 상태: "
            f"audio={record.audio_enabled}, video={record.video_enabled}"
        )

    def on_error(self, message: ErrorMessage) -> None:
        self.last_error = message.reason
        logger.error(f"[Room] 서버 오류: {self.last_error}")

    def clear(self) -> None:
        self._participants.clear()
        self.joined = False
