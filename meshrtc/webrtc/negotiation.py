"""피어 연결 협상 엔진.

룸 하나에 대해 원격 참가자 ID -> PeerSession 맵을 소유하고, 역할을 결정하며,
offer/answer/ICE candidate 교환을 진행합니다.

주요 기능:
    - 룸 스냅샷(ROOM_INFO)으로 룸 전체 역할을 한 번만 결정
    - Initiator: 새 참가자 입장 시 offer 생성 및 전송
    - Responder: offer 수신 시 answer 생성 및 전송 (offer 충돌 시 rollback)
    - ICE candidate: remote description 이전 도착분은 대기열에 보관 후 순서대로 적용
    - 참가자 퇴장/연결 실패/로컬 퇴장 시 세션 정리

State Machine (원격 참가자별):
    Initiator: IDLE -> OFFER_SENT -> STABLE
    Responder: IDLE -> ANSWER_SENT -> STABLE
    CLOSED: 모든 상태에서 도달 가능

Concurrency:
    - 단일 이벤트 루프에서 실행되며 잠금을 사용하지 않습니다.
    - 같은 참가자에 대한 두 이벤트가 await 지점에서 교차할 수 있으므로, 각 핸들러는
      await 이후 세션이 여전히 맵에 있는 같은 세션이고 닫히지 않았는지 확인한 뒤에만
      상태를 전이합니다.
    - 한 참가자 이벤트 처리 중 발생한 예외는 로그만 남기고 다른 참가자 세션이나
      엔진 자체에 영향을 주지 않습니다.

Examples:
    >>> engine = NegotiationEngine(context, transport, configuration=rtc_config)
    >>> engine.bind(transport)
    >>> engine.set_local_tracks(media.tracks)
    >>> # ... 시그널링 이벤트 처리 ...
    >>> await engine.shutdown()
"""
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union, assert_never

from aiortc import MediaStreamTrack

from ..shared import NegotiationState, RoomContext, RoomRole, decide_room_role, short_id
from ..signaling import messages
from ..signaling.messages import (
    AnswerMessage,
    ErrorMessage,
    IceCandidateMessage,
    JoinMessage,
    LeaveMessage,
    MediaStateMessage,
    MessageType,
    OfferMessage,
    RoomInfoMessage,
    RoomJoinedMessage,
    SignalingMessage,
    UserJoinedMessage,
    UserLeftMessage,
)
from .ice import from_rtc_candidate
from .peer_session import STABLE_SIGNALING_STATE, PeerSession, SessionClosedError

logger = logging.getLogger(__name__)

NEGOTIATION_MESSAGE_TYPES = (
    MessageType.ROOM_INFO,
    MessageType.USER_JOINED,
    MessageType.USER_LEFT,
    MessageType.OFFER,
    MessageType.ANSWER,
    MessageType.ICE_CANDIDATE,
)

RemoteTrackCallback = Callable[[str, MediaStreamTrack], Union[None, Awaitable[None]]]
SessionClosedCallback = Callable[[str], Union[None, Awaitable[None]]]


class NegotiationEngine:
    """룸 단위 피어 연결 협상 엔진.

    Attributes:
        context (RoomContext): 룸/로컬 참가자 정보
        on_remote_track: 원격 트랙 수신 콜백 ``(participant_id, track)``
        on_session_closed: 세션 제거 콜백 ``(participant_id)``

    Note:
        - 세션 맵은 엔진만 변경합니다.
        - 참가자 ID당 세션은 최대 하나입니다.
        - 세션을 맵에서 제거하기 전에 항상 RTCPeerConnection을 먼저 닫습니다.
    """

    def __init__(
        self,
        context: RoomContext,
        transport,
        configuration=None,
        session_factory: Optional[Callable[..., PeerSession]] = None,
        on_remote_track: Optional[RemoteTrackCallback] = None,
        on_session_closed: Optional[SessionClosedCallback] = None,
    ):
        self.context = context
        self._transport = transport
        self._configuration = configuration
        self._session_factory = session_factory or PeerSession
        self._sessions: Dict[str, PeerSession] = {}
        self._room_role: Optional[RoomRole] = None
        self._local_tracks: List[MediaStreamTrack] = []
        self.on_remote_track = on_remote_track
        self.on_session_closed = on_session_closed

    # ------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------

    @property
    def room_role(self) -> Optional[RoomRole]:
        return self._room_role

    @property
    def local_tracks(self) -> List[MediaStreamTrack]:
        return list(self._local_tracks)

    @property
    def session_ids(self) -> List[str]:
        return list(self._sessions.keys())

    def get_session(self, participant_id: str) -> Optional[PeerSession]:
        return self._sessions.get(participant_id)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, participant_id: object) -> bool:
        return participant_id in self._sessions

    # ------------------------------------------------------------
    # 연결
    # ------------------------------------------------------------

    def bind(self, transport) -> None:
        """시그널링 클라이언트에 협상 메시지 리스너를 등록합니다."""
        for message_type in NEGOTIATION_MESSAGE_TYPES:
            transport.subscribe(message_type, self.handle_message)

    def unbind(self, transport) -> None:
        for message_type in NEGOTIATION_MESSAGE_TYPES:
            transport.unsubscribe(message_type, self.handle_message)

    def set_local_tracks(self, tracks: Sequence[MediaStreamTrack]) -> None:
        """로컬 미디어 트랙을 지정합니다.

        이후 생성되거나 offer를 보내는 세션에 부착됩니다. 이미 offer 없이 생성된
        세션에 대한 재협상은 하지 않습니다.
        """
        self._local_tracks = list(tracks)
        logger.info(f"[WebRTC] 로컬 트랙 {len(self._local_tracks)}개 준비됨")

    # ------------------------------------------------------------
    # 메시지 처리
    # ------------------------------------------------------------

    async def handle_message(self, message: SignalingMessage) -> None:
        """시그널링 메시지 하나를 처리합니다.

        예외는 여기서 로그로 남기고 전파하지 않습니다.
        """
        try:
            if not self._accepts(message):
                return

            if isinstance(message, RoomInfoMessage):
                self._on_room_info(message)
            elif isinstance(message, UserJoinedMessage):
                await self._on_user_joined(message)
            elif isinstance(message, UserLeftMessage):
                await self._on_user_left(message)
            elif isinstance(message, OfferMessage):
                await self._on_offer(message)
            elif isinstance(message, AnswerMessage):
                await self._on_answer(message)
            elif isinstance(message, IceCandidateMessage):
                await self._on_ice_candidate(message)
            elif isinstance(message, (JoinMessage, LeaveMessage, RoomJoinedMessage, MediaStateMessage, ErrorMessage)):
                logger.debug(f"[WebRTC] 협상과 무관한 메시지: {message.type}")
            else:
                assert_never(message)
        except SessionClosedError as exc:
            logger.info(f"[WebRTC] {message.type} 처리 중단 (세션 종료됨): {exc}")
        except Exception as exc:
            logger.error(
                f"[WebRTC] {message.type} 처리 실패 (from={short_id(message.sender)}): "
                f"{type(exc).__name__}: {exc}",
                exc_info=True,
            )

    def _accepts(self, message: SignalingMessage) -> bool:
        if message.room_id is not None and message.room_id != self.context.room_id:
            logger.warning(f"[WebRTC] 다른 룸 메시지 무시: room={message.room_id}, type={message.type}")
            return False
        if message.to is not None and message.to != self.context.participant_id:
            logger.debug(f"[WebRTC] 다른 참가자 대상 메시지 무시: to={short_id(message.to)}")
            return False
        if message.sender is not None and message.sender == self.context.participant_id:
            return False
        return True

    def _on_room_info(self, message: RoomInfoMessage) -> None:
        participants = [
            p for p in message.data.participants if p.user_id != self.context.participant_id
        ]
        if self._room_role is not None:
            logger.info(f"[WebRTC] 룸 역할 이미 결정됨 ({self._room_role.value}), 스냅샷 무시")
            return

        self._room_role = decide_room_role(participants)
        logger.info(
            f"[WebRTC] 룸 스냅샷 수신: 기존 참가자={len(participants)}, "
            f"역할={self._room_role.value}"
        )

    async def _on_user_joined(self, message: UserJoinedMessage) -> None:
        remote_id = message.data.user_id
        if not remote_id or remote_id == self.context.participant_id:
            return

        role = self._room_role
        if role is not RoomRole.INITIATOR:
            logger.info(f"[WebRTC] Initiator가 아님 ({role.value if role else None}), offer 생략: {short_id(remote_id)}")
            return

        # No deferred offer: a participant joining before local media is ready
        # is never offered to.
        if not self._local_tracks:
            logger.warning(f"[WebRTC] 로컬 미디어 미준비 - offer 생략: {short_id(remote_id)}")
            return

        session = self._ensure_session(remote_id, role)
        if session.signaling_state != STABLE_SIGNALING_STATE:
            logger.warning(
                f"[WebRTC] offer 생략, signaling={session.signaling_state}: {short_id(remote_id)}"
            )
            return

        session.attach_local_media(self._local_tracks)
        logger.info(f"[WebRTC] offer 생성 중: {short_id(remote_id)}")
        description = await session.create_offer()
        if not self._is_current(remote_id, session):
            logger.info(f"[WebRTC] offer 생성 후 세션이 교체/종료됨, 전송 생략: {short_id(remote_id)}")
            return

        session.state = NegotiationState.OFFER_SENT
        await self._transport.send(
            messages.offer(self.context, remote_id, description.sdp, description.type)
        )
        logger.info(f"[WebRTC] offer 전송 완료: {short_id(remote_id)}")

    async def _on_offer(self, message: OfferMessage) -> None:
        remote_id = message.sender
        if not remote_id:
            logger.warning("[WebRTC] 발신자 없는 offer 무시")
            return

        logger.info(f"[WebRTC] offer 수신: {short_id(remote_id)}")
        session = self._ensure_session(remote_id, RoomRole.RESPONDER)

        if session.signaling_state != STABLE_SIGNALING_STATE:
            # Offer glare: drop our half-finished local offer first.
            logger.warning(
                f"[WebRTC] offer 충돌 감지 (signaling={session.signaling_state}), rollback 시도: {short_id(remote_id)}"
            )
            await session.rollback()
            if not self._is_current(remote_id, session):
                return

        await session.apply_remote_description(message.data.sdp, message.data.type)
        if not self._is_current(remote_id, session):
            return

        description = await session.create_answer()
        if not self._is_current(remote_id, session):
            logger.info(f"[WebRTC] answer 생성 후 세션이 교체/종료됨, 전송 생략: {short_id(remote_id)}")
            return

        session.state = NegotiationState.ANSWER_SENT
        if session.connection_state == "connected":
            session.state = NegotiationState.STABLE
        await self._transport.send(
            messages.answer(self.context, remote_id, description.sdp, description.type)
        )
        logger.info(f"[WebRTC] answer 전송 완료: {short_id(remote_id)}")

    async def _on_answer(self, message: AnswerMessage) -> None:
        remote_id = message.sender
        session = self._sessions.get(remote_id) if remote_id else None
        if session is None or session.state is not NegotiationState.OFFER_SENT:
            state = session.state.value if session else None
            logger.warning(f"[WebRTC] answer 무시 (state={state}): {short_id(remote_id)}")
            return

        logger.info(f"[WebRTC] answer 수신: {short_id(remote_id)}")
        await session.apply_remote_description(message.data.sdp, message.data.type)
        if not self._is_current(remote_id, session):
            return

        session.state = NegotiationState.STABLE
        logger.info(f"[WebRTC] 협상 완료 (stable): {short_id(remote_id)}")

    async def _on_ice_candidate(self, message: IceCandidateMessage) -> None:
        remote_id = message.sender
        if not remote_id:
            logger.warning("[WebRTC] 발신자 없는 ICE candidate 무시")
            return

        session = self._ensure_session(remote_id, None)
        await session.add_candidate(message.data)

    async def _on_user_left(self, message: UserLeftMessage) -> None:
        remote_id = message.data.user_id
        logger.info(f"[WebRTC] 참가자 퇴장: {short_id(remote_id)}")
        await self.remove_session(remote_id)

    # ------------------------------------------------------------
    # 세션 관리
    # ------------------------------------------------------------

    def _ensure_session(self, remote_id: str, role: Optional[RoomRole]) -> PeerSession:
        """참가자 세션을 재사용하거나 새로 생성합니다.

        Args:
            remote_id: 원격 참가자 ID
            role: 세션 역할. 세션에 역할이 없을 때만 적용되며 None이면 미정으로 둠

        Returns:
            PeerSession: 맵에 있는 유일한 세션
        """
        session = self._sessions.get(remote_id)
        if session is None:
            session = self._session_factory(
                remote_id,
                configuration=self._configuration,
                role=role,
                on_track=self._handle_remote_track,
                on_ice_candidate=self._handle_local_candidate,
                on_connection_state_change=self._handle_connection_state,
            )
            self._sessions[remote_id] = session
            if self._local_tracks:
                session.attach_local_media(self._local_tracks)
        else:
            session.assign_role(role)
        return session

    def _is_current(self, remote_id: str, session: PeerSession) -> bool:
        return self._sessions.get(remote_id) is session and not session.closed

    async def remove_session(self, remote_id: Optional[str]) -> bool:
        """세션을 닫고 맵에서 제거합니다.

        RTCPeerConnection 종료가 끝난 뒤에 맵에서 제거하며, 남은 candidate는
        버려집니다.

        Returns:
            bool: 제거한 세션이 있었으면 True
        """
        session = self._sessions.get(remote_id) if remote_id else None
        if session is None:
            return False

        await session.close()
        # 동시에 들어온 제거 요청 중 맵에서 지운 쪽만 콜백을 호출합니다.
        if self._sessions.get(remote_id) is not session:
            return False
        del self._sessions[remote_id]
        logger.info(f"[WebRTC] 세션 제거: {short_id(remote_id)} (남은 세션={len(self._sessions)})")
        await self._call(self.on_session_closed, remote_id)
        return True

    async def shutdown(self) -> None:
        """로컬 참가자 퇴장 시 모든 세션을 정리하고 역할 결정을 초기화합니다."""
        logger.info(f"[WebRTC] 모든 피어 세션 정리 ({len(self._sessions)}개)")
        for remote_id in list(self._sessions.keys()):
            try:
                await self.remove_session(remote_id)
            except Exception as exc:
                logger.error(f"[WebRTC] 세션 정리 실패: {short_id(remote_id)}: {exc}", exc_info=True)
        self._sessions.clear()
        self._room_role = None
        self._local_tracks = []

    # ------------------------------------------------------------
    # 세션 이벤트 콜백
    # ------------------------------------------------------------

    async def _handle_local_candidate(self, remote_id: str, candidate) -> None:
        session = self._sessions.get(remote_id)
        if session is None or session.closed:
            return
        await self._transport.send(
            messages.ice_candidate(self.context, remote_id, from_rtc_candidate(candidate))
        )

    async def _handle_remote_track(self, remote_id: str, track: MediaStreamTrack) -> None:
        await self._call(self.on_remote_track, remote_id, track)

    async def _handle_connection_state(self, remote_id: str, state: str) -> None:
        session = self._sessions.get(remote_id)
        if session is None or session.closed:
            return

        if state == "connected" and session.state is NegotiationState.ANSWER_SENT:
            session.state = NegotiationState.STABLE
            logger.info(f"[WebRTC] 협상 완료 (stable): {short_id(remote_id)}")
        elif state == "failed":
            logger.warning(f"[WebRTC] 피어 {short_id(remote_id)} 연결 실패, 세션 정리")
            await self.remove_session(remote_id)

    async def _call(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error(f"[WebRTC] 콜백 오류: {exc}", exc_info=True)
