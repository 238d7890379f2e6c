"""룸 입장/퇴장 흐름 모듈.

시그널링 클라이언트, 참가자 목록, 협상 엔진, 로컬 미디어 소스를 하나의 룸 세션으로
묶습니다.

입장 순서:
    1. 리스너 등록 (참가자 목록, 협상 엔진, 입장 확인)
    2. 시그널링 연결
    3. 짧은 대기 (LISTENER_SETTLE_DELAY) 후 JOIN 전송 (한 번만)
    4. ROOM_JOINED 대기 (JOIN_ACK_TIMEOUT). 시간 초과 시 경고 후 계속 진행
    5. 로컬 미디어 시작 및 협상 엔진에 트랙 전달

퇴장 순서 (각 단계 개별 보호):
    미디어 중지 -> LEAVE 전송 -> 피어 세션 정리 -> 참가자 목록 초기화 -> 연결 종료

Examples:
    >>> context = RoomContext(room_id="room-1", participant_id=str(uuid4()), display_name="상담사")
    >>> async with RoomSession(context, media=MediaPlayerSource("sample.mp4")) as session:
    ...     await session.set_media_state(audio_enabled=False, video_enabled=True)
    ...     await asyncio.sleep(60)
"""
import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

from ..config import MeshSettings, get_settings
from ..shared import RoomContext, short_id
from ..signaling import (
    DISCONNECTED,
    ERROR,
    ErrorMessage,
    MessageType,
    RoomJoinedMessage,
    SignalingClient,
    SignalingError,
)
from ..webrtc import NegotiationEngine, build_rtc_configuration
from .media import LocalMediaSource, NullMediaSource
from .membership import RoomMembershipView

logger = logging.getLogger(__name__)


class RoomSession:
    """룸 하나에 대한 로컬 참가자 세션.

    Attributes:
        context (RoomContext): 룸/로컬 참가자 정보
        transport (SignalingClient): 시그널링 클라이언트
        membership (RoomMembershipView): 원격 참가자 목록
        engine (NegotiationEngine): 피어 연결 협상 엔진
        media (LocalMediaSource): 로컬 미디어 소스
        on_remote_track: 원격 트랙 수신 콜백 ``(participant_id, track)``
        on_participant_left: 피어 세션 제거 콜백 ``(participant_id)``
        on_error: 연결/서버 오류 콜백 ``(exception)``
    """

    def __init__(
        self,
        context: RoomContext,
        transport: Optional[SignalingClient] = None,
        media: Optional[LocalMediaSource] = None,
        settings: Optional[MeshSettings] = None,
        engine: Optional[NegotiationEngine] = None,
        on_remote_track: Optional[Callable[..., Any]] = None,
        on_participant_left: Optional[Callable[..., Any]] = None,
        on_error: Optional[Callable[..., Any]] = None,
    ):
        self.context = context
        self.settings = settings if settings is not None else get_settings()
        self.transport = (
            transport if transport is not None else SignalingClient(self.settings.SIGNALING_URL)
        )
        self.media = media if media is not None else NullMediaSource()
        self.membership = RoomMembershipView(context)
        if engine is None:
            engine = NegotiationEngine(
                context,
                self.transport,
                configuration=build_rtc_configuration(self.settings),
            )
        self.engine = engine
        self.engine.on_remote_track = self._handle_remote_track
        self.engine.on_session_closed = self._handle_session_closed

        self.on_remote_track = on_remote_track
        self.on_participant_left = on_participant_left
        self.on_error = on_error

        self._entered = False
        self._leaving = False
        self._join_sent = False
        self._join_ack: Optional[asyncio.Future] = None

    @property
    def entered(self) -> bool:
        return self._entered

    @property
    def joined(self) -> bool:
        return self.membership.joined

    # ------------------------------------------------------------
    # 입장
    # ------------------------------------------------------------

    async def enter(self) -> "RoomSession":
        """룸에 입장합니다.

        Raises:
            SignalingConnectionError: 시그널링 서버 연결 실패 시
        """
        if self._entered:
            return self

        logger.info(f"[Room] 룸 '{self.context.room_id}' 입장 시작 (participant={short_id(self.context.participant_id)})")
        self._bind()
        try:
            await self.transport.connect()
        except SignalingError:
            self._unbind()
            raise

        self._entered = True
        self._leaving = False

        # Listeners are registered already; the pause only lets the relay settle.
        await asyncio.sleep(self.settings.LISTENER_SETTLE_DELAY)
        await self._send_join_once()
        await self._wait_for_join_ack()

        await self._start_media()
        return self

    def _bind(self) -> None:
        self.membership.bind(self.transport)
        self.engine.bind(self.transport)
        self.transport.subscribe(MessageType.ROOM_JOINED, self._on_room_joined)
        self.transport.subscribe(MessageType.ERROR, self._on_error_message)
        self.transport.subscribe(ERROR, self._on_transport_error)
        self.transport.subscribe(DISCONNECTED, self._on_disconnected)

    def _unbind(self) -> None:
        self.membership.unbind(self.transport)
        self.engine.unbind(self.transport)
        self.transport.unsubscribe(MessageType.ROOM_JOINED, self._on_room_joined)
        self.transport.unsubscribe(MessageType.ERROR, self._on_error_message)
        self.transport.unsubscribe(ERROR, self._on_transport_error)
        self.transport.unsubscribe(DISCONNECTED, self._on_disconnected)

    async def _send_join_once(self) -> None:
        if self._join_sent:
            return
        self._join_ack = asyncio.get_running_loop().create_future()
        logger.info(f"[Room] JOIN 전송: room={self.context.room_id}, name={self.context.display_name}")
        await self.transport.send_join(self.context)
        self._join_sent = True

    async def _wait_for_join_ack(self) -> None:
        if self._join_ack is None:
            return
        try:
            await asyncio.wait_for(self._join_ack, timeout=self.settings.JOIN_ACK_TIMEOUT)
            logger.info("[Room] ROOM_JOINED 수신")
        except asyncio.TimeoutError:
            logger.warning(
                f"[Room] ROOM_JOINED 대기 시간 초과 ({self.settings.JOIN_ACK_TIMEOUT}s), "
                f"참가자 이벤트로 상태를 맞추며 계속 진행"
            )

    async def _start_media(self) -> None:
        try:
            tracks = await self.media.start()
        except Exception as exc:
            logger.error(f"[Room] 로컬 미디어 시작 실패: {exc}", exc_info=True)
            await self._report(exc)
            return
        self.engine.set_local_tracks(tracks)

    # ------------------------------------------------------------
    # 미디어 상태
    # ------------------------------------------------------------

    async def set_media_state(self, audio_enabled: bool, video_enabled: bool) -> bool:
        """로컬 미디어 플래그를 바꾸고 MEDIA_STATE를 전송합니다.

        Returns:
            bool: 메시지를 전송했으면 True
        """
        self.media.set_enabled("audio", audio_enabled)
        self.media.set_enabled("video", video_enabled)
        return await self.transport.send_media_state(self.context, audio_enabled, video_enabled)

    # ------------------------------------------------------------
    # 퇴장
    # ------------------------------------------------------------

    async def leave(self) -> None:
        """룸에서 퇴장합니다. 여러 번 호출해도 안전합니다."""
        if not self._entered or self._leaving:
            return
        self._leaving = True
        logger.info(f"[Room] 룸 '{self.context.room_id}' 퇴장 시작")

        try:
            await self.media.stop()
        except Exception as exc:
            logger.error(f"[Room] 로컬 미디어 중지 오류: {exc}", exc_info=True)

        try:
            await self.transport.send_leave(self.context)
        except Exception as exc:
            logger.warning(f"[Room] LEAVE 전송 실패 (무시): {exc}")

        try:
            await self.engine.shutdown()
        except Exception as exc:
            logger.error(f"[Room] 피어 세션 정리 오류: {exc}", exc_info=True)

        self.membership.clear()
        self._unbind()

        try:
            await self.transport.disconnect()
        except Exception as exc:
            logger.error(f"[Room] 시그널링 연결 종료 오류: {exc}", exc_info=True)

        if self._join_ack is not None and not self._join_ack.done():
            self._join_ack.cancel()
        self._join_ack = None
        self._join_sent = False
        self._entered = False
        logger.info(f"[Room] 룸 '{self.context.room_id}' 퇴장 완료")

    async def __aenter__(self) -> "RoomSession":
        return await self.enter()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.leave()

    # ------------------------------------------------------------
    # 이벤트 처리
    # ------------------------------------------------------------

    def _on_room_joined(self, message: RoomJoinedMessage) -> None:
        if self._join_ack is not None and not self._join_ack.done():
            self._join_ack.set_result(message)

    async def _on_error_message(self, message: ErrorMessage) -> None:
        await self._report(SignalingError(message.reason))

    async def _on_transport_error(self, exc: Optional[BaseException]) -> None:
        await self._report(exc or SignalingError("signaling transport error"))

    async def _on_disconnected(self, info: Any) -> None:
        if self._leaving or not self._entered:
            return
        logger.warning(f"[Room] 시그널링 연결이 예기치 않게 종료됨: {info}")
        await self._report(SignalingError(f"signaling connection closed: {info}"))

    async def _handle_remote_track(self, participant_id: str, track) -> None:
        await self._call(self.on_remote_track, participant_id, track)

    async def _handle_session_closed(self, participant_id: str) -> None:
        await self._call(self.on_participant_left, participant_id)

    async def _report(self, error: BaseException) -> None:
        await self._call(self.on_error, error)

    async def _call(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error(f"[Room] 콜백 오류: {exc}", exc_info=True)
