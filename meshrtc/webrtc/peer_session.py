"""원격 참가자 한 명과의 피어 세션.

RTCPeerConnection 하나와 그 candidate 대기열, 로컬 미디어 트랙 부착 상태,
협상 상태를 함께 소유합니다.

Classes:
    PeerSession: 원격 참가자별 RTCPeerConnection 래퍼
    SessionClosedError: 닫힌 세션에서 협상을 시도했을 때 발생

Event Handlers:
    - icecandidate: 로컬 candidate를 on_ice_candidate 콜백으로 전달
    - track: 수신 미디어 트랙을 on_track 콜백으로 전달 (참가자 ID 포함)
    - connectionstatechange: 연결 상태를 on_connection_state_change 콜백으로 전달

Note:
    세션이 닫히면 위 이벤트는 더 이상 콜백으로 전달되지 않습니다.
"""
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from aiortc import MediaStreamTrack, RTCPeerConnection, RTCSessionDescription

from ..shared import NegotiationState, RoomRole, short_id
from ..signaling.messages import IceCandidateData
from .candidate_queue import CandidateQueue

logger = logging.getLogger(__name__)

# RTCPeerConnection.signalingState 초기값 ("교환 진행 중 아님")
STABLE_SIGNALING_STATE = "stable"

SessionCallback = Callable[..., Union[None, Awaitable[None]]]


class SessionClosedError(RuntimeError):
    """닫힌 세션에서 협상 단계를 실행하려 할 때 발생합니다."""


async def _invoke(callback: Optional[SessionCallback], *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class PeerSession:
    """원격 참가자 한 명과 협상 중이거나 협상된 RTCPeerConnection을 관리합니다.

    Attributes:
        participant_id (str): 원격 참가자 ID
        state (NegotiationState): 협상 상태 (엔진이 전이시킴)
        candidates (CandidateQueue): remote description 전에 도착한 candidate 대기열
        pc (RTCPeerConnection): 실제 전송 세션

    Examples:
        >>> session = PeerSession("peer-456", configuration=rtc_config)
        >>> session.attach_local_media(local_tracks)
        True
        >>> offer = await session.create_offer()
        >>> await session.close()
    """

    def __init__(
        self,
        participant_id: str,
        configuration=None,
        role: Optional[RoomRole] = None,
        on_track: Optional[SessionCallback] = None,
        on_ice_candidate: Optional[SessionCallback] = None,
        on_connection_state_change: Optional[SessionCallback] = None,
        peer_connection_factory: Callable[..., Any] = RTCPeerConnection,
    ):
        self.participant_id = participant_id
        self.state = NegotiationState.IDLE
        self.candidates = CandidateQueue(label=short_id(participant_id))
        self._role = role
        self._on_track = on_track
        self._on_ice_candidate = on_ice_candidate
        self._on_connection_state_change = on_connection_state_change
        self._closed = False
        self._close_task: Optional[asyncio.Future] = None

        self.pc = peer_connection_factory(configuration=configuration)
        self._register_handlers()
        logger.info(f"[WebRTC] 피어 세션 생성: peer={short_id(participant_id)}, role={role.value if role else None}")

    def _register_handlers(self) -> None:
        pc = self.pc

        @pc.on("icecandidate")
        async def on_ice_candidate(candidate):
            if candidate is None or self._closed:
                return
            logger.debug(f"[WebRTC] 로컬 ICE candidate: peer={short_id(self.participant_id)}")
            await _invoke(self._on_ice_candidate, self.participant_id, candidate)

        @pc.on("track")
        async def on_track(track: MediaStreamTrack):
            if self._closed:
                return
            logger.info(f"[WebRTC] 피어 {short_id(self.participant_id)} {track.kind} 트랙 수신")
            await _invoke(self._on_track, self.participant_id, track)

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            if self._closed:
                return
            state = pc.connectionState
            logger.info(f"[WebRTC] 피어 {short_id(self.participant_id)} 연결 상태: {state}")
            await _invoke(self._on_connection_state_change, self.participant_id, state)

    # ------------------------------------------------------------
    # 상태 조회
    # ------------------------------------------------------------

    @property
    def role(self) -> Optional[RoomRole]:
        return self._role

    def assign_role(self, role: Optional[RoomRole]) -> Optional[RoomRole]:
        """역할이 비어 있을 때만 지정합니다. 한 번 정해진 역할은 바뀌지 않습니다."""
        if self._role is None and role is not None:
            self._role = role
            logger.debug(f"[WebRTC] 피어 {short_id(self.participant_id)} 역할 지정: {role.value}")
        return self._role

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def signaling_state(self) -> str:
        return self.pc.signalingState

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    @property
    def has_remote_description(self) -> bool:
        description = self.pc.remoteDescription
        return description is not None and bool(description.sdp)

    @property
    def local_track_count(self) -> int:
        return len([sender for sender in self.pc.getSenders() if sender.track is not None])

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionClosedError(f"세션이 이미 닫힘: peer={short_id(self.participant_id)}")

    # ------------------------------------------------------------
    # 미디어
    # ------------------------------------------------------------

    def attach_local_media(self, tracks: Sequence[MediaStreamTrack]) -> bool:
        """로컬 트랙이 하나도 부착되지 않았을 때만 트랙을 부착합니다.

        재시도 시 중복 부착을 막기 위해 트랙을 가진 sender 수로 판단합니다.
        트랙 객체는 복사하지 않고 그대로 공유합니다.

        Returns:
            bool: 이번 호출에서 트랙을 부착했으면 True
        """
        if self._closed or not tracks:
            return False
        if self.local_track_count > 0:
            logger.debug(f"[WebRTC] 피어 {short_id(self.participant_id)} 로컬 트랙 이미 부착됨")
            return False

        for track in tracks:
            self.pc.addTrack(track)
            logger.debug(f"[WebRTC] 로컬 {track.kind} 트랙 부착: peer={short_id(self.participant_id)}")
        return True

    # ------------------------------------------------------------
    # 협상 단계
    # ------------------------------------------------------------

    async def create_offer(self) -> RTCSessionDescription:
        self._ensure_open()
        offer = await self.pc.createOffer()
        self._ensure_open()
        await self.pc.setLocalDescription(offer)
        logger.info(f"[WebRTC] offer 생성: peer={short_id(self.participant_id)}")
        return self.pc.localDescription or offer

    async def create_answer(self) -> RTCSessionDescription:
        self._ensure_open()
        answer = await self.pc.createAnswer()
        self._ensure_open()
        await self.pc.setLocalDescription(answer)
        logger.info(f"[WebRTC] answer 생성: peer={short_id(self.participant_id)}")
        return self.pc.localDescription or answer

    async def rollback(self) -> bool:
        """완료되지 않은 로컬 offer를 되돌립니다 (offer 충돌 해소용).

        실패는 무시합니다. aiortc는 rollback을 지원하지 않으므로 이 경우 로컬 offer가
        그대로 남고, 뒤이은 remote offer 적용도 실패합니다.

        Returns:
            bool: rollback이 성공했으면 True
        """
        self._ensure_open()
        try:
            await self.pc.setLocalDescription(RTCSessionDescription(sdp="", type="rollback"))
        except Exception as exc:
            logger.warning(f"[WebRTC] 피어 {short_id(self.participant_id)} rollback 실패 (무시): {exc}")
            return False
        logger.info(f"[WebRTC] 피어 {short_id(self.participant_id)} 로컬 offer rollback")
        return True

    async def apply_remote_description(self, sdp: str, sdp_type: str) -> None:
        """remote description을 적용한 뒤 대기 중인 candidate를 적용합니다.

        description 적용과 candidate 적용 순서는 항상 description이 먼저입니다.
        """
        self._ensure_open()
        logger.info(
            f"[WebRTC] remote description 설정: peer={short_id(self.participant_id)}, "
            f"type={sdp_type}, signaling={self.signaling_state}"
        )
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=sdp_type))
        self._ensure_open()
        await self.candidates.flush(self.pc)

    async def add_candidate(self, candidate: IceCandidateData) -> None:
        """원격 candidate를 대기열에 넣고, remote description이 있으면 바로 적용합니다."""
        self._ensure_open()
        self.candidates.enqueue(candidate)
        if self.has_remote_description:
            await self.candidates.flush(self.pc)

    # ------------------------------------------------------------
    # 종료
    # ------------------------------------------------------------

    async def close(self) -> None:
        """RTCPeerConnection을 닫습니다.

        멱등 동작: 여러 번 또는 동시에 호출해도 실제 종료는 한 번만 수행됩니다.
        종료가 시작되는 즉시 이벤트 전달과 candidate 적용이 중단됩니다.
        """
        first = self._close_task is None
        if first:
            self._closed = True
            self.state = NegotiationState.CLOSED
            dropped = self.candidates.clear()
            if dropped:
                logger.debug(f"[WebRTC] 피어 {short_id(self.participant_id)} 대기 candidate {dropped}개 폐기")
            self._close_task = asyncio.ensure_future(self.pc.close())
        await asyncio.shield(self._close_task)
        if first:
            logger.info(f"[WebRTC] 피어 {short_id(self.participant_id)} 연결 종료")
