"""WebRTC 피어 연결 모듈.

Classes:
    NegotiationEngine: 룸 단위 offer/answer/ICE 협상 엔진
    PeerSession: 원격 참가자별 RTCPeerConnection 래퍼
    CandidateQueue: remote description 이전 ICE candidate 대기열

Functions:
    build_rtc_configuration: STUN/TURN 설정 생성
"""

from .candidate_queue import CandidateQueue, RemoteDescriptionMissingError
from .config import build_rtc_configuration
from .ice import from_rtc_candidate, to_rtc_candidate
from .negotiation import NegotiationEngine
from .peer_session import PeerSession, SessionClosedError

__all__ = [
    "CandidateQueue",
    "RemoteDescriptionMissingError",
    "build_rtc_configuration",
    "from_rtc_candidate",
    "to_rtc_candidate",
    "NegotiationEngine",
    "PeerSession",
    "SessionClosedError",
]
