"""ICE candidate 변환.

시그널링 페이로드 ``{candidate, sdpMid, sdpMLineIndex}``와 aiortc
RTCIceCandidate 사이를 변환합니다.
"""

from typing import Optional

from aiortc import RTCIceCandidate
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..signaling.messages import IceCandidateData

CANDIDATE_PREFIX = "candidate:"


def to_rtc_candidate(data: IceCandidateData) -> Optional[RTCIceCandidate]:
    """시그널링 페이로드를 RTCIceCandidate로 변환합니다.

    빈 candidate 문자열(end-of-candidates)은 None을 반환합니다.

    Raises:
        ValueError: candidate 문자열 형식이 잘못된 경우
    """
    candidate_str = (data.candidate or "").strip()
    if candidate_str.startswith(CANDIDATE_PREFIX):
        candidate_str = candidate_str[len(CANDIDATE_PREFIX):]
    if not candidate_str:
        return None

    try:
        candidate = candidate_from_sdp(candidate_str)
    except (AssertionError, IndexError, ValueError) as exc:
        raise ValueError(f"잘못된 ICE candidate: {data.candidate!r}") from exc
    candidate.sdpMid = data.sdp_mid
    candidate.sdpMLineIndex = data.sdp_mline_index
    return candidate


def from_rtc_candidate(candidate: RTCIceCandidate) -> IceCandidateData:
    """로컬 RTCIceCandidate를 시그널링 페이로드로 변환합니다."""
    return IceCandidateData(
        candidate=CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        sdp_mid=candidate.sdpMid,
        sdp_mline_index=candidate.sdpMLineIndex,
    )
