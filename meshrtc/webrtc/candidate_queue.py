"""원격 ICE candidate 대기열.

remote description이 설정되기 전에 도착한 candidate를 보관했다가,
description이 적용된 뒤 도착 순서대로 적용합니다.
"""
import logging
from collections import deque
from typing import Deque, Optional

from ..signaling.messages import IceCandidateData
from .ice import to_rtc_candidate

logger = logging.getLogger(__name__)


class RemoteDescriptionMissingError(RuntimeError):
    """remote description 없이 flush를 호출했을 때 발생합니다 (호출 순서 오류)."""


class CandidateQueue:
    """피어 세션 하나에 속한 candidate FIFO.

    Note:
        - enqueue()는 언제든 호출 가능
        - flush()는 remote description이 있을 때만 호출 가능
        - flush 도중 추가된 candidate는 진행 중인 flush가 이어서 적용함
          (동시에 두 flush가 돌면서 순서가 뒤바뀌지 않음)
        - 개별 candidate 적용 실패는 로그만 남기고 나머지를 계속 적용
    """

    def __init__(self, label: Optional[str] = None):
        self._items: Deque[IceCandidateData] = deque()
        self._flushing = False
        self._label = label or "?"

    def __len__(self) -> int:
        return len(self._items)

    @property
    def is_flushing(self) -> bool:
        return self._flushing

    def enqueue(self, candidate: IceCandidateData) -> None:
        self._items.append(candidate)
        logger.debug(f"[WebRTC] 원격 ICE candidate 대기열 추가 (peer={self._label}, 크기={len(self._items)})")

    def clear(self) -> int:
        """남은 candidate를 버리고 버린 개수를 반환합니다."""
        dropped = len(self._items)
        self._items.clear()
        return dropped

    async def flush(self, pc) -> int:
        """대기 중인 candidate를 도착 순서대로 적용합니다.

        Args:
            pc: remote description이 설정된 RTCPeerConnection

        Returns:
            int: 이번 호출에서 적용에 성공한 candidate 수

        Raises:
            RemoteDescriptionMissingError: remote description이 아직 없을 때
        """
        if pc.remoteDescription is None:
            raise RemoteDescriptionMissingError(
                f"remote description 없이 candidate flush 요청 (peer={self._label})"
            )
        if self._flushing:
            return 0

        self._flushing = True
        applied = 0
        try:
            if self._items:
                logger.info(f"[WebRTC] 대기 중인 ICE candidate {len(self._items)}개 적용 (peer={self._label})")
            while self._items:
                data = self._items.popleft()
                try:
                    candidate = to_rtc_candidate(data)
                    if candidate is None:
                        continue
                    await pc.addIceCandidate(candidate)
                    applied += 1
                except Exception as exc:
                    logger.error(f"[WebRTC] ICE candidate 적용 실패, 건너뜀 (peer={self._label}): {exc}")
        finally:
            self._flushing = False
        return applied
