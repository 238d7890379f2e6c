"""RTCPeerConnection 설정 헬퍼.

경로 탐색 서버 목록을 aiortc RTCConfiguration으로 변환합니다.
"""

import logging
from typing import Iterable, Optional

from aiortc import RTCConfiguration, RTCIceServer

from ..config import MeshSettings

logger = logging.getLogger(__name__)


def build_rtc_configuration(
    settings: Optional[MeshSettings] = None,
    urls: Optional[Iterable[str]] = None,
) -> RTCConfiguration:
    """STUN/TURN 서버 목록으로 RTCConfiguration을 생성합니다.

    Args:
        settings: STUN/TURN 설정. TURN은 URL/사용자/자격증명이 모두 있을 때만 추가
        urls: settings 대신 직접 지정하는 STUN 서버 URL 목록

    Returns:
        RTCConfiguration: RTCPeerConnection 생성에 사용할 설정
    """
    ice_servers = []

    stun_urls = list(urls) if urls is not None else (settings.ice_server_urls if settings else [])
    for url in stun_urls:
        ice_servers.append(RTCIceServer(urls=[url]))

    if settings is not None and settings.has_turn_server:
        ice_servers.append(RTCIceServer(
            urls=[settings.TURN_SERVER_URL],
            username=settings.TURN_USERNAME,
            credential=settings.TURN_CREDENTIAL
        ))
        logger.info(f"[WebRTC] TURN 서버 설정: {settings.TURN_SERVER_URL}")
    elif settings is not None:
        logger.info("[WebRTC] TURN 서버 설정 없음 - STUN만 사용")

    return RTCConfiguration(iceServers=ice_servers)
