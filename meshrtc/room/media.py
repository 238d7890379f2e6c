"""로컬 미디어 소스 모듈.

협상 엔진에 부착할 로컬 오디오/비디오 트랙을 제공합니다.

Classes:
    LocalMediaSource: 미디어 소스 프로토콜
    MediaPlayerSource: 파일/장치 입력 (aiortc MediaPlayer + MediaRelay)
    NullMediaSource: 트랙 없음 (수신 전용 참가자)
"""
import logging
from typing import Any, Dict, List, Optional, Protocol

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay

logger = logging.getLogger(__name__)


class LocalMediaSource(Protocol):
    """로컬 미디어 소스 인터페이스.

    ``tracks``는 start() 전이나 stop() 후에는 빈 목록입니다.
    """

    @property
    def tracks(self) -> List[MediaStreamTrack]: ...

    async def start(self) -> List[MediaStreamTrack]: ...

    async def stop(self) -> None: ...

    def set_enabled(self, kind: str, enabled: bool) -> None: ...

    def is_enabled(self, kind: str) -> bool: ...


class _MediaFlags:
    def __init__(self):
        self._enabled: Dict[str, bool] = {"audio": True, "video": True}

    def set_enabled(self, kind: str, enabled: bool) -> None:
        """종류별 활성화 플래그를 기록합니다 (MEDIA_STATE 전송용).

        프레임 자체를 음소거하지는 않습니다.
        """
        if kind not in self._enabled:
            raise ValueError(f"알 수 없는 미디어 종류: {kind}")
        self._enabled[kind] = enabled
        logger.info(f"[Media] {kind} {'활성화' if enabled else '비활성화'}")

    def is_enabled(self, kind: str) -> bool:
        return self._enabled.get(kind, False)


class MediaPlayerSource(_MediaFlags):
    """aiortc MediaPlayer 기반 로컬 미디어 소스.

    MediaRelay를 통해 원본 트랙을 한 번 구독하고, 그 구독 트랙을 모든 피어
    세션이 공유합니다.

    Args:
        file: 미디어 파일 경로 또는 장치 이름 (예: "/dev/video0")
        format: ffmpeg 입력 포맷 (예: "v4l2", "avfoundation")
        options: ffmpeg 입력 옵션

    Examples:
        >>> source = MediaPlayerSource("sample.mp4")
        >>> tracks = await source.start()
        >>> engine.set_local_tracks(tracks)
        >>> await source.stop()
    """

    def __init__(self, file: str, format: Optional[str] = None, options: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.file = file
        self.format = format
        self.options = options or {}
        self._player: Optional[MediaPlayer] = None
        self._relay: Optional[MediaRelay] = None
        self._tracks: List[MediaStreamTrack] = []

    @property
    def tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    async def start(self) -> List[MediaStreamTrack]:
        if self._player is not None:
            return self.tracks

        logger.info(f"[Media] 미디어 입력 열기: {self.file} (format={self.format})")
        self._player = MediaPlayer(self.file, format=self.format, options=self.options)
        self._relay = MediaRelay()
        self._tracks = [
            self._relay.subscribe(source)
            for source in (self._player.audio, self._player.video)
            if source is not None
        ]
        logger.info(f"[Media] 로컬 트랙 {len(self._tracks)}개 준비: {[t.kind for t in self._tracks]}")
        return self.tracks

    async def stop(self) -> None:
        player = self._player
        if player is None:
            return

        for track in self._tracks:
            track.stop()
        for source in (player.audio, player.video):
            if source is not None:
                source.stop()
        self._tracks = []
        self._player = None
        self._relay = None
        logger.info("[Media] 미디어 입력 종료")


class NullMediaSource(_MediaFlags):
    """트랙을 제공하지 않는 미디어 소스 (수신 전용)."""

    @property
    def tracks(self) -> List[MediaStreamTrack]:
        return []

    async def start(self) -> List[MediaStreamTrack]:
        logger.info("[Media] 수신 전용 모드 (로컬 트랙 없음)")
        return []

    async def stop(self) -> None:
        return None
