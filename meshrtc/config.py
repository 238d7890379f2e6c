"""meshrtc 설정.

시그널링 서버 주소, STUN/TURN 서버, 룸 입장 타임아웃, 로깅 설정을
환경변수(config/.env)에서 읽어옵니다.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# .env 파일 로드
_env_path = Path(__file__).parent.parent / "config" / ".env"
load_dotenv(_env_path)


class MeshSettings(BaseSettings):
    """meshrtc 설정 클래스.

    환경 변수를 Python 객체로 매핑하고 유효성을 검증합니다.
    """

    model_config = SettingsConfigDict(extra="ignore")

    # 시그널링 릴레이
    SIGNALING_URL: str = Field(
        default="ws://localhost:8080/ws",
        description="시그널링 릴레이 웹소켓 URL"
    )

    # STUN 서버
    STUN_SERVER_URL: Optional[str] = Field(
        default=None,
        description="우선 사용할 STUN 서버"
    )

    DEFAULT_STUN_SERVERS: List[str] = Field(
        default_factory=lambda: ["stun:stun.l.google.com:19302"],
        description="기본 공개 STUN 서버 (fallback)"
    )

    # TURN 서버 (세 값이 모두 있을 때만 사용)
    TURN_SERVER_URL: Optional[str] = None
    TURN_USERNAME: Optional[str] = None
    TURN_CREDENTIAL: Optional[str] = None

    # 룸 입장 흐름
    JOIN_ACK_TIMEOUT: float = Field(
        default=3.0,
        description="ROOM_JOINED 대기 시간 (초), 초과 시 degraded 모드로 진행"
    )

    LISTENER_SETTLE_DELAY: float = Field(
        default=0.05,
        description="연결 후 JOIN 전송 전 대기 시간 (초)"
    )

    # 로깅
    LOG_LEVEL: str = Field(default="INFO", description="로그 레벨")
    LOG_FILE: Optional[str] = Field(default=None, description="로그 파일 경로")

    @field_validator("JOIN_ACK_TIMEOUT", "LISTENER_SETTLE_DELAY")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @property
    def has_turn_server(self) -> bool:
        """TURN 서버 설정 완료 여부."""
        return all([self.TURN_SERVER_URL, self.TURN_USERNAME, self.TURN_CREDENTIAL])

    @property
    def ice_server_urls(self) -> List[str]:
        """경로 탐색(STUN) 서버 URL 목록."""
        urls = []
        if self.STUN_SERVER_URL:
            urls.append(self.STUN_SERVER_URL)
        urls.extend(url for url in self.DEFAULT_STUN_SERVERS if url not in urls)
        return urls


@lru_cache()
def get_settings() -> MeshSettings:
    """설정 싱글톤을 반환합니다."""
    settings = MeshSettings()
    logger.debug(f"[Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
    return settings
