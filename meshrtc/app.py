"""Headless 룸 참가자.

시그널링 서버에 연결해 룸에 입장하고, 다른 참가자들과 P2P 미디어 연결을 맺은 뒤
종료 신호(Ctrl-C)를 받을 때까지 유지합니다.

Usage:
    python -m meshrtc.app --room ROOM [--name NAME] [--play FILE] [--signaling-url URL]

Examples:
    $ python -m meshrtc.app --room demo --name bot --play sample.mp4
    $ meshrtc-peer --room demo --signaling-url ws://127.0.0.1:8080/ws
"""
import argparse
import asyncio
import logging
import signal
import uuid
from typing import Dict, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole

from .config import get_settings
from .logging_config import setup_logging
from .room import MediaPlayerSource, NullMediaSource, RoomSession
from .shared import RoomContext, short_id
from .signaling import SignalingConnectionError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="meshrtc-peer",
        description="WebRTC mesh room participant (headless)",
    )
    parser.add_argument("--room", required=True, help="입장할 룸 ID")
    parser.add_argument("--name", default="peer", help="표시 이름")
    parser.add_argument("--play", default=None, help="송출할 미디어 파일 또는 장치")
    parser.add_argument("--format", default=None, help="--play 입력의 ffmpeg 포맷 (예: v4l2)")
    parser.add_argument("--signaling-url", default=None, help="시그널링 웹소켓 URL (기본: 설정값)")
    parser.add_argument("--log-level", default=None, help="로그 레벨 (기본: 설정값)")
    return parser


class RemoteSink:
    """수신한 원격 트랙을 MediaBlackhole로 소비합니다 (화면 출력 없음)."""

    def __init__(self):
        # participant_id -> MediaBlackhole
        self._sinks: Dict[str, MediaBlackhole] = {}
        self._tracks: Dict[str, List[MediaStreamTrack]] = {}

    async def add_track(self, participant_id: str, track: MediaStreamTrack) -> None:
        sink = self._sinks.get(participant_id)
        if sink is None:
            sink = MediaBlackhole()
            self._sinks[participant_id] = sink
        sink.addTrack(track)
        self._tracks.setdefault(participant_id, []).append(track)
        await sink.start()
        logger.info(f"[App] 피어 {short_id(participant_id)} {track.kind} 트랙 수신 시작")

    async def remove(self, participant_id: str) -> None:
        sink = self._sinks.pop(participant_id, None)
        self._tracks.pop(participant_id, None)
        if sink is not None:
            await sink.stop()
            logger.info(f"[App] 피어 {short_id(participant_id)} 수신 종료")

    async def close(self) -> None:
        for participant_id in list(self._sinks.keys()):
            await self.remove(participant_id)


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    if args.signaling_url:
        settings = settings.model_copy(update={"SIGNALING_URL": args.signaling_url})

    context = RoomContext(
        room_id=args.room,
        participant_id=str(uuid.uuid4()),
        display_name=args.name,
    )
    media = MediaPlayerSource(args.play, format=args.format) if args.play else NullMediaSource()
    sink = RemoteSink()

    def on_error(error: BaseException) -> None:
        logger.error(f"[App] 오류: {error}")

    session = RoomSession(
        context,
        media=media,
        settings=settings,
        on_remote_track=sink.add_track,
        on_participant_left=sink.remove,
        on_error=on_error,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt가 asyncio.run 밖으로 전파됨
            pass

    try:
        await session.enter()
    except SignalingConnectionError as exc:
        logger.error(f"[App] 시그널링 서버 연결 실패 ({exc.reason.value}): {exc}")
        return 1

    logger.info(
        f"[App] 룸 '{context.room_id}' 참가 중 (participant={short_id(context.participant_id)}). "
        f"종료하려면 Ctrl-C"
    )
    try:
        await stop_event.wait()
    finally:
        await session.leave()
        await sink.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("[App] 종료")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
