"""시그널링 릴레이 웹소켓 클라이언트.

릴레이 서버와의 논리적 연결 하나를 유지하고, 메시지 타입별 발행/구독 인터페이스를
제공합니다.

주요 기능:
    - connect(): 열린 상태가 될 때만 완료되는 멱등 연결 (동시 호출자는 같은 결과 공유)
    - send(): 타임스탬프를 붙여 전송, 연결이 없으면 경고 로그만 남기고 무시
    - subscribe()/unsubscribe(): 리스너 등록/해제, 리스너 예외는 개별 격리
    - disconnect(): 언제 호출해도 안전 (연결 도중 포함), 종료 알림은 정확히 한 번

Lifecycle channels:
    - "connected": 연결이 열림
    - "disconnected": 연결이 닫힘 (연결마다 한 번)
    - "error": 연결 중/전송 중 전송 계층 오류
    - "message": 모든 수신 메시지 (타입별 채널과 별도)
"""
import asyncio
import contextlib
import inspect
import json
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import websockets
from websockets.exceptions import ConnectionClosed, InvalidMessage
from websockets.protocol import State

from ..shared import RoomContext
from . import messages
from .messages import IceCandidateData, MessageParseError, parse_message

logger = logging.getLogger(__name__)

CONNECTED = "connected"
DISCONNECTED = "disconnected"
ERROR = "error"
ANY_MESSAGE = "message"

Handler = Callable[[Any], Union[None, Awaitable[None]]]


class ConnectFailureReason(str, Enum):
    """connect() 실패 사유."""

    CLOSED_BEFORE_OPEN = "closed_before_open"
    ERROR_DURING_CONNECT = "error_during_connect"


class SignalingError(RuntimeError):
    """시그널링 전송 계층 오류의 기본 클래스."""


class SignalingConnectionError(SignalingError):
    """connect()가 열린 상태에 도달하지 못했을 때 발생합니다.

    Attributes:
        reason (ConnectFailureReason): 열리기 전에 닫혔는지, 연결 중 오류인지
    """

    def __init__(self, reason: ConnectFailureReason, detail: str = ""):
        self.reason = reason
        message = f"WebSocket {reason.value.replace('_', ' ')}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


def _channel(event: Union[str, Enum]) -> str:
    return event.value if isinstance(event, Enum) else str(event)


class SignalingClient:
    """시그널링 릴레이와의 웹소켓 연결을 관리하는 클래스.

    Attributes:
        url (str): 릴레이 서버 웹소켓 URL

    Examples:
        >>> client = SignalingClient("ws://localhost:8080/ws")
        >>> client.subscribe(MessageType.OFFER, on_offer)
        >>> await client.connect()
        >>> await client.send_join(context)
        >>> await client.disconnect()
    """

    def __init__(
        self,
        url: str,
        connector: Optional[Callable[..., Awaitable[Any]]] = None,
        **connect_kwargs: Any,
    ):
        self.url = url
        self._connector = connector or websockets.connect
        self._connect_kwargs = connect_kwargs
        self._ws = None
        self._ready: Optional[asyncio.Future] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._listeners: Dict[str, List[Handler]] = {}
        self._handler_tasks: Set[asyncio.Task] = set()
        self._last_timestamp = 0

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN

    # ------------------------------------------------------------
    # 연결 관리
    # ------------------------------------------------------------

    async def connect(self) -> None:
        """릴레이 서버에 연결합니다.

        이미 열려 있으면 즉시 반환하고, 연결 시도가 진행 중이면 같은 결과를
        기다립니다. 대기 중인 호출자 하나가 취소되어도 공유된 연결 시도는
        취소되지 않습니다.

        Raises:
            SignalingConnectionError: 열리기 전에 닫혔거나 연결 중 오류 발생 시
        """
        if self.is_connected:
            logger.info("[Signaling] 웹소켓 이미 연결됨")
            return

        if self._ready is None:
            logger.info(f"[Signaling] 웹소켓 연결 시도: {self.url}")
            self._ready = asyncio.get_running_loop().create_future()
            self._connect_task = asyncio.create_task(self._open(self._ready))
        else:
            logger.info("[Signaling] 연결 진행 중 (대기 중인 결과 재사용)")

        await asyncio.shield(self._ready)

    async def _open(self, ready: asyncio.Future) -> None:
        try:
            ws = await self._connector(self.url, **self._connect_kwargs)
        except asyncio.CancelledError:
            logger.info("[Signaling] 연결 도중 종료 요청")
            self._fail_connect(ready, ConnectFailureReason.CLOSED_BEFORE_OPEN, "disconnect requested")
            await self._notify(DISCONNECTED, None)
            return
        except (ConnectionClosed, InvalidMessage, EOFError) as exc:
            logger.error(f"[Signaling] 연결이 열리기 전에 닫힘: {exc}")
            self._fail_connect(ready, ConnectFailureReason.CLOSED_BEFORE_OPEN, str(exc))
            await self._notify(DISCONNECTED, exc)
            return
        except Exception as exc:
            logger.error(f"[Signaling] 연결 중 오류: {type(exc).__name__}: {exc}")
            await self._notify(ERROR, exc)
            self._fail_connect(ready, ConnectFailureReason.ERROR_DURING_CONNECT, str(exc))
            return

        self._ws = ws
        logger.info("[Signaling] 웹소켓 연결됨")
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        if not ready.done():
            ready.set_result(None)
        await self._notify(CONNECTED, None)

    def _fail_connect(self, ready: asyncio.Future, reason: ConnectFailureReason, detail: str) -> None:
        if self._ready is ready:
            self._ready = None
        if not ready.done():
            ready.set_exception(SignalingConnectionError(reason, detail))

    async def disconnect(self) -> None:
        """연결을 종료합니다.

        연결 도중이면 대기 중인 connect()가 CLOSED_BEFORE_OPEN으로 실패하고,
        열려 있으면 소켓을 닫은 뒤 reader가 "disconnected"를 한 번 알립니다.
        연결이 없으면 아무 일도 하지 않습니다.
        """
        connect_task = self._connect_task
        if connect_task is not None and not connect_task.done():
            connect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await connect_task

        ws = self._ws
        if ws is not None:
            logger.info("[Signaling] 웹소켓 종료 (수동)")
            try:
                await ws.close()
            except Exception as exc:
                logger.error(f"[Signaling] 웹소켓 종료 중 오류: {exc}")

        reader_task = self._reader_task
        if reader_task is not None and reader_task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await reader_task

        self._connect_task = None
        self._ready = None

    async def _read_loop(self, ws) -> None:
        close_info = None
        try:
            async for frame in ws:
                try:
                    message = parse_message(frame)
                except MessageParseError as exc:
                    logger.error(f"[Signaling] 메시지 파싱 실패: {exc}")
                    continue
                logger.debug(f"[Signaling] 메시지 수신: {message.type} from={message.sender}")
                await self._notify(message.type, message)
                await self._notify(ANY_MESSAGE, message)
        except ConnectionClosed as exc:
            close_info = exc
            logger.warning(f"[Signaling] 웹소켓 비정상 종료: {exc}")
        finally:
            if self._ws is ws:
                self._ws = None
                self._ready = None
                self._reader_task = None
            logger.info("[Signaling] 웹소켓 연결 닫힘")
            await self._notify(DISCONNECTED, close_info)

    # ------------------------------------------------------------
    # 송신
    # ------------------------------------------------------------

    def _next_timestamp(self) -> int:
        now = int(time.time() * 1000)
        self._last_timestamp = max(now, self._last_timestamp + 1)
        return self._last_timestamp

    async def send(self, message: Any) -> bool:
        """메시지에 타임스탬프를 붙여 전송합니다.

        연결이 열려 있지 않으면 경고만 남기고 False를 반환합니다.
        호출자는 전달을 가정하면 안 됩니다.

        Args:
            message: ``to_wire()``를 가진 메시지 모델 또는 딕셔너리

        Returns:
            bool: 소켓에 기록했으면 True
        """
        payload = message.to_wire() if hasattr(message, "to_wire") else dict(message)
        if not self.is_connected:
            logger.warning(f"[Signaling] 웹소켓이 열려있지 않아 전송 불가: {payload.get('type')}")
            return False

        payload["timestamp"] = self._next_timestamp()
        logger.debug(f"[Signaling] 전송: {payload.get('type')} to={payload.get('to')}")
        try:
            await self._ws.send(json.dumps(payload))
        except ConnectionClosed as exc:
            logger.warning(f"[Signaling] 전송 중 연결 종료: {exc}")
            await self._notify(ERROR, exc)
            return False
        return True

    async def send_join(self, context: RoomContext) -> bool:
        return await self.send(messages.join(context))

    async def send_leave(self, context: RoomContext) -> bool:
        return await self.send(messages.leave(context))

    async def send_offer(self, context: RoomContext, to: str, sdp: str, sdp_type: str = "offer") -> bool:
        return await self.send(messages.offer(context, to, sdp, sdp_type))

    async def send_answer(self, context: RoomContext, to: str, sdp: str, sdp_type: str = "answer") -> bool:
        return await self.send(messages.answer(context, to, sdp, sdp_type))

    async def send_ice_candidate(self, context: RoomContext, to: str, candidate: IceCandidateData) -> bool:
        return await self.send(messages.ice_candidate(context, to, candidate))

    async def send_media_state(self, context: RoomContext, audio_enabled: bool, video_enabled: bool) -> bool:
        return await self.send(messages.media_state(context, audio_enabled, video_enabled))

    # ------------------------------------------------------------
    # 구독
    # ------------------------------------------------------------

    def subscribe(self, event: Union[str, Enum], handler: Handler) -> None:
        """이벤트 채널에 리스너를 등록합니다.

        동기 함수는 즉시 호출되고, 코루틴 함수는 별도 태스크로 실행됩니다.
        """
        self._listeners.setdefault(_channel(event), []).append(handler)

    def unsubscribe(self, event: Union[str, Enum], handler: Handler) -> None:
        handlers = self._listeners.get(_channel(event))
        if not handlers:
            return
        with contextlib.suppress(ValueError):
            handlers.remove(handler)

    async def _notify(self, event: Union[str, Enum], payload: Any) -> None:
        channel = _channel(event)
        for handler in list(self._listeners.get(channel, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(self._run_handler(channel, result))
                    self._handler_tasks.add(task)
                    task.add_done_callback(self._handler_tasks.discard)
            except Exception as exc:
                logger.error(f"[Signaling] '{channel}' 리스너 오류: {exc}", exc_info=True)
        # Let freshly scheduled handlers start in arrival order.
        await asyncio.sleep(0)

    async def _run_handler(self, channel: str, awaitable: Awaitable[None]) -> None:
        try:
            await awaitable
        except Exception as exc:
            logger.error(f"[Signaling] '{channel}' 리스너 오류: {exc}", exc_info=True)

    async def wait_for_handlers(self) -> None:
        """실행 중인 비동기 리스너가 모두 끝날 때까지 기다립니다."""
        while self._handler_tasks:
            await asyncio.gather(*list(self._handler_tasks), return_exceptions=True)
