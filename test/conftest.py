"""Shared pytest fixtures for meshrtc tests."""

import asyncio
import functools
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

import pytest
from aiortc import RTCSessionDescription

from meshrtc.shared import RoomContext
from meshrtc.signaling import ANY_MESSAGE, CONNECTED, DISCONNECTED, SignalingClient
from meshrtc.webrtc import NegotiationEngine, PeerSession

HOST_CANDIDATE = "candidate:1 1 udp 2130706431 192.0.2.1 50000 typ host"
SRFLX_CANDIDATE = "candidate:2 1 udp 1694498815 198.51.100.7 50001 typ srflx raddr 192.0.2.1 rport 50000"
RELAY_CANDIDATE = "candidate:3 1 udp 16777215 203.0.113.9 50002 typ relay raddr 198.51.100.7 rport 50001"


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakePeerConnection:
    """RTCPeerConnection stand-in following the signaling-state rules the core relies on."""

    def __init__(self, configuration=None, fail_rollback: bool = False) -> None:
        self.configuration = configuration
        self.fail_rollback = fail_rollback
        self.signalingState = "stable"
        self.connectionState = "new"
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.added_candidates: List[Any] = []
        self.log: List[tuple] = []
        self.close_calls = 0
        self._senders: List[SimpleNamespace] = []
        self._handlers: Dict[str, Callable] = {}
        self._offers = 0

    def on(self, event: str, handler: Optional[Callable] = None):
        if handler is not None:
            self._handlers[event] = handler
            return handler

        def decorator(fn: Callable) -> Callable:
            self._handlers[event] = fn
            return fn

        return decorator

    async def emit(self, event: str, *args: Any) -> None:
        handler = self._handlers.get(event)
        if handler is not None:
            await handler(*args)

    def getSenders(self) -> List[SimpleNamespace]:
        return list(self._senders)

    def addTrack(self, track) -> SimpleNamespace:
        sender = SimpleNamespace(track=track)
        self._senders.append(sender)
        return sender

    async def createOffer(self) -> RTCSessionDescription:
        await asyncio.sleep(0)
        self._offers += 1
        return RTCSessionDescription(sdp=f"v=0 offer-{self._offers}", type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        await asyncio.sleep(0)
        if self.signalingState != "have-remote-offer":
            raise RuntimeError(f"createAnswer in {self.signalingState}")
        return RTCSessionDescription(sdp="v=0 answer", type="answer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        await asyncio.sleep(0)
        if description.type == "rollback":
            if self.fail_rollback:
                raise RuntimeError("rollback not supported")
            if self.signalingState != "have-local-offer":
                raise RuntimeError(f"rollback in {self.signalingState}")
            self.localDescription = None
            self.signalingState = "stable"
            self.log.append(("rollback",))
            return
        if description.type == "offer":
            if self.signalingState != "stable":
                raise RuntimeError(f"local offer in {self.signalingState}")
            self.signalingState = "have-local-offer"
        elif description.type == "answer":
            if self.signalingState != "have-remote-offer":
                raise RuntimeError(f"local answer in {self.signalingState}")
            self.signalingState = "stable"
        self.localDescription = description
        self.log.append(("local", description.type))

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        await asyncio.sleep(0)
        if description.type == "offer":
            if self.signalingState != "stable":
                raise RuntimeError(f"remote offer in {self.signalingState}")
            self.signalingState = "have-remote-offer"
        elif description.type == "answer":
            if self.signalingState != "have-local-offer":
                raise RuntimeError(f"remote answer in {self.signalingState}")
            self.signalingState = "stable"
        self.remoteDescription = description
        self.log.append(("remote", description.type))

    async def addIceCandidate(self, candidate) -> None:
        if self.remoteDescription is None:
            raise AssertionError("candidate applied before remote description")
        await asyncio.sleep(0)
        self.added_candidates.append(candidate)
        self.log.append(("candidate", candidate.foundation))

    async def close(self) -> None:
        self.close_calls += 1
        await asyncio.sleep(0)
        self.connectionState = "closed"
        self.signalingState = "closed"


class PeerConnectionFactory:
    """Creates FakePeerConnection objects and remembers them."""

    def __init__(self, fail_rollback: bool = False) -> None:
        self.fail_rollback = fail_rollback
        self.created: List[FakePeerConnection] = []

    def __call__(self, configuration=None) -> FakePeerConnection:
        pc = FakePeerConnection(configuration=configuration, fail_rollback=self.fail_rollback)
        self.created.append(pc)
        return pc


class FakeTransport(SignalingClient):
    """SignalingClient without a socket: records sent messages, delivers scripted ones."""

    def __init__(self) -> None:
        super().__init__("ws://fake")
        self.connected = False
        self.connect_error: Optional[BaseException] = None
        self.sent: List[Any] = []
        # outbound type -> inbound messages delivered right after it is sent
        self.replies: Dict[str, List[Any]] = {}
        self._reply_tasks: List[asyncio.Task] = []

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        if self.connected:
            return
        self.connected = True
        await self._notify(CONNECTED, None)

    async def disconnect(self) -> None:
        if not self.connected:
            return
        self.connected = False
        await self._notify(DISCONNECTED, None)

    async def send(self, message: Any) -> bool:
        if not self.connected:
            return False
        self.sent.append(message)
        replies = self.replies.pop(message.type, [])
        if replies:
            self._reply_tasks.append(asyncio.ensure_future(self.deliver(*replies)))
        return True

    async def deliver(self, *messages: Any) -> None:
        for message in messages:
            await self._notify(message.type, message)
            await self._notify(ANY_MESSAGE, message)
        await self.wait_for_handlers()

    async def settle(self) -> None:
        """Wait for scripted replies and the listeners they triggered."""
        while self._reply_tasks:
            await self._reply_tasks.pop(0)
        await self.wait_for_handlers()

    def sent_of(self, message_type: str) -> List[Any]:
        return [m for m in self.sent if m.type == message_type]


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def context() -> RoomContext:
    return RoomContext(room_id="room-1", participant_id="local-0001", display_name="local")


@pytest.fixture()
def pc_factory() -> PeerConnectionFactory:
    return PeerConnectionFactory()


@pytest.fixture()
def transport() -> FakeTransport:
    fake = FakeTransport()
    fake.connected = True
    return fake


@pytest.fixture()
def local_tracks() -> List[FakeTrack]:
    return [FakeTrack("audio"), FakeTrack("video")]


@pytest.fixture()
def make_engine(context, transport, pc_factory):
    def factory(**kwargs: Any) -> NegotiationEngine:
        engine = NegotiationEngine(
            context,
            transport,
            session_factory=functools.partial(PeerSession, peer_connection_factory=pc_factory),
            **kwargs,
        )
        engine.bind(transport)
        return engine

    return factory


@pytest.fixture()
def engine(make_engine) -> NegotiationEngine:
    return make_engine()
