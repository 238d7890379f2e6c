import asyncio
import functools
import logging
from typing import Any, List

import pytest
from aiortc import RTCConfiguration, RTCPeerConnection
from aiortc.mediastreams import AudioStreamTrack
from aiortc.sdp import candidate_from_sdp

from conftest import HOST_CANDIDATE, RELAY_CANDIDATE, SRFLX_CANDIDATE, PeerConnectionFactory
from meshrtc.shared import NegotiationState, RoomRole
from meshrtc.signaling.messages import (
    AnswerMessage,
    IceCandidateData,
    IceCandidateMessage,
    OfferMessage,
    ParticipantInfo,
    RoomInfoData,
    RoomInfoMessage,
    SessionDescriptionData,
    UserJoinedData,
    UserJoinedMessage,
    UserLeftData,
    UserLeftMessage,
)
from meshrtc.webrtc import NegotiationEngine, PeerSession

ROOM = "room-1"
LOCAL = "local-0001"


def room_info(*participant_ids: str) -> RoomInfoMessage:
    return RoomInfoMessage(
        room_id=ROOM,
        to=LOCAL,
        data=RoomInfoData(participants=[ParticipantInfo(user_id=pid, name=pid) for pid in participant_ids]),
    )


def user_joined(pid: str) -> UserJoinedMessage:
    return UserJoinedMessage(sender=pid, room_id=ROOM, data=UserJoinedData(user_id=pid, name=pid))


def user_left(pid: str) -> UserLeftMessage:
    return UserLeftMessage(sender=pid, room_id=ROOM, data=UserLeftData(user_id=pid))


def offer_from(pid: str, sdp: str = "v=0 remote-offer") -> OfferMessage:
    return OfferMessage(sender=pid, room_id=ROOM, to=LOCAL, data=SessionDescriptionData(sdp=sdp, type="offer"))


def answer_from(pid: str, sdp: str = "v=0 remote-answer") -> AnswerMessage:
    return AnswerMessage(sender=pid, room_id=ROOM, to=LOCAL, data=SessionDescriptionData(sdp=sdp, type="answer"))


def candidate_from(pid: str, raw: str) -> IceCandidateMessage:
    return IceCandidateMessage(
        sender=pid,
        room_id=ROOM,
        to=LOCAL,
        data=IceCandidateData(candidate=raw, sdp_mid="0", sdp_mline_index=0),
    )


async def initiator_with_offer_to(engine, transport, local_tracks, pid: str):
    await engine.handle_message(room_info())
    engine.set_local_tracks(local_tracks)
    await engine.handle_message(user_joined(pid))
    return engine.get_session(pid)


# ------------------------------------------------------------
# role arbitration
# ------------------------------------------------------------


@pytest.mark.anyio("asyncio")
async def test_empty_snapshot_makes_initiator(engine) -> None:
    await engine.handle_message(room_info())
    assert engine.room_role is RoomRole.INITIATOR


@pytest.mark.anyio("asyncio")
async def test_non_empty_snapshot_makes_responder(engine) -> None:
    await engine.handle_message(room_info("peer-a"))
    assert engine.room_role is RoomRole.RESPONDER


@pytest.mark.anyio("asyncio")
async def test_local_participant_in_snapshot_does_not_count(engine) -> None:
    await engine.handle_message(room_info(LOCAL))
    assert engine.room_role is RoomRole.INITIATOR


@pytest.mark.anyio("asyncio")
async def test_role_decided_once_per_room(engine) -> None:
    await engine.handle_message(room_info())
    await engine.handle_message(room_info("peer-a"))
    assert engine.room_role is RoomRole.INITIATOR


@pytest.mark.anyio("asyncio")
async def test_shutdown_resets_role(engine) -> None:
    await engine.handle_message(room_info())
    await engine.shutdown()
    assert engine.room_role is None

    await engine.handle_message(room_info("peer-a"))
    assert engine.room_role is RoomRole.RESPONDER


# ------------------------------------------------------------
# initiator path
# ------------------------------------------------------------


@pytest.mark.anyio("asyncio")
async def test_initiator_scenario_join_offer_answer_leave(engine, transport, local_tracks) -> None:
    session = await initiator_with_offer_to(engine, transport, local_tracks, "peer-b")

    offers = transport.sent_of("OFFER")
    assert len(offers) == 1
    assert offers[0].to == "peer-b"
    assert offers[0].sender == LOCAL
    assert offers[0].room_id == ROOM
    assert offers[0].data.type == "offer"
    assert session.role is RoomRole.INITIATOR
    assert session.state is NegotiationState.OFFER_SENT
    assert session.local_track_count == 2

    await engine.handle_message(answer_from("peer-b"))
    assert session.state is NegotiationState.STABLE
    assert session.pc.signalingState == "stable"

    await engine.handle_message(user_left("peer-b"))
    assert "peer-b" not in engine
    assert session.closed
    assert session.pc.close_calls == 1


@pytest.mark.anyio("asyncio")
async def test_no_offer_without_local_media(engine, transport) -> None:
    await engine.handle_message(room_info())
    await engine.handle_message(user_joined("peer-b"))

    assert transport.sent_of("OFFER") == []
    assert len(engine) == 0


@pytest.mark.anyio("asyncio")
async def test_responder_does_not_offer_on_join(engine, transport, local_tracks) -> None:
    await engine.handle_message(room_info("peer-a"))
    engine.set_local_tracks(local_tracks)

    await engine.handle_message(user_joined("peer-c"))

    assert transport.sent_of("OFFER") == []


@pytest.mark.anyio("asyncio")
async def test_duplicate_join_does_not_send_second_offer(engine, transport, local_tracks) -> None:
    session = await initiator_with_offer_to(engine, transport, local_tracks, "peer-b")

    await engine.handle_message(user_joined("peer-b"))

    assert len(transport.sent_of("OFFER")) == 1
    assert engine.get_session("peer-b") is session
    assert session.local_track_count == 2


@pytest.mark.anyio("asyncio")
async def test_concurrent_joins_keep_one_session(engine, transport, local_tracks) -> None:
    await engine.handle_message(room_info())
    engine.set_local_tracks(local_tracks)

    await asyncio.gather(
        engine.handle_message(user_joined("peer-b")),
        engine.handle_message(user_joined("peer-b")),
    )

    assert engine.session_ids == ["peer-b"]
    assert len(transport.sent_of("OFFER")) == 1


# ------------------------------------------------------------
# answers
# ------------------------------------------------------------


@pytest.mark.anyio("asyncio")
async def test_answer_without_session_is_discarded(engine, caplog) -> None:
    caplog.set_level(logging.WARNING, logger="meshrtc.webrtc.negotiation")

    await engine.handle_message(answer_from("peer-x"))

    assert len(engine) == 0
    assert "answer" in caplog.text


@pytest.mark.anyio("asyncio")
async def test_duplicate_answer_is_discarded(engine, transport, local_tracks) -> None:
    session = await initiator_with_offer_to(engine, transport, local_tracks, "peer-b")
    await engine.handle_message(answer_from("peer-b"))
    log_before = list(session.pc.log)

    await engine.handle_message(answer_from("peer-b", sdp="v=0 stale"))

    assert session.state is NegotiationState.STABLE
    assert session.pc.log == log_before
    assert session.pc.remoteDescription.sdp == "v=0 remote-answer"


# ------------------------------------------------------------
# responder path
# ------------------------------------------------------------


@pytest.mark.anyio("asyncio")
async def test_responder_answers_offer(engine, transport, local_tracks) -> None:
    await engine.handle_message(room_info("peer-a"))
    engine.set_local_tracks(local_tracks)

    await engine.handle_message(offer_from("peer-a"))

    session = engine.get_session("peer-a")
    answers = transport.sent_of("ANSWER")
    assert len(answers) == 1
    assert answers[0].to == "peer-a"
    assert answers[0].data.type == "answer"
    assert session.role is RoomRole.RESPONDER
    assert session.state is NegotiationState.ANSWER_SENT
    assert session.local_track_count == 2


@pytest.mark.anyio("asyncio")
async def test_responder_answers_before_local_media(engine, transport) -> None:
    await engine.handle_message(room_info("peer-a"))

    await engine.handle_message(offer_from("peer-a"))

    assert len(transport.sent_of("ANSWER")) == 1
    assert engine.get_session("peer-a").local_track_count == 0


@pytest.mark.anyio("asyncio")
async def test_responder_becomes_stable_when_connected(engine) -> None:
    await engine.handle_message(room_info("peer-a"))
    await engine.handle_message(offer_from("peer-a"))
    session = engine.get_session("peer-a")

    session.pc.connectionState = "connected"
    await session.pc.emit("connectionstatechange")

    assert session.state is NegotiationState.STABLE


@pytest.mark.anyio("asyncio")
async def test_answer_to_responder_is_discarded(engine, transport) -> None:
    await engine.handle_message(room_info("peer-a"))
    await engine.handle_message(offer_from("peer-a"))
    session = engine.get_session("peer-a")
    session.pc.connectionState = "connected"
    await session.pc.emit("connectionstatechange")

    await engine.handle_message(answer_from("peer-a"))

    assert session.state is NegotiationState.STABLE
    assert len(transport.sent_of("ANSWER")) == 1


# ------------------------------------------------------------
# candidates
# ------------------------------------------------------------


@pytest.mark.anyio("asyncio")
async def test_candidate_before_offer_is_applied_after_description(engine) -> None:
    await engine.handle_message(room_info("peer-c"))

    await engine.handle_message(candidate_from("peer-c", HOST_CANDIDATE))
    session = engine.get_session("peer-c")
    assert session.role is None
    assert session.pc.added_candidates == []

    await engine.handle_message(offer_from("peer-c"))
    await engine.handle_message(candidate_from("peer-c", SRFLX_CANDIDATE))

    assert engine.get_session("peer-c") is session
    assert session.role is RoomRole.RESPONDER
    assert session.pc.log[:4] == [
        ("remote", "offer"),
        ("candidate", "1"),
        ("local", "answer"),
        ("candidate", "2"),
    ]


@pytest.mark.anyio("asyncio")
async def test_interleaved_candidates_never_precede_description(engine) -> None:
    await engine.handle_message(room_info("peer-c"))

    await asyncio.gather(
        engine.handle_message(candidate_from("peer-c", HOST_CANDIDATE)),
        engine.handle_message(offer_from("peer-c")),
        engine.handle_message(candidate_from("peer-c", SRFLX_CANDIDATE)),
        engine.handle_message(candidate_from("peer-c", RELAY_CANDIDATE)),
    )

    log = engine.get_session("peer-c").pc.log
    remote_index = log.index(("remote", "offer"))
    candidates = [entry for entry in log if entry[0] == "candidate"]
    assert candidates == [("candidate", "1"), ("candidate", "2"), ("candidate", "3")]
    assert all(log.index(entry) > remote_index for entry in candidates)


@pytest.mark.anyio("asyncio")
async def test_bad_candidate_does_not_break_session(engine, transport) -> None:
    await engine.handle_message(room_info("peer-c"))
    await engine.handle_message(offer_from("peer-c"))

    await engine.handle_message(candidate_from("peer-c", "candidate:broken"))
    await engine.handle_message(candidate_from("peer-c", RELAY_CANDIDATE))

    session = engine.get_session("peer-c")
    assert [c.foundation for c in session.pc.added_candidates] == ["3"]
    assert session.state is NegotiationState.ANSWER_SENT


@pytest.mark.anyio("asyncio")
async def test_local_candidates_are_sent_to_peer(engine, transport, local_tracks) -> None:
    session = await initiator_with_offer_to(engine, transport, local_tracks, "peer-b")

    await session.pc.emit("icecandidate", candidate_from_sdp(SRFLX_CANDIDATE[len("candidate:"):]))

    sent = transport.sent_of("ICE_CANDIDATE")
    assert len(sent) == 1
    assert sent[0].to == "peer-b"
    assert sent[0].room_id == ROOM
    assert sent[0].data.candidate.startswith("candidate:2 1 udp")


# ------------------------------------------------------------
# glare
# ------------------------------------------------------------


@pytest.mark.anyio("asyncio")
async def test_glare_rolls_back_local_offer_and_answers(engine, transport, local_tracks) -> None:
    session = await initiator_with_offer_to(engine, transport, local_tracks, "peer-b")
    assert session.pc.signalingState == "have-local-offer"

    await engine.handle_message(offer_from("peer-b"))

    assert session.pc.log == [
        ("local", "offer"),
        ("rollback",),
        ("remote", "offer"),
        ("local", "answer"),
    ]
    assert engine.get_session("peer-b") is session
    assert session.role is RoomRole.INITIATOR
    assert session.state is NegotiationState.ANSWER_SENT
    assert session.pc.signalingState == "stable"
    assert len(transport.sent_of("ANSWER")) == 1

    # the peer's answer to our rolled-back offer is now stale
    await engine.handle_message(answer_from("peer-b"))
    assert session.state is NegotiationState.ANSWER_SENT


@pytest.mark.anyio("asyncio")
async def test_glare_with_failing_rollback_keeps_prior_state(context, transport, local_tracks) -> None:
    engine = NegotiationEngine(
        context,
        transport,
        session_factory=functools.partial(
            PeerSession, peer_connection_factory=PeerConnectionFactory(fail_rollback=True)
        ),
    )
    session = await initiator_with_offer_to(engine, transport, local_tracks, "peer-b")

    await engine.handle_message(offer_from("peer-b"))

    assert session.state is NegotiationState.OFFER_SENT
    assert session.pc.signalingState == "have-local-offer"
    assert transport.sent_of("ANSWER") == []

    await engine.handle_message(answer_from("peer-b"))
    assert session.state is NegotiationState.STABLE


@pytest.mark.anyio("asyncio")
async def test_glare_on_aiortc_leaves_local_offer_pending(context, transport) -> None:
    # aiortc cannot roll back a local offer; the crossing offer is rejected
    configuration = RTCConfiguration(iceServers=[])
    engine = NegotiationEngine(context, transport, configuration=configuration)
    remote_pc = RTCPeerConnection(configuration=configuration)
    try:
        await engine.handle_message(room_info())
        engine.set_local_tracks([AudioStreamTrack()])
        await engine.handle_message(user_joined("peer-b"))
        session = engine.get_session("peer-b")
        assert session.signaling_state == "have-local-offer"

        remote_pc.addTransceiver("audio")
        await remote_pc.setLocalDescription(await remote_pc.createOffer())
        await engine.handle_message(offer_from("peer-b", sdp=remote_pc.localDescription.sdp))

        assert engine.get_session("peer-b") is session
        assert session.state is NegotiationState.OFFER_SENT
        assert session.signaling_state == "have-local-offer"
        assert [message.type for message in transport.sent] == ["OFFER"]
    finally:
        await engine.shutdown()
        await remote_pc.close()


# ------------------------------------------------------------
# teardown and isolation
# ------------------------------------------------------------


@pytest.mark.anyio("asyncio")
async def test_failed_connection_removes_session(make_engine, transport, local_tracks) -> None:
    closed: List[str] = []
    engine = make_engine(on_session_closed=closed.append)
    session = await initiator_with_offer_to(engine, transport, local_tracks, "peer-b")

    session.pc.connectionState = "failed"
    await session.pc.emit("connectionstatechange")

    assert "peer-b" not in engine
    assert session.pc.close_calls == 1
    assert closed == ["peer-b"]


@pytest.mark.anyio("asyncio")
async def test_concurrent_removals_fire_closed_callback_once(make_engine, transport, local_tracks) -> None:
    closed: List[str] = []
    engine = make_engine(on_session_closed=closed.append)
    session = await initiator_with_offer_to(engine, transport, local_tracks, "peer-b")

    results = await asyncio.gather(engine.remove_session("peer-b"), engine.remove_session("peer-b"))

    assert sorted(results) == [False, True]
    assert session.pc.close_calls == 1
    assert closed == ["peer-b"]


@pytest.mark.anyio("asyncio")
async def test_leave_racing_failed_state_closes_once(make_engine, transport, local_tracks) -> None:
    closed: List[str] = []
    engine = make_engine(on_session_closed=closed.append)
    session = await initiator_with_offer_to(engine, transport, local_tracks, "peer-b")
    session.pc.connectionState = "failed"

    await asyncio.gather(
        session.pc.emit("connectionstatechange"),
        engine.handle_message(user_left("peer-b")),
    )

    assert "peer-b" not in engine
    assert session.pc.close_calls == 1
    assert closed == ["peer-b"]


@pytest.mark.anyio("asyncio")
async def test_rejoin_after_leave_creates_new_session(engine, transport, local_tracks) -> None:
    first = await initiator_with_offer_to(engine, transport, local_tracks, "peer-b")
    await engine.handle_message(user_left("peer-b"))

    await engine.handle_message(user_joined("peer-b"))

    second = engine.get_session("peer-b")
    assert second is not first
    assert second.state is NegotiationState.OFFER_SENT
    assert len(transport.sent_of("OFFER")) == 2


@pytest.mark.anyio("asyncio")
async def test_leave_during_offer_aborts_cleanly(engine, transport, local_tracks) -> None:
    await engine.handle_message(room_info())
    engine.set_local_tracks(local_tracks)

    await asyncio.gather(
        engine.handle_message(user_joined("peer-b")),
        engine.handle_message(user_left("peer-b")),
    )

    assert "peer-b" not in engine
    assert transport.sent_of("OFFER") == []


@pytest.mark.anyio("asyncio")
async def test_shutdown_closes_every_session(engine, transport, local_tracks) -> None:
    await engine.handle_message(room_info())
    engine.set_local_tracks(local_tracks)
    for pid in ("peer-b", "peer-c", "peer-d"):
        await engine.handle_message(user_joined(pid))
    sessions = [engine.get_session(pid) for pid in engine.session_ids]

    await engine.shutdown()

    assert len(engine) == 0
    assert all(s.closed and s.pc.close_calls == 1 for s in sessions)
    assert engine.local_tracks == []


@pytest.mark.anyio("asyncio")
async def test_error_for_one_peer_does_not_affect_others(engine, transport, local_tracks, caplog) -> None:
    session = await initiator_with_offer_to(engine, transport, local_tracks, "peer-b")
    await engine.handle_message(offer_from("peer-c"))
    other = engine.get_session("peer-c")

    async def broken(*_args: Any) -> None:
        raise RuntimeError("boom")

    other.pc.setRemoteDescription = broken
    await engine.handle_message(offer_from("peer-c", sdp="v=0 renegotiate"))

    await engine.handle_message(answer_from("peer-b"))
    assert session.state is NegotiationState.STABLE
    assert other.state is NegotiationState.ANSWER_SENT
    assert "boom" in caplog.text


@pytest.mark.anyio("asyncio")
async def test_messages_for_other_rooms_or_peers_are_ignored(engine, transport) -> None:
    await engine.handle_message(room_info("peer-a"))

    foreign_room = offer_from("peer-a").model_copy(update={"room_id": "room-2"})
    other_target = offer_from("peer-a").model_copy(update={"to": "someone-else"})
    own_echo = offer_from(LOCAL)
    await engine.handle_message(foreign_room)
    await engine.handle_message(other_target)
    await engine.handle_message(own_echo)

    assert len(engine) == 0
    assert transport.sent_of("ANSWER") == []


@pytest.mark.anyio("asyncio")
async def test_bound_engine_reacts_to_transport_delivery(engine, transport, local_tracks) -> None:
    engine.set_local_tracks(local_tracks)

    await transport.deliver(room_info(), user_joined("peer-b"))

    assert len(transport.sent_of("OFFER")) == 1
    engine.unbind(transport)
    await transport.deliver(user_joined("peer-c"))
    assert "peer-c" not in engine
