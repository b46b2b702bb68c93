from freetalk.calls.signaling import Call, CallKind, CallStatus
from freetalk.realtime.authorizer import Authorizer


authorizer = Authorizer()


def test_authenticate_requires_matching_credentials() -> None:
    assert authorizer.authenticate("1", "1")
    assert not authorizer.authenticate(None, "1")
    decision = authorizer.authenticate("1", "2")
    assert not decision
    assert decision.reason == "Credentials do not match the requested user"


def test_room_join_rules() -> None:
    assert authorizer.room_join("1", "user:1", is_member=False)
    assert not authorizer.room_join("1", "user:2", is_member=True)
    assert authorizer.room_join("1", "club:9", is_member=True)
    assert not authorizer.room_join("1", "club:9", is_member=False)
    assert not authorizer.room_join("1", "lobby:9", is_member=True)
    assert not authorizer.room_join(None, "event:3", is_member=True)


def test_call_relay_rules() -> None:
    call = Call(call_id="c", caller_id="1", callee_id="2", kind=CallKind.AUDIO)
    assert authorizer.call_relay("1", call, "2")
    assert not authorizer.call_relay("1", call, "3")
    assert not authorizer.call_relay("3", call, "2")

    call.status = CallStatus.ENDED
    assert not authorizer.call_relay("1", call, "2")
