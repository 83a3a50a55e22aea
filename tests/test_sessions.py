import pytest

from bitacora.errors import AlreadyClosedError, ConflictError, InvalidStateError, SessionNotFoundError, ValidationError
from bitacora.models import MinuteSplit, SessionStatus

GUILD = "900"


def test_start_creates_open_session(service, clock) -> None:
    session = service.start(GUILD, "1")

    assert session.status is SessionStatus.OPEN
    assert session.start_at == clock.now()
    assert (session.normal_minutes, session.stellar_minutes) == (0, 0)


def test_duplicate_start_conflicts(service) -> None:
    service.start(GUILD, "1")

    with pytest.raises(ConflictError):
        service.start(GUILD, "1")

    # Other users and other guilds are independent.
    service.start(GUILD, "2")
    service.start("901", "1")


def test_pause_and_resume_transitions(service, db, clock) -> None:
    service.start(GUILD, "1")

    paused = service.pause(GUILD, "1")
    assert paused.status is SessionStatus.PAUSED
    with pytest.raises(InvalidStateError):
        service.pause(GUILD, "1")

    clock.advance(minutes=10)
    resumed = service.resume(GUILD, "1")
    assert resumed.status is SessionStatus.OPEN
    with pytest.raises(InvalidStateError):
        service.resume(GUILD, "1")

    [pause] = db.list_pauses(resumed.id)
    assert pause.pause_end == clock.now()


def test_operations_without_session_fail(service) -> None:
    with pytest.raises(SessionNotFoundError):
        service.pause(GUILD, "1")
    with pytest.raises(SessionNotFoundError):
        service.close(GUILD, "1")


def test_close_splits_minutes_by_windows(service, clock) -> None:
    service.start(GUILD, "1")
    clock.advance(hours=2)

    result = service.close(GUILD, "1")

    assert result.split == MinuteSplit(normal=60, stellar=60)
    assert result.session.status is SessionStatus.CLOSED
    assert result.session.end_at == clock.now()
    assert (result.session.normal_minutes, result.session.stellar_minutes) == (60, 60)
    assert result.session.close_reason == "user-initiated"


def test_second_close_is_rejected_without_mutation(service, db, clock) -> None:
    session = service.start(GUILD, "1")
    clock.advance(minutes=45)
    first = service.close_session(session.id, "user-initiated")

    clock.advance(minutes=30)
    with pytest.raises(AlreadyClosedError):
        service.close_session(session.id, "timeout")

    stored = db.get_session(session.id)
    assert stored == first.session
    assert stored.close_reason == "user-initiated"


def test_session_paused_for_whole_lifetime_earns_nothing(service, clock) -> None:
    service.start(GUILD, "1")
    service.pause(GUILD, "1")
    clock.advance(hours=3)

    result = service.close(GUILD, "1")

    assert result.split == MinuteSplit()


def test_close_while_paused_closes_open_pause(service, db, clock) -> None:
    session = service.start(GUILD, "1")
    clock.advance(minutes=30)
    service.pause(GUILD, "1")
    clock.advance(minutes=30)

    result = service.close(GUILD, "1")

    assert result.split == MinuteSplit(normal=30, stellar=0)
    assert db.get_open_pause(session.id) is None
    assert db.list_pauses(session.id)[0].pause_end == clock.now()


def test_user_can_start_again_after_close(service, clock) -> None:
    first = service.start(GUILD, "1")
    clock.advance(minutes=5)
    service.close(GUILD, "1")

    second = service.start(GUILD, "1")

    assert second.id != first.id


def test_force_close_records_reason(service, clock) -> None:
    service.start(GUILD, "1")
    clock.advance(minutes=10)

    result = service.force_close(GUILD, "1", actor_id="42")

    assert result.session.close_reason == "forced"


def test_resume_counts_as_liveness_answer(service, db, clock) -> None:
    session = service.start(GUILD, "1")
    db.record_ping(session.id, clock.now(), pending=True)
    service.pause(GUILD, "1")
    clock.advance(minutes=20)

    resumed = service.resume(GUILD, "1")

    assert resumed.pending_ping is False
    assert resumed.last_ping_at == clock.now()


def test_acknowledge_ping_on_closed_session(service, clock) -> None:
    session = service.start(GUILD, "1")
    service.close(GUILD, "1")

    with pytest.raises(AlreadyClosedError):
        service.acknowledge_ping(session.id)


def test_record_adjustment_validates(service) -> None:
    adjustment = service.record_adjustment(GUILD, "1", -15, " late start ", actor_id="42")
    assert adjustment.minutes == -15
    assert adjustment.reason == "late start"

    with pytest.raises(ValidationError):
        service.record_adjustment(GUILD, "1", 0, "nothing")
    with pytest.raises(ValidationError):
        service.record_adjustment(GUILD, "1", 10, "   ")


def test_guild_config_overrides_defaults(service, db, clock) -> None:
    db.update_guild_config(GUILD, timezone="America/Mexico_City", stellar_windows="09:00-10:00")
    service.start(GUILD, "1")
    clock.advance(hours=2)

    # 15:00-17:00 UTC is 09:00-11:00 in Mexico City.
    result = service.close(GUILD, "1")

    assert result.split == MinuteSplit(normal=60, stellar=60)
