import threading
from datetime import datetime, time, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import event, select

from conftest import NOW, TODAY
from slotbook.core.errors import (
    NotFound,
    PreconditionFailed,
    SlotConflict,
    ValidationFailed,
)
from slotbook.models import Booking, BookingStatus, Provider, Slot, SlotStatus, SlotType
from slotbook.services.clock import local_now
from slotbook.services.slot_registry import (
    claim,
    create_slots,
    delete_slot,
    list_slots,
    release,
    revert_claim,
    serialize_slot,
    sweep_unbooked_past,
    sweep_unbooked_past_if_due,
    update_slot,
)


def _statuses(db, slots):
    db.expire_all()
    return [db.get(Slot, slot.id).status for slot in slots]


def test_create_slots_skips_existing_combinations(db, provider):
    day = TODAY + timedelta(days=1)
    first = create_slots(db, provider_id=provider.id, dates=[day], times=[time(10), time(13)])
    db.commit()
    second = create_slots(
        db,
        provider_id=provider.id,
        dates=[day],
        times=[time(13), time(16)],
        slot_type=SlotType.WITH_SQUEEZE_FEE,
    )
    db.commit()

    assert len(first.created) == 2
    assert len(second.created) == 1
    assert second.errors == [f"Slot already exists: {day.isoformat()} 13:00"]
    assert all(slot.status == SlotStatus.AVAILABLE for slot in list_slots(db))


def test_create_slots_requires_known_provider(db):
    with pytest.raises(NotFound):
        create_slots(db, provider_id=uuid4(), dates=[TODAY], times=[time(10)])


def test_list_slots_filters_hidden_and_status(db, provider, make_slots):
    visible, hidden = make_slots(hours=(10, 13))
    update_slot(db, hidden.id, is_hidden=True, notes="staff only")
    db.commit()

    assert [slot.id for slot in list_slots(db, include_hidden=False)] == [visible.id]
    assert len(list_slots(db, provider_id=provider.id, status=SlotStatus.AVAILABLE)) == 2
    assert serialize_slot(hidden)["notes"] == "staff only"


def test_claim_moves_all_slots_to_pending(db, make_slots):
    slots = make_slots(hours=(10, 11))
    booking_id = uuid4()

    won = claim(db, [slot.id for slot in slots], booking_id)
    db.commit()

    assert won == [slot.id for slot in slots]
    db.expire_all()
    for slot in slots:
        fresh = db.get(Slot, slot.id)
        assert fresh.status == SlotStatus.PENDING
        assert fresh.booking_id == booking_id


def test_claim_is_all_or_nothing(db, make_slots):
    free, taken = make_slots(hours=(10, 11))
    claim(db, [taken.id], uuid4())
    db.commit()

    with pytest.raises(SlotConflict) as excinfo:
        claim(db, [free.id, taken.id], uuid4())
    db.commit()

    assert excinfo.value.slot_ids == [taken.id]
    assert _statuses(db, [free, taken]) == [SlotStatus.AVAILABLE, SlotStatus.PENDING]
    assert db.get(Slot, free.id).booking_id is None


def test_claim_rejects_duplicates_and_other_providers(db, make_slots):
    other = Provider(full_name="Bea Santos")
    db.add(other)
    db.commit()
    mine = make_slots()[0]
    theirs = make_slots(provider_id=other.id)[0]

    with pytest.raises(ValidationFailed):
        claim(db, [mine.id, mine.id], uuid4())
    with pytest.raises(ValidationFailed):
        claim(db, [], uuid4())
    with pytest.raises(ValidationFailed):
        claim(db, [mine.id, theirs.id], uuid4(), provider_id=mine.provider_id)
    with pytest.raises(NotFound):
        claim(db, [uuid4()], uuid4())
    db.commit()

    assert _statuses(db, [mine, theirs]) == [SlotStatus.AVAILABLE, SlotStatus.AVAILABLE]


def test_concurrent_overlapping_claims_have_one_winner(db, session_factory, make_slots):
    first, shared, last = make_slots(hours=(10, 11, 12))
    requests = {
        "a": ([first.id, shared.id], uuid4()),
        "b": ([shared.id, last.id], uuid4()),
    }
    db.rollback()
    barrier = threading.Barrier(2)
    outcomes: dict[str, str] = {}

    def attempt(name):
        slot_ids, booking_id = requests[name]
        session = session_factory()
        try:
            barrier.wait()
            claim(session, slot_ids, booking_id)
            session.commit()
            outcomes[name] = "won"
        except SlotConflict:
            session.rollback()
            outcomes[name] = "conflict"
        finally:
            session.close()

    threads = [threading.Thread(target=attempt, args=(name,)) for name in requests]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes.values()) == ["conflict", "won"]
    winner = next(name for name, outcome in outcomes.items() if outcome == "won")
    winner_ids, winner_booking = requests[winner]

    session = session_factory()
    try:
        rows = {slot.id: slot for slot in session.execute(select(Slot)).scalars()}
    finally:
        session.close()
    for slot_id, slot in rows.items():
        if slot_id in winner_ids:
            assert slot.status == SlotStatus.PENDING
            assert slot.booking_id == winner_booking
        else:
            assert slot.status == SlotStatus.AVAILABLE
            assert slot.booking_id is None


def test_claim_locks_slots_in_id_order_and_keeps_caller_order(db, engine, make_slots):
    slots = make_slots(hours=(10, 11, 12, 13))
    requested = [slots[2].id, slots[0].id, slots[3].id, slots[1].id]
    slot_hexes = {slot.id.hex for slot in slots}
    touched: list[str] = []

    def record(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith("UPDATE SLOTS"):
            values = parameters.values() if isinstance(parameters, dict) else parameters
            touched.extend(value for value in values if value in slot_hexes)

    event.listen(engine, "before_cursor_execute", record)
    try:
        won = claim(db, requested, uuid4())
        db.commit()
    finally:
        event.remove(engine, "before_cursor_execute", record)

    assert won == requested
    assert touched == [slot_id.hex for slot_id in sorted(requested)]


def test_concurrent_claims_in_opposite_orders_have_one_winner(db, session_factory, make_slots):
    first, second, third = make_slots(hours=(10, 11, 12))
    requests = {
        "forward": ([first.id, second.id, third.id], uuid4()),
        "reverse": ([third.id, second.id, first.id], uuid4()),
    }
    db.rollback()
    barrier = threading.Barrier(2)
    outcomes: dict[str, str] = {}

    def attempt(name):
        slot_ids, booking_id = requests[name]
        session = session_factory()
        try:
            barrier.wait()
            claim(session, slot_ids, booking_id)
            session.commit()
            outcomes[name] = "won"
        except SlotConflict:
            session.rollback()
            outcomes[name] = "conflict"
        finally:
            session.close()

    threads = [threading.Thread(target=attempt, args=(name,)) for name in requests]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes.values()) == ["conflict", "won"]
    winner = next(name for name, outcome in outcomes.items() if outcome == "won")
    winner_booking = requests[winner][1]

    session = session_factory()
    try:
        rows = list(session.execute(select(Slot)).scalars())
    finally:
        session.close()
    assert {slot.booking_id for slot in rows} == {winner_booking}
    assert {slot.status for slot in rows} == {SlotStatus.PENDING}


def test_revert_claim_only_touches_own_slots(db, make_slots):
    mine, theirs = make_slots(hours=(10, 11))
    my_booking, their_booking = uuid4(), uuid4()
    claim(db, [mine.id], my_booking)
    claim(db, [theirs.id], their_booking)

    reverted = revert_claim(db, [mine.id, theirs.id], my_booking)
    db.commit()

    assert reverted == 1
    assert _statuses(db, [mine, theirs]) == [SlotStatus.AVAILABLE, SlotStatus.PENDING]


def test_release_returns_future_slots_and_keeps_past_ones(db, make_slots):
    past = make_slots(day_offset=-1)[0]
    future = make_slots(day_offset=1)[0]
    booking_id = uuid4()
    claim(db, [past.id, future.id], booking_id)
    db.commit()

    result = release(db, [past.id, future.id], booking_id, now=NOW)
    db.commit()

    assert result.released == [future.id]
    assert result.retained == [past.id]
    db.expire_all()
    assert db.get(Slot, future.id).status == SlotStatus.AVAILABLE
    assert db.get(Slot, future.id).booking_id is None
    assert db.get(Slot, past.id).status == SlotStatus.CANCELLED
    assert db.get(Slot, past.id).booking_id == booking_id


def test_release_treats_started_slot_as_past(db, make_slots):
    # 10:00 local is exactly NOW.
    slot = make_slots(day_offset=0, hours=(10,))[0]
    booking_id = uuid4()
    claim(db, [slot.id], booking_id)
    db.commit()

    result = release(db, [slot.id], booking_id, now=NOW)

    assert result.released == []
    assert result.retained == [slot.id]


def test_delete_slot_only_when_available(db, make_slots):
    free, held = make_slots(hours=(10, 11))
    claim(db, [held.id], uuid4())
    db.commit()

    delete_slot(db, free.id)
    with pytest.raises(PreconditionFailed):
        delete_slot(db, held.id)
    with pytest.raises(NotFound):
        delete_slot(db, uuid4())
    db.commit()

    assert [slot.id for slot in list_slots(db)] == [held.id]


def test_sweep_deletes_only_unreferenced_past_slots(db, customer, provider, make_slots):
    stale = make_slots(day_offset=-2)[0]
    cancelled_stale = make_slots(day_offset=-2, hours=(13,))[0]
    completed_past = make_slots(day_offset=-1)[0]
    earlier_today = make_slots(day_offset=0, hours=(8,))[0]
    later_today = make_slots(day_offset=0, hours=(15,))[0]
    future = make_slots(day_offset=3)[0]

    db.add(
        Booking(
            code="GN-20261017001",
            customer_id=customer.id,
            provider_id=provider.id,
            slot_ids=[str(completed_past.id)],
            service_description="Pedicure",
            status=BookingStatus.COMPLETED,
        )
    )
    cancelled_stale.status = SlotStatus.CANCELLED
    # A slot whose booking is completed but whose status was never mirrored.
    completed_past.status = SlotStatus.CANCELLED
    db.commit()

    result = sweep_unbooked_past(db, local_now(NOW))
    db.commit()

    assert sorted(result.slot_ids) == sorted(
        str(slot.id) for slot in (stale, cancelled_stale, earlier_today)
    )
    remaining = {slot.id for slot in list_slots(db)}
    assert remaining == {completed_past.id, later_today.id, future.id}


def test_sweep_never_deletes_held_past_slots(db, make_slots):
    held = make_slots(day_offset=-1)[0]
    claim(db, [held.id], uuid4())
    db.commit()

    result = sweep_unbooked_past(db, local_now(NOW))

    assert result.deleted == 0
    assert db.get(Slot, held.id) is not None


def test_throttled_sweep_runs_once_per_interval(db, throttle, make_slots):
    make_slots(day_offset=-1)
    first = sweep_unbooked_past_if_due(db, throttle, now=NOW)
    db.commit()
    make_slots(day_offset=-1, hours=(11,))
    throttle.client.advance(60)
    second = sweep_unbooked_past_if_due(db, throttle, now=NOW + timedelta(minutes=1))
    throttle.client.advance(240)
    third = sweep_unbooked_past_if_due(db, throttle, now=NOW + timedelta(minutes=5))
    db.commit()

    assert first.deleted == 1
    assert not first.skipped
    assert second.skipped
    assert second.deleted == 0
    assert not third.skipped
    assert third.deleted == 1


def test_serialize_slot_reports_utc_start(make_slots):
    slot = make_slots(day_offset=1, hours=(10,))[0]

    payload = serialize_slot(slot)

    assert payload["time"] == "10:00"
    assert payload["start_ts"] == datetime(2026, 10, 19, 2, 0, tzinfo=timezone.utc).isoformat()
