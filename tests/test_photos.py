from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from conftest import ADMIN, NOW
from slotbook.core.errors import Forbidden, InvalidTransition, NotFound, ValidationFailed
from slotbook.core.roles import Actor, Role
from slotbook.models import BookingPhoto, PhotoCategory
from slotbook.services.booking_lifecycle import cancel_booking, get_booking
from slotbook.services.photos import add_client_photo, parse_category, remove_client_photo


def _add(db, booking, storage, category=PhotoCategory.INSPIRATION, actor=ADMIN, **kwargs):
    return add_client_photo(
        db,
        booking.id,
        category=category,
        content=kwargs.pop("content", b"photo"),
        content_type=kwargs.pop("content_type", "image/jpeg"),
        storage=storage,
        actor=actor,
        **kwargs,
    )


def test_add_photo_stores_object_and_reference(db, make_booking, storage, audit):
    booking = make_booking()

    photo = _add(db, booking, storage, audit=audit)

    assert photo.ref.startswith("client_photos/inspiration/")
    assert photo.url == f"https://cdn.test/{photo.ref}"
    assert photo.ref in storage.objects
    assert audit.records[-1][1] == "booking.photo_add"


def test_category_limit_is_three(db, make_booking, storage):
    booking = make_booking()
    for _ in range(3):
        _add(db, booking, storage)

    with pytest.raises(ValidationFailed):
        _add(db, booking, storage)

    # The other category has its own allowance.
    _add(db, booking, storage, category=PhotoCategory.CURRENT_STATE)
    assert len(storage.objects) == 4


def test_parse_category():
    assert parse_category("currentState") == PhotoCategory.CURRENT_STATE
    with pytest.raises(ValidationFailed):
        parse_category("before")


def test_scoped_staff_and_terminal_bookings(db, provider, make_booking, storage):
    booking = make_booking()
    outsider = Actor(id="s-9", role=Role.STAFF, provider_id=uuid4())
    insider = Actor(id="s-1", role=Role.STAFF, provider_id=provider.id)

    with pytest.raises(Forbidden):
        _add(db, booking, storage, actor=outsider)
    _add(db, booking, storage, actor=insider)

    cancel_booking(db, booking.id, actor=ADMIN, now=NOW)
    with pytest.raises(InvalidTransition):
        _add(db, booking, storage)
    assert len(storage.objects) == 1


def test_failed_persist_deletes_upload(db, make_booking, storage, monkeypatch):
    booking = make_booking()

    def broken_commit():
        raise OperationalError("INSERT", {}, Exception("disk full"))

    monkeypatch.setattr(db, "commit", broken_commit)

    with pytest.raises(OperationalError):
        _add(db, booking, storage)

    assert storage.objects == {}
    assert len(storage.delete_calls) == 1


def test_remove_photo_deletes_object_then_row(db, make_booking, storage):
    booking = make_booking()
    photo = _add(db, booking, storage)

    remove_client_photo(db, booking.id, photo.id, storage=storage, actor=ADMIN)

    assert storage.objects == {}
    assert db.get(BookingPhoto, photo.id) is None
    db.expire_all()
    assert get_booking(db, booking.id).photos == []


def test_remove_photo_of_other_booking_is_not_found(db, make_booking, make_slots, storage):
    first = make_booking()
    second = make_booking(slots=make_slots(hours=(13,)))
    photo = _add(db, first, storage)

    with pytest.raises(NotFound):
        remove_client_photo(db, second.id, photo.id, storage=storage, actor=ADMIN)

    assert photo.ref in storage.objects


def test_category_limit_holds_when_another_upload_lands_first(
    db, session_factory, make_booking, storage, monkeypatch
):
    booking = make_booking()
    for _ in range(2):
        _add(db, booking, storage)
    real_upload = storage.upload

    def upload_racing_another_request(content, folder, content_type):
        stored = real_upload(content, folder, content_type)
        other = session_factory()
        try:
            other.add(
                BookingPhoto(
                    booking_id=booking.id,
                    category=PhotoCategory.INSPIRATION,
                    url="https://cdn.test/elsewhere",
                    ref="client_photos/inspiration/elsewhere",
                    uploaded_at=NOW,
                )
            )
            other.commit()
        finally:
            other.close()
        return stored

    monkeypatch.setattr(storage, "upload", upload_racing_another_request)

    with pytest.raises(ValidationFailed):
        _add(db, booking, storage)

    db.expire_all()
    count = db.execute(
        select(func.count(BookingPhoto.id)).where(
            BookingPhoto.booking_id == booking.id,
            BookingPhoto.category == PhotoCategory.INSPIRATION,
        )
    ).scalar_one()
    assert count == 3
    rejected = storage.delete_calls[-1]
    assert rejected.startswith("client_photos/inspiration/")
    assert rejected not in storage.objects
