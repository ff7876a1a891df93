import pytest

from conftest import ADMIN, NOW
from slotbook.core.errors import PreconditionFailed, ValidationFailed
from slotbook.models import Booking, PaymentStatus
from slotbook.services.booking_lifecycle import (
    confirm_booking,
    get_booking,
    record_payment,
    upload_payment_proof,
)
from slotbook.services.payment_ledger import (
    PROOF_FOLDER,
    apply_payment,
    derive_payment_status,
    issue_invoice,
    validate_upload,
)


def _invoiced(total=500, paid=0):
    return Booking(
        subtotal=total,
        discount_amount=0,
        paid_amount=paid,
        tip_amount=0,
        invoice_total=total,
        invoice_quotation_id="q-1",
    )


def _uninvoiced(subtotal=1000):
    return Booking(subtotal=subtotal, discount_amount=0, paid_amount=0, tip_amount=0)


def test_overpayment_becomes_tip():
    booking = _invoiced(total=500)

    application = apply_payment(booking, 800, now=NOW)

    assert application.applied_to_balance == 500
    assert application.tip_amount == 300
    assert application.payment_status == PaymentStatus.PAID
    assert booking.paid_amount == 800
    assert booking.tip_amount == 300
    assert booking.fully_paid_at == NOW


def test_payments_accumulate_until_paid():
    booking = _invoiced(total=700)

    first = apply_payment(booking, 300, now=NOW)
    second = apply_payment(booking, 400, now=NOW)

    assert first.payment_status == PaymentStatus.PARTIAL
    assert second.payment_status == PaymentStatus.PAID
    assert booking.paid_amount == 700
    assert booking.tip_amount == 0
    assert booking.balance_due == 0


def test_payment_without_invoice_is_never_paid():
    booking = _uninvoiced(subtotal=500)

    application = apply_payment(booking, 500, now=NOW)

    assert application.applied_to_balance == 500
    assert application.tip_amount == 0
    assert application.payment_status == PaymentStatus.PARTIAL
    assert booking.fully_paid_at is None


def test_zero_payment_keeps_status_and_negative_is_rejected():
    booking = _invoiced(total=500)

    assert apply_payment(booking, 0, now=NOW).payment_status == PaymentStatus.UNPAID
    with pytest.raises(ValidationFailed):
        apply_payment(booking, -1, now=NOW)


def test_fully_paid_at_is_stamped_once():
    booking = _invoiced(total=500)
    apply_payment(booking, 500, now=NOW)
    stamped = booking.fully_paid_at

    apply_payment(booking, 100, now=NOW.replace(hour=5))

    assert booking.fully_paid_at == stamped
    assert booking.tip_amount == 100


def test_invoice_totals_with_discount_and_fee():
    booking = _uninvoiced()
    items = [
        {"description": "Gel manicure", "total": 800},
        {"description": "Nail art", "total": 400},
    ]

    total = issue_invoice(booking, items, discount_rate=10, squeeze_in_fee=200, now=NOW)

    assert total == 1280
    assert booking.subtotal == 1200
    assert booking.discount_amount == 120
    assert booking.invoice_total == 1280
    assert booking.invoice_created_at == NOW


def test_invoice_explicit_discount_wins_and_total_floors_at_zero():
    booking = _uninvoiced()

    total = issue_invoice(booking, [{"total": 300}], discount_amount=500, discount_rate=50)

    assert total == 0
    assert booking.discount_amount == 500


def test_reissued_invoice_keeps_quotation_id_and_rederives_status():
    booking = _uninvoiced()
    apply_payment(booking, 600, now=NOW)
    issue_invoice(booking, [{"total": 1000}], now=NOW)
    quotation_id = booking.invoice_quotation_id
    assert booking.payment_status == PaymentStatus.PARTIAL

    issue_invoice(booking, [{"total": 600}], now=NOW)

    assert booking.invoice_quotation_id == quotation_id
    assert booking.payment_status == PaymentStatus.PAID


def test_invoice_rejects_empty_items_and_bad_totals():
    booking = _uninvoiced()

    with pytest.raises(ValidationFailed):
        issue_invoice(booking, [])
    with pytest.raises(ValidationFailed):
        issue_invoice(booking, [{"total": "lots"}])


def test_derive_payment_status():
    assert derive_payment_status(_uninvoiced()) == PaymentStatus.UNPAID
    assert derive_payment_status(_invoiced(total=500, paid=499)) == PaymentStatus.PARTIAL
    assert derive_payment_status(_invoiced(total=500, paid=500)) == PaymentStatus.PAID


@pytest.mark.parametrize(
    "content, content_type",
    [
        (b"gif", "image/gif"),
        (b"", "image/png"),
        (b"x" * (5 * 1024 * 1024 + 1), "image/jpeg"),
    ],
)
def test_validate_upload_rejects(content, content_type):
    with pytest.raises(ValidationFailed):
        validate_upload(content, content_type)


def test_record_payment_through_lifecycle(db, make_booking, audit):
    booking = make_booking()

    _, application = record_payment(db, booking.id, 400, actor=ADMIN, audit=audit, now=NOW)

    db.expire_all()
    fresh = get_booking(db, booking.id)
    assert fresh.paid_amount == 400
    assert fresh.payment_status == PaymentStatus.PARTIAL
    assert application.applied_to_balance == 400
    assert audit.records[-1][3]["payment_status"] == "partial"


def test_proof_replacement_deletes_previous_object(db, make_booking, storage):
    booking = make_booking()

    upload_payment_proof(db, booking.id, content=b"first", content_type="image/png", storage=storage)
    first_ref = get_booking(db, booking.id).proof_ref
    upload_payment_proof(db, booking.id, content=b"second", content_type="image/webp", storage=storage)

    db.expire_all()
    fresh = get_booking(db, booking.id)
    assert first_ref.startswith(f"{PROOF_FOLDER}/")
    assert fresh.proof_ref != first_ref
    assert storage.delete_calls == [first_ref]
    assert list(storage.objects) == [fresh.proof_ref]
    assert fresh.proof_url == f"https://cdn.test/{fresh.proof_ref}"


def test_failed_delete_of_previous_proof_keeps_new_one(db, make_booking, storage):
    booking = make_booking()
    upload_payment_proof(db, booking.id, content=b"first", content_type="image/png", storage=storage)
    first_ref = get_booking(db, booking.id).proof_ref
    storage.fail_deletes.add(first_ref)

    upload_payment_proof(db, booking.id, content=b"second", content_type="image/png", storage=storage)

    db.expire_all()
    fresh = get_booking(db, booking.id)
    assert fresh.proof_ref != first_ref
    assert fresh.proof_ref in storage.objects
    assert first_ref in storage.objects


def test_invalid_proof_never_reaches_storage(db, make_booking, storage):
    booking = make_booking()

    with pytest.raises(ValidationFailed):
        upload_payment_proof(
            db, booking.id, content=b"x", content_type="application/pdf", storage=storage
        )
    with pytest.raises(PreconditionFailed):
        confirm_booking(db, booking.id, actor=ADMIN, now=NOW)

    assert storage.objects == {}
