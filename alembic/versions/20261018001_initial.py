"""Initial Slotbook schema."""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20261018001"
down_revision = None
branch_labels = None
depends_on = None

SLOT_STATUS = ("available", "pending", "confirmed", "completed", "cancelled")
SLOT_TYPE = ("regular", "with_squeeze_fee")
BOOKING_STATUS = ("pending", "confirmed", "completed", "cancelled")
PAYMENT_STATUS = ("unpaid", "partial", "paid")
PHOTO_CATEGORY = ("inspiration", "currentState")
NOTIFICATION_TYPE = (
    "payment_6h",
    "payment_12h",
    "payment_23h",
    "payment_24h_cancel",
    "appt_24h",
    "appt_2h",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "providers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    )

    op.create_table(
        "customers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column("total_bookings", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("completed_bookings", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_spent", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_tips", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_discounts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_visit", sa.DateTime(timezone=True), nullable=True),
        sa.Column("client_type", sa.String(length=16), nullable=False, server_default=sa.text("'NEW'")),
    )
    op.create_index("ix_customers_email", "customers", ["email"], unique=False)

    op.create_table(
        "slots",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("provider_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("time", sa.Time(), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*SLOT_STATUS, name="slot_status"),
            nullable=False,
            server_default=sa.text("'available'"),
        ),
        sa.Column("slot_type", sa.Enum(*SLOT_TYPE, name="slot_type"), nullable=True),
        sa.Column("is_hidden", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.ForeignKeyConstraint(["provider_id"], ["providers.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("provider_id", "date", "time", name="uq_slots_provider_date_time"),
    )
    op.create_index("ix_slots_provider_id", "slots", ["provider_id"], unique=False)
    op.create_index("ix_slots_date", "slots", ["date"], unique=False)
    op.create_index("ix_slots_status", "slots", ["status"], unique=False)
    op.create_index("ix_slots_booking_id", "slots", ["booking_id"], unique=False)

    op.create_table(
        "bookings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("slot_ids", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("service_description", sa.String(length=255), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*BOOKING_STATUS, name="booking_status"),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column(
            "payment_status",
            sa.Enum(*PAYMENT_STATUS, name="payment_status"),
            nullable=False,
            server_default=sa.text("'unpaid'"),
        ),
        sa.Column("subtotal", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("discount_amount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("paid_amount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tip_amount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("proof_url", sa.String(length=1024), nullable=True),
        sa.Column("proof_ref", sa.String(length=512), nullable=True),
        sa.Column("fully_paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invoice_quotation_id", sa.String(length=64), nullable=True),
        sa.Column("invoice_total", sa.Integer(), nullable=True),
        sa.Column("invoice_items", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("invoice_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status_reason", sa.Text(), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["provider_id"], ["providers.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("code", name="uq_bookings_code"),
    )
    op.create_index("ix_bookings_customer_id", "bookings", ["customer_id"], unique=False)
    op.create_index("ix_bookings_provider_id", "bookings", ["provider_id"], unique=False)
    op.create_index("ix_bookings_status", "bookings", ["status"], unique=False)
    op.create_index("ix_bookings_payment_status", "bookings", ["payment_status"], unique=False)
    op.create_index("ix_bookings_completed_at", "bookings", ["completed_at"], unique=False)

    op.create_table(
        "booking_photos",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("category", sa.Enum(*PHOTO_CATEGORY, name="photo_category"), nullable=False),
        sa.Column("url", sa.String(length=1024), nullable=False),
        sa.Column("ref", sa.String(length=512), nullable=False),
        sa.Column(
            "uploaded_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.ForeignKeyConstraint(["booking_id"], ["bookings.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_booking_photos_booking_id", "booking_photos", ["booking_id"], unique=False)

    op.create_table(
        "booking_counters",
        *_timestamps(),
        sa.Column("date_key", sa.String(length=8), primary_key=True, nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )

    op.create_table(
        "notification_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("type", sa.Enum(*NOTIFICATION_TYPE, name="notification_type"), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["booking_id"], ["bookings.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("booking_id", "type", name="uq_notification_logs_booking_type"),
    )
    op.create_index(
        "ix_notification_logs_booking_id", "notification_logs", ["booking_id"], unique=False
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("actor", sa.String(length=255), nullable=True),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("resource", sa.String(length=255), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_index("ix_notification_logs_booking_id", table_name="notification_logs")
    op.drop_table("notification_logs")
    op.drop_table("booking_counters")
    op.drop_index("ix_booking_photos_booking_id", table_name="booking_photos")
    op.drop_table("booking_photos")
    op.drop_index("ix_bookings_completed_at", table_name="bookings")
    op.drop_index("ix_bookings_payment_status", table_name="bookings")
    op.drop_index("ix_bookings_status", table_name="bookings")
    op.drop_index("ix_bookings_provider_id", table_name="bookings")
    op.drop_index("ix_bookings_customer_id", table_name="bookings")
    op.drop_table("bookings")
    op.drop_index("ix_slots_booking_id", table_name="slots")
    op.drop_index("ix_slots_status", table_name="slots")
    op.drop_index("ix_slots_date", table_name="slots")
    op.drop_index("ix_slots_provider_id", table_name="slots")
    op.drop_table("slots")
    op.drop_index("ix_customers_email", table_name="customers")
    op.drop_table("customers")
    op.drop_table("providers")

    bind = op.get_bind()
    for enum_name in (
        "notification_type",
        "photo_category",
        "payment_status",
        "booking_status",
        "slot_type",
        "slot_status",
    ):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
