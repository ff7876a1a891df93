from __future__ import annotations

import logging
from datetime import time, timedelta
from typing import Iterable

from sqlalchemy import select

from slotbook.db.session import SessionLocal
from slotbook.logging_utils import configure_logging, set_actor_context
from slotbook.models import Customer, Provider
from slotbook.services.clock import local_now
from slotbook.services.slot_registry import create_slots

logger = logging.getLogger(__name__)

PROVIDERS: list[str] = ["Ana Reyes", "Bea Santos"]

CUSTOMERS: list[tuple[str, str, str]] = [
    ("Maria Cruz", "maria.cruz@example.com", "+639171234567"),
    ("Jose Garcia", "jose.garcia@example.com", "+639189876543"),
]

SLOT_TIMES: list[time] = [time(hour=hour) for hour in (10, 13, 16)]
SEED_DAYS = 7


def ensure_providers(session) -> list[Provider]:
    created = 0
    providers: list[Provider] = []
    for name in PROVIDERS:
        provider = session.execute(
            select(Provider).where(Provider.full_name == name)
        ).scalar_one_or_none()
        if not provider:
            provider = Provider(full_name=name, is_active=True)
            session.add(provider)
            session.flush()
            created += 1
        providers.append(provider)

    logger.info("ensured providers", extra={"created": created, "total": len(providers)})
    return providers


def ensure_customers(session) -> list[Customer]:
    created = 0
    customers: list[Customer] = []
    for name, email, phone in CUSTOMERS:
        customer = session.execute(
            select(Customer).where(Customer.email == email)
        ).scalar_one_or_none()
        if not customer:
            customer = Customer(full_name=name, email=email, phone_number=phone)
            session.add(customer)
            session.flush()
            created += 1
        customers.append(customer)

    logger.info("ensured customers", extra={"created": created, "total": len(customers)})
    return customers


def ensure_slots(session, providers: Iterable[Provider]) -> None:
    today = local_now().date()
    dates = [today + timedelta(days=offset) for offset in range(1, SEED_DAYS + 1)]
    created = 0
    for provider in providers:
        result = create_slots(session, provider_id=provider.id, dates=dates, times=SLOT_TIMES)
        created += len(result.created)

    logger.info("ensured slots", extra={"created": created, "days": SEED_DAYS})


def seed() -> None:
    configure_logging()
    set_actor_context("seed")
    logger.info("starting seed process")

    session = SessionLocal()
    try:
        providers = ensure_providers(session)
        ensure_customers(session)
        ensure_slots(session, providers)
        session.commit()
        logger.info("seed complete")
    except Exception:
        session.rollback()
        logger.exception("seed failed")
        raise
    finally:
        session.close()


if __name__ == "__main__":
    seed()
