"""
Seed script for EscrowGuard.

Creates demo users, a few bookings with escrow holds, and one dispute
already in negotiation so the API has something to show.

Usage:
    python -m escrowguard.scripts.seed
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select

from escrowguard.common.dates import utcnow
from escrowguard.common.enums import BookingStatus, UserRole
from escrowguard.common.security import create_access_token
from escrowguard.core.disputes.effects import SideEffects
from escrowguard.core.disputes.service import DisputeService
from escrowguard.core.escrow.ledger import EscrowLedger
from escrowguard.db.models import Booking, User
from escrowguard.db.session import async_session_factory

BOOKINGS = [
    ("Deep clean, 3-room apartment", Decimal("200.00"), Decimal("20.00"), BookingStatus.COMPLETED),
    ("Kitchen tap replacement", Decimal("340.00"), Decimal("34.00"), BookingStatus.IN_PROGRESS),
    ("Garden hedge trimming", Decimal("120.00"), Decimal("12.00"), BookingStatus.CONFIRMED),
]


async def main() -> None:
    async with async_session_factory() as session:
        # ------------------------------------------------------------------
        # Guard: skip if already seeded (check for admin user)
        # ------------------------------------------------------------------
        result = await session.execute(select(User).where(User.email == "admin@escrowguard.app"))
        if result.scalar_one_or_none() is not None:
            print("Database already seeded -- skipping.")
            return

        admin = User(email="admin@escrowguard.app", full_name="Platform Operator", role=UserRole.ADMIN.value)
        customer = User(
            email="nora.customer@example.com",
            full_name="Nora Keller",
            role=UserRole.CUSTOMER.value,
            stripe_customer_id="cus_mock_nora",
            default_payment_method_id="pm_mock_visa",
        )
        vendor = User(
            email="lukas.vendor@example.com",
            full_name="Lukas Meier",
            role=UserRole.VENDOR.value,
            stripe_customer_id="cus_mock_lukas",
            default_payment_method_id="pm_mock_mastercard",
            stripe_account_id="acct_mock_lukas",
        )
        session.add_all([admin, customer, vendor])
        await session.flush()

        ledger = EscrowLedger()
        bookings = []
        for title, amount, fee, booking_status in BOOKINGS:
            booking = Booking(
                customer_id=customer.id,
                vendor_id=vendor.id,
                title=title,
                status=booking_status.value,
                scheduled_for=utcnow() - timedelta(days=3),
            )
            session.add(booking)
            await session.flush()
            await ledger.create_hold(session, booking, amount, fee, customer_ref=customer.stripe_customer_id)
            bookings.append(booking)

        # One dispute in negotiation; side effects are not dispatched while seeding
        dispute = await DisputeService(ledger).open_dispute(
            session,
            customer,
            bookings[0].id,
            "incomplete_work",
            SideEffects(),
            description="Bathroom and balcony were skipped.",
            evidence=["Photos of the balcony after the visit"],
        )

        await session.commit()

        print(f"Seeded {len(bookings)} bookings; dispute {dispute.id} is in '{dispute.phase}'.")
        for user in (admin, customer, vendor):
            print(f"  {user.role:<9} {user.email:<32} token: {create_access_token({'sub': str(user.id)}, 24 * 60)}")


if __name__ == "__main__":
    asyncio.run(main())
