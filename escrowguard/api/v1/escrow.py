import uuid
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrowguard.api.deps import get_current_user, get_db
from escrowguard.common.enums import UserRole
from escrowguard.common.exceptions import NotFoundError, PermissionDeniedError
from escrowguard.db.models.escrow import EscrowTransaction
from escrowguard.db.models.user import User

router = APIRouter(prefix="/bookings", tags=["Escrow"])


class EscrowResponse(BaseModel):
    id: uuid.UUID
    booking_id: uuid.UUID
    status: str
    currency: str
    original_amount: Decimal
    amount: Decimal
    platform_fee: Decimal
    vendor_amount: Decimal
    refunded_amount: Decimal


@router.get("/{booking_id}/escrow", response_model=EscrowResponse)
async def get_booking_escrow(
    booking_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(EscrowTransaction).where(
            EscrowTransaction.booking_id == booking_id,
            EscrowTransaction.is_deleted.is_(False),
        )
    )
    escrow = result.scalar_one_or_none()
    if not escrow:
        raise NotFoundError("Escrow for booking", str(booking_id))
    if current_user.role != UserRole.ADMIN.value and current_user.id not in (escrow.customer_id, escrow.vendor_id):
        raise PermissionDeniedError("You do not have access to this booking")

    return EscrowResponse(
        id=escrow.id,
        booking_id=escrow.booking_id,
        status=escrow.status,
        currency=escrow.currency,
        original_amount=escrow.original_amount,
        amount=escrow.amount,
        platform_fee=escrow.platform_fee,
        vendor_amount=escrow.vendor_amount,
        refunded_amount=escrow.refunded_amount,
    )
