import uuid
from collections.abc import AsyncGenerator

from fastapi import Depends, Header
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrowguard.common.enums import UserRole
from escrowguard.common.exceptions import NotFoundError, PermissionDeniedError
from escrowguard.common.security import decode_token
from escrowguard.core.disputes.arbitration import BindingDecisionEngine
from escrowguard.core.disputes.mediation import MediationProposalEngine
from escrowguard.core.disputes.negotiation import NegotiationExchange
from escrowguard.core.disputes.service import DisputeService
from escrowguard.core.escrow.fees import FeeAssessor
from escrowguard.core.escrow.ledger import EscrowLedger
from escrowguard.core.escrow.resolution import ResolutionExecutor
from escrowguard.db.models.user import User
from escrowguard.db.session import async_session_factory
from escrowguard.integrations.ai_client import AIClient, MediationProvider
from escrowguard.integrations.stripe_client import PaymentProcessor, StripeClient


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_current_user(
    authorization: str = Header(..., description="Bearer <token>"),
    db: AsyncSession = Depends(get_db),
) -> User:
    if not authorization.startswith("Bearer "):
        raise PermissionDeniedError("Invalid authorization header format")

    token = authorization[len("Bearer "):]
    try:
        payload = decode_token(token)
    except ValueError:
        raise PermissionDeniedError("Invalid or expired token")

    if payload.get("type") != "access":
        raise PermissionDeniedError("Invalid token type")

    user_id = payload.get("sub")
    if not user_id:
        raise PermissionDeniedError("Invalid token payload")

    try:
        key = uuid.UUID(user_id)
    except ValueError:
        raise PermissionDeniedError("Invalid token payload")

    result = await db.execute(select(User).where(User.id == key, User.is_deleted.is_(False)))
    user = result.scalar_one_or_none()

    if not user:
        raise NotFoundError("User")
    if not user.is_active:
        raise PermissionDeniedError("User account is inactive")

    return user


def require_role(*roles: UserRole):
    async def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in [r.value for r in roles]:
            raise PermissionDeniedError(
                f"This action requires one of the following roles: {', '.join(r.value for r in roles)}"
            )
        return current_user

    return role_checker


# ---------- Collaborators (overridable in tests) ----------


def get_payment_processor() -> PaymentProcessor:
    return StripeClient()


def get_mediation_provider() -> MediationProvider:
    return AIClient()


def get_executor(processor: PaymentProcessor = Depends(get_payment_processor)) -> ResolutionExecutor:
    return ResolutionExecutor(processor)


def get_dispute_service(processor: PaymentProcessor = Depends(get_payment_processor)) -> DisputeService:
    return DisputeService(EscrowLedger(processor), FeeAssessor(processor))


def get_negotiation(executor: ResolutionExecutor = Depends(get_executor)) -> NegotiationExchange:
    return NegotiationExchange(executor)


def get_mediation(
    provider: MediationProvider = Depends(get_mediation_provider),
    executor: ResolutionExecutor = Depends(get_executor),
) -> MediationProposalEngine:
    return MediationProposalEngine(provider, executor)


def get_arbitration(
    provider: MediationProvider = Depends(get_mediation_provider),
    executor: ResolutionExecutor = Depends(get_executor),
) -> BindingDecisionEngine:
    return BindingDecisionEngine(provider, executor)


def get_fee_assessor(processor: PaymentProcessor = Depends(get_payment_processor)) -> FeeAssessor:
    return FeeAssessor(processor)
