from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from escrowguard.common.enums import UserRole
from escrowguard.db.base import BaseModel


class User(BaseModel):
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(String(20), nullable=False, default=UserRole.CUSTOMER.value)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)

    # Saved payment method used for off-session dispute fee charges
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    default_payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Connected account receiving vendor payouts
    stripe_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
