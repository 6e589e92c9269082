import datetime as dt
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class SavingsTransactionType(str, Enum):
    deposit = "deposit"
    withdrawal = "withdrawal"

    @property
    def opposite(self) -> "SavingsTransactionType":
        if self is SavingsTransactionType.deposit:
            return SavingsTransactionType.withdrawal
        return SavingsTransactionType.deposit


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    color: Mapped[str] = mapped_column(String(7), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )


class SavingsFund(Base, TimestampMixin):
    __tablename__ = "savings_funds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    color: Mapped[str] = mapped_column(String(7), nullable=False)
    balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    entries: Mapped[list["SavingsTransaction"]] = relationship(
        "SavingsTransaction",
        back_populates="savings_fund",
        cascade="all, delete-orphan",
    )
    linked_transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="savings_fund"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_savings_fund_user_name"),
        CheckConstraint("balance_cents >= 0", name="ck_savings_fund_balance_nonneg"),
        Index("ix_savings_funds_user_created", "user_id", "created_at"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # Label only: matched against Category.name, never rewritten on rename.
    category: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    savings_fund_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("savings_funds.id", ondelete="SET NULL")
    )

    savings_fund: Mapped[Optional["SavingsFund"]] = relationship(
        "SavingsFund", back_populates="linked_transactions"
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_category", "user_id", "category"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )


class SavingsTransaction(Base, TimestampMixin):
    __tablename__ = "savings_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    savings_fund_id: Mapped[int] = mapped_column(
        ForeignKey("savings_funds.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[SavingsTransactionType] = mapped_column(
        SAEnum(SavingsTransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    reversal_of_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("savings_transactions.id", ondelete="SET NULL")
    )

    savings_fund: Mapped["SavingsFund"] = relationship(
        "SavingsFund", back_populates="entries"
    )

    __table_args__ = (
        Index("ix_savings_txn_user_date", "user_id", "date"),
        Index("ix_savings_txn_fund", "savings_fund_id"),
        UniqueConstraint("reversal_of_id", name="uq_savings_txn_reversal_of"),
        CheckConstraint(
            "amount_cents > 0", name="ck_savings_transactions_amount_positive"
        ),
    )

    @property
    def signed_amount_cents(self) -> int:
        if self.type == SavingsTransactionType.withdrawal:
            return -self.amount_cents
        return self.amount_cents
