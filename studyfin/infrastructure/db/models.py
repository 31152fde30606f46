"""
SQLAlchemy ORM models (students, payments, expenses)

The schema itself (triggers, seat/sex matching, migrations) is owned by the
membership side of the application; these mappings only cover the columns
the finance reports read.
"""
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Integer, Text, TIMESTAMP, Numeric, ForeignKey, Index, func
from sqlalchemy.orm import Mapped, mapped_column

from studyfin.infrastructure.db.session import Base


class Student(Base):
    """Student holding (or having held) a seat"""
    __tablename__ = "students"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    seat_number: Mapped[str | None] = mapped_column(String(20), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False
    )


class Payment(Base):
    """
    Student payment

    payment_type: monthly_fee | refund (refunds are stored negative)
    payment_mode: cash | online
    """
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(primary_key=True)
    student_id: Mapped[int | None] = mapped_column(ForeignKey("students.id"), nullable=True, index=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2), nullable=False)
    payment_date: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    payment_mode: Mapped[str] = mapped_column(String(20), nullable=False, server_default="cash")
    payment_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_payments_type_date", "payment_type", "payment_date"),
    )


class ExpenseCategory(Base):
    """Expense category (rent, electricity, ...)"""
    __tablename__ = "expense_categories"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)


class Expense(Base):
    """Business expense, optionally categorised"""
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(primary_key=True)
    expense_category_id: Mapped[int | None] = mapped_column(
        ForeignKey("expense_categories.id"), nullable=True, index=True
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2), nullable=False)
    expense_date: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
