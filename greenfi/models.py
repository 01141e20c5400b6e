from datetime import datetime, timezone
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Project(Base):
    __tablename__ = "projects"

    # Assigned by the contract, never by the mirror
    id = Column(BigInteger, primary_key=True, autoincrement=False)
    owner = Column(String(42), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, default="")

    # uint256 values kept as base-10 strings
    funds = Column(String(100), nullable=False, default="0")
    funding_goal = Column(String(100), nullable=False, default="0")
    milestone_reached = Column(Boolean, nullable=False, default=False)

    tx_hash = Column(String(66), nullable=True)
    block_number = Column(BigInteger, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    stakes = relationship(
        "Stake",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    withdrawals = relationship(
        "Withdrawal",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Stake(Base):
    __tablename__ = "stakes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(
        BigInteger, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    staker = Column(String(42), nullable=False, index=True)
    amount = Column(String(100), nullable=False)
    tx_hash = Column(String(66), nullable=True)
    block_number = Column(BigInteger, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    project = relationship("Project", back_populates="stakes")


class Withdrawal(Base):
    __tablename__ = "withdrawals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(
        BigInteger, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    withdrawer = Column(String(42), nullable=False, index=True)
    amount = Column(String(100), nullable=False)
    milestone_marked = Column(Boolean, nullable=False, default=False)
    tx_hash = Column(String(66), nullable=True)
    block_number = Column(BigInteger, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    project = relationship("Project", back_populates="withdrawals")
