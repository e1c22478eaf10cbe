#!/usr/bin/env python3
"""SQLAlchemy ORM models for the diagnostic journal.

Defines the database schema using SQLAlchemy declarative models.
"""

from typing import List, Optional

from sqlalchemy import BLOB, Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Run(Base):
    """Bisection run model.

    Tracks one bisection search over a device, from start to finish.
    """

    __tablename__ = "runs"

    run_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_address: Mapped[str] = mapped_column(String, nullable=False)
    iommu_group: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    good_revision: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    bad_revision: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    start_time: Mapped[str] = mapped_column(String, nullable=False)
    end_time: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="running")
    first_bad_revision: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Relationships
    steps: Mapped[List["Step"]] = relationship(
        "Step", back_populates="run", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return (
            f"<Run(id={self.run_id}, device={self.device_address}, status={self.status})>"
        )


class Step(Base):
    """Bisection step model.

    Represents a single build/boot/classify cycle for one revision.
    """

    __tablename__ = "steps"

    step_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(Integer, ForeignKey("runs.run_id"), nullable=False)
    step_num: Mapped[int] = mapped_column(Integer, nullable=False)
    revision: Mapped[str] = mapped_column(String, nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    build_result: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    verdict: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    exit_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    start_time: Mapped[str] = mapped_column(String, nullable=False)
    end_time: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Relationships
    run: Mapped["Run"] = relationship("Run", back_populates="steps")
    logs: Mapped[List["StepLog"]] = relationship(
        "StepLog", back_populates="step", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return (
            f"<Step(id={self.step_id}, num={self.step_num}, "
            f"revision={self.revision[:7]}, verdict={self.verdict})>"
        )


class StepLog(Base):
    """Step log model with compression.

    Stores build output and guest console captures as compressed BLOBs.
    """

    __tablename__ = "step_logs"

    log_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    step_id: Mapped[int] = mapped_column(Integer, ForeignKey("steps.step_id"), nullable=False)
    log_type: Mapped[str] = mapped_column(String, nullable=False)
    timestamp: Mapped[str] = mapped_column(String, nullable=False)
    log_content: Mapped[bytes] = mapped_column(BLOB, nullable=False)
    compressed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    size_bytes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    exit_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Relationships
    step: Mapped["Step"] = relationship("Step", back_populates="logs")

    def __repr__(self) -> str:
        return (
            f"<StepLog(id={self.log_id}, type={self.log_type}, "
            f"size={self.size_bytes}, step={self.step_id})>"
        )
