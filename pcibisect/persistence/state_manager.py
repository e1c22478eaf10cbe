#!/usr/bin/env python3
"""State Manager - diagnostic journal storage using SQLAlchemy ORM.

Records bisection runs, per-revision steps, and compressed build/console
logs for operator diagnosis. Nothing read back from the journal influences
a verdict.
"""

import gzip
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import scoped_session, sessionmaker

from pcibisect.exceptions import DatabaseError
from pcibisect.persistence.models import Base, Run, Step, StepLog


logger = logging.getLogger(__name__)

# Constants
DEFAULT_DB_PATH = "pcibisect.db"


@dataclass
class RunRecord:
    """Bisection run data.

    Attributes:
        run_id: Unique run identifier
        device_address: PCI address of the passthrough target
        iommu_group: IOMMU group number of the target
        good_revision: Known good revision (None for standalone steps)
        bad_revision: Known bad revision (None for standalone steps)
        start_time: Run start timestamp
        end_time: Run end timestamp (None if running)
        status: Run status (running, completed, failed, aborted)
        first_bad_revision: First bad revision found (None until complete)
    """

    run_id: int
    device_address: str
    iommu_group: Optional[int]
    good_revision: Optional[str]
    bad_revision: Optional[str]
    start_time: str
    end_time: Optional[str] = None
    status: str = "running"
    first_bad_revision: Optional[str] = None


@dataclass
class StepRecord:
    """Step record.

    Attributes:
        step_id: Unique step identifier
        run_id: Parent run ID
        step_num: Step number within the run (1-indexed)
        revision: Revision tested
        subject: Revision subject line
        build_result: Build outcome (succeeded, failed)
        verdict: Verdict (good, bad, inconclusive, aborted)
        exit_code: Exit code returned to the search
        reason: Why the verdict was reached
        start_time: Step start timestamp
        end_time: Step end timestamp
        duration: Duration in seconds
    """

    step_id: int
    run_id: int
    step_num: int
    revision: str
    subject: Optional[str] = None
    build_result: Optional[str] = None
    verdict: Optional[str] = None
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration: Optional[int] = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _run_record(row: Run) -> RunRecord:
    return RunRecord(
        run_id=row.run_id,
        device_address=row.device_address,
        iommu_group=row.iommu_group,
        good_revision=row.good_revision,
        bad_revision=row.bad_revision,
        start_time=row.start_time,
        end_time=row.end_time,
        status=row.status,
        first_bad_revision=row.first_bad_revision,
    )


def _step_record(row: Step) -> StepRecord:
    return StepRecord(
        step_id=row.step_id,
        run_id=row.run_id,
        step_num=row.step_num,
        revision=row.revision,
        subject=row.subject,
        build_result=row.build_result,
        verdict=row.verdict,
        exit_code=row.exit_code,
        reason=row.reason,
        start_time=row.start_time,
        end_time=row.end_time,
        duration=row.duration,
    )


class StateManager:
    """Manage the diagnostic journal using SQLAlchemy ORM.

    Attributes:
        db_path: Path to SQLite database file
        engine: SQLAlchemy engine
        Session: Scoped session factory
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH) -> None:
        """Initialize state manager with SQLAlchemy.

        Args:
            db_path: Path to SQLite database file

        Raises:
            DatabaseError: If the database cannot be initialized
        """
        self.db_path = db_path

        db_parent = Path(db_path).parent
        if db_parent != Path():
            db_parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False},
            echo=False,
        )

        session_factory = sessionmaker(bind=self.engine)
        self.Session = scoped_session(session_factory)

        try:
            Base.metadata.create_all(self.engine)
            logger.debug(f"Database initialized at {self.db_path}")
        except Exception as exc:
            msg = f"Failed to initialize database: {exc}"
            logger.error(msg)
            raise DatabaseError(msg) from exc

    def create_run(
        self,
        device_address: str,
        iommu_group: Optional[int] = None,
        good_revision: Optional[str] = None,
        bad_revision: Optional[str] = None,
    ) -> int:
        """Create new bisection run.

        Args:
            device_address: PCI address of the passthrough target
            iommu_group: IOMMU group number of the target
            good_revision: Known good revision
            bad_revision: Known bad revision

        Returns:
            Run ID

        Raises:
            DatabaseError: If run creation fails
        """
        session = self.Session()
        try:
            new_run = Run(
                device_address=device_address,
                iommu_group=iommu_group,
                good_revision=good_revision,
                bad_revision=bad_revision,
                start_time=_now(),
                status="running",
            )
            session.add(new_run)
            session.commit()
            run_id = new_run.run_id

            logger.info(f"Created bisection run {run_id}")
            return run_id

        except Exception as exc:
            session.rollback()
            msg = f"Failed to create run: {exc}"
            logger.error(msg)
            raise DatabaseError(msg) from exc
        finally:
            session.close()

    def get_run(self, run_id: int) -> Optional[RunRecord]:
        """Get run by ID, or None if not found."""
        session = self.Session()
        try:
            row = session.execute(select(Run).where(Run.run_id == run_id)).scalar_one_or_none()
            return _run_record(row) if row else None
        finally:
            session.close()

    def get_latest_run(self) -> Optional[RunRecord]:
        """Get most recent run, or None if no runs exist."""
        session = self.Session()
        try:
            stmt = select(Run).order_by(Run.run_id.desc()).limit(1)
            row = session.execute(stmt).scalar_one_or_none()
            return _run_record(row) if row else None
        finally:
            session.close()

    def get_or_create_run(self, device_address: str, iommu_group: Optional[int] = None) -> int:
        """Get the running run for a device or create one (atomic operation).

        Args:
            device_address: PCI address of the passthrough target
            iommu_group: IOMMU group number of the target

        Returns:
            Run ID (existing or newly created)

        Raises:
            DatabaseError: If run operation fails
        """
        session = self.Session()
        try:
            stmt = (
                select(Run)
                .where(Run.status == "running", Run.device_address == device_address)
                .order_by(Run.run_id.desc())
                .limit(1)
            )
            existing = session.execute(stmt).scalar_one_or_none()
            if existing:
                logger.debug(f"Found existing running run {existing.run_id}")
                return existing.run_id

            new_run = Run(
                device_address=device_address,
                iommu_group=iommu_group,
                start_time=_now(),
                status="running",
            )
            session.add(new_run)
            session.commit()

            logger.info(f"Created new bisection run {new_run.run_id}")
            return new_run.run_id

        except Exception as exc:
            session.rollback()
            msg = f"Failed to get or create run: {exc}"
            logger.error(msg)
            raise DatabaseError(msg) from exc
        finally:
            session.close()

    def update_run(self, run_id: int, **kwargs: Any) -> None:
        """Update run fields.

        Args:
            run_id: Run ID to update
            **kwargs: Fields to update (end_time, status, first_bad_revision)

        Raises:
            DatabaseError: If update fails
        """
        session = self.Session()
        try:
            row = session.execute(select(Run).where(Run.run_id == run_id)).scalar_one_or_none()
            if not row:
                logger.warning(f"Run {run_id} not found for update")
                return

            valid_fields = {"end_time", "status", "first_bad_revision"}
            for field, value in kwargs.items():
                if field in valid_fields:
                    setattr(row, field, value)

            session.commit()

        except Exception as exc:
            session.rollback()
            msg = f"Failed to update run: {exc}"
            logger.error(msg)
            raise DatabaseError(msg) from exc
        finally:
            session.close()

    def create_step(self, run_id: int, revision: str, subject: Optional[str] = None) -> int:
        """Create new step, numbered after the run's existing steps.

        Args:
            run_id: Parent run ID
            revision: Revision being tested
            subject: Revision subject line

        Returns:
            Step ID

        Raises:
            DatabaseError: If step creation fails
        """
        session = self.Session()
        try:
            count = session.execute(
                select(func.count(Step.step_id)).where(Step.run_id == run_id)
            ).scalar_one()

            new_step = Step(
                run_id=run_id,
                step_num=count + 1,
                revision=revision,
                subject=subject,
                start_time=_now(),
            )
            session.add(new_step)
            session.commit()

            logger.debug(f"Created step {new_step.step_id} (#{new_step.step_num})")
            return new_step.step_id

        except Exception as exc:
            session.rollback()
            msg = f"Failed to create step: {exc}"
            logger.error(msg)
            raise DatabaseError(msg) from exc
        finally:
            session.close()

    def update_step(self, step_id: int, **kwargs: Any) -> None:
        """Update step fields.

        Args:
            step_id: Step ID to update
            **kwargs: Fields to update

        Raises:
            DatabaseError: If update fails
        """
        session = self.Session()
        try:
            row = session.execute(select(Step).where(Step.step_id == step_id)).scalar_one_or_none()
            if not row:
                logger.warning(f"Step {step_id} not found for update")
                return

            valid_fields = {
                "build_result",
                "verdict",
                "exit_code",
                "reason",
                "end_time",
                "duration",
            }
            for field, value in kwargs.items():
                if field in valid_fields:
                    setattr(row, field, value)

            session.commit()

        except Exception as exc:
            session.rollback()
            msg = f"Failed to update step: {exc}"
            logger.error(msg)
            raise DatabaseError(msg) from exc
        finally:
            session.close()

    def get_steps(self, run_id: int) -> List[StepRecord]:
        """Get all steps of a run, in order."""
        session = self.Session()
        try:
            stmt = select(Step).where(Step.run_id == run_id).order_by(Step.step_num)
            return [_step_record(row) for row in session.execute(stmt).scalars().all()]
        finally:
            session.close()

    def store_step_log(
        self, step_id: int, log_type: str, content: bytes, exit_code: Optional[int] = None
    ) -> int:
        """Store a step log with compression.

        Args:
            step_id: Step ID
            log_type: Type of log (build, console)
            content: Raw log bytes
            exit_code: Exit status of the process that produced the log

        Returns:
            Log ID

        Raises:
            DatabaseError: If log storage fails
        """
        session = self.Session()
        try:
            compressed_content = gzip.compress(content)
            size_bytes = len(compressed_content)

            new_log = StepLog(
                step_id=step_id,
                log_type=log_type,
                timestamp=_now(),
                log_content=compressed_content,
                compressed=True,
                size_bytes=size_bytes,
                exit_code=exit_code,
            )
            session.add(new_log)
            session.commit()

            logger.debug(f"Stored {log_type} log {new_log.log_id} ({size_bytes} bytes compressed)")
            return new_log.log_id

        except Exception as exc:
            session.rollback()
            msg = f"Failed to store step log: {exc}"
            logger.error(msg)
            raise DatabaseError(msg) from exc
        finally:
            session.close()

    def get_step_log(self, log_id: int) -> Optional[Dict[str, Any]]:
        """Get and decompress a step log by ID.

        Returns:
            Dictionary with log data including decoded content, or None if not found
        """
        session = self.Session()
        try:
            stmt = select(StepLog, Step).join(Step).where(StepLog.log_id == log_id)
            result = session.execute(stmt).first()
            if not result:
                return None

            log, step = result
            raw = gzip.decompress(log.log_content) if log.compressed else log.log_content
            return {
                "log_id": log.log_id,
                "step_id": log.step_id,
                "step_num": step.step_num,
                "revision": step.revision,
                "log_type": log.log_type,
                "timestamp": log.timestamp,
                "exit_code": log.exit_code,
                "size_bytes": log.size_bytes,
                "content": raw.decode("utf-8", errors="replace"),
            }
        finally:
            session.close()

    def list_step_logs(self, run_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """List step logs without their content.

        Args:
            run_id: Restrict to one run (None lists every run)
        """
        session = self.Session()
        try:
            stmt = select(StepLog, Step).join(Step).order_by(StepLog.log_id)
            if run_id is not None:
                stmt = stmt.where(Step.run_id == run_id)

            return [
                {
                    "log_id": log.log_id,
                    "run_id": step.run_id,
                    "step_num": step.step_num,
                    "revision": step.revision,
                    "log_type": log.log_type,
                    "timestamp": log.timestamp,
                    "exit_code": log.exit_code,
                    "size_bytes": log.size_bytes,
                }
                for log, step in session.execute(stmt).all()
            ]
        finally:
            session.close()

    def generate_summary(self, run_id: int) -> Dict[str, Any]:
        """Generate summary of a bisection run.

        Returns:
            Summary dictionary (empty if the run does not exist)
        """
        run = self.get_run(run_id)
        if not run:
            return {}

        steps = self.get_steps(run_id)

        results = {"good": 0, "bad": 0, "inconclusive": 0, "aborted": 0}
        for step in steps:
            verdict = step.verdict or "aborted"
            results[verdict] = results.get(verdict, 0) + 1

        total_duration = sum(step.duration for step in steps if step.duration)

        return {
            **asdict(run),
            "total_steps": len(steps),
            "results": results,
            "total_duration_seconds": total_duration,
            "steps": [asdict(step) for step in steps],
        }

    def export_report(self, run_id: int, format: str = "json") -> str:
        """Export bisection report.

        Args:
            run_id: Run ID
            format: Output format (json or text)

        Returns:
            Report string
        """
        summary = self.generate_summary(run_id)

        if format == "json":
            return json.dumps(summary, indent=2)

        if format == "text":
            if not summary:
                return f"Run {run_id} not found"

            report = []
            report.append("=" * 70)
            report.append("PASSTHROUGH BISECTION REPORT")
            report.append("=" * 70)
            report.append(f"\nRun ID: {summary['run_id']}")
            report.append(f"Device: {summary['device_address']} (IOMMU group {summary['iommu_group']})")
            report.append(f"Good revision: {summary['good_revision'] or '-'}")
            report.append(f"Bad revision:  {summary['bad_revision'] or '-'}")
            report.append(f"Status: {summary['status']}")

            report.append(f"\nTotal steps: {summary['total_steps']}")
            report.append(f"Total time: {summary['total_duration_seconds']}s")

            report.append("\nResults breakdown:")
            for result, count in summary["results"].items():
                report.append(f"  {result}: {count}")

            report.append("\n" + "-" * 70)
            report.append("Step Details:")
            report.append("-" * 70)

            for step in summary["steps"]:
                report.append(
                    f"\n{step['step_num']:3d}. {step['revision'][:7]} | "
                    f"{step['verdict'] or 'aborted':12s} | "
                    f"{step['duration'] or 0:4d}s"
                )
                if step["subject"]:
                    report.append(f"     {step['subject']}")
                if step["reason"]:
                    report.append(f"     Reason: {step['reason']}")

            if summary["first_bad_revision"]:
                report.append("\n" + "=" * 70)
                report.append(f"FIRST BAD REVISION: {summary['first_bad_revision']}")

            report.append("\n" + "=" * 70)
            return "\n".join(report)

        return ""

    def close(self) -> None:
        """Close database connection and cleanup."""
        try:
            self.Session.remove()
            self.engine.dispose()
            logger.debug("Database connections closed")
        except Exception as exc:
            logger.error(f"Error closing database: {exc}")
