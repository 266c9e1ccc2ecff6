"""Durable deployment history backed by SQLAlchemy."""
from typing import Iterable, List, Optional

from loguru import logger

from core.models import DatabaseManager, DeploymentRecord
from core.schemas import TERMINAL_STATUSES, Deployment, DeploymentLog, LogLevel, LogStep


def _to_record(deployment: Deployment, commit_hash: Optional[str] = None) -> DeploymentRecord:
    return DeploymentRecord(
        id=deployment.id,
        app_id=deployment.app_id,
        status=deployment.status.value,
        error=deployment.error,
        commit_hash=commit_hash,
        logs=[entry.model_dump(mode="json") for entry in deployment.logs],
        started_at=deployment.started_at,
        finished_at=deployment.finished_at,
    )


def _to_deployment(record: DeploymentRecord) -> Deployment:
    return Deployment(
        id=record.id,
        app_id=record.app_id,
        status=record.status,
        started_at=record.started_at,
        finished_at=record.finished_at,
        logs=[DeploymentLog.model_validate(entry) for entry in record.logs or []],
        error=record.error,
    )


class DeploymentHistory:
    def __init__(self, db: DatabaseManager):
        self.db = db

    def save(self, deployment: Deployment, commit_hash: Optional[str] = None) -> None:
        """Upsert ``deployment``. Failures are logged and swallowed."""
        try:
            with self.db.session_scope() as session:
                existing = session.get(DeploymentRecord, deployment.id)
                if commit_hash is None and existing is not None:
                    commit_hash = existing.commit_hash
                session.merge(_to_record(deployment, commit_hash))
        except Exception as e:
            logger.error(f"Failed to record deployment {deployment.id}: {e}")

    def get(self, deployment_id: str) -> Optional[Deployment]:
        with self.db.session_scope() as session:
            record = session.get(DeploymentRecord, deployment_id)
            return _to_deployment(record) if record else None

    def list_for_app(self, app_id: str, limit: Optional[int] = None) -> List[Deployment]:
        with self.db.session_scope() as session:
            query = (
                session.query(DeploymentRecord)
                .filter(DeploymentRecord.app_id == app_id)
                .order_by(DeploymentRecord.started_at.desc())
            )
            if limit:
                query = query.limit(limit)
            return [_to_deployment(r) for r in query.all()]

    def commit_hash(self, deployment_id: str) -> Optional[str]:
        with self.db.session_scope() as session:
            record = session.get(DeploymentRecord, deployment_id)
            return record.commit_hash if record else None

    def fail_unfinished(self, message: str, exclude: Iterable[str] = ()) -> List[str]:
        """Mark every non-terminal deployment not in ``exclude`` as failed.

        Returns the ids that were changed.
        """
        exclude = set(exclude)
        terminal = [status.value for status in TERMINAL_STATUSES]
        failed = []
        with self.db.session_scope() as session:
            records = (
                session.query(DeploymentRecord)
                .filter(DeploymentRecord.status.notin_(terminal))
                .all()
            )
            for record in records:
                if record.id in exclude:
                    continue
                deployment = _to_deployment(record)
                deployment.add_log(LogLevel.ERROR, message, LogStep.ERROR)
                deployment.fail(message)
                session.merge(_to_record(deployment, record.commit_hash))
                failed.append(deployment.id)
        return failed
