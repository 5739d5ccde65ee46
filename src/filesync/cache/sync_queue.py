"""Persisted queue of pending sync actions."""

from datetime import timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from ..database.database import DatabaseManager
from ..database.models import ActionStatus, PendingActionCreate, PendingSyncAction, utcnow
from ..database.operations import get_pending_action_repository
from ..utils.logging import get_logger


logger = get_logger("cache.sync_queue")


class SyncQueue:
    """At most one outstanding action per pair of URLs, in either direction.

    Deduplication rests on the table's unique constraint; execution on a
    conditional claim so two workers never run the same action.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def enqueue(self, data: PendingActionCreate) -> Optional[PendingSyncAction]:
        """Queue an action.

        Returns:
            The new action, or None when the pair or its reverse is already queued
        """
        try:
            with self.db_manager.session_scope() as session:
                row = get_pending_action_repository(session).create_if_absent(data)
                if row is None:
                    return None
                action = PendingSyncAction.model_validate(row)
        except IntegrityError:
            return None

        logger.debug("Action enqueued", action_id=action.id, action=action.action.value, src_url=action.src_url)
        return action

    def get(self, action_id: str) -> Optional[PendingSyncAction]:
        with self.db_manager.session_scope() as session:
            row = get_pending_action_repository(session).get_by_id(action_id)
            return PendingSyncAction.model_validate(row) if row else None

    def list_actions(
        self,
        status: Optional[ActionStatus] = None,
        mapping_id: Optional[int] = None
    ) -> List[PendingSyncAction]:
        with self.db_manager.session_scope() as session:
            rows = get_pending_action_repository(session).list(status, mapping_id)
            return [PendingSyncAction.model_validate(r) for r in rows]

    def eligible_ids(self, mapping_id: Optional[int] = None) -> List[str]:
        """Ids of pending actions whose backoff has elapsed."""
        with self.db_manager.session_scope() as session:
            return get_pending_action_repository(session).eligible_ids(utcnow(), mapping_id)

    def claim(self, action_id: str) -> bool:
        with self.db_manager.session_scope() as session:
            return get_pending_action_repository(session).claim(action_id, utcnow())

    def complete(self, action_id: str) -> bool:
        """Remove an executed action."""
        with self.db_manager.session_scope() as session:
            return get_pending_action_repository(session).delete(action_id)

    def discard(self, action_id: str) -> bool:
        """Remove an action without executing it."""
        with self.db_manager.session_scope() as session:
            removed = get_pending_action_repository(session).delete(action_id)
        if removed:
            logger.info("Action discarded", action_id=action_id)
        return removed

    def discard_by_url(self, url: str) -> int:
        """Remove every action whose source or destination is ``url``."""
        with self.db_manager.session_scope() as session:
            count = get_pending_action_repository(session).delete_by_url(url)
        logger.info("Actions discarded by url", url=url, count=count)
        return count

    def release(self, action_id: str) -> bool:
        """Hand a claimed action back untouched."""
        with self.db_manager.session_scope() as session:
            return get_pending_action_repository(session).update_fields(
                action_id, status=ActionStatus.PENDING.value
            )

    def record_transient_failure(
        self,
        action_id: str,
        error_kind: str,
        message: str,
        backoff_seconds: float,
        max_attempts: int
    ) -> Optional[PendingSyncAction]:
        """Count a failed attempt and schedule the retry, or give up.

        The retry is due ``backoff * 2**(attempts-1)`` seconds from now; once
        ``max_attempts`` is reached the action is parked as failed.
        """
        with self.db_manager.session_scope() as session:
            repo = get_pending_action_repository(session)
            row = repo.get_by_id(action_id)
            if row is None:
                return None

            attempts = row.attempts + 1
            fields = dict(attempts=attempts, last_error=message, error_kind=error_kind)
            if attempts >= max_attempts:
                fields.update(status=ActionStatus.FAILED.value, needs_attention=True)
            else:
                fields.update(
                    status=ActionStatus.PENDING.value,
                    next_attempt_at=utcnow() + timedelta(seconds=backoff_seconds * 2 ** (attempts - 1))
                )
            repo.update_fields(action_id, **fields)
            session.refresh(row)
            return PendingSyncAction.model_validate(row)

    def record_permanent_failure(self, action_id: str, error_kind: str, message: str) -> Optional[PendingSyncAction]:
        with self.db_manager.session_scope() as session:
            repo = get_pending_action_repository(session)
            row = repo.get_by_id(action_id)
            if row is None:
                return None
            repo.update_fields(
                action_id,
                status=ActionStatus.FAILED.value,
                needs_attention=True,
                attempts=row.attempts + 1,
                last_error=message,
                error_kind=error_kind
            )
            session.refresh(row)
            return PendingSyncAction.model_validate(row)

    def requeue(self, action_id: str) -> bool:
        """Operator reset of a failed or stuck action."""
        with self.db_manager.session_scope() as session:
            updated = get_pending_action_repository(session).update_fields(
                action_id,
                status=ActionStatus.PENDING.value,
                attempts=0,
                next_attempt_at=utcnow(),
                needs_attention=False,
                last_error=None,
                error_kind=None
            )
        if updated:
            logger.info("Action requeued", action_id=action_id)
        return updated
