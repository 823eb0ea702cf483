"""
Service layer for cascading soft delete and restore.

Provides the operations used by admin screens: impact estimation,
provenance-aware delete and restore, deleted-item listing, statistics
and audit history.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..audit_trail import AuditAction, AuditEvent, AuditEventQuery, AuditRecorder
from ..config import CascadeConfig, get_config
from ..timeutils import to_naive_utc, utcnow
from .entities import Entity, claim_versions, get_entity
from .exceptions import (
    ConflictError,
    InvalidOperationError,
    StorageError,
    ValidationError,
)
from .models import (
    CascadeAction,
    CascadePlan,
    CascadeResult,
    DeleteResult,
    DeletionOrigin,
    DeletionRequest,
    EntityKind,
    EntitySummary,
    ImpactCounts,
    RestoreRequest,
    RestoreResult,
    SoftDeleteStats,
)
from .planner import CascadePlanner, check_restorable
from .stats import StatsAggregator
from .store import EntityStore, create_session_factory

logger = logging.getLogger(__name__)

T = TypeVar("T")
RequestT = TypeVar("RequestT", bound=DeletionRequest)


def _validation_error(e: PydanticValidationError) -> ValidationError:
    error = e.errors()[0]
    field = str(error["loc"][0]) if error.get("loc") else None
    return ValidationError(f"Invalid {field}: {error['msg']}", field=field)


class _Outcome:
    """What a committed cascade changed, captured inside the transaction."""

    def __init__(self, root: Entity, timestamp: datetime):
        self.root_id = root.id
        self.root_kind = EntityKind(root.kind)
        self.timestamp = timestamp
        self.counts = ImpactCounts()
        self.root_transitioned = False
        self.details: Dict[str, Any] = {}

    @property
    def total(self) -> int:
        return self.counts.total + (1 if self.root_transitioned else 0)


class CascadeService:
    """
    Cascading soft delete and restore over the clinic hierarchy.

    Every write runs in its own session and a single transaction, so a
    cascade either applies to all newly affected entities or to none.
    Concurrent cascades over overlapping subtrees are detected through
    per-entity version counters and surface as ConflictError.

    Example:
        >>> service = await create_cascade_service()
        >>> plan = await service.plan(org_id)
        >>> result = await service.delete(org_id, "admin-1", "Contract ended")
        >>> result.newly_deleted_count == plan.total_affected_entities
        True
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        audit_recorder: Optional[AuditRecorder] = None,
        stats: Optional[StatsAggregator] = None,
        config: Optional[CascadeConfig] = None,
    ):
        """
        Initialize the cascade service.

        Args:
            session_factory: Factory for entity store sessions
            audit_recorder: Recorder for cascade summaries. When None and
                auditing is enabled, one is built from configuration.
            stats: Statistics aggregator. Built from configuration when None.
            config: Configuration, defaults to the global configuration
        """
        self.config = config or get_config()
        self.session_factory = session_factory
        self.store = EntityStore(session_factory)

        if audit_recorder is None and self.config.audit_enabled:
            audit_recorder = AuditRecorder(config=self.config)
        self.audit_recorder = audit_recorder

        self.stats = stats or StatsAggregator(
            session_factory, **self.config.get_stats_config()
        )

    def _validate_request(
        self, request_class: Type[RequestT], root_id: str, actor_id: str, reason: str
    ) -> RequestT:
        """Validate input before any store access."""
        try:
            request = request_class(root_id=root_id, actor_id=actor_id, reason=reason)
        except PydanticValidationError as e:
            raise _validation_error(e) from e

        if len(request.reason) > self.config.reason_max_length:
            raise ValidationError(
                f"Reason exceeds {self.config.reason_max_length} characters",
                field="reason",
            )

        return request

    def _execute(self, root_id: str, operation: Callable[[Session], T]) -> T:
        """
        Run an operation in one transaction, mapping storage failures.

        Raises:
            ConflictError: If a concurrent cascade changed a touched entity
            StorageError: If the database failed; nothing was committed
        """
        session = self.session_factory()
        try:
            with session.begin():
                return operation(session)
        except StaleDataError as e:
            logger.warning("Concurrent modification under %s: %s", root_id, e)
            raise ConflictError(root_id) from e
        except SQLAlchemyError as e:
            logger.error("Storage failure during cascade on %s: %s", root_id, e)
            raise StorageError(str(e), entity_id=root_id) from e
        finally:
            session.close()

    async def plan(
        self,
        root_id: str,
        action: Union[str, CascadeAction] = CascadeAction.DELETE,
    ) -> CascadePlan:
        """
        Estimate the impact of a delete or restore without writing.

        Args:
            root_id: Entity targeted by the operation
            action: DELETE or RESTORE

        Returns:
            The cascade plan

        Raises:
            NotFoundError: If the root does not exist
        """
        with self.session_factory() as session:
            return CascadePlanner(session).plan(root_id, CascadeAction(action))

    async def delete(self, root_id: str, actor_id: str, reason: str) -> DeleteResult:
        """
        Soft delete an entity and every non-deleted descendant.

        Descendants that are already deleted keep their own provenance and
        reason. Deleting an already-deleted entity succeeds with nothing
        newly deleted.

        Args:
            root_id: Entity to delete directly
            actor_id: Acting user
            reason: Reason shared by the whole cascade

        Returns:
            Counts of newly deleted entities

        Raises:
            ValidationError: If the input is malformed
            NotFoundError: If the root does not exist
            ConflictError: If an overlapping cascade committed first
            StorageError: If the database failed
        """
        request = self._validate_request(DeletionRequest, root_id, actor_id, reason)

        def operation(session: Session) -> _Outcome:
            planned = CascadePlanner(session).plan_with_targets(
                request.root_id, CascadeAction.DELETE
            )
            outcome = _Outcome(planned.root, utcnow())

            if planned.root.is_deleted:
                return outcome

            planned.root.mark_deleted(
                request.actor_id, request.reason, outcome.timestamp
            )
            outcome.root_transitioned = True

            for entity in planned.targets:
                entity.mark_deleted(
                    request.actor_id,
                    request.reason,
                    outcome.timestamp,
                    cascade_root_id=planned.root.id,
                )
                outcome.counts.add(entity.kind, entity.role)

            # Descendants deleted on their own stay as they are, but a concurrent
            # restore of one of them must not commit under this cascade
            session.flush()
            claim_versions(session, planned.untouched)

            outcome.details = {
                "untouched_counts": planned.plan.untouched_counts.model_dump()
            }
            return outcome

        outcome = self._execute(request.root_id, operation)

        result = DeleteResult(
            root_id=outcome.root_id,
            root_kind=outcome.root_kind,
            per_kind_counts=outcome.counts,
            newly_deleted_count=outcome.total,
        )

        if not outcome.root_transitioned:
            logger.info("Delete of %s is a no-op: already deleted", outcome.root_id)
            return result

        logger.info(
            "Deleted %s %s and %d descendants",
            outcome.root_kind.value,
            outcome.root_id,
            outcome.counts.total,
        )
        await self._after_commit(AuditAction.DELETE, request, outcome, result)
        return result

    async def restore(self, root_id: str, actor_id: str, reason: str) -> RestoreResult:
        """
        Restore a directly deleted entity and exactly the descendants its
        own cascade deleted.

        Descendants deleted directly, or swept in by another cascade, stay
        deleted.

        Args:
            root_id: Directly deleted entity to restore
            actor_id: Acting user
            reason: Reason for the restore

        Returns:
            Counts of newly restored entities

        Raises:
            ValidationError: If the input is malformed
            NotFoundError: If the root does not exist
            InvalidOperationError: If the root is not deleted, was deleted
                by an ancestor's cascade, or its parent is still deleted
            ConflictError: If an overlapping cascade committed first
            StorageError: If the database failed
        """
        request = self._validate_request(RestoreRequest, root_id, actor_id, reason)

        def operation(session: Session) -> _Outcome:
            root = get_entity(session, request.root_id)
            try:
                parent = check_restorable(session, root)
            except InvalidOperationError as e:
                logger.warning("Rejected restore of %s: %s", root.id, e)
                raise

            outcome = _Outcome(root, utcnow())
            outcome.details = {"previous_deletion": root.mark_restored()}
            outcome.root_transitioned = True

            targets = (
                session.query(Entity)
                .filter(
                    Entity.is_deleted.is_(True),
                    Entity.deletion_origin == DeletionOrigin.CASCADED,
                    Entity.cascade_root_id == root.id,
                )
                .order_by(Entity.created_at, Entity.id)
                .all()
            )
            for entity in targets:
                entity.mark_restored()
                outcome.counts.add(entity.kind, entity.role)

            # The parent is only read, so pin it against a concurrent delete
            session.flush()
            if parent is not None:
                claim_versions(session, [parent])

            return outcome

        outcome = self._execute(request.root_id, operation)

        result = RestoreResult(
            root_id=outcome.root_id,
            root_kind=outcome.root_kind,
            per_kind_counts=outcome.counts,
            newly_restored_count=outcome.total,
        )

        logger.info(
            "Restored %s %s and %d descendants",
            outcome.root_kind.value,
            outcome.root_id,
            outcome.counts.total,
        )
        await self._after_commit(AuditAction.RESTORE, request, outcome, result)
        return result

    async def _after_commit(
        self,
        action: AuditAction,
        request: DeletionRequest,
        outcome: _Outcome,
        result: CascadeResult,
    ) -> None:
        """Invalidate cached statistics and record the audit event."""
        self.stats.invalidate()

        if self.audit_recorder is None:
            return

        try:
            result.audit_event_id = await self.audit_recorder.record(
                action=action,
                root_id=outcome.root_id,
                root_kind=outcome.root_kind.value,
                actor_id=request.actor_id,
                reason=request.reason,
                per_kind_counts=outcome.counts.model_dump(),
                total_affected=outcome.total,
                details=outcome.details or None,
                timestamp=outcome.timestamp,
            )
        except Exception as e:
            # The cascade is committed; report the audit gap instead of failing
            logger.warning(
                "Audit write failed for %s of %s: %s",
                action.value,
                outcome.root_id,
                e,
            )
            result.warnings.append(f"Audit event could not be recorded: {e}")

    async def get_stats(
        self, scope_id: Optional[str] = None, fresh: bool = False
    ) -> SoftDeleteStats:
        """
        Active/deleted counts for a subtree or the whole system.

        Args:
            scope_id: Entity whose subtree is counted, or None for everything
            fresh: Recompute instead of serving a cached value

        Raises:
            NotFoundError: If scope_id does not exist
        """
        return await self.stats.get_stats(scope_id, fresh=fresh)

    async def list_audit_events(
        self,
        root_id: Optional[str] = None,
        date_range: Optional[Tuple[Optional[datetime], Optional[datetime]]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditEvent]:
        """
        List recorded cascades, newest first.

        Args:
            root_id: Only cascades targeting this entity
            date_range: Optional (start, end) bounds, either may be None
            limit: Maximum events to return
            offset: Offset for pagination

        Raises:
            ValidationError: If the query parameters are malformed
        """
        if self.audit_recorder is None:
            return []

        start_date, end_date = date_range or (None, None)
        try:
            query = AuditEventQuery(
                root_id=root_id,
                start_date=to_naive_utc(start_date) if start_date else None,
                end_date=to_naive_utc(end_date) if end_date else None,
                limit=limit,
                offset=offset,
            )
        except PydanticValidationError as e:
            raise _validation_error(e) from e

        return await self.audit_recorder.list_events(query)

    async def list_deleted(
        self,
        scope_id: Optional[str] = None,
        kind: Optional[EntityKind] = None,
        origin: Optional[DeletionOrigin] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[EntitySummary]:
        """List deleted entities for the restore screen, newest first."""
        return self.store.list_deleted(
            scope_id=scope_id, kind=kind, origin=origin, limit=limit, offset=offset
        )


async def create_cascade_service(
    config: Optional[CascadeConfig] = None,
) -> CascadeService:
    """
    Build a cascade service wired from configuration.

    Args:
        config: Configuration, defaults to the global configuration

    Returns:
        Ready-to-use cascade service
    """
    config = config or get_config()
    session_factory = create_session_factory(config.database_url)

    audit_recorder = None
    if config.audit_enabled:
        audit_recorder = AuditRecorder(config=config)
        await audit_recorder.initialize()

    return CascadeService(
        session_factory,
        audit_recorder=audit_recorder,
        stats=StatsAggregator(session_factory, **config.get_stats_config()),
        config=config,
    )
