"""
Cascade planner.

Read-only traversal that works out which entities a delete or restore
would transition. The executor reuses the same traversal at execution
time so that it never acts on a stale estimate.
"""

from typing import List, NamedTuple, Optional

from sqlalchemy.orm import Session

from .entities import Entity, get_entity
from .exceptions import InvalidOperationError
from .hierarchy import HierarchyIndex
from .models import CascadeAction, CascadePlan, DeletionOrigin, EntityKind


class PlannedCascade(NamedTuple):
    """A plan together with the loaded entities it refers to."""

    root: Entity
    plan: CascadePlan
    targets: List[Entity]
    untouched: List[Entity]


def root_transitions(root: Entity, action: CascadeAction) -> bool:
    """Whether the root itself would change state."""
    if action == CascadeAction.DELETE:
        return not root.is_deleted
    return root.is_deleted and root.deletion_origin == DeletionOrigin.DIRECT


def descendant_transitions(entity: Entity, root_id: str, action: CascadeAction) -> bool:
    """Whether a descendant would change state under a cascade from ``root_id``."""
    if action == CascadeAction.DELETE:
        return not entity.is_deleted
    return (
        entity.deletion_origin == DeletionOrigin.CASCADED
        and entity.cascade_root_id == root_id
    )


def check_restorable(session: Session, root: Entity) -> Optional[Entity]:
    """
    Reject restore roots that would break provenance or the tree invariant.

    Returns:
        The live parent the restore depends on, or None for organizations

    Raises:
        InvalidOperationError: If the root is not deleted, was deleted by an
            ancestor's cascade, or its parent is still deleted
    """
    if not root.is_deleted:
        raise InvalidOperationError(root.id, "Entity is not deleted")

    if root.deletion_origin == DeletionOrigin.CASCADED:
        cascade_root = session.get(Entity, root.cascade_root_id)
        label = (
            f"{EntityKind(cascade_root.kind).value} {cascade_root.id}"
            if cascade_root is not None
            else str(root.cascade_root_id)
        )
        raise InvalidOperationError(
            root.id,
            "Entity was deleted by a cascade and cannot be restored directly",
            guidance=f"Restore the {label} instead",
        )

    if root.parent_id is None:
        return None

    parent = get_entity(session, root.parent_id)
    if parent.is_deleted:
        raise InvalidOperationError(
            root.id,
            f"Parent {EntityKind(parent.kind).value} {parent.id} is deleted",
            guidance="Restore the parent first",
        )
    return parent


class CascadePlanner:
    """Computes cascade impact without writing anything."""

    def __init__(self, session: Session):
        self.session = session
        self.hierarchy = HierarchyIndex(session)

    def plan(
        self, root_id: str, action: CascadeAction = CascadeAction.DELETE
    ) -> CascadePlan:
        """
        Estimate the impact of deleting or restoring ``root_id``.

        Every descendant is visited; those already in the state the
        operation would leave them in are reported in ``untouched_counts``.
        A restore that would be rejected reports nothing as transitioning
        and explains why in ``blocked_reason``.

        Args:
            root_id: Entity targeted by the operation
            action: DELETE or RESTORE

        Returns:
            The cascade plan

        Raises:
            NotFoundError: If the root does not exist
        """
        return self.plan_with_targets(root_id, action).plan

    def plan_with_targets(
        self, root_id: str, action: CascadeAction = CascadeAction.DELETE
    ) -> PlannedCascade:
        """Same traversal as :meth:`plan`, also returning the loaded entities."""
        action = CascadeAction(action)
        root = get_entity(self.session, root_id)

        plan = CascadePlan(
            root_id=root.id,
            root_kind=EntityKind(root.kind),
            action=action,
        )
        if action == CascadeAction.RESTORE:
            try:
                check_restorable(self.session, root)
            except InvalidOperationError as e:
                plan.blocked_reason = str(e)

        targets: List[Entity] = []
        untouched: List[Entity] = []

        for level in self.hierarchy.iter_levels(root.id):
            for entity in level:
                plan.descendant_ids.append(entity.id)
                if plan.blocked_reason is None and descendant_transitions(
                    entity, root.id, action
                ):
                    plan.per_kind_counts.add(entity.kind, entity.role)
                    targets.append(entity)
                else:
                    plan.untouched_counts.add(entity.kind, entity.role)
                    untouched.append(entity)

        if plan.blocked_reason is None and root_transitions(root, action):
            plan.total_affected_entities = len(targets) + 1
        else:
            plan.total_affected_entities = len(targets)

        return PlannedCascade(
            root=root, plan=plan, targets=targets, untouched=untouched
        )
