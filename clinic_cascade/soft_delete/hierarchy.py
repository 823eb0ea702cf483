"""
Hierarchy index over parent references.

Answers "what are the children of X" through the indexed ``parent_id``
column instead of a materialized path, so writes stay cheap.
"""

from typing import Iterator, List, Sequence

from sqlalchemy.orm import Session

from .entities import Entity

# Keeps IN (...) lists under common database parameter limits
DEFAULT_CHUNK_SIZE = 500


def _chunks(items: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class HierarchyIndex:
    """Parent-pointer lookups for one session."""

    def __init__(self, session: Session, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.session = session
        self.chunk_size = chunk_size

    def children(self, entity_id: str) -> List[Entity]:
        """Direct children of an entity, oldest first."""
        return (
            self.session.query(Entity)
            .filter(Entity.parent_id == entity_id)
            .order_by(Entity.created_at, Entity.id)
            .all()
        )

    def iter_levels(self, root_id: str) -> Iterator[List[Entity]]:
        """
        Walk the subtree below ``root_id`` breadth-first.

        Yields one list per depth level, issuing one ``parent_id IN`` query
        per chunk of the previous level. The root itself is not yielded.
        """
        visited = {root_id}
        frontier: List[str] = [root_id]

        while frontier:
            level: List[Entity] = []
            for chunk in _chunks(frontier, self.chunk_size):
                rows = (
                    self.session.query(Entity)
                    .filter(Entity.parent_id.in_(chunk))
                    .order_by(Entity.created_at, Entity.id)
                    .all()
                )
                for entity in rows:
                    # Guard against malformed cycles
                    if entity.id not in visited:
                        visited.add(entity.id)
                        level.append(entity)

            if not level:
                return

            yield level
            frontier = [entity.id for entity in level]

    def descendants(self, root_id: str) -> List[Entity]:
        """Every entity below ``root_id``, in breadth-first order."""
        result: List[Entity] = []
        for level in self.iter_levels(root_id):
            result.extend(level)
        return result

    def descendant_ids(self, root_id: str) -> List[str]:
        """IDs of every entity below ``root_id``, in breadth-first order."""
        return [entity.id for entity in self.descendants(root_id)]

    def ancestors(self, entity_id: str) -> List[Entity]:
        """Parent chain of an entity, nearest first."""
        result: List[Entity] = []
        seen = {entity_id}
        current = self.session.get(Entity, entity_id)

        while current is not None and current.parent_id is not None:
            if current.parent_id in seen:
                break
            seen.add(current.parent_id)
            current = self.session.get(Entity, current.parent_id)
            if current is not None:
                result.append(current)

        return result
