"""Folder id to path translation for hierarchical backends."""

from typing import Dict, Iterable, List, Optional, Tuple

from ..database.database import DatabaseManager
from ..database.models import DirectoryRecord, ItemError, ServiceType
from ..database.operations import get_directory_repository
from ..endpoints.base import UnresolvableError
from ..utils.logging import get_logger, log_execution_time


logger = get_logger("cache.directory_tree")


class CycleDetectedError(Exception):
    """Inserting a node would make its parent chain reach itself."""

    kind = "cycle_detected"

    def __init__(self, message: str, directory_id: Optional[str] = None):
        super().__init__(message)
        self.directory_id = directory_id


class OrphanDirectoryError(Exception):
    """A non-root node's parent is unknown in its scope."""

    kind = "orphan_directory"

    def __init__(self, message: str, directory_id: Optional[str] = None):
        super().__init__(message)
        self.directory_id = directory_id


class DirectoryMap:
    """In-memory arena of one scope's DirectoryRecords keyed by id.

    Nodes refer to their parent by id only, so the structure stays a flat
    dict; walks carry a visited set and fail on a repeated id.
    """

    def __init__(self, records: Iterable[DirectoryRecord] = ()):
        self.nodes: Dict[str, DirectoryRecord] = {r.directory_id: r for r in records}
        self._children: Optional[Dict[Tuple[Optional[str], str], List[str]]] = None

    def __len__(self):
        return len(self.nodes)

    def __contains__(self, directory_id: str):
        return directory_id in self.nodes

    def get(self, directory_id: str) -> Optional[DirectoryRecord]:
        return self.nodes.get(directory_id)

    @property
    def roots(self) -> List[DirectoryRecord]:
        return [r for r in self.nodes.values() if r.is_root]

    def validate(self, record: DirectoryRecord):
        """Check that ``record`` can join the map without breaking the forest.

        Raises:
            OrphanDirectoryError: Parent missing for a non-root node
            CycleDetectedError: Parent chain reaches the node itself
        """
        if record.is_root:
            return
        if record.parent_id is None:
            raise OrphanDirectoryError(
                f"Directory {record.directory_id} is not a root but has no parent",
                directory_id=record.directory_id
            )
        if record.parent_id == record.directory_id:
            raise CycleDetectedError(
                f"Directory {record.directory_id} is its own parent", directory_id=record.directory_id
            )

        seen = {record.directory_id}
        current = record.parent_id
        while current is not None:
            if current in seen:
                raise CycleDetectedError(
                    f"Parent chain of {record.directory_id} loops through {current}",
                    directory_id=record.directory_id
                )
            seen.add(current)
            node = self.nodes.get(current)
            if node is None:
                raise OrphanDirectoryError(
                    f"Parent {current} of directory {record.directory_id} is unknown",
                    directory_id=record.directory_id
                )
            if node.is_root:
                return
            current = node.parent_id

        raise OrphanDirectoryError(
            f"Parent chain of {record.directory_id} ends without a root", directory_id=record.directory_id
        )

    def insert(self, record: DirectoryRecord):
        """Validate then add or replace a node; the map is unchanged on failure."""
        self.validate(record)
        self.nodes[record.directory_id] = record
        self._children = None

    def remove_subtree(self, directory_id: str) -> List[str]:
        """Drop a node and its descendants; returns the removed ids."""
        if directory_id not in self.nodes:
            return []
        removed = []
        stack = [directory_id]
        while stack:
            current = stack.pop()
            if current not in self.nodes:
                continue
            removed.append(current)
            del self.nodes[current]
            stack.extend(n.directory_id for n in self.nodes.values() if n.parent_id == current)
        self._children = None
        return removed

    def path_of(self, directory_id: str) -> List[str]:
        """Names from a root down to ``directory_id``.

        Raises:
            OrphanDirectoryError: A parent on the way is unknown
            CycleDetectedError: The walk revisits a node
        """
        names = []
        seen = set()
        current: Optional[str] = directory_id
        while current is not None:
            if current in seen:
                raise CycleDetectedError(f"Cycle at directory {current}", directory_id=current)
            seen.add(current)
            node = self.nodes.get(current)
            if node is None:
                raise OrphanDirectoryError(f"Unknown directory {current}", directory_id=current)
            names.append(node.directory_name)
            if node.is_root:
                break
            current = node.parent_id
        names.reverse()
        return names

    def materialize(self, directory_id: str) -> str:
        """Human path ``root/a/b`` of a directory."""
        return "/".join(self.path_of(directory_id))

    def child_ids(self, parent_id: Optional[str], name: str) -> List[str]:
        if self._children is None:
            index: Dict[Tuple[Optional[str], str], List[str]] = {}
            for node in self.nodes.values():
                parent = None if node.is_root else node.parent_id
                index.setdefault((parent, node.directory_name), []).append(node.directory_id)
            for ids in index.values():
                ids.sort()
            self._children = index
        return self._children.get((parent_id, name), [])

    def resolve(self, segments: List[str]) -> List[str]:
        """Ids of the directories named by ``segments``; the first names a root.

        Raises:
            UnresolvableError: A segment has no matching directory
        """
        ids: List[str] = []
        parent: Optional[str] = None
        for depth, name in enumerate(segments):
            candidates = self.child_ids(parent, name)
            if not candidates:
                raise UnresolvableError(
                    f"No directory named '{name}' at '{'/'.join(segments[:depth]) or '<root>'}'"
                )
            parent = candidates[0]
            ids.append(parent)
        return ids


class DirectoryTree:
    """Persisted DirectoryRecords, one forest per (servicetype, servicesession)."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def load_map(self, servicetype: ServiceType, servicesession: str) -> DirectoryMap:
        with self.db_manager.session_scope() as session:
            rows = get_directory_repository(session).list_scope(servicetype.value, servicesession)
            return DirectoryMap(DirectoryRecord.model_validate(row) for row in rows)

    def upsert(self, record: DirectoryRecord) -> DirectoryRecord:
        """Add or replace one node after validating it against its scope."""
        dmap = self.load_map(record.servicetype, record.servicesession)
        dmap.validate(record)

        with self.db_manager.session_scope() as session:
            get_directory_repository(session).upsert(record)

        logger.debug("Directory upserted", directory_id=record.directory_id, name=record.directory_name)
        return record

    @log_execution_time
    def replace_tree(
        self,
        servicetype: ServiceType,
        servicesession: str,
        records: Iterable[DirectoryRecord]
    ) -> Tuple[DirectoryMap, List[ItemError]]:
        """Replace a whole scope with ``records``.

        Nodes that cannot be attached to a root (unknown parent, cycle, or an
        ancestor that was itself dropped) are left out and reported.

        Returns:
            The stored map and one ItemError per dropped node
        """
        candidates = {r.directory_id: r for r in records}
        accepted = DirectoryMap()
        dropped: List[ItemError] = []

        # Attach level by level so a child is validated after its parent
        remaining = dict(candidates)
        progressed = True
        while remaining and progressed:
            progressed = False
            for directory_id, record in list(remaining.items()):
                if record.is_root or record.parent_id in accepted:
                    try:
                        accepted.insert(record)
                    except (CycleDetectedError, OrphanDirectoryError) as e:
                        dropped.append(ItemError(identity=directory_id, kind=e.kind, message=str(e)))
                    del remaining[directory_id]
                    progressed = True

        for directory_id, record in remaining.items():
            try:
                DirectoryMap(candidates.values()).validate(record)
                kind, message = OrphanDirectoryError.kind, f"Ancestor of {directory_id} was dropped"
            except (CycleDetectedError, OrphanDirectoryError) as e:
                kind, message = e.kind, str(e)
            dropped.append(ItemError(identity=directory_id, kind=kind, message=message))

        with self.db_manager.session_scope() as session:
            get_directory_repository(session).replace_scope(
                servicetype.value, servicesession, list(accepted.nodes.values())
            )

        for error in dropped:
            logger.warning("Directory dropped from tree", directory_id=error.identity, kind=error.kind)

        logger.info(
            "Directory tree refreshed",
            servicetype=servicetype.value,
            servicesession=servicesession,
            directories=len(accepted),
            dropped=len(dropped)
        )
        return accepted, dropped

    def remove(self, directory_id: str, servicetype: ServiceType, servicesession: str) -> List[str]:
        """Remove a directory and its descendants."""
        dmap = self.load_map(servicetype, servicesession)
        removed = dmap.remove_subtree(directory_id)
        with self.db_manager.session_scope() as session:
            repo = get_directory_repository(session)
            for removed_id in removed:
                repo.delete(removed_id, servicetype.value, servicesession)
        return removed

    def resolve_path(self, servicetype: ServiceType, servicesession: str, segments: List[str]) -> List[str]:
        return self.load_map(servicetype, servicesession).resolve(segments)

    def materialize(self, servicetype: ServiceType, servicesession: str, directory_id: str) -> str:
        return self.load_map(servicetype, servicesession).materialize(directory_id)
