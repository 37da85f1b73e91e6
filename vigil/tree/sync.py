"""CredentialTreeSynchronizer: plain tree <-> live container graph, structural edits."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol, Tuple

from vigil.container.models import (
    NOTES,
    PASSWORD,
    TITLE,
    URL,
    USERNAME,
    LiveEntry,
    LiveGroup,
    LiveUuid,
)
from vigil.tree.models import (
    NEW_GROUP_NAME,
    ROOT_DISPLAY_NAME,
    Entry,
    Group,
    is_valid_id,
)
from vigil.util.memory import ProtectedValue

logger = logging.getLogger("vigil.tree")


class LiveFactory(Protocol):
    """Creates live nodes; implemented by :class:`vigil.container.database.Container`."""

    def create_group(self, parent: LiveGroup, name: str) -> LiveGroup: ...

    def create_entry(self, parent: LiveGroup) -> LiveEntry: ...


def _key(node_id: str) -> str:
    return node_id.lower()


class CredentialTreeSynchronizer:
    """Maps a container's live graph to a detached tree and applies edits back.

    Structural edits (move, rename, remove, add) work on the plain tree
    in place and never raise on bad input: an impossible edit is a no-op
    reported by a ``False`` return value.
    """

    # ------------------------------------------------------------------
    #  Live graph -> plain tree
    # ------------------------------------------------------------------
    @classmethod
    def import_tree(cls, live_root: LiveGroup) -> Group:
        root = cls._import_group(live_root)
        root.name = ROOT_DISPLAY_NAME
        return root

    @classmethod
    def _import_group(cls, live: LiveGroup) -> Group:
        return Group(
            id=str(live.uuid),
            name=live.name or "",
            entries=[cls._import_entry(e) for e in live.entries],
            groups=[cls._import_group(g) for g in live.groups],
        )

    @staticmethod
    def _import_entry(live: LiveEntry) -> Entry:
        password = live.get_field(PASSWORD)
        if isinstance(password, ProtectedValue):
            password = password.copy()
        return Entry(
            id=str(live.uuid),
            title=live.get_text(TITLE) or "",
            username=live.get_text(USERNAME) or "",
            password=password or "",
            url=live.get_text(URL),
            notes=live.get_text(NOTES),
            created=live.times.creation_time,
            modified=live.times.last_mod_time,
        )

    # ------------------------------------------------------------------
    #  Plain tree -> live graph
    # ------------------------------------------------------------------
    @classmethod
    def export_edits(cls, tree: Group, live_root: LiveGroup, factory: LiveFactory) -> None:
        """Reconcile *live_root* with *tree* by id.

        Live nodes are indexed up front so an entry or group moved to
        another parent keeps its live object (and the data the tree does
        not model). Ids assigned by the factory are written back into the
        tree.
        """
        live_groups: Dict[str, LiveGroup] = {
            str(g.uuid): g for g in live_root.iter_groups() if g is not live_root
        }
        live_entries: Dict[str, LiveEntry] = {
            str(e.uuid): e for e in live_root.iter_entries()
        }
        cls._export_group(tree, live_root, factory, live_groups, live_entries, is_root=True)

    @classmethod
    def _export_group(
        cls,
        group: Group,
        live_group: LiveGroup,
        factory: LiveFactory,
        live_groups: Dict[str, LiveGroup],
        live_entries: Dict[str, LiveEntry],
        is_root: bool = False,
    ) -> None:
        # The root's display name is synthetic; keep the stored one
        if not is_root:
            live_group.name = group.name

        # Entries first
        rebuilt: List[LiveEntry] = []
        for entry in group.entries:
            live_entry = live_entries.get(_key(entry.id)) if is_valid_id(entry.id) else None
            if live_entry is None:
                live_entry = factory.create_entry(live_group)
                if is_valid_id(entry.id):
                    live_entry.uuid = LiveUuid.from_hex(entry.id)
                else:
                    entry.id = str(live_entry.uuid)
                live_entries[_key(entry.id)] = live_entry
            cls._copy_entry(entry, live_entry)
            rebuilt.append(live_entry)
        live_group.entries = rebuilt

        # Then subgroups; create missing ones before descending into them
        ordered: List[LiveGroup] = []
        for sub in group.groups:
            live_sub = live_groups.get(_key(sub.id)) if is_valid_id(sub.id) else None
            if live_sub is None:
                live_sub = factory.create_group(live_group, sub.name)
                sub.id = str(live_sub.uuid)
                live_groups[sub.id] = live_sub
            ordered.append(live_sub)
        for dropped in live_group.groups:
            if not any(dropped is kept for kept in ordered):
                logger.debug("Dropping live group %s", dropped.uuid)
        live_group.groups = ordered

        for sub, live_sub in zip(group.groups, ordered):
            cls._export_group(sub, live_sub, factory, live_groups, live_entries)

    @staticmethod
    def _copy_entry(entry: Entry, live: LiveEntry) -> None:
        live.set_field(TITLE, entry.title or "")
        live.set_field(USERNAME, entry.username or "")
        password = entry.password
        if isinstance(password, ProtectedValue):
            live.set_field(PASSWORD, password.copy())
        else:
            live.set_field(PASSWORD, ProtectedValue.from_string(password or ""))
        live.set_field(URL, entry.url)
        live.set_field(NOTES, entry.notes)
        live.times.creation_time = entry.created
        live.times.last_mod_time = entry.modified

    # ------------------------------------------------------------------
    #  Lookups
    # ------------------------------------------------------------------
    @staticmethod
    def find_group(root: Group, group_id: str) -> Optional[Group]:
        for grp in root.iter_groups():
            if grp.id == group_id:
                return grp
        return None

    @staticmethod
    def find_parent(root: Group, group_id: str) -> Optional[Group]:
        for grp in root.iter_groups():
            if any(sub.id == group_id for sub in grp.groups):
                return grp
        return None

    @staticmethod
    def find_group_containing_entry(root: Group, entry_id: str) -> Optional[Group]:
        for grp in root.iter_groups():
            if any(e.id == entry_id for e in grp.entries):
                return grp
        return None

    @classmethod
    def find_entry(cls, root: Group, entry_id: str) -> Tuple[Optional[Entry], Optional[Group]]:
        group = cls.find_group_containing_entry(root, entry_id)
        if group is None:
            return None, None
        for entry in group.entries:
            if entry.id == entry_id:
                return entry, group
        return None, None

    @staticmethod
    def is_in_hierarchy(target_id: str, potential_parent: Group) -> bool:
        """True if *target_id* is *potential_parent* or anywhere beneath it."""
        return any(grp.id == target_id for grp in potential_parent.iter_groups())

    @staticmethod
    def count_entries(group: Group) -> int:
        return group.count_entries()

    @staticmethod
    def all_entries(group: Group) -> List[Entry]:
        return list(group.iter_entries())

    # ------------------------------------------------------------------
    #  Structural edits
    # ------------------------------------------------------------------
    @classmethod
    def rename_group(cls, root: Group, group_id: str, new_name: str) -> bool:
        group = cls.find_group(root, group_id)
        if group is None:
            return False
        group.name = new_name
        return True

    @classmethod
    def add_group(
        cls, root: Group, parent_id: str, name: str = NEW_GROUP_NAME
    ) -> Optional[Group]:
        parent = cls.find_group(root, parent_id)
        if parent is None:
            return None
        group = Group(id="", name=name)
        parent.groups.append(group)
        return group

    @classmethod
    def remove_group(cls, root: Group, group_id: str) -> bool:
        if group_id == root.id:
            logger.debug("Refusing to remove the root group")
            return False
        parent = cls.find_parent(root, group_id)
        if parent is None:
            return False
        parent.groups = [g for g in parent.groups if g.id != group_id]
        return True

    @classmethod
    def move_group(cls, root: Group, group_id: str, new_parent_id: str) -> bool:
        if group_id == root.id or group_id == new_parent_id or new_parent_id == root.id:
            return False
        group = cls.find_group(root, group_id)
        new_parent = cls.find_group(root, new_parent_id)
        if group is None or new_parent is None:
            return False
        # Walk the whole source subtree before detaching anything
        if cls.is_in_hierarchy(new_parent_id, group):
            logger.debug("Refusing to move group %s into its own subtree", group_id)
            return False
        if not cls.remove_group(root, group_id):
            return False
        new_parent.groups.append(group)
        return True

    @classmethod
    def move_entry(cls, root: Group, entry_id: str, target_group_id: str) -> bool:
        entry, source = cls.find_entry(root, entry_id)
        if entry is None or source.id == target_group_id:
            return False
        target = cls.find_group(root, target_group_id)
        if target is None:
            return False
        source.entries = [e for e in source.entries if e is not entry]
        target.entries.append(entry)
        return True

    @classmethod
    def remove_entry(cls, root: Group, entry_id: str) -> bool:
        entry, group = cls.find_entry(root, entry_id)
        if entry is None:
            return False
        group.entries = [e for e in group.entries if e is not entry]
        return True

    @classmethod
    def save_entry(cls, root: Group, entry: Entry, group_id: str, is_new: bool) -> bool:
        """Insert a new entry into *group_id* (or the root) or replace one by id."""
        entry.touch()
        if isinstance(entry.password, str):
            entry.password = ProtectedValue.from_string(entry.password)

        if is_new:
            target = cls.find_group(root, group_id) or root
            target.entries.append(entry)
            return True

        existing, group = cls.find_entry(root, entry.id)
        if existing is None:
            return False
        group.entries = [entry if e is existing else e for e in group.entries]
        return True

    # ------------------------------------------------------------------
    #  Search
    # ------------------------------------------------------------------
    @staticmethod
    def filter_entries(entries: List[Entry], query: str) -> List[Entry]:
        terms = [t for t in (query or "").lower().split() if t]
        if not terms:
            return list(entries)

        def haystack(entry: Entry) -> str:
            parts = [entry.title, entry.username, entry.url, entry.notes]
            return " ".join(p for p in parts if p).lower()

        return [e for e in entries if all(t in haystack(e) for t in terms)]

    @staticmethod
    def sort_entries_by_title(entries: List[Entry]) -> List[Entry]:
        return sorted(entries, key=lambda e: (e.title or "").lower())
