#!/usr/bin/env python3
"""
Path trie that reduces a container's change list to leaf operations.

The source engine reports changes at file granularity and also reports
every ancestor directory of a changed file. Copying or deleting such a
directory as one unit would clobber untouched siblings, so only paths
that were reached by a single insertion are kept:

    A /xxx/.../something ==> root dir /xxx  C
    D /xxx/.../something ==> root dir /xxx  C
    C /xxx/.../something ==> root dir /xxx  C

1. Parent directories are ignored, so a property change on a directory
   that also has changed children is lost.
2. A path reported twice collapses to IGNORE as well.
"""

import posixpath
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Iterable, List, Mapping


class ChangeKind(IntEnum):
    """Change kinds, numbered as the source engine numbers them."""
    CHANGE = 0
    ADD = 1
    DELETE = 2
    IGNORE = 3


@dataclass(frozen=True)
class Change:
    """One entry of a read-write layer diff."""
    path: str
    kind: ChangeKind


@dataclass
class DiffNode:
    path: str
    kind: ChangeKind
    children: Dict[str, "DiffNode"] = field(default_factory=dict)


class DiffTrie:
    """Trie of changed paths rooted at a synthetic '/' node."""

    def __init__(self):
        self.root = DiffNode(path="/", kind=ChangeKind.IGNORE)

    def insert(self, path: str, kind: ChangeKind):
        """
        Insert a change, creating missing nodes with the given kind.

        Every node on the way that already existed becomes IGNORE.
        """
        segments = [s for s in path.strip("/").split("/") if s]
        node = self.root
        for segment in segments:
            child = node.children.get(segment)
            if child is None:
                child = DiffNode(path=posixpath.join(node.path, segment), kind=kind)
                node.children[segment] = child
            else:
                child.kind = ChangeKind.IGNORE
            node = child

    def filter(self) -> List[Change]:
        """Return every node that is not IGNORE, breadth first."""
        changes = []
        queue = deque([self.root])
        while queue:
            node = queue.popleft()
            if node.kind != ChangeKind.IGNORE:
                changes.append(Change(path=node.path, kind=node.kind))
            queue.extend(node.children.values())
        return changes


def filter_changes(changes: Iterable[Change], mounts: Mapping[str, object]) -> List[Change]:
    """
    Reduce a diff to leaf operations, skipping bind mount destinations.

    Args:
        changes: Change records reported by the source engine
        mounts: Bind mounts keyed by destination path inside the container

    Returns:
        Changes that should be copied or deleted individually
    """
    trie = DiffTrie()
    for change in changes:
        if change.path in mounts:
            continue
        trie.insert(change.path, change.kind)
    return trie.filter()
