"""
Pure operations over a forest of TreeNode objects.

Every function here leaves the forest it is given untouched and returns new
structures, except `traverse_tree`, which mutates a node in place inside a
forest the caller already owns (normally one returned by `clone_forest`).

All searches are depth-first and pre-order: a node is visited before its
children, children in their stored order, and the first match wins.
"""

from typing import Callable, Iterable, Iterator, List, NamedTuple, Optional, Set

from assettree.models import NOT_FOUND, NodeLocation, NodeType, PathItem, TreeNode
from assettree.utils import new_node_id


class RemovalResult(NamedTuple):
    updated_tree: List[TreeNode]
    removed_nodes: List[TreeNode]


class AddResult(NamedTuple):
    tree: List[TreeNode]
    success: bool


def clone_forest(forest: List[TreeNode]) -> List[TreeNode]:
    """Deep copy of a forest, sharing nothing with the original."""
    return [node.model_copy(deep=True) for node in forest]


def iter_nodes(forest: Iterable[TreeNode]) -> Iterator[TreeNode]:
    """Yield every node of the forest in pre-order."""
    for node in forest:
        yield node
        if node.children:
            yield from iter_nodes(node.children)


def collect_subtree_ids(node: TreeNode) -> Set[str]:
    """Ids of `node` and all of its descendants."""
    return {n.id for n in iter_nodes([node])}


def find_node_with_parent(forest: List[TreeNode], node_id: str) -> NodeLocation:
    """
    Locate a node together with its immediate container and its index there.

    `parent` is None for a root node. When the id is absent the NOT_FOUND
    sentinel is returned (node None, index -1).
    """
    def search(nodes: List[TreeNode], parent: Optional[TreeNode]) -> NodeLocation:
        for index, node in enumerate(nodes):
            if node.id == node_id:
                return NodeLocation(node=node, parent=parent, index=index)
            if node.children:
                found = search(node.children, node)
                if found.node is not None:
                    return found
        return NOT_FOUND

    return search(forest, None)


def find_node_by_id(forest: List[TreeNode], node_id: str) -> Optional[TreeNode]:
    return find_node_with_parent(forest, node_id).node


def find_path_to_node(forest: List[TreeNode], node_id: str) -> List[PathItem]:
    """
    Return the chain of {id, name} items from a root down to the node, inclusive.

    An empty list means the node was not found.
    """
    path: List[PathItem] = []

    def walk(nodes: List[TreeNode]) -> bool:
        for node in nodes:
            path.append(PathItem(id=node.id, name=node.name))
            if node.id == node_id:
                return True
            if node.children and walk(node.children):
                return True
            path.pop()
        return False

    return path if walk(forest) else []


def node_matches(node: TreeNode, query: str) -> bool:
    """Case-insensitive substring match on the name or any label key or value."""
    q = query.lower()
    if q in node.name.lower():
        return True
    return any(q in label.key.lower() or q in label.value.lower() for label in node.labels)


def filter_tree(forest: List[TreeNode], query: str) -> List[TreeNode]:
    """
    Keep the nodes matching `query` plus every ancestor on the way to them.

    An ancestor that does not match is still kept, holding only its retained
    children. A blank query returns `forest` itself.
    """
    if not query.strip():
        return forest

    def prune(nodes: List[TreeNode]) -> List[TreeNode]:
        kept: List[TreeNode] = []
        for node in nodes:
            children = prune(node.children) if node.children else []
            if children or node_matches(node, query):
                kept.append(TreeNode(
                    id=node.id,
                    name=node.name,
                    type=node.type,
                    labels=[label.model_copy() for label in node.labels],
                    children=children,
                ))
        return kept

    return prune(forest)


def traverse_tree(forest: List[TreeNode], node_id: str,
                  mutator: Callable[[TreeNode], None]) -> bool:
    """
    Apply `mutator` in place to the first node with `node_id`.

    Returns True when the node was found. The forest is modified, so callers
    pass a copy they own.
    """
    for node in forest:
        if node.id == node_id:
            mutator(node)
            return True
        if node.children and traverse_tree(node.children, node_id, mutator):
            return True
    return False


def _strip(nodes: List[TreeNode], ids: Set[str], removed: Optional[List[TreeNode]]) -> List[TreeNode]:
    kept: List[TreeNode] = []
    for node in nodes:
        if node.id in ids:
            if removed is not None:
                removed.append(node)
            continue
        if node.children:
            node.children = _strip(node.children, ids, removed)
        kept.append(node)
    return kept


def remove_nodes_by_id(forest: List[TreeNode], ids: Iterable[str]) -> RemovalResult:
    """
    Cut every node whose id is in `ids` out of a copy of the forest.

    Removed nodes come back in pre-order, each with its whole subtree. A match
    nested under another removed node leaves with its ancestor and is not
    listed on its own.
    """
    removed: List[TreeNode] = []
    updated = _strip(clone_forest(forest), set(ids), removed)
    return RemovalResult(updated_tree=updated, removed_nodes=removed)


def delete_nodes_by_id(forest: List[TreeNode], ids: Iterable[str]) -> List[TreeNode]:
    return _strip(clone_forest(forest), set(ids), None)


def insert_nodes(forest: List[TreeNode], nodes: List[TreeNode],
                 parent_id: Optional[str], index: int) -> List[TreeNode]:
    """
    Splice `nodes` in at `index`, at root level or under `parent_id`.

    Indices follow slice assignment: past-the-end appends, negatives count
    from the end. An unknown parent leaves the copy unchanged.
    """
    updated = clone_forest(forest)
    block = clone_forest(nodes)

    if parent_id is None:
        updated[index:index] = block
        return updated

    parent = find_node_by_id(updated, parent_id)
    if parent is not None:
        if parent.children is None:
            parent.children = []
        parent.children[index:index] = block
    return updated


def create_folder_node(name: str = "New Node") -> TreeNode:
    return TreeNode(
        id=new_node_id("folder"),
        name=name,
        type=NodeType.FOLDER,
        labels=[],
        children=[],
    )


def add_node_to_parent(forest: List[TreeNode], node: TreeNode,
                       parent_id: Optional[str]) -> AddResult:
    """Put `node` first in the root list, or first among the parent's children."""
    updated = clone_forest(forest)

    if not parent_id:
        return AddResult(tree=[node.model_copy(deep=True)] + updated, success=True)

    parent = find_node_by_id(updated, parent_id)
    if parent is None:
        return AddResult(tree=updated, success=False)

    parent.children = [node.model_copy(deep=True)] + (parent.children or [])
    return AddResult(tree=updated, success=True)
