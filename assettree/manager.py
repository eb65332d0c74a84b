"""
TreeManager: the editing session over a persisted asset tree.

The forest and the selected node id live in two independent PersistentValue
objects on the injected Storage. Each command takes a snapshot of the forest,
transforms a deep copy with the functions in `assettree.operations`, persists
the result and then notifies subscribers once.
"""

from contextlib import contextmanager
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union
import json
import logging

from assettree.models import (
    DatapointInput,
    Label,
    NodeType,
    PathItem,
    TreeNode,
    dump_forest,
    load_forest,
)
from assettree.operations import (
    add_node_to_parent,
    clone_forest,
    collect_subtree_ids,
    create_folder_node,
    delete_nodes_by_id,
    filter_tree,
    find_node_by_id,
    find_path_to_node,
    insert_nodes,
    iter_nodes,
    remove_nodes_by_id,
    traverse_tree,
)
from assettree.storage.base import Storage
from assettree.store import PersistentValue
from assettree.utils import new_node_id

logger = logging.getLogger(__name__)

TREE_DATA_STORAGE_KEY = "asset-management-tree-data"
SELECTED_ID_STORAGE_KEY = "asset-management-selected-id"

DatapointArg = Union[DatapointInput, dict]
LabelArg = Union[Label, dict]


def _serialize_forest(forest: List[TreeNode]) -> str:
    return json.dumps(dump_forest(forest))


def _deserialize_forest(raw: str) -> List[TreeNode]:
    return load_forest(json.loads(raw))


def _deserialize_selected(raw: str) -> Optional[str]:
    value = json.loads(raw)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"selected id must be a string or null, got {type(value).__name__}")
    return value


def _as_datapoints(datapoints) -> List[DatapointInput]:
    if isinstance(datapoints, (DatapointInput, dict)):
        datapoints = [datapoints]
    return [DatapointInput.model_validate(dp) for dp in datapoints]


def _datapoint_node(datapoint: DatapointInput, labels: Iterable[Label] = ()) -> TreeNode:
    return TreeNode(
        id=datapoint.id,
        name=datapoint.name,
        type=NodeType.DATAPOINT,
        labels=[label.model_copy() for label in labels],
    )


class TreeManager:
    """
    Stateful commands over the forest and the selection.

    Invalid commands (unknown ids, moves that would break the folder / asset /
    datapoint containment rules) are ignored without raising.
    """

    def __init__(self, storage: Storage):
        self.storage = storage
        self._tree: PersistentValue[List[TreeNode]] = PersistentValue(
            storage, TREE_DATA_STORAGE_KEY, [],
            deep_compare=True,
            serialize=_serialize_forest,
            deserialize=_deserialize_forest,
        )
        self._selection: PersistentValue[Optional[str]] = PersistentValue(
            storage, SELECTED_ID_STORAGE_KEY, None,
            deserialize=_deserialize_selected,
        )
        self._listeners: Dict[int, Callable[["TreeManager"], None]] = {}
        self._next_token = 0
        self._depth = 0
        self._did_init = False
        self._unsubscribers = [
            self._tree.subscribe(self._on_value_changed),
            self._selection.subscribe(self._on_value_changed),
        ]
        self._restore_selection()

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------

    @property
    def forest(self) -> List[TreeNode]:
        return self._tree.get()

    @property
    def selected_id(self) -> Optional[str]:
        return self._selection.get()

    @property
    def selected_node(self) -> Optional[TreeNode]:
        selected = self.selected_id
        return find_node_by_id(self.forest, selected) if selected else None

    def find(self, node_id: str) -> Optional[TreeNode]:
        return find_node_by_id(self.forest, node_id)

    def path_to(self, node_id: str) -> List[PathItem]:
        return find_path_to_node(self.forest, node_id)

    def path_string(self, node_id: str) -> str:
        """Slash-joined names from the root down to the node; '' if absent."""
        return "/".join(item.name for item in self.path_to(node_id))

    def inherited_labels(self, node_id: str) -> List[Tuple[PathItem, List[Label]]]:
        """Ancestors of the node that carry labels, root first, with their labels."""
        inherited = []
        for item in self.path_to(node_id)[:-1]:
            ancestor = self.find(item.id)
            if ancestor is not None and ancestor.labels:
                inherited.append((item, list(ancestor.labels)))
        return inherited

    def filtered(self, query: str) -> List[TreeNode]:
        return filter_tree(self.forest, query)

    # ------------------------------------------------------------------
    # subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: Callable[["TreeManager"], None]) -> Callable[[], None]:
        """Call `listener(manager)` after every command and every external change."""
        token = self._next_token
        self._next_token += 1
        self._listeners[token] = listener

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._tree.close()
        self._selection.close()
        self._listeners.clear()

    @contextmanager
    def _command(self):
        self._depth += 1
        try:
            yield
            if self._depth == 1:
                self._restore_selection()
        finally:
            self._depth -= 1
        if not self._depth:
            for listener in list(self._listeners.values()):
                listener(self)

    def _on_value_changed(self, _value) -> None:
        # local commands notify once on exit; anything else came from another context
        if self._depth:
            return
        with self._command():
            pass

    def _restore_selection(self) -> None:
        forest = self.forest
        if self._did_init or not forest:
            return
        self._did_init = True
        selected = self.selected_id
        if selected and find_node_by_id(forest, selected) is not None:
            return
        self._selection.set(forest[0].id)

    def _update_tree(self, processor: Callable[[List[TreeNode]], List[TreeNode]]) -> None:
        self._tree.set(processor(clone_forest(self.forest)))

    def _mutate(self, node_id: str, mutator: Callable[[TreeNode], None]) -> bool:
        draft = clone_forest(self.forest)
        if not traverse_tree(draft, node_id, mutator):
            logger.debug(f"Node '{node_id}' not found")
            return False
        self._tree.set(draft)
        return True

    def _ids_available(self, datapoints: List[DatapointInput], asset: Optional[TreeNode] = None) -> bool:
        """
        True when no datapoint id repeats within `datapoints` or belongs to a
        node other than one of `asset`'s own datapoints.
        """
        own = {child.id for child in asset.children or []} if asset is not None else set()
        taken = {node.id for node in iter_nodes(self.forest)} - own
        seen = set()
        for dp in datapoints:
            if dp.id in taken or dp.id in seen:
                logger.debug(f"Datapoint id '{dp.id}' is already in use")
                return False
            seen.add(dp.id)
        return True

    # ------------------------------------------------------------------
    # commands
    # ------------------------------------------------------------------

    def select(self, node_id: Optional[str]) -> None:
        with self._command():
            self._selection.set(node_id)

    def navigate(self, node_id: str) -> bool:
        """Select `node_id` if it exists in the forest."""
        if self.find(node_id) is None:
            return False
        self.select(node_id)
        return True

    def _can_move(self, drag_ids: List[str], parent_id: Optional[str]) -> bool:
        forest = self.forest
        dragged = [node for node in (find_node_by_id(forest, i) for i in drag_ids) if node is not None]
        if not dragged:
            return False

        if parent_id is None:
            return all(NodeType.root_accepts(node.type) for node in dragged)

        parent = find_node_by_id(forest, parent_id)
        if parent is None:
            return False
        # datapoints are rearranged through manage_datapoints, never dropped onto an asset
        if parent.type == NodeType.ASSET:
            return False
        moving = set()
        for node in dragged:
            moving |= collect_subtree_ids(node)
        if parent.id in moving:
            return False
        return all(NodeType(parent.type).can_contain(node.type) for node in dragged)

    def move(self, drag_ids: List[str], parent_id: Optional[str], index: int) -> bool:
        """
        Move the dragged nodes, subtrees included, to `index` under `parent_id`
        (None for the root list) as one contiguous block.

        The batch is all-or-nothing: if any dragged node may not live at the
        destination the whole move is ignored. On success the first dragged
        id becomes the selection.
        """
        drag_ids = list(drag_ids)
        if not self._can_move(drag_ids, parent_id):
            logger.debug(f"Rejected move of {drag_ids} to {parent_id!r}")
            return False

        def relocate(draft: List[TreeNode]) -> List[TreeNode]:
            updated, removed = remove_nodes_by_id(draft, drag_ids)
            return insert_nodes(updated, removed, parent_id, index)

        with self._command():
            self._update_tree(relocate)
            self._selection.set(drag_ids[0])
        return True

    def delete(self, ids: Iterable[str]) -> None:
        ids = list(ids)
        if not ids:
            return
        with self._command():
            self._update_tree(lambda draft: delete_nodes_by_id(draft, ids))
            selected = self.selected_id
            if selected and self.find(selected) is None:
                self._selection.set(None)

    def create_folder(self) -> Optional[str]:
        """
        Create a "New Node" folder and return its id.

        On an empty forest it becomes the only root and is selected; otherwise
        it is prepended to the selected folder, and nothing happens when the
        selection is not a folder.
        """
        if not self.forest:
            folder = create_folder_node()
            with self._command():
                self._tree.set([folder])
                self._selection.set(folder.id)
            return folder.id

        selected = self.selected_node
        if selected is None or selected.type != NodeType.FOLDER:
            logger.debug("create_folder ignored: selection is not a folder")
            return None

        folder = create_folder_node()
        with self._command():
            self._update_tree(lambda draft: add_node_to_parent(draft, folder, selected.id).tree)
        return folder.id

    def create_asset(self, parent_id: str, name: str,
                     datapoints: Iterable[DatapointArg] = ()) -> Optional[str]:
        parent = self.find(parent_id)
        if parent is None or parent.type != NodeType.FOLDER:
            logger.debug(f"create_asset ignored: '{parent_id}' is not a folder")
            return None
        new_datapoints = _as_datapoints(datapoints)
        if not self._ids_available(new_datapoints):
            return None

        asset = TreeNode(
            id=new_node_id("asset"),
            name=name,
            type=NodeType.ASSET,
            labels=[],
            children=[_datapoint_node(dp) for dp in new_datapoints],
        )

        def prepend(node: TreeNode) -> None:
            node.children = [asset] + (node.children or [])

        with self._command():
            self._mutate(parent_id, prepend)
        return asset.id

    def rename(self, node_id: str, new_name: str) -> bool:
        def set_name(node: TreeNode) -> None:
            node.name = new_name

        with self._command():
            return self._mutate(node_id, set_name)

    def update_labels(self, node_id: str, labels: Iterable[LabelArg]) -> bool:
        new_labels = [Label.model_validate(label) for label in labels]

        def set_labels(node: TreeNode) -> None:
            node.labels = [label.model_copy() for label in new_labels]

        with self._command():
            return self._mutate(node_id, set_labels)

    def manage_datapoints(self, node_id: str, datapoints: Union[DatapointArg, Iterable[DatapointArg]]) -> bool:
        """
        Upsert datapoints on an asset.

        The given datapoints come first, in the given order, followed by the
        asset's other datapoints in their existing order. An updated datapoint
        keeps its labels.
        """
        target = self.find(node_id)
        if target is None or target.type != NodeType.ASSET:
            return False
        updates = _as_datapoints(datapoints)
        if not self._ids_available(updates, target):
            return False
        update_ids = {dp.id for dp in updates}

        def upsert(node: TreeNode) -> None:
            existing = {child.id: child for child in node.children or []}
            front = [
                _datapoint_node(dp, existing[dp.id].labels if dp.id in existing else ())
                for dp in updates
            ]
            rest = [child for child in node.children or [] if child.id not in update_ids]
            node.children = front + rest

        with self._command():
            return self._mutate(node_id, upsert)

    def add_datapoint(self, asset_id: str, name: str) -> Optional[str]:
        datapoint = DatapointInput(id=new_node_id("datapoint"), name=name)
        if not self.manage_datapoints(asset_id, datapoint):
            return None
        return datapoint.id

    def remove_datapoints(self, asset_id: str, ids: Iterable[str]) -> bool:
        doomed = set(ids)
        target = self.find(asset_id)
        if target is None or target.type != NodeType.ASSET:
            return False

        def drop(node: TreeNode) -> None:
            node.children = [child for child in node.children or [] if child.id not in doomed]

        with self._command():
            return self._mutate(asset_id, drop)
