"""
where we store the
pydantic Data Structure classes
for the asset tree

"""

from pydantic import BaseModel, ConfigDict, TypeAdapter
from typing import List, Optional, NamedTuple
from enum import Enum


class NodeType(str, Enum):
    FOLDER = "folder"
    ASSET = "asset"
    DATAPOINT = "datapoint"

    def can_contain(self, child_type: "NodeType") -> bool:
        """Whether a node of this type may hold `child_type` as a direct child."""
        return NodeType(child_type) in _CONTAINMENT[self]

    @staticmethod
    def root_accepts(child_type: "NodeType") -> bool:
        """Whether `child_type` may sit in the root sequence of the forest."""
        return NodeType(child_type) in _ROOT_TYPES


_CONTAINMENT = {
    NodeType.FOLDER: frozenset({NodeType.FOLDER, NodeType.ASSET}),
    NodeType.ASSET: frozenset({NodeType.DATAPOINT}),
    NodeType.DATAPOINT: frozenset(),
}
_ROOT_TYPES = frozenset({NodeType.FOLDER})


class Label(BaseModel):
    key: str
    value: str


class TreeNode(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: str
    name: str
    type: NodeType
    labels: List[Label] = []
    children: Optional[List['TreeNode']] = None


class DatapointInput(BaseModel):
    id: str
    name: str


class PathItem(BaseModel):
    id: str
    name: str


class NodeLocation(NamedTuple):
    node: Optional[TreeNode]
    parent: Optional[TreeNode]
    index: int


NOT_FOUND = NodeLocation(node=None, parent=None, index=-1)

Forest = TypeAdapter(List[TreeNode])


def dump_forest(forest: List[TreeNode]) -> list:
    """Plain JSON-ready form of a forest; `children` is omitted where absent."""
    return Forest.dump_python(forest, mode="json", exclude_none=True)


def load_forest(data) -> List[TreeNode]:
    return Forest.validate_python(data)
