from typing import List, Optional
from assettree.models import Label, NodeType, TreeNode

TYPE_MARKERS = {
    NodeType.FOLDER: "/",
    NodeType.ASSET: " [asset]",
    NodeType.DATAPOINT: " [datapoint]",
}


class Renderer:
    """
    Renderer takes a forest of TreeNode objects and produces text views of it:
      - render_tree(): the folder/asset/datapoint hierarchy in ASCII form
      - render_labels(): a node's labels as `key=value` lines
    """
    def __init__(self, nodes: List[TreeNode], show_ids: bool = False,
                 selected_id: Optional[str] = None):
        self.nodes = nodes
        self.show_ids = show_ids
        self.selected_id = selected_id

    def render_tree(self) -> str:
        """Return an ASCII tree of the forest, one root after another."""
        lines = []
        for root in self.nodes:
            lines.append(self._format_node(root))
            if root.children:
                lines.extend(self._format_children(root.children, prefix=""))
        return "\n".join(lines)

    def _format_node(self, node: TreeNode) -> str:
        marker = TYPE_MARKERS[NodeType(node.type)]
        line = f"{node.name}{marker}"
        if node.labels:
            line += " {" + ", ".join(f"{label.key}={label.value}" for label in node.labels) + "}"
        if self.show_ids:
            line += f"  ({node.id})"
        if node.id == self.selected_id:
            line += " *"
        return line

    def _format_children(self, nodes: List[TreeNode], prefix: str) -> List[str]:
        """Recursively format child nodes with ASCII connectors."""
        formatted = []
        count = len(nodes)
        for index, node in enumerate(nodes):
            is_last = (index == count - 1)
            connector = "└── " if is_last else "├── "
            formatted.append(f"{prefix}{connector}{self._format_node(node)}")

            if node.children:
                next_prefix = prefix + ("    " if is_last else "│   ")
                formatted.extend(self._format_children(node.children, next_prefix))
        return formatted

    @staticmethod
    def render_labels(labels: List[Label], indent: str = "") -> str:
        return "\n".join(f"{indent}{label.key}={label.value}" for label in labels)
