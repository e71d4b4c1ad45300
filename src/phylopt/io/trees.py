"""
Phylogenetic tree parsing and the unrooted tree used by the optimizers.

Newick text is parsed into a rooted :class:`Tree` of :class:`TreeNode`
objects, which is then converted into a :class:`UTree`: an arena of
:class:`UNode` records linked by integer ``next``/``back`` indices. Every
inner node is represented by three records forming a ``next`` cycle; the
``back`` record of each is the node across the incident edge.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import numpy as np

from ..core.partition import Operation


@dataclass
class TreeNode:
    """
    Node of a parsed (rooted) Newick tree.

    Attributes
    ----------
    id : int
        Node identifier in parse order
    name : Optional[str]
        Node name (leaves, or labelled inner nodes)
    children : list[TreeNode]
        Child nodes
    branch_length : float
        Length of the branch to the parent
    """

    id: int
    name: Optional[str] = None
    children: list["TreeNode"] = field(default_factory=list)
    branch_length: float = 0.0

    @property
    def is_leaf(self) -> bool:
        return len(self.children) == 0


@dataclass
class Tree:
    """
    Rooted tree as written in Newick.

    Attributes
    ----------
    root : TreeNode
    n_nodes : int
    n_leaves : int
    leaf_names : list[str]
    """

    root: TreeNode
    n_nodes: int
    n_leaves: int
    leaf_names: list[str]

    @classmethod
    def from_newick(cls, newick_string: str) -> "Tree":
        """
        Parse a Newick string.

        Bracketed comments (``[...]``) are removed; whitespace between tokens
        is ignored.

        Parameters
        ----------
        newick_string : str
            Newick tree terminated by ``;``

        Returns
        -------
        Tree
        """
        newick = re.sub(r"\[[^\]]*\]", "", newick_string).strip()
        if ";" not in newick:
            raise ValueError("Invalid Newick format: missing semicolon")
        newick = newick[: newick.index(";")]
        newick = newick.replace("\n", "").replace("\t", "").replace("\r", "")

        counter = [0]

        def skip_whitespace(s: str, pos: int) -> int:
            while pos < len(s) and s[pos] == " ":
                pos += 1
            return pos

        def parse_node(s: str, start: int) -> tuple[TreeNode, int]:
            node = TreeNode(id=counter[0])
            counter[0] += 1
            pos = skip_whitespace(s, start)

            if pos < len(s) and s[pos] == "(":
                pos += 1
                while True:
                    child, pos = parse_node(s, pos)
                    node.children.append(child)
                    pos = skip_whitespace(s, pos)
                    if pos < len(s) and s[pos] == ",":
                        pos += 1
                    elif pos < len(s) and s[pos] == ")":
                        pos = skip_whitespace(s, pos + 1)
                        break
                    else:
                        raise ValueError(f"Expected ',' or ')' at position {pos}")

            name_start = pos
            while pos < len(s) and s[pos] not in ",:(); ":
                pos += 1
            if pos > name_start:
                node.name = s[name_start:pos]

            pos = skip_whitespace(s, pos)
            if pos < len(s) and s[pos] == ":":
                pos = skip_whitespace(s, pos + 1)
                length_start = pos
                while pos < len(s) and s[pos] not in ",(); ":
                    pos += 1
                try:
                    node.branch_length = float(s[length_start:pos])
                except ValueError:
                    raise ValueError(f"Invalid branch length: {s[length_start:pos]}")

            return node, skip_whitespace(s, pos)

        root, pos = parse_node(newick, 0)
        if pos != len(newick):
            raise ValueError(f"Unexpected characters after tree at position {pos}")

        leaf_names = [node.name or str(node.id) for node in cls._postorder(root) if node.is_leaf]
        n_nodes = sum(1 for _ in cls._postorder(root))

        return cls(root=root, n_nodes=n_nodes, n_leaves=len(leaf_names), leaf_names=leaf_names)

    @staticmethod
    def _postorder(node: TreeNode):
        for child in node.children:
            yield from Tree._postorder(child)
        yield node

    def postorder(self) -> list[TreeNode]:
        """Nodes in post-order (leaves before their parents)."""
        return list(self._postorder(self.root))


@dataclass
class UNode:
    """
    One record of the unrooted tree arena.

    Attributes
    ----------
    index : int
        Position in the arena
    back : int
        Record across the incident edge
    next : Optional[int]
        Next record of the same inner node (``None`` for tips)
    length : float
        Branch length of the incident edge (same value on ``back``)
    pmatrix_index : int
        Probability matrix of the incident edge, unique per edge
    clv_index : int
        CLV of the node (shared by the three records of an inner node)
    scaler_index : Optional[int]
        Scale buffer of the node (``None`` for tips)
    label : Optional[str]
        Taxon name for tips
    """

    index: int
    back: int = -1
    next: Optional[int] = None
    length: float = 0.0
    pmatrix_index: int = -1
    clv_index: int = -1
    scaler_index: Optional[int] = None
    label: Optional[str] = None

    @property
    def is_tip(self) -> bool:
        return self.next is None


class UTree:
    """
    Unrooted binary tree stored as an arena of :class:`UNode` records.

    Tip records come first (CLV indices ``0 .. n_tips - 1``), followed by
    three records per inner node. Inner nodes take CLV indices
    ``n_tips ..`` and scaler indices ``0 ..``; edges take probability
    matrix indices ``0 .. n_edges - 1``.

    Examples
    --------
    >>> tree = UTree.from_newick("((A:0.1,B:0.2):0.05,C:0.3,D:0.4);")
    >>> tree.n_tips, tree.n_edges
    (4, 5)
    """

    def __init__(self, nodes: list[UNode], n_tips: int):
        self.nodes = nodes
        self.n_tips = n_tips
        self.n_inner = (len(nodes) - n_tips) // 3
        self.n_edges = max(2 * n_tips - 3, 1)

    def __getitem__(self, index: int) -> UNode:
        return self.nodes[index]

    def __repr__(self) -> str:
        return f"UTree(n_tips={self.n_tips}, n_inner={self.n_inner}, n_edges={self.n_edges})"

    @classmethod
    def from_newick(cls, newick_string: str) -> "UTree":
        return cls.from_tree(Tree.from_newick(newick_string))

    @classmethod
    def from_file(cls, filepath: Path | str) -> "UTree":
        return cls.from_newick(Path(filepath).read_text())

    @classmethod
    def from_tree(cls, tree: Tree) -> "UTree":
        """
        Convert a parsed Newick tree into an unrooted arena tree.

        A bifurcating root is removed by joining its two edges; a root with
        three children becomes an ordinary inner node. All other inner nodes
        must have exactly two children.
        """
        root = tree.root
        if tree.n_leaves < 2:
            raise ValueError("Tree must have at least 2 leaves")
        if len(root.children) not in (2, 3):
            raise ValueError(
                f"Root must have 2 or 3 children for an unrooted binary tree, got {len(root.children)}"
            )

        tips: list[UNode] = []
        inner: list[UNode] = []
        edge_counter = [0]

        def new_inner() -> tuple[UNode, UNode, UNode]:
            records = [UNode(index=-1) for _ in range(3)]
            inner.extend(records)
            return tuple(records)

        def connect(a: UNode, b: UNode, length: float) -> None:
            a.back, b.back = id(b), id(a)
            a.length = b.length = length
            a.pmatrix_index = b.pmatrix_index = edge_counter[0]
            edge_counter[0] += 1

        def build(node: TreeNode) -> UNode:
            if node.is_leaf:
                tip = UNode(index=-1, label=node.name or str(node.id))
                tips.append(tip)
                return tip
            if len(node.children) != 2:
                raise ValueError(
                    f"Inner node {node.id} has {len(node.children)} children; tree must be binary"
                )
            up, left, right = new_inner()
            connect(left, build(node.children[0]), node.children[0].branch_length)
            connect(right, build(node.children[1]), node.children[1].branch_length)
            return up

        if len(root.children) == 3:
            records = new_inner()
            for record, child in zip(records, root.children):
                connect(record, build(child), child.branch_length)
        else:
            first, second = root.children
            a = build(first)
            b = build(second)
            connect(a, b, first.branch_length + second.branch_length)

        # tips first, then inner records; resolve object links into indices
        ordered = tips + inner
        position = {id(record): i for i, record in enumerate(ordered)}
        for i, record in enumerate(ordered):
            record.index = i
            record.back = position[record.back]

        n_tips = len(tips)
        for i, tip in enumerate(tips):
            tip.clv_index = i
        for k in range(len(inner) // 3):
            base = n_tips + 3 * k
            for j in range(3):
                record = ordered[base + j]
                record.next = base + (j + 1) % 3
                record.clv_index = n_tips + k
                record.scaler_index = k

        return cls(ordered, n_tips)

    # ------------------------------------------------------------------
    # structure
    # ------------------------------------------------------------------

    @property
    def tip_names(self) -> list[str]:
        return [self.nodes[i].label for i in range(self.n_tips)]

    @property
    def n_clv(self) -> int:
        return self.n_tips + self.n_inner

    def default_edge(self) -> UNode:
        """An edge to start optimizations from: the first inner record, or tip 0."""
        if self.n_inner:
            return self.nodes[self.n_tips]
        return self.nodes[0]

    def children(self, node: UNode) -> list[UNode]:
        """The other records of ``node``'s inner node, in ``next`` order."""
        if node.is_tip:
            return []
        first = self.nodes[node.next]
        return [first, self.nodes[first.next]]

    def edges(self) -> list[UNode]:
        """One record per edge, ordered by probability matrix index."""
        by_matrix = {}
        for node in self.nodes:
            by_matrix.setdefault(node.pmatrix_index, node)
        return [by_matrix[i] for i in range(self.n_edges)]

    def branch_lengths(self) -> np.ndarray:
        """Branch lengths ordered by probability matrix index."""
        return np.array([node.length for node in self.edges()])

    def matrix_indices(self) -> np.ndarray:
        return np.arange(self.n_edges)

    def set_branch_length(self, node: UNode, length: float) -> None:
        """Set the length of ``node``'s edge on both of its endpoints."""
        node.length = length
        self.nodes[node.back].length = length

    def set_branch_lengths(self, lengths: np.ndarray) -> None:
        """Set all branch lengths from a vector ordered by matrix index."""
        lengths = np.asarray(lengths, dtype=float)
        if lengths.shape != (self.n_edges,):
            raise ValueError(f"Expected {self.n_edges} branch lengths, got {lengths.shape}")
        for node in self.edges():
            self.set_branch_length(node, float(lengths[node.pmatrix_index]))

    # ------------------------------------------------------------------
    # traversal
    # ------------------------------------------------------------------

    def _operations_towards(self, node: UNode, ops: list[Operation]) -> None:
        """Post-order operations computing ``node``'s CLV facing ``node.back``."""
        if node.is_tip:
            return
        left, right = self.children(node)
        self._operations_towards(self.nodes[left.back], ops)
        self._operations_towards(self.nodes[right.back], ops)
        ops.append(self.pivot_operation(node, left, right))

    def pivot_operation(self, parent: UNode, left: UNode, right: UNode) -> Operation:
        """Operation recomputing ``parent``'s CLV from the subtrees behind ``left`` and ``right``."""
        left_back = self.nodes[left.back]
        right_back = self.nodes[right.back]
        return Operation(
            parent_clv_index=parent.clv_index,
            parent_scaler_index=parent.scaler_index,
            child1_clv_index=left_back.clv_index,
            child1_matrix_index=left_back.pmatrix_index,
            child1_scaler_index=left_back.scaler_index,
            child2_clv_index=right_back.clv_index,
            child2_matrix_index=right_back.pmatrix_index,
            child2_scaler_index=right_back.scaler_index,
        )

    def traverse_operations(self, edge: UNode) -> list[Operation]:
        """
        Operations orienting every CLV toward ``edge``.

        After applying them, the CLVs of ``edge`` and ``edge.back`` face each
        other and the edge log-likelihood equals the tree log-likelihood.
        """
        ops: list[Operation] = []
        self._operations_towards(edge, ops)
        self._operations_towards(self.nodes[edge.back], ops)
        return ops

    # ------------------------------------------------------------------
    # output
    # ------------------------------------------------------------------

    def _newick_subtree(self, node: UNode, precision: int) -> str:
        if node.is_tip:
            text = node.label
        else:
            left, right = self.children(node)
            text = (
                f"({self._newick_subtree(self.nodes[left.back], precision)},"
                f"{self._newick_subtree(self.nodes[right.back], precision)})"
            )
        return f"{text}:{node.length:.{precision}f}"

    def to_newick(self, precision: int = 6) -> str:
        """
        Newick string with branch lengths, written around the first inner node.

        A two-taxon tree is written as ``(A:t,B:0);``.
        """
        if not self.n_inner:
            a, b = self.nodes[0], self.nodes[1]
            return f"({a.label}:{a.length:.{precision}f},{b.label}:{0.0:.{precision}f});"

        start = self.nodes[self.n_tips]
        parts = [start] + self.children(start)
        subtrees = [self._newick_subtree(self.nodes[record.back], precision) for record in parts]
        return "(" + ",".join(subtrees) + ");"
