"""
Unit tests for Newick parsing and the unrooted arena tree.
"""

import numpy as np
import pytest

from phylopt.io.trees import Tree, UTree


class TestNewickParsing:
    """Test the rooted Newick parser."""

    def test_leaf_names_and_counts(self):
        tree = Tree.from_newick("((A:0.1,B:0.2):0.3,C:0.4,D:0.5);")
        assert tree.n_leaves == 4
        assert tree.leaf_names == ["A", "B", "C", "D"]
        assert tree.n_nodes == 6

    def test_comments_and_whitespace(self):
        tree = Tree.from_newick("( (A:0.1, B:0.2)[&support=1] : 0.3 , C:0.4 );\n")
        assert tree.leaf_names == ["A", "B", "C"]
        assert tree.root.children[0].branch_length == pytest.approx(0.3)

    def test_postorder_visits_children_first(self):
        tree = Tree.from_newick("((A:0.1,B:0.2):0.3,C:0.4);")
        order = tree.postorder()
        assert order[-1] is tree.root
        assert [node.name for node in order[:2]] == ["A", "B"]

    def test_missing_semicolon(self):
        with pytest.raises(ValueError, match="semicolon"):
            Tree.from_newick("((A,B),C)")

    def test_bad_branch_length(self):
        with pytest.raises(ValueError):
            Tree.from_newick("((A:x,B:0.2),C);")


class TestUTree:
    """Test the unrooted arena representation."""

    def test_counts(self, primate_tree):
        assert primate_tree.n_tips == 5
        assert primate_tree.n_inner == 3
        assert primate_tree.n_edges == 7
        assert primate_tree.n_clv == 8
        assert len(primate_tree.nodes) == 5 + 3 * 3
        assert primate_tree.tip_names == ["Human", "Chimp", "Gorilla", "Orang", "Gibbon"]

    def test_back_links_are_symmetric(self, primate_tree):
        """Both ends of an edge point at each other and share length and matrix."""
        for node in primate_tree.nodes:
            back = primate_tree[node.back]
            assert back.back == node.index
            assert back.length == node.length
            assert back.pmatrix_index == node.pmatrix_index

    def test_next_cycles(self, primate_tree):
        """Inner records form cycles of three sharing one CLV."""
        for node in primate_tree.nodes:
            if node.is_tip:
                assert node.scaler_index is None
                continue
            second = primate_tree[node.next]
            third = primate_tree[second.next]
            assert third.next == node.index
            assert node.clv_index == second.clv_index == third.clv_index

    def test_one_matrix_per_edge(self, primate_tree):
        indices = sorted(node.pmatrix_index for node in primate_tree.nodes)
        assert indices == sorted(list(range(7)) * 2)

    def test_branch_lengths_by_matrix(self, primate_tree):
        lengths = primate_tree.branch_lengths()
        assert sorted(lengths) == pytest.approx([0.02, 0.03, 0.04, 0.05, 0.06, 0.1, 0.12])

    def test_rooted_input_merges_root_edges(self):
        """A bifurcating root is removed by joining its two edges."""
        tree = UTree.from_newick("((A:0.4,B:0.1):0.5,C:0.4);")
        assert tree.n_tips == 3
        assert tree.n_inner == 1
        assert tree.n_edges == 3
        tip_c = tree[tree.tip_names.index("C")]
        assert tip_c.length == pytest.approx(0.9)

    def test_two_tips(self):
        tree = UTree.from_newick("(A:0.1,B:0.2);")
        assert tree.n_inner == 0
        assert tree.n_edges == 1
        assert tree.default_edge().index == 0
        assert tree.to_newick() == "(A:0.300000,B:0.000000);"

    def test_multifurcation_rejected(self):
        with pytest.raises(ValueError, match="binary"):
            UTree.from_newick("((A,B,C),D,E);")

    def test_set_branch_lengths(self, primate_tree):
        new_lengths = np.linspace(0.1, 0.7, 7)
        primate_tree.set_branch_lengths(new_lengths)
        np.testing.assert_allclose(primate_tree.branch_lengths(), new_lengths)
        for node in primate_tree.nodes:
            assert node.length == primate_tree[node.back].length

        with pytest.raises(ValueError):
            primate_tree.set_branch_lengths([0.1, 0.2])

    def test_traverse_operations(self, primate_tree):
        """Orienting toward an edge recomputes every inner CLV once."""
        for edge in primate_tree.edges():
            ops = primate_tree.traverse_operations(edge)
            assert len(ops) == primate_tree.n_inner
            assert len({op.parent_clv_index for op in ops}) == primate_tree.n_inner

    def test_newick_roundtrip(self, primate_tree):
        again = UTree.from_newick(primate_tree.to_newick())
        assert sorted(again.tip_names) == sorted(primate_tree.tip_names)
        np.testing.assert_allclose(
            sorted(again.branch_lengths()), sorted(primate_tree.branch_lengths())
        )

    def test_from_file(self, primate_files):
        tree = UTree.from_file(primate_files["tree"])
        assert tree.n_tips == 5
