"""
Unit tests for Newton branch-length smoothing.
"""

import numpy as np
import pytest

from phylopt.api import build_partition
from phylopt.io.trees import UTree
from phylopt.optimize.branch import BranchOptimizer, TreePivot
from phylopt.optimize.codec import LikelihoodContext
from phylopt.optimize.newton import NewtonMinimizer

# 4 differences in 20 sites under Jukes-Cantor
JC_DISTANCE = -0.75 * np.log(1.0 - 4.0 / 3.0 * 0.2)


@pytest.fixture
def jc_setup(jc_pair):
    """Two-taxon JC69 partition, 20 sites, 4 differences."""
    tree = UTree.from_newick("(A:0.1,B:0.1);")
    partition = build_partition(jc_pair(20, 4), tree, categories=1)
    context = LikelihoodContext.from_utree(partition, tree)
    context.update_all()
    return partition, tree


class TestJukesCantorDistance:
    """The branch-length optimum has a closed form for two taxa under JC69."""

    @pytest.mark.parametrize("guess", [0.05, 0.5, 2.0])
    def test_newton_from_guess(self, jc_setup, guess):
        partition, _ = jc_setup
        sumtable = partition.update_sumtable(0, 1, [0])

        def derivatives(t):
            return partition.compute_likelihood_derivatives(None, None, t, [0], sumtable)

        newton = NewtonMinimizer(tolerance=1e-7, max_iters=100)
        length = newton.minimize(1e-4, guess, 100.0, derivatives)
        assert length == pytest.approx(JC_DISTANCE, abs=1e-4)

    def test_branch_optimizer(self, jc_setup):
        partition, tree = jc_setup
        score = BranchOptimizer(partition, tree, tolerance=1e-6).optimize()
        assert tree[0].length == pytest.approx(JC_DISTANCE, abs=1e-4)
        assert tree[1].length == tree[0].length
        assert np.isfinite(score)


class TestBranchOptimizer:
    """Test smoothing on the five-taxon tree."""

    def test_likelihood_does_not_decrease(self, gtr_partition):
        partition, tree, context = gtr_partition
        start = context.loglikelihood()
        score = BranchOptimizer(partition, tree).optimize()
        assert -score >= start - 1e-8

    def test_score_matches_recompute(self, gtr_partition):
        """After smoothing, every buffer agrees with the new branch lengths."""
        partition, tree, _ = gtr_partition
        score = BranchOptimizer(partition, tree, tolerance=1e-3).optimize()

        fresh = LikelihoodContext.from_utree(partition, tree)
        fresh.update_all()
        assert fresh.loglikelihood() == pytest.approx(-score, rel=1e-8)

    def test_lengths_stay_in_domain(self, gtr_partition):
        partition, tree, _ = gtr_partition
        BranchOptimizer(partition, tree, branch_length_min=0.01, branch_length_max=1.0).optimize()
        lengths = tree.branch_lengths()
        assert np.all(lengths >= 0.01)
        assert np.all(lengths <= 1.0)

    def test_radius_zero_touches_one_edge(self, gtr_partition):
        partition, tree, _ = gtr_partition
        edge = tree.default_edge()
        before = tree.branch_lengths()

        BranchOptimizer(partition, tree, radius=0).optimize(edge)
        after = tree.branch_lengths()

        others = np.arange(tree.n_edges) != edge.pmatrix_index
        np.testing.assert_array_equal(after[others], before[others])

    def test_single_edge_step_never_worse(self, gtr_partition):
        """One checked Newton step on an edge does not lower the edge lnL."""
        partition, tree, _ = gtr_partition
        optimizer = BranchOptimizer(partition, tree)
        for edge in tree.edges():
            partition.update_partials(tree.traverse_operations(edge))
            before = optimizer.edge_loglikelihood(edge)
            optimizer._loglikelihood = before
            optimizer.optimize_edge(edge)
            assert optimizer.edge_loglikelihood(edge) >= before - 1e-10

    def test_unchecked_rounds_do_not_decrease(self, gtr_partition):
        """Without the per-edge check, lnL still does not drop across whole rounds."""
        partition, tree, context = gtr_partition
        previous = -context.loglikelihood()
        for _ in range(3):
            score = BranchOptimizer(
                partition, tree, smoothings=1, check_improvement=False
            ).optimize()
            assert score <= previous + 1e-8 * max(1.0, abs(previous))
            previous = score

        fresh = LikelihoodContext.from_utree(partition, tree)
        fresh.update_all()
        assert fresh.loglikelihood() == pytest.approx(-previous, rel=1e-8)

    def test_no_update_changes_lengths_only(self, gtr_partition):
        """Without matrix updates the lengths move but the matrices stay put."""
        partition, tree, context = gtr_partition
        start = context.loglikelihood()
        lengths = tree.branch_lengths().copy()
        pmatrix = partition.pmatrix.copy()

        score = BranchOptimizer(partition, tree, keep_update=False).optimize()

        assert not np.allclose(tree.branch_lengths(), lengths)
        np.testing.assert_array_equal(partition.pmatrix, pmatrix)
        assert -score == pytest.approx(start, rel=1e-10)


class TestTreePivot:
    """Test reversible CLV re-orientation."""

    def test_restore_on_exit(self, gtr_partition):
        partition, tree, _ = gtr_partition
        node = tree.default_edge()
        original = partition.clv[node.clv_index].copy()

        with TreePivot(tree, partition, node) as pivot:
            left, _ = tree.children(node)
            pivot.toward(left)
            assert not np.allclose(partition.clv[node.clv_index], original)

        np.testing.assert_allclose(partition.clv[node.clv_index], original, rtol=1e-14)

    def test_restore_on_error(self, gtr_partition):
        partition, tree, _ = gtr_partition
        node = tree.default_edge()
        original = partition.clv[node.clv_index].copy()

        with pytest.raises(RuntimeError):
            with TreePivot(tree, partition, node) as pivot:
                pivot.toward(tree[node.next])
                raise RuntimeError("walk failed")

        np.testing.assert_allclose(partition.clv[node.clv_index], original, rtol=1e-14)

    def test_tip_rejected(self, gtr_partition):
        partition, tree, _ = gtr_partition
        with pytest.raises(ValueError):
            TreePivot(tree, partition, tree[0])
