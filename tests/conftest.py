"""
Pytest configuration and shared fixtures.
"""

import pytest
from typer.testing import CliRunner

from phylopt.api import build_partition
from phylopt.io.sequences import Alignment
from phylopt.io.trees import UTree
from phylopt.optimize.codec import LikelihoodContext


# Five hominoid-like sequences, 40 sites
PRIMATE_SEQUENCES = {
    "Human": "ACGTTGCAAGCTAGCTAGGATCCGATCGATCGTACGATCG",
    "Chimp": "ACGTTGCAAGCTAGCTAGGATCCGATCGATCGTACGATCA",
    "Gorilla": "ACGTTGCTAGCTAGCAAGGATCCGATCGTTCGTACGATCG",
    "Orang": "ACGATGCTAGCTTGCAAGGATCAGATCGTTCGAACGTTCG",
    "Gibbon": "ACGATGCTAGGTTGCAAGCATCAGATGGTTCGAACGTTCC",
}

PRIMATE_TREE = "((Human:0.02,Chimp:0.03):0.05,Gorilla:0.06,(Orang:0.1,Gibbon:0.12):0.04);"


@pytest.fixture
def cli_runner():
    """CLI test runner for Typer apps."""
    return CliRunner()


@pytest.fixture
def primate_alignment():
    """Five-taxon DNA alignment."""
    return Alignment.from_sequences(
        list(PRIMATE_SEQUENCES), list(PRIMATE_SEQUENCES.values()), seqtype="dna"
    )


@pytest.fixture
def primate_tree():
    """Unrooted tree matching the primate alignment."""
    return UTree.from_newick(PRIMATE_TREE)


@pytest.fixture
def primate_files(tmp_path):
    """Write the primate alignment (PHYLIP) and tree (Newick) to disk."""
    aln_file = tmp_path / "primates.phy"
    lines = [f"{len(PRIMATE_SEQUENCES)} 40"]
    for name, seq in PRIMATE_SEQUENCES.items():
        lines.append(f"{name:<10}{seq}")
    aln_file.write_text("\n".join(lines) + "\n")

    tree_file = tmp_path / "primates.nwk"
    tree_file.write_text(PRIMATE_TREE + "\n")
    return {"alignment": aln_file, "tree": tree_file}


@pytest.fixture
def gtr_partition(primate_alignment, primate_tree):
    """GTR+G4 partition on the primate tree, with all buffers up to date."""
    partition = build_partition(primate_alignment, primate_tree, categories=4)
    partition.set_subst_params(0, [1.2, 3.5, 0.8, 1.1, 4.2, 1.0])
    partition.set_frequencies(0, [0.22, 0.28, 0.26, 0.24])
    partition.set_category_rates([0.1, 0.45, 1.0, 2.45])
    partition.set_category_weights([0.25, 0.25, 0.25, 0.25])

    context = LikelihoodContext.from_utree(partition, primate_tree)
    context.update_all()
    return partition, primate_tree, context


@pytest.fixture
def jc_pair():
    """Factory for two sequences differing at ``n_diff`` of ``n_sites`` positions."""
    def make(n_sites: int, n_diff: int) -> Alignment:
        seq_a = "A" * n_sites
        seq_b = "C" * n_diff + "A" * (n_sites - n_diff)
        return Alignment.from_sequences(["A", "B"], [seq_a, seq_b])
    return make


@pytest.fixture
def primate_newick():
    """Newick string of the primate tree."""
    return PRIMATE_TREE


@pytest.fixture
def primate_sequences():
    """Name -> sequence mapping of the primate alignment."""
    return dict(PRIMATE_SEQUENCES)
