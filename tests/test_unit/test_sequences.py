"""
Unit tests for alignment parsing and pattern compression.
"""

import numpy as np
import pytest

from phylopt.io.sequences import UNKNOWN_CODE, Alignment


class TestAlignmentParsing:
    """Test PHYLIP and FASTA input."""

    def test_phylip(self, primate_files):
        aln = Alignment.from_phylip(primate_files["alignment"])
        assert aln.n_species == 5
        assert aln.n_sites == 40
        assert aln.names[0] == "Human"
        assert aln.sequences.dtype == np.int8
        assert aln.sequences.shape == (5, 40)

    def test_fasta_autodetect(self, tmp_path):
        fasta = tmp_path / "small.fasta"
        fasta.write_text(">one\nACGT\nAC\n>two\nACGTTT\n")
        aln = Alignment.from_file(fasta)
        assert aln.names == ["one", "two"]
        assert aln.n_sites == 6
        np.testing.assert_array_equal(aln.sequences[0], [0, 1, 2, 3, 0, 1])

    def test_interleaved_phylip_lines(self, tmp_path):
        phylip = tmp_path / "wrapped.phy"
        phylip.write_text("2 8\nseqA\nACGT\nACGT\nseqB ACGT ACGA\n")
        aln = Alignment.from_phylip(phylip)
        assert aln.names == ["seqA", "seqB"]
        assert aln.sequences[1, -1] == 0

    def test_gaps_are_unknown(self):
        aln = Alignment.from_sequences(["a", "b"], ["A-N", "ACU"])
        assert aln.sequences[0, 1] == UNKNOWN_CODE
        assert aln.sequences[0, 2] == UNKNOWN_CODE
        assert aln.sequences[1, 2] == 3

    def test_protein(self):
        aln = Alignment.from_sequences(["a", "b"], ["ARND", "VYWX"], seqtype="aa")
        assert aln.n_states == 20
        np.testing.assert_array_equal(aln.sequences[0], [0, 1, 2, 3])
        assert aln.sequences[1, 3] == UNKNOWN_CODE

    def test_length_mismatch(self, tmp_path):
        phylip = tmp_path / "short.phy"
        phylip.write_text("2 6\nseqA ACGTAC\nseqB ACG\n")
        with pytest.raises(ValueError):
            Alignment.from_phylip(phylip)

    def test_duplicate_names(self):
        with pytest.raises(ValueError, match="Duplicate"):
            Alignment.from_sequences(["a", "a"], ["AC", "GT"])

    def test_unknown_seqtype(self):
        with pytest.raises(ValueError):
            Alignment.from_sequences(["a"], ["AC"], seqtype="codon")


class TestPatterns:
    """Test site pattern compression."""

    def test_weights_count_columns(self, primate_alignment):
        patterns, weights = primate_alignment.compress_patterns()
        assert patterns.shape[0] == 5
        assert patterns.shape[1] == len(weights)
        assert weights.sum() == 40
        assert len(weights) < 40

    def test_patterns_are_unique(self):
        aln = Alignment.from_sequences(["a", "b"], ["AAAC", "AAAG"])
        patterns, weights = aln.compress_patterns()
        assert patterns.shape == (2, 2)
        assert sorted(weights) == [1.0, 3.0]
