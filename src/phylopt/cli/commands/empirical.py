"""Empirical estimates command implementation."""

import sys
from pathlib import Path

from phylopt.core.msa import empirical_frequencies, empirical_invariant_sites, empirical_subst_rates
from phylopt.core.partition import Partition
from phylopt.io.sequences import Alignment


def run_empirical(alignment: Path, seqtype: str):
    """Print empirical starting values for an alignment."""
    try:
        aln = Alignment.from_file(alignment, seqtype=seqtype)
    except (OSError, ValueError) as e:
        print(f"Error: Could not load alignment from {alignment}", file=sys.stderr)
        print(f"Details: {e}", file=sys.stderr)
        sys.exit(1)

    if aln.n_species < 2:
        print("Error: At least 2 sequences are required", file=sys.stderr)
        sys.exit(1)

    patterns, weights = aln.compress_patterns()
    partition = Partition(
        tips=aln.n_species,
        clv_buffers=aln.n_species,
        states=aln.n_states,
        sites=patterns.shape[1],
        rate_matrices=1,
        prob_matrices=1,
        rate_cats=1,
        scale_buffers=0,
        pattern_weights=weights,
    )
    for tip in range(aln.n_species):
        partition.set_tip_states(tip, patterns[tip])

    freqs = empirical_frequencies(partition)
    rates = empirical_subst_rates(partition)
    pinv = empirical_invariant_sites(partition)

    print(f"Sequences: {aln.n_species}  Sites: {aln.n_sites}  Patterns: {patterns.shape[1]}")
    print(f"Frequencies: {' '.join(f'{f:.6f}' for f in freqs)}")
    print(f"Substitution rates: {' '.join(f'{r:.6f}' for r in rates)}")
    print(f"Invariant sites: {pinv:.6f}")
