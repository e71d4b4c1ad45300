"""Optimize command implementation."""

import logging
import sys
from pathlib import Path
from typing import Optional

from phylopt import optimize_model
from phylopt.errors import PhyloptError
from phylopt.io.sequences import Alignment
from phylopt.io.trees import UTree


def run_optimize(
    alignment: Path,
    tree: Path,
    seqtype: str,
    categories: int,
    pinv: bool,
    tolerance: float,
    smoothings: int,
    output: Optional[Path],
    format: str,
    verbose: bool,
):
    """Optimize a model on one alignment and tree."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    # Load data
    try:
        aln = Alignment.from_file(alignment, seqtype=seqtype)
    except (OSError, ValueError) as e:
        print(f"Error: Could not load alignment from {alignment}", file=sys.stderr)
        print(f"Details: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        utree = UTree.from_file(tree)
    except (OSError, ValueError) as e:
        print(f"Error: Could not load tree from {tree}", file=sys.stderr)
        print(f"Details: {e}", file=sys.stderr)
        sys.exit(1)

    if verbose:
        print(f"Alignment: {alignment} ({aln.n_species} x {aln.n_sites})", file=sys.stderr)
        print(f"Tree:      {tree} ({utree.n_tips} tips)", file=sys.stderr)
        print(file=sys.stderr)

    try:
        result = optimize_model(
            aln,
            utree,
            seqtype=seqtype,
            categories=categories,
            pinv=pinv,
            tolerance=tolerance,
            smoothings=smoothings,
            verbose=verbose,
        )
    except (PhyloptError, ValueError) as e:
        print("Error: Optimization failed", file=sys.stderr)
        print(f"Details: {e}", file=sys.stderr)
        sys.exit(1)

    # Format output
    if format == "json":
        output_text = result.to_json()
    elif format == "newick":
        output_text = result.newick
    else:  # text
        output_text = result.summary()

    # Write output
    if output:
        with open(output, 'w') as f:
            f.write(output_text + "\n")
        print(f"Results written to {output}", file=sys.stderr)
    else:
        print(output_text)
