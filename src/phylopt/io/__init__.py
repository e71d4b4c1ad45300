"""
Input/Output modules for sequence alignments and phylogenetic trees.

This module provides classes for reading and working with:

- **Sequence alignments**: FASTA and PHYLIP formats, DNA or protein
- **Phylogenetic trees**: Newick format, as parsed (rooted) trees and as
  unrooted arena trees used by the optimizers
"""

from phylopt.io.sequences import Alignment
from phylopt.io.trees import Tree, TreeNode, UTree, UNode

__all__ = ["Alignment", "Tree", "TreeNode", "UTree", "UNode"]
