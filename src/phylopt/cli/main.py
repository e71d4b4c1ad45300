"""Main CLI application for phylopt."""

import typer
from pathlib import Path
from typing import Optional
from enum import Enum

app = typer.Typer(
    name="phylopt",
    help="Maximum-likelihood optimization of substitution models and branch lengths",
    no_args_is_help=True,
)


class SeqType(str, Enum):
    """Sequence data type."""
    DNA = "dna"
    AA = "aa"


class OutputFormat(str, Enum):
    """Output format."""
    TEXT = "text"
    JSON = "json"
    NEWICK = "newick"


@app.command()
def optimize(
    alignment: Path = typer.Option(
        ...,
        "--alignment", "-s",
        help="Alignment file (FASTA or PHYLIP)",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    tree: Path = typer.Option(
        ...,
        "--tree", "-t",
        help="Tree file (Newick format)",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    seqtype: SeqType = typer.Option(
        SeqType.DNA,
        "--seqtype",
        help="Sequence data type",
    ),
    categories: int = typer.Option(
        4,
        "--categories", "-c",
        help="Number of Gamma rate categories (1 disables rate heterogeneity)",
        min=1,
    ),
    pinv: bool = typer.Option(
        False,
        "--pinv",
        help="Model a proportion of invariant sites",
    ),
    tolerance: float = typer.Option(
        0.1,
        "--tolerance",
        help="Stop when a round improves lnL by less than this",
        min=0.0,
    ),
    smoothings: int = typer.Option(
        32,
        "--smoothings",
        help="Maximum branch-length smoothing rounds",
        min=1,
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output", "-o",
        help="Output file (default: stdout)",
    ),
    format: OutputFormat = typer.Option(
        OutputFormat.TEXT,
        "--format",
        help="Output format",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Show optimization progress",
    ),
):
    """
    Optimize model parameters and branch lengths on a fixed tree.

    Example:
        phylopt optimize -s alignment.phy -t tree.nwk
        phylopt optimize -s alignment.fasta -t tree.nwk --pinv --format json
    """
    from .commands.optimize import run_optimize

    run_optimize(
        alignment=alignment,
        tree=tree,
        seqtype=seqtype.value,
        categories=categories,
        pinv=pinv,
        tolerance=tolerance,
        smoothings=smoothings,
        output=output,
        format=format.value,
        verbose=verbose,
    )


@app.command()
def empirical(
    alignment: Path = typer.Option(
        ...,
        "--alignment", "-s",
        help="Alignment file (FASTA or PHYLIP)",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    seqtype: SeqType = typer.Option(
        SeqType.DNA,
        "--seqtype",
        help="Sequence data type",
    ),
):
    """
    Print empirical frequencies, substitution rates and invariant sites.

    Example:
        phylopt empirical -s alignment.phy
    """
    from .commands.empirical import run_empirical

    run_empirical(alignment=alignment, seqtype=seqtype.value)


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
