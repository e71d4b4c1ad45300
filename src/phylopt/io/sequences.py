"""
Sequence file parsing and alignment handling.
"""

import re
from dataclasses import dataclass
from pathlib import Path

import numpy as np

# Nucleotide encoding (GTR rate order AC, AG, AT, CG, CT, GT)
NUCLEOTIDES = "ACGT"
NUCLEOTIDE_TO_INDEX = {nt: i for i, nt in enumerate(NUCLEOTIDES)}
NUCLEOTIDE_TO_INDEX["U"] = NUCLEOTIDE_TO_INDEX["T"]

# Amino acid encoding
AMINO_ACIDS = "ARNDCQEGHILKMFPSTWYV"
AA_TO_INDEX = {aa: i for i, aa in enumerate(AMINO_ACIDS)}

# Gaps, ambiguity codes and anything unrecognised
UNKNOWN_CODE = -1

SEQTYPE_STATES = {"dna": 4, "aa": 20}


@dataclass
class Alignment:
    """
    Multiple sequence alignment.

    Attributes
    ----------
    names : list[str]
        Sequence names/labels
    sequences : ndarray, shape (n_species, n_sites)
        State indices, ``UNKNOWN_CODE`` for gaps and ambiguous characters
    n_species : int
        Number of sequences
    n_sites : int
        Alignment length
    seqtype : str
        'dna' or 'aa'
    """

    names: list[str]
    sequences: np.ndarray
    n_species: int
    n_sites: int
    seqtype: str

    @property
    def n_states(self) -> int:
        return SEQTYPE_STATES[self.seqtype]

    @classmethod
    def from_file(cls, filepath: Path | str, seqtype: str = "dna") -> "Alignment":
        """Read FASTA (first character ``>``) or sequential PHYLIP."""
        filepath = Path(filepath)
        with open(filepath, "r") as f:
            first = f.read(1)
        if first == ">":
            return cls.from_fasta(filepath, seqtype=seqtype)
        return cls.from_phylip(filepath, seqtype=seqtype)

    @classmethod
    def from_phylip(cls, filepath: Path | str, seqtype: str = "dna") -> "Alignment":
        """
        Parse a PHYLIP alignment.

        The header holds the number of sequences and their length. Each
        record is either ``name sequence`` on one line or a name line
        followed by sequence lines, until the declared length is reached.

        Examples
        --------
        >>> aln = Alignment.from_phylip("primates.phy")
        >>> aln.n_species
        5
        """
        filepath = Path(filepath)
        with open(filepath, "r") as f:
            lines = [line.rstrip() for line in f.readlines()]

        header = lines[0].split()
        n_species = int(header[0])
        n_chars = int(header[1])

        names = []
        sequences_raw = []
        i = 1
        while i < len(lines) and len(names) < n_species:
            line = lines[i].strip()
            i += 1
            if not line:
                continue

            fields = line.split(None, 1)
            names.append(fields[0])
            seq_data = re.sub(r"\s", "", fields[1]).upper() if len(fields) > 1 else ""

            while len(seq_data) < n_chars and i < len(lines):
                line = lines[i].strip()
                i += 1
                seq_data += re.sub(r"\s", "", line).upper()

            sequences_raw.append(seq_data)

        if len(names) != n_species:
            raise ValueError(f"Expected {n_species} sequences, found {len(names)}")
        for name, seq in zip(names, sequences_raw):
            if len(seq) != n_chars:
                raise ValueError(f"Sequence {name} has length {len(seq)}, expected {n_chars}")

        return cls._build(names, sequences_raw, seqtype)

    @classmethod
    def from_fasta(cls, filepath: Path | str, seqtype: str = "dna") -> "Alignment":
        """Parse a FASTA alignment; all sequences must have the same length."""
        filepath = Path(filepath)
        names = []
        sequences_raw = []

        with open(filepath, "r") as f:
            current_name = None
            current_seq = []
            for line in f:
                line = line.strip()
                if not line:
                    continue
                if line.startswith(">"):
                    if current_name is not None:
                        names.append(current_name)
                        sequences_raw.append("".join(current_seq))
                    current_name = line[1:].strip()
                    current_seq = []
                else:
                    current_seq.append(re.sub(r"\s", "", line).upper())
            if current_name is not None:
                names.append(current_name)
                sequences_raw.append("".join(current_seq))

        if not names:
            raise ValueError("No sequences found in FASTA file")
        lengths = {len(seq) for seq in sequences_raw}
        if len(lengths) > 1:
            raise ValueError(f"Sequences have different lengths: {sorted(lengths)}")

        return cls._build(names, sequences_raw, seqtype)

    @classmethod
    def from_sequences(
        cls, names: list[str], sequences: list[str], seqtype: str = "dna"
    ) -> "Alignment":
        """Build an alignment from in-memory strings."""
        if len(names) != len(sequences):
            raise ValueError("names and sequences must have the same length")
        if len({len(seq) for seq in sequences}) > 1:
            raise ValueError("Sequences have different lengths")
        return cls._build(list(names), [seq.upper() for seq in sequences], seqtype)

    @classmethod
    def _build(cls, names: list[str], sequences_raw: list[str], seqtype: str) -> "Alignment":
        if seqtype == "dna":
            table = NUCLEOTIDE_TO_INDEX
        elif seqtype == "aa":
            table = AA_TO_INDEX
        else:
            raise ValueError(f"Unknown seqtype: {seqtype}")
        if len(set(names)) != len(names):
            raise ValueError("Duplicate sequence names in alignment")

        n_sites = len(sequences_raw[0]) if sequences_raw else 0
        encoded = np.full((len(names), n_sites), UNKNOWN_CODE, dtype=np.int8)
        for i, seq in enumerate(sequences_raw):
            for j, char in enumerate(seq):
                encoded[i, j] = table.get(char, UNKNOWN_CODE)

        return cls(
            names=names,
            sequences=encoded,
            n_species=len(names),
            n_sites=n_sites,
            seqtype=seqtype,
        )

    def compress_patterns(self) -> tuple[np.ndarray, np.ndarray]:
        """
        Collapse identical columns.

        Returns
        -------
        patterns : ndarray, shape (n_species, n_patterns)
        weights : ndarray, shape (n_patterns,)
            Number of columns sharing each pattern
        """
        columns, counts = np.unique(self.sequences.T, axis=0, return_counts=True)
        return np.ascontiguousarray(columns.T), counts.astype(float)

    def __repr__(self) -> str:
        return (
            f"Alignment(n_species={self.n_species}, n_sites={self.n_sites}, "
            f"seqtype='{self.seqtype}')"
        )
