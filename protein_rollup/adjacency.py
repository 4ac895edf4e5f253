"""Peptide → protein group adjacency matrices.

Builds the binary peptide × protein-group membership matrix from
delimiter-separated protein group identifiers, splits it into specific and
shared sub-matrices, and derives the per-protein peptide counts reported
alongside aggregated protein intensities.

The matrix is stored sparse (CSR, peptides as rows): protein-group fan-out is
small, so most entries are zero.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from scipy import sparse

logger = logging.getLogger(__name__)

# Protein group identifiers are separated by commas and/or semicolons
PROTEIN_ID_SEPARATOR = re.compile(r"[,;]+")


@dataclass(frozen=True)
class AdjacencyMatrix:
    """Sparse peptide × protein-group matrix with row and column labels.

    Values are 0/1 for membership matrices built from protein group strings.
    The iterative aggregation re-weights the same structure with row-normalised
    float weights, so values are not restricted to {0, 1}.
    """

    matrix: sparse.csr_matrix
    peptides: pd.Index
    proteins: pd.Index

    def __post_init__(self):
        matrix = sparse.csr_matrix(self.matrix)
        peptides = pd.Index(self.peptides)
        proteins = pd.Index(self.proteins)
        if matrix.shape != (len(peptides), len(proteins)):
            raise ValueError(
                f"Adjacency matrix shape {matrix.shape} does not match "
                f"{len(peptides)} peptides x {len(proteins)} proteins"
            )
        if peptides.has_duplicates:
            raise ValueError("Adjacency matrix has duplicate peptide labels")
        if proteins.has_duplicates:
            raise ValueError("Adjacency matrix has duplicate protein labels")
        object.__setattr__(self, "matrix", matrix)
        object.__setattr__(self, "peptides", peptides)
        object.__setattr__(self, "proteins", proteins)

    @property
    def shape(self) -> tuple[int, int]:
        return self.matrix.shape

    @property
    def degrees(self) -> np.ndarray:
        """Number of protein groups each peptide belongs to."""
        return np.asarray((self.matrix != 0).sum(axis=1)).ravel()

    def row_sums(self) -> np.ndarray:
        return np.asarray(self.matrix.sum(axis=1)).ravel()

    def col_sums(self) -> np.ndarray:
        return np.asarray(self.matrix.sum(axis=0)).ravel()

    def with_matrix(self, matrix) -> AdjacencyMatrix:
        """Same labels, new values."""
        return AdjacencyMatrix(matrix, self.peptides, self.proteins)

    def members(self, protein) -> list:
        """Peptide labels with a nonzero entry in the given protein column."""
        j = self.proteins.get_loc(protein)
        column = self.matrix[:, j].toarray().ravel()
        return list(self.peptides[column > 0])

    def restrict(self, peptides) -> AdjacencyMatrix:
        """Row subset, in the order of ``peptides``."""
        rows = self.peptides.get_indexer(peptides)
        if (rows < 0).any():
            unknown = [p for p, r in zip(peptides, rows) if r < 0]
            raise KeyError(f"Peptides not in adjacency matrix: {unknown[:5]}")
        return AdjacencyMatrix(self.matrix[rows], pd.Index(peptides), self.proteins)

    def to_dataframe(self) -> pd.DataFrame:
        """Dense peptide × protein DataFrame."""
        return pd.DataFrame(self.matrix.toarray(), index=self.peptides, columns=self.proteins)

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> AdjacencyMatrix:
        """Build from a dense peptide × protein DataFrame (NaN treated as 0)."""
        values = df.fillna(0).to_numpy(dtype=float)
        return cls(sparse.csr_matrix(values), df.index, df.columns)


def parse_protein_ids(value) -> list[str]:
    """Split a protein group string into trimmed, non-empty, distinct identifiers.

    Order of first appearance is kept.
    """
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return []
    tokens = [t.strip() for t in PROTEIN_ID_SEPARATOR.split(str(value))]
    return list(dict.fromkeys(t for t in tokens if t))


def build_adjacency_matrix(
    peptide_table: pd.DataFrame,
    protein_col: str,
    unique_only: bool = False,
    peptide_col: str | None = None,
) -> AdjacencyMatrix:
    """Build the binary peptide × protein-group adjacency matrix.

    Args:
        peptide_table: One row per peptide
        protein_col: Column with comma/semicolon separated protein group IDs
        unique_only: If True, rows of shared peptides (degree > 1) are zeroed
        peptide_col: Column with peptide IDs (default: the table index)

    Returns:
        AdjacencyMatrix with peptides in table order and protein groups sorted
    """
    if protein_col not in peptide_table.columns:
        raise KeyError(f"Protein column '{protein_col}' not found")

    if peptide_col is None:
        peptides = pd.Index(peptide_table.index)
    else:
        peptides = pd.Index(peptide_table[peptide_col])
    if peptides.has_duplicates:
        dup = peptides[peptides.duplicated()].unique()
        raise ValueError(f"Duplicate peptide IDs: {list(dup[:5])}")

    memberships = [parse_protein_ids(v) for v in peptide_table[protein_col]]
    proteins = pd.Index(sorted({p for ids in memberships for p in ids}))
    col_of = {p: j for j, p in enumerate(proteins)}

    rows, cols = [], []
    for i, ids in enumerate(memberships):
        if unique_only and len(ids) > 1:
            continue
        for p in ids:
            rows.append(i)
            cols.append(col_of[p])

    matrix = sparse.csr_matrix(
        (np.ones(len(rows)), (rows, cols)),
        shape=(len(peptides), len(proteins)),
    )

    n_shared = sum(1 for ids in memberships if len(ids) > 1)
    logger.info(
        f"Built adjacency matrix: {len(peptides)} peptides x {len(proteins)} protein groups "
        f"({n_shared} shared peptides{', removed' if unique_only else ''})"
    )
    n_orphans = sum(1 for ids in memberships if not ids)
    if n_orphans:
        logger.warning(f"{n_orphans} peptides have no protein group")

    return AdjacencyMatrix(matrix, peptides, proteins)


# ============================================================================
# Specific / shared partition
# ============================================================================

def _keep_rows(adjacency: AdjacencyMatrix, keep: np.ndarray) -> AdjacencyMatrix:
    n = len(keep)
    matrix = (sparse.diags(keep.astype(float), 0, shape=(n, n)) @ adjacency.matrix).tocsr()
    matrix.eliminate_zeros()
    return adjacency.with_matrix(matrix)


def split_adjacency_matrix(
    adjacency: AdjacencyMatrix,
) -> tuple[AdjacencyMatrix, AdjacencyMatrix]:
    """Split into shared-peptide and specific-peptide sub-matrices.

    Rows with more than one protein group go to the shared matrix, rows with
    exactly one to the specific matrix. Both keep the full shape; a matrix
    without shared (or specific) peptides yields an all-zero partner.

    Returns:
        Tuple of (shared, specific)
    """
    degrees = adjacency.degrees
    shared = _keep_rows(adjacency, degrees > 1)
    specific = _keep_rows(adjacency, degrees == 1)
    return shared, specific


# ============================================================================
# Peptide counts
# ============================================================================

def _observed_mask(intensities: pd.DataFrame) -> np.ndarray:
    return intensities.notna().to_numpy(dtype=float)


def count_peptides_used(adjacency: AdjacencyMatrix, intensities: pd.DataFrame) -> pd.DataFrame:
    """Number of non-missing peptide values behind each protein and sample.

    For a weighted adjacency matrix this is the sum of the weights of the
    observed peptides.
    """
    counts = adjacency.matrix.T @ _observed_mask(intensities)
    return pd.DataFrame(np.asarray(counts), index=adjacency.proteins, columns=intensities.columns)


def count_peptides_used_detailed(
    adjacency: AdjacencyMatrix,
    intensities: pd.DataFrame,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Shared and specific peptide counts per protein and sample.

    Returns:
        Tuple of (n_shared, n_specific) protein × sample DataFrames
    """
    shared, specific = split_adjacency_matrix(adjacency)
    return count_peptides_used(shared, intensities), count_peptides_used(specific, intensities)


def count_peptides(adjacency: AdjacencyMatrix) -> pd.DataFrame:
    """Total, shared and specific peptide counts per protein group."""
    shared, specific = split_adjacency_matrix(adjacency)
    return pd.DataFrame({
        'nTotal': adjacency.col_sums(),
        'nShared': shared.col_sums(),
        'nSpec': specific.col_sums(),
    }, index=adjacency.proteins)


@dataclass
class ProteinsStats:
    """How protein groups are supported by specific and shared peptides."""
    n_peptides: int
    n_specific_peptides: int
    n_shared_peptides: int
    only_specific: list = field(default_factory=list)   # Proteins with specific peptides only
    only_shared: list = field(default_factory=list)     # Proteins with shared peptides only
    mixed: list = field(default_factory=list)           # Proteins with both

    @property
    def n_proteins(self) -> int:
        return len(self.only_specific) + len(self.only_shared) + len(self.mixed)

    def to_dict(self) -> dict:
        return {
            'NbPeptides': self.n_peptides,
            'NbSpecificPeptides': self.n_specific_peptides,
            'NbSharedPeptides': self.n_shared_peptides,
            'NbProt': self.n_proteins,
            'ProtOnlyUniquePep': ';'.join(map(str, self.only_specific)),
            'ProtOnlySharedPep': ';'.join(map(str, self.only_shared)),
            'ProtMixPep': ';'.join(map(str, self.mixed)),
        }


def get_proteins_stats(adjacency: AdjacencyMatrix) -> ProteinsStats:
    """Classify protein groups by the kind of peptides that define them."""
    degrees = adjacency.degrees
    shared, specific = split_adjacency_matrix(adjacency)

    has_shared = shared.col_sums() > 0
    has_specific = specific.col_sums() > 0

    proteins = adjacency.proteins
    return ProteinsStats(
        n_peptides=int((degrees >= 1).sum()),
        n_specific_peptides=int((degrees == 1).sum()),
        n_shared_peptides=int((degrees > 1).sum()),
        only_specific=list(proteins[has_specific & ~has_shared]),
        only_shared=list(proteins[has_shared & ~has_specific]),
        mixed=list(proteins[has_shared & has_specific]),
    )


def build_column_to_protein_dataset(
    peptide_data: pd.DataFrame,
    adjacency: AdjacencyMatrix,
    column: str,
    proteins: list | None = None,
) -> pd.Series:
    """Carry a peptide metadata column over to protein groups.

    Each protein gets the distinct values of ``column`` over its member
    peptides, joined with ", ".

    Args:
        peptide_data: Peptide metadata indexed like the adjacency rows
        adjacency: Adjacency matrix used for the aggregation
        column: Column of ``peptide_data`` to carry over
        proteins: Protein groups to report (default: all columns)

    Returns:
        Series indexed by protein group
    """
    if proteins is None:
        proteins = list(adjacency.proteins)

    values = {}
    for protein in proteins:
        members = adjacency.members(protein)
        distinct = dict.fromkeys(str(v) for v in peptide_data.loc[members, column])
        values[protein] = ', '.join(distinct)

    return pd.Series(values, name=column, dtype=object)
