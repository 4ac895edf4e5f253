"""
Metacell tags: provenance of each quantitative cell, and how peptide tags
combine into protein tags.

Every peptide × sample cell carries one tag from a closed vocabulary. Leaf
tags belong to one of three families:

    Quantified   <- Quant. by direct id, Quant. by recovery
    Missing      <- Missing POV, Missing MEC
    Imputed      <- Imputed POV, Imputed MEC

"Combined tags" exists only at protein level, for proteins built from a mix of
quantified and imputed peptides.

Combination rules for the tags of the peptides of one protein in one sample:

    R1    Missing mixed with Quantified and/or Imputed   -> STOP (conflict)
    R2-4  Missing POV / Missing MEC only                 -> Missing
    R5    a single Quantified-family tag                 -> that tag
    R5bis a single Imputed-family tag                    -> that tag
    R6    several Quantified-family tags                 -> Quantified
    R7    several Imputed-family tags                    -> Imputed
    R8    Quantified and Imputed families mixed          -> Combined tags
          no peptide                                     -> Missing

Generic Missing/Imputed protein tags are then refined to POV/MEC per
condition (see ``set_pov_mec_tags``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Iterable

import numpy as np
import pandas as pd

from .adjacency import AdjacencyMatrix
from .validation import check_labels, conditions_for_samples

logger = logging.getLogger(__name__)

STOP = 'STOP'


class MetacellTag(str, Enum):
    QUANTIFIED = 'Quantified'
    QUANT_DIRECT_ID = 'Quant. by direct id'
    QUANT_RECOVERY = 'Quant. by recovery'
    MISSING = 'Missing'
    MISSING_POV = 'Missing POV'
    MISSING_MEC = 'Missing MEC'
    IMPUTED = 'Imputed'
    IMPUTED_POV = 'Imputed POV'
    IMPUTED_MEC = 'Imputed MEC'
    COMBINED = 'Combined tags'

    def __str__(self) -> str:
        return self.value

    @property
    def parent(self) -> MetacellTag | None:
        return _PARENT.get(self)

    @property
    def family(self) -> MetacellTag:
        """Top-level tag of the hierarchy this tag belongs to."""
        return self.parent or self

    @property
    def color(self) -> str:
        return _COLOR[self]

    @property
    def level(self) -> str:
        """'protein' for protein-only tags, 'peptide' for tags valid at both levels."""
        return 'protein' if self is MetacellTag.COMBINED else 'peptide'


_PARENT = {
    MetacellTag.QUANT_DIRECT_ID: MetacellTag.QUANTIFIED,
    MetacellTag.QUANT_RECOVERY: MetacellTag.QUANTIFIED,
    MetacellTag.MISSING_POV: MetacellTag.MISSING,
    MetacellTag.MISSING_MEC: MetacellTag.MISSING,
    MetacellTag.IMPUTED_POV: MetacellTag.IMPUTED,
    MetacellTag.IMPUTED_MEC: MetacellTag.IMPUTED,
}

_COLOR = {
    MetacellTag.QUANTIFIED: '#0A31D0',
    MetacellTag.QUANT_DIRECT_ID: '#6178D9',
    MetacellTag.QUANT_RECOVERY: '#B9C4F2',
    MetacellTag.MISSING: '#CF8205',
    MetacellTag.MISSING_POV: '#E5A947',
    MetacellTag.MISSING_MEC: '#F1CA8A',
    MetacellTag.IMPUTED: '#A40C0C',
    MetacellTag.IMPUTED_POV: '#E34343',
    MetacellTag.IMPUTED_MEC: '#F59898',
    MetacellTag.COMBINED: '#1E8E05',
}

FAMILIES = (MetacellTag.QUANTIFIED, MetacellTag.MISSING, MetacellTag.IMPUTED)


def tags_in_family(family: MetacellTag | str) -> list[MetacellTag]:
    """All tags whose family is ``family`` (the family tag included)."""
    family = MetacellTag(family)
    return [t for t in MetacellTag if t.family is family]


def metacell_vocabulary(level: str = 'peptide') -> pd.DataFrame:
    """Tag vocabulary for a dataset level, with parent and display color.

    Args:
        level: 'peptide' or 'protein'

    Returns:
        DataFrame with columns node, parent, color
    """
    if level not in ('peptide', 'protein'):
        raise ValueError(f"Unknown dataset level: {level}")
    rows = []
    for tag in MetacellTag:
        if tag.level == 'protein' and level != 'protein':
            continue
        rows.append({
            'node': tag.value,
            'parent': tag.parent.value if tag.parent else None,
            'color': tag.color,
        })
    return pd.DataFrame(rows)


def match_metacell(tags: pd.DataFrame, family: MetacellTag | str) -> pd.DataFrame:
    """Boolean mask of cells whose tag belongs to ``family``."""
    values = [t.value for t in tags_in_family(family)]
    return tags.isin(values)


# ============================================================================
# Combination rules
# ============================================================================

def _as_tag(value) -> MetacellTag:
    try:
        return MetacellTag(value)
    except ValueError:
        raise ValueError(f"Unknown metacell tag: {value!r}") from None


@lru_cache(maxsize=None)
def _combine_distinct(distinct: frozenset) -> str:
    if not distinct:
        return MetacellTag.MISSING

    if MetacellTag.COMBINED in distinct:
        raise ValueError("'Combined tags' is a protein-level tag and cannot be aggregated")

    families = {t.family for t in distinct}

    # R1
    if MetacellTag.MISSING in families and len(families) > 1:
        return STOP
    # R2 - R4
    if families == {MetacellTag.MISSING}:
        return MetacellTag.MISSING
    # R5 / R5bis
    if len(distinct) == 1:
        return next(iter(distinct))
    # R6
    if families == {MetacellTag.QUANTIFIED}:
        return MetacellTag.QUANTIFIED
    # R7
    if families == {MetacellTag.IMPUTED}:
        return MetacellTag.IMPUTED
    # R8
    return MetacellTag.COMBINED


def combine_tags(tags: Iterable) -> str:
    """Combine the tags of the peptides of one protein in one sample.

    The result depends only on the set of distinct tags, never on their order.

    Args:
        tags: Peptide tags (MetacellTag members or their string values)

    Returns:
        The protein tag, or STOP when Missing tags are mixed with
        Quantified/Imputed ones

    Raises:
        ValueError: on an unknown tag or a protein-level tag
    """
    return _combine_distinct(frozenset(_as_tag(t) for t in tags))


# ============================================================================
# POV / MEC post-processing
# ============================================================================

def set_pov_mec_tags(conditions, tags: pd.DataFrame) -> pd.DataFrame:
    """Refine generic Missing / Imputed protein tags into POV or MEC.

    Within each condition, a generic 'Missing' cell becomes 'Missing MEC' when
    the protein is missing in every sample of the condition, and 'Missing POV'
    otherwise. 'Imputed' cells are refined the same way against the Imputed
    family.

    Args:
        conditions: Series (sample -> condition) or sequence aligned with the
            columns of ``tags``
        tags: Protein × sample tag matrix

    Returns:
        New tag matrix
    """
    conditions = conditions_for_samples(conditions, tags.columns)
    result = tags.copy()

    pairs = (
        (MetacellTag.MISSING, MetacellTag.MISSING_POV, MetacellTag.MISSING_MEC),
        (MetacellTag.IMPUTED, MetacellTag.IMPUTED_POV, MetacellTag.IMPUTED_MEC),
    )

    for condition in conditions.unique():
        samples = list(conditions.index[conditions == condition])
        block = tags[samples]
        for generic, pov, mec in pairs:
            in_family = match_metacell(block, generic)
            entire = in_family.all(axis=1).to_numpy()[:, np.newaxis]
            is_generic = (block == generic.value).to_numpy()
            refined = np.broadcast_to(np.where(entire, mec.value, pov.value), is_generic.shape)
            values = result[samples].to_numpy(dtype=object, copy=True)
            values[is_generic] = refined[is_generic]
            result[samples] = values

    return result


# ============================================================================
# Matrix-level aggregation
# ============================================================================

@dataclass
class MetacellAggregationResult:
    """Protein tags plus the proteins whose peptide tags conflict."""
    tags: pd.DataFrame                      # Protein × sample tag matrix
    issues: dict[str, list] | None = None   # Protein -> peptides, None if no conflict

    @property
    def has_issues(self) -> bool:
        return bool(self.issues)


def aggregate_metacell(
    adjacency: AdjacencyMatrix,
    tags: pd.DataFrame,
    conditions=None,
) -> MetacellAggregationResult:
    """Combine peptide tags into protein tags for every protein and sample.

    Args:
        adjacency: Peptide × protein adjacency matrix
        tags: Peptide × sample tag matrix, rows in adjacency order
        conditions: Sample -> condition mapping for the POV/MEC refinement
            (skipped when None)

    Returns:
        MetacellAggregationResult with the protein tag matrix and, if any cell
        resolved to STOP, the issue record
    """
    check_labels(adjacency.peptides, tags.index, 'peptide', 'adjacency matrix', 'tag matrix')

    logger.info(f"Aggregating metacell tags: {adjacency.shape[0]} peptides -> "
                f"{adjacency.shape[1]} proteins, {tags.shape[1]} samples")

    # Encode tags once; unknown values fail here
    vocabulary = list(MetacellTag)
    code_of = {t.value: i for i, t in enumerate(vocabulary)}
    try:
        codes = tags.apply(lambda col: col.map(lambda v: code_of[_as_tag(v).value])).to_numpy(dtype=int)
    except ValueError:
        logger.error("Tag matrix contains values outside the metacell vocabulary")
        raise

    csc = adjacency.matrix.tocsc()
    n_proteins = adjacency.shape[1]
    n_samples = tags.shape[1]
    combined = np.empty((n_proteins, n_samples), dtype=object)

    for j in range(n_proteins):
        rows = csc.indices[csc.indptr[j]:csc.indptr[j + 1]]
        rows = rows[csc.data[csc.indptr[j]:csc.indptr[j + 1]] > 0]
        block = codes[rows]
        for s in range(n_samples):
            distinct = frozenset(vocabulary[c] for c in np.unique(block[:, s]))
            combined[j, s] = str(_combine_distinct(distinct))

    protein_tags = pd.DataFrame(combined, index=adjacency.proteins, columns=tags.columns)

    if conditions is not None:
        protein_tags = set_pov_mec_tags(conditions, protein_tags)

    stop_rows = (protein_tags == STOP).any(axis=1)
    issues = None
    if stop_rows.any():
        issues = {protein: adjacency.members(protein) for protein in protein_tags.index[stop_rows]}
        logger.warning(
            f"Metacell conflict (Missing mixed with Quantified/Imputed) in {len(issues)} proteins"
        )
        for protein in list(issues)[:5]:
            logger.debug(f"  {protein}: {', '.join(map(str, issues[protein]))}")

    return MetacellAggregationResult(tags=protein_tags, issues=issues)
