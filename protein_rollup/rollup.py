"""
Peptide → protein rollup through an adjacency matrix.

Supports:
- Sum: protein = sum of its peptides (missing peptides count as 0)
- Mean: protein = mean of its non-missing peptides
- Top-N: Mean or Sum over the N peptides with the highest median intensity
- Iterative: proportional redistribution of shared peptides between their
  protein groups, repeated until the protein means stop moving
- Per-condition processing, optionally in parallel worker processes

All methods work on linear intensities (peptide × sample) and return a
protein × sample DataFrame. Shared peptides contribute their full intensity to
every protein group they belong to, except in the iterative method where their
contribution is split according to the current protein abundances.
"""

import logging
import multiprocessing as mp
import warnings
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import sparse

from .adjacency import AdjacencyMatrix, count_peptides_used
from .validation import (
    InvalidConfigurationError,
    NonConvergenceWarning,
    check_labels,
    check_top_n,
    conditions_for_samples,
)

logger = logging.getLogger(__name__)

ROLLUP_METHODS = ('Sum', 'Mean', 'TopN', 'Iterative')
INIT_METHODS = ('Sum', 'Mean')
TOPN_METHODS = ('Mean', 'Sum')
# Methods usable inside each iteration; 'onlyN' is accepted as an alias of 'TopN'
ITERATIVE_METHODS = ('Mean', 'TopN', 'onlyN')

DEFAULT_TOLERANCE = 1e-10
DEFAULT_MAX_ITERATIONS = 1000


@dataclass
class IterativeResult:
    """
    Result of iterative proportional rollup.

    The weights matrix is the adjacency matrix after the last redistribution:
    each shared peptide row sums to 1 and is split between its protein groups
    in proportion to their mean abundance.
    """
    abundances: pd.DataFrame          # Protein × sample abundances (linear)
    weights: AdjacencyMatrix          # Final peptide → protein weights
    n_iterations: int
    converged: bool
    history: List[float] = field(default_factory=list)   # Mean |Δ protein mean| per iteration
    weight_history: Optional[List[AdjacencyMatrix]] = None


# ============================================================================
# Single-pass methods
# ============================================================================

def _linear_values(intensities: pd.DataFrame) -> np.ndarray:
    """Intensities as a float array with missing values set to 0."""
    return np.nan_to_num(intensities.to_numpy(dtype=float), nan=0.0)


def rollup_sum(intensities: pd.DataFrame, adjacency: AdjacencyMatrix) -> pd.DataFrame:
    """
    Rollup by summing peptide intensities: Xᵗ · Q.

    Note: Works with linear values, not log2!

    Args:
        intensities: Peptide × sample matrix (linear intensities)
        adjacency: Peptide × protein adjacency matrix

    Returns:
        Protein × sample DataFrame
    """
    summed = adjacency.matrix.T @ _linear_values(intensities)
    return pd.DataFrame(np.asarray(summed), index=adjacency.proteins, columns=intensities.columns)


def rollup_mean(intensities: pd.DataFrame, adjacency: AdjacencyMatrix) -> pd.DataFrame:
    """
    Rollup by averaging the non-missing peptide intensities.

    Proteins without any observed peptide in a sample get NaN.

    Args:
        intensities: Peptide × sample matrix (linear intensities)
        adjacency: Peptide × protein adjacency matrix (binary or weighted)

    Returns:
        Protein × sample DataFrame
    """
    summed = rollup_sum(intensities, adjacency)
    counts = count_peptides_used(adjacency, intensities)
    with np.errstate(divide='ignore', invalid='ignore'):
        mean = summed.to_numpy() / counts.to_numpy()
    mean[counts.to_numpy() == 0] = np.nan
    return pd.DataFrame(mean, index=summed.index, columns=summed.columns)


def select_top_n(
    intensities: pd.DataFrame,
    adjacency: AdjacencyMatrix,
    n: int,
) -> AdjacencyMatrix:
    """
    Keep, for each protein, only its n peptides with the highest median.

    Peptides are ranked by adjacency value × median intensity over all
    samples. Ties keep matrix order. A peptide with a missing value has no
    median and a peptide with a zero score is never selected; a protein with
    no selectable peptide keeps all of its peptides.

    Returns:
        Reduced adjacency matrix (same labels)
    """
    n = check_top_n(n)

    medians = np.median(intensities.to_numpy(dtype=float), axis=1) if intensities.shape[1] \
        else np.full(len(intensities), np.nan)

    csc = adjacency.matrix.tocsc()
    rows, cols, vals = [], [], []
    n_reduced = 0

    for j in range(adjacency.shape[1]):
        start, end = csc.indptr[j], csc.indptr[j + 1]
        members = csc.indices[start:end]
        weights = csc.data[start:end]

        # csc indices are in row order, so a stable sort keeps matrix order on ties
        order = np.argsort(members, kind='stable')
        members, weights = members[order], weights[order]

        scores = weights * medians[members]
        selectable = ~np.isnan(scores) & (scores != 0)
        candidates = np.flatnonzero(selectable)
        ranked = candidates[np.argsort(-scores[candidates], kind='stable')][:n]

        keep = np.zeros(len(members), dtype=bool)
        if len(ranked) > 0:
            keep[ranked] = True
        else:
            keep[:] = True
        n_reduced += int((~keep).sum())

        rows.extend(members[keep])
        cols.extend([j] * int(keep.sum()))
        vals.extend(weights[keep])

    logger.debug(f"Top-{n} selection removed {n_reduced} peptide-protein links")

    matrix = sparse.csr_matrix((vals, (rows, cols)), shape=adjacency.shape)
    return adjacency.with_matrix(matrix)


def rollup_top_n(
    intensities: pd.DataFrame,
    adjacency: AdjacencyMatrix,
    n: int = 10,
    method: str = 'Mean',
) -> pd.DataFrame:
    """
    Rollup using the top N peptides of each protein.

    Args:
        intensities: Peptide × sample matrix (linear intensities)
        adjacency: Peptide × protein adjacency matrix
        n: Number of peptides to keep per protein
        method: 'Mean' or 'Sum' over the kept peptides

    Returns:
        Protein × sample DataFrame
    """
    if method not in TOPN_METHODS:
        raise InvalidConfigurationError(f"Unknown Top-N method: {method}")

    reduced = select_top_n(intensities, adjacency, n)
    if method == 'Mean':
        return rollup_mean(intensities, reduced)
    return rollup_sum(intensities, reduced)


# ============================================================================
# Iterative proportional rollup
# ============================================================================

def _row_means(values: pd.DataFrame) -> np.ndarray:
    """Row means ignoring NaN; rows without any value give 0."""
    arr = values.to_numpy(dtype=float)
    observed = ~np.isnan(arr)
    counts = observed.sum(axis=1)
    sums = np.where(observed, arr, 0.0).sum(axis=1)
    means = np.zeros(len(arr))
    np.divide(sums, counts, out=means, where=counts > 0)
    return means


def redistribute_weights(adjacency: AdjacencyMatrix, protein_means: np.ndarray) -> AdjacencyMatrix:
    """
    Weight each peptide's protein groups by their current mean abundance.

    Each row is renormalised to sum to 1; rows whose weights are all zero
    stay zero.
    """
    scaled = (adjacency.matrix @ sparse.diags(protein_means, 0, shape=(len(protein_means),) * 2)).tocsr()
    row_sums = np.asarray(scaled.sum(axis=1)).ravel()
    inverse = np.zeros_like(row_sums)
    np.divide(1.0, row_sums, out=inverse, where=row_sums != 0)
    weighted = (sparse.diags(inverse, 0, shape=(len(inverse),) * 2) @ scaled).tocsr()
    weighted.eliminate_zeros()
    return adjacency.with_matrix(weighted)


def rollup_iterative(
    intensities: pd.DataFrame,
    adjacency: AdjacencyMatrix,
    init_method: str = 'Sum',
    method: str = 'Mean',
    n: Optional[int] = None,
    tol: float = DEFAULT_TOLERANCE,
    max_iter: int = DEFAULT_MAX_ITERATIONS,
    track_weights: bool = False,
) -> IterativeResult:
    """
    Iterative rollup redistributing shared peptides between protein groups.

    Algorithm:
    1. Initial protein abundances by Sum or Mean on the binary adjacency
    2. Weight every peptide → protein link by the protein's mean abundance
       across samples, normalising each peptide's weights to 1
    3. Recompute abundances with Mean (or Top-N Mean) on the weighted matrix
    4. Stop when the mean absolute change of protein means is <= tol

    Peptides drift towards the protein groups that currently look more
    abundant. The loop is capped at max_iter iterations; when the cap is hit
    the last estimate is returned with converged=False and a
    NonConvergenceWarning.

    Args:
        intensities: Peptide × sample matrix (linear intensities)
        adjacency: Binary peptide × protein adjacency matrix
        init_method: 'Sum' or 'Mean'
        method: 'Mean' or 'TopN' ('onlyN')
        n: Peptides per protein for 'TopN'
        tol: Convergence tolerance on protein means
        max_iter: Maximum number of redistribution rounds
        track_weights: Keep the weight matrix of every iteration

    Returns:
        IterativeResult
    """
    if init_method not in INIT_METHODS:
        raise InvalidConfigurationError(f"Unknown init method: {init_method}")
    if method not in ITERATIVE_METHODS:
        raise InvalidConfigurationError(f"Unknown iterative method: {method}")
    if method in ('TopN', 'onlyN'):
        n = check_top_n(n, 'Iterative Top-N rollup')
    if max_iter < 1:
        raise InvalidConfigurationError(f"max_iter must be >= 1, got {max_iter}")

    if init_method == 'Sum':
        abundances = rollup_sum(intensities, adjacency)
    else:
        abundances = rollup_mean(intensities, adjacency)

    history = []
    weight_history = [] if track_weights else None
    weights = adjacency
    converged = False
    n_iter = 0

    for n_iter in range(1, max_iter + 1):
        protein_means = _row_means(abundances)

        weights = redistribute_weights(adjacency, protein_means)
        if track_weights:
            weight_history.append(weights)

        if method == 'Mean':
            abundances = rollup_mean(intensities, weights)
        else:
            abundances = rollup_top_n(intensities, weights, n=n, method='Mean')

        new_means = _row_means(abundances)
        delta = float(np.mean(np.abs(new_means - protein_means))) if len(new_means) else 0.0
        history.append(delta)
        logger.debug(f"Iteration {n_iter}: mean |delta| = {delta:.3e}")

        if delta <= tol:
            converged = True
            break

    if converged:
        logger.info(f"Iterative rollup converged after {n_iter} iterations")
    else:
        msg = (f"Iterative rollup did not converge within {max_iter} iterations "
               f"(last change {history[-1]:.3e}, tolerance {tol:.1e})")
        logger.warning(msg)
        warnings.warn(msg, NonConvergenceWarning, stacklevel=2)

    return IterativeResult(
        abundances=abundances,
        weights=weights,
        n_iterations=n_iter,
        converged=converged,
        history=history,
        weight_history=weight_history,
    )


# ============================================================================
# Dispatch and per-condition processing
# ============================================================================

def rollup_to_proteins(
    intensities: pd.DataFrame,
    adjacency: AdjacencyMatrix,
    method: str = 'Sum',
    init_method: str = 'Sum',
    n: Optional[int] = None,
    topn_method: str = 'Mean',
    iterative_method: str = 'Mean',
    tol: float = DEFAULT_TOLERANCE,
    max_iter: int = DEFAULT_MAX_ITERATIONS,
) -> Tuple[pd.DataFrame, Optional[IterativeResult]]:
    """
    Aggregate peptide intensities to protein groups with the chosen method.

    Args:
        intensities: Peptide × sample matrix (linear intensities)
        adjacency: Peptide × protein adjacency matrix
        method: 'Sum', 'Mean', 'TopN' or 'Iterative'
        init_method: Initialisation of the iterative method
        n: Peptides per protein for Top-N (and iterative Top-N)
        topn_method: 'Mean' or 'Sum' for Top-N
        iterative_method: 'Mean' or 'TopN' inside the iterative loop
        tol: Iterative convergence tolerance
        max_iter: Iterative iteration cap

    Returns:
        Tuple of:
        - Protein × sample DataFrame (linear)
        - IterativeResult for the iterative method, else None
    """
    check_labels(intensities.index, adjacency.peptides, 'peptide',
                 'intensity matrix', 'adjacency matrix')

    logger.info(f"Rolling up {adjacency.shape[0]} peptides to {adjacency.shape[1]} "
                f"protein groups using {method}")

    if method == 'Sum':
        return rollup_sum(intensities, adjacency), None
    elif method == 'Mean':
        return rollup_mean(intensities, adjacency), None
    elif method == 'TopN':
        return rollup_top_n(intensities, adjacency, n=n, method=topn_method), None
    elif method == 'Iterative':
        result = rollup_iterative(
            intensities, adjacency,
            init_method=init_method,
            method=iterative_method,
            n=n,
            tol=tol,
            max_iter=max_iter,
        )
        return result.abundances, result
    else:
        raise InvalidConfigurationError(f"Unknown rollup method: {method}")


def _worker_rollup_condition(args: tuple) -> Tuple[str, pd.DataFrame, Optional[IterativeResult]]:
    """Roll up one condition's columns. Top-level so it can be pickled."""
    condition, intensities, adjacency, params = args
    abundances, detail = rollup_to_proteins(intensities, adjacency, **params)
    return condition, abundances, detail


def rollup_by_condition(
    intensities: pd.DataFrame,
    adjacency: AdjacencyMatrix,
    conditions,
    n_workers: int = 1,
    **params,
) -> Tuple[pd.DataFrame, Dict[str, Optional[IterativeResult]]]:
    """
    Roll up each condition's samples independently.

    Results are merged by column label back into the original sample order,
    so the output does not depend on which worker finishes first.

    Args:
        intensities: Peptide × sample matrix (linear intensities)
        adjacency: Peptide × protein adjacency matrix
        conditions: Sample -> condition mapping (Series/dict) or a sequence
            aligned with the columns of ``intensities``
        n_workers: Worker processes (1 = in-process, 0 = all CPUs)
        **params: Passed to rollup_to_proteins

    Returns:
        Tuple of:
        - Protein × sample DataFrame in original column order
        - Dict of condition -> IterativeResult (None for single-pass methods)
    """
    conditions = conditions_for_samples(conditions, intensities.columns)
    unique_conditions = list(conditions.unique())

    tasks = []
    for condition in unique_conditions:
        samples = list(conditions.index[conditions == condition])
        tasks.append((condition, intensities[samples], adjacency, params))

    n_workers = n_workers if n_workers > 0 else mp.cpu_count()
    n_workers = min(n_workers, len(tasks)) if tasks else 1
    logger.info(f"Rolling up {len(tasks)} conditions"
                f"{f' with {n_workers} workers' if n_workers > 1 else ''}")

    blocks: Dict[str, pd.DataFrame] = {}
    details: Dict[str, Optional[IterativeResult]] = {}

    if n_workers == 1:
        for task in tasks:
            condition, abundances, detail = _worker_rollup_condition(task)
            blocks[condition] = abundances
            details[condition] = detail
    else:
        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            futures = [executor.submit(_worker_rollup_condition, t) for t in tasks]
            for future in as_completed(futures):
                try:
                    condition, abundances, detail = future.result()
                except Exception as e:
                    logger.error(f"Worker error: {e}")
                    raise
                blocks[condition] = abundances
                details[condition] = detail

    if blocks:
        merged = pd.concat([blocks[c] for c in unique_conditions], axis=1)
    else:
        merged = pd.DataFrame(index=adjacency.proteins)
    merged = merged.reindex(columns=intensities.columns)

    return merged, {c: details[c] for c in unique_conditions}
