"""
Validation of aggregation inputs.

The aggregation core trusts nothing about the matrices it is handed:
- Intensity and tag matrices must share peptide and sample labels
- The adjacency matrix must be indexed by the same peptides
- Every sample must belong to exactly one condition

Failures are raised immediately, before any computation.
"""

import logging
import numbers
from typing import Iterable, Optional

import pandas as pd

logger = logging.getLogger(__name__)


class InvalidConfigurationError(ValueError):
    """Unknown aggregation method or missing/invalid method parameter."""


class ShapeMismatchError(ValueError):
    """Row or column labels of the aggregation inputs disagree."""


class NonConvergenceWarning(UserWarning):
    """Iterative aggregation stopped at its iteration cap."""


def check_top_n(n, context: str = 'Top-N rollup') -> int:
    """
    Require a positive integer peptide count.

    Returns:
        n as a plain int

    Raises:
        InvalidConfigurationError: if n is missing, not an integer, or < 1
    """
    if n is None:
        raise InvalidConfigurationError(f"Parameter n is required for {context}")
    if isinstance(n, bool) or not isinstance(n, numbers.Integral) or n < 1:
        raise InvalidConfigurationError(
            f"{context} needs a positive integer n, got {n!r}"
        )
    return int(n)


def _describe_difference(left: Iterable, right: Iterable, max_items: int = 5) -> str:
    left, right = set(left), set(right)
    only_left = sorted(map(str, left - right))
    only_right = sorted(map(str, right - left))
    parts = []
    if only_left:
        parts.append(f"{len(only_left)} only in first ({', '.join(only_left[:max_items])}"
                     f"{', ...' if len(only_left) > max_items else ''})")
    if only_right:
        parts.append(f"{len(only_right)} only in second ({', '.join(only_right[:max_items])}"
                     f"{', ...' if len(only_right) > max_items else ''})")
    return '; '.join(parts) if parts else 'same labels, different order'


def check_labels(
    first: pd.Index,
    second: pd.Index,
    what: str,
    first_name: str,
    second_name: str,
) -> None:
    """
    Require two label indexes to be identical (same labels, same order).

    Raises:
        ShapeMismatchError: if the labels differ
    """
    if first.has_duplicates:
        raise ShapeMismatchError(f"Duplicate {what} labels in {first_name}")
    if second.has_duplicates:
        raise ShapeMismatchError(f"Duplicate {what} labels in {second_name}")
    if not first.equals(second):
        raise ShapeMismatchError(
            f"{what.capitalize()} labels of {first_name} and {second_name} disagree: "
            f"{_describe_difference(first, second)}"
        )


def conditions_for_samples(conditions, samples: pd.Index) -> pd.Series:
    """
    Normalize a sample -> condition mapping to a Series indexed by ``samples``.

    Args:
        conditions: Series/dict keyed by sample, or a sequence aligned with
            ``samples``
        samples: Sample labels, in matrix column order

    Returns:
        Series of conditions indexed by sample, in ``samples`` order

    Raises:
        ShapeMismatchError: if a sample has no condition or lengths differ
    """
    samples = pd.Index(samples)
    if isinstance(conditions, dict):
        conditions = pd.Series(conditions)

    if isinstance(conditions, pd.Series):
        if conditions.index.has_duplicates:
            raise ShapeMismatchError("Sample -> condition mapping has duplicate samples")
        missing = [s for s in samples if s not in conditions.index]
        if missing:
            raise ShapeMismatchError(
                f"{len(missing)} samples have no condition: {', '.join(map(str, missing[:5]))}"
            )
        return conditions.reindex(samples)

    conditions = list(conditions)
    if len(conditions) != len(samples):
        raise ShapeMismatchError(
            f"Got {len(conditions)} conditions for {len(samples)} samples"
        )
    return pd.Series(conditions, index=samples)


def validate_aggregation_inputs(
    intensities: pd.DataFrame,
    tags: Optional[pd.DataFrame],
    adjacency,  # AdjacencyMatrix
    conditions: Optional[pd.Series] = None,
) -> None:
    """
    Check that intensities, tags, adjacency and conditions describe the same
    peptides and samples.

    Args:
        intensities: Peptide × sample intensity matrix
        tags: Peptide × sample metacell tag matrix (or None to skip)
        adjacency: AdjacencyMatrix indexed by peptides
        conditions: Series mapping sample name -> condition (or None)

    Raises:
        ShapeMismatchError: on any label disagreement
    """
    check_labels(intensities.index, adjacency.peptides, 'peptide',
                 'intensity matrix', 'adjacency matrix')

    if tags is not None:
        check_labels(intensities.index, tags.index, 'peptide',
                     'intensity matrix', 'tag matrix')
        check_labels(intensities.columns, tags.columns, 'sample',
                     'intensity matrix', 'tag matrix')

    if conditions is not None:
        conditions_for_samples(conditions, intensities.columns)

    logger.debug(
        f"Validated inputs: {len(intensities)} peptides, "
        f"{intensities.shape[1]} samples, {adjacency.shape[1]} proteins"
    )
