"""
Peptide → protein aggregation: quantities, metacell tags and peptide counts.

One aggregation run:
1. Combine peptide metacell tags into protein tags
2. Stop if any protein mixes missing and quantified/imputed peptides; no
   protein data is produced in that case, only the list of conflicts
3. Aggregate intensities with the configured method
4. Count the specific/shared peptides behind every protein and sample
5. Assemble the protein dataset
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np
import pandas as pd

from .adjacency import (
    AdjacencyMatrix,
    build_adjacency_matrix,
    count_peptides,
    count_peptides_used,
    count_peptides_used_detailed,
    split_adjacency_matrix,
)
from .config import AggregationConfig, load_config
from .metacell import aggregate_metacell
from .rollup import IterativeResult, rollup_by_condition, rollup_to_proteins
from .validation import conditions_for_samples, validate_aggregation_inputs

logger = logging.getLogger(__name__)


@dataclass
class ProteinDataset:
    """Protein-level dataset produced by one aggregation run."""
    intensities: pd.DataFrame         # Protein × sample, log2, NaN for missing
    tags: pd.DataFrame                # Protein × sample metacell tags
    features: pd.DataFrame            # Peptide counts and tags per protein
    samples: pd.DataFrame             # Sample name and condition
    metadata: dict = field(default_factory=dict)

    @property
    def proteins(self) -> pd.Index:
        return self.intensities.index


@dataclass
class AggregationResult:
    """Outcome of an aggregation run: a dataset, or the conflicts that prevented it."""
    dataset: Optional[ProteinDataset]
    issues: Optional[Dict[str, list]] = None
    iterative_results: Optional[Dict[str, IterativeResult]] = None

    @property
    def ok(self) -> bool:
        return self.issues is None and self.dataset is not None


def _used_columns(counts: pd.DataFrame, prefix: str) -> pd.DataFrame:
    renamed = counts.copy()
    renamed.columns = [f"{prefix}{s}" for s in counts.columns]
    return renamed


def finalize_aggregation(
    peptide_intensities: pd.DataFrame,
    protein_intensities: pd.DataFrame,
    protein_tags: pd.DataFrame,
    adjacency: AdjacencyMatrix,
    conditions: pd.Series,
    metadata: Optional[dict] = None,
) -> ProteinDataset:
    """
    Assemble the protein dataset from aggregated intensities and tags.

    Zero, NaN and infinite protein intensities become missing values; the
    rest are log2 transformed.

    Args:
        peptide_intensities: Peptide × sample matrix used for the aggregation
        protein_intensities: Protein × sample aggregated matrix (linear)
        protein_tags: Protein × sample metacell tags
        adjacency: Adjacency matrix used for the aggregation
        conditions: Series of sample -> condition
        metadata: Metadata record to attach (copied)

    Returns:
        ProteinDataset
    """
    values = protein_intensities.to_numpy(dtype=float, copy=True)
    values[~np.isfinite(values) | (values == 0)] = np.nan
    with np.errstate(invalid='ignore'):
        log_values = np.log2(values)
    intensities = pd.DataFrame(log_values, index=protein_intensities.index,
                               columns=protein_intensities.columns)

    n_shared_used, n_spec_used = count_peptides_used_detailed(adjacency, peptide_intensities)
    n_total_used = count_peptides_used(adjacency, peptide_intensities)
    counts = count_peptides(adjacency)

    features = pd.DataFrame({
        'proteinId': adjacency.proteins,
        'nPepTotal': counts['nTotal'].to_numpy(),
        'nPepShared': counts['nShared'].to_numpy(),
        'nPepSpec': counts['nSpec'].to_numpy(),
    }, index=adjacency.proteins)

    features = pd.concat([
        features,
        _used_columns(n_spec_used, 'pepSpec.used.'),
        _used_columns(n_shared_used, 'pepShared.used.'),
        _used_columns(n_total_used, 'pepTotal.used.'),
        _used_columns(protein_tags.reindex(adjacency.proteins), 'metacell.'),
    ], axis=1)

    samples = pd.DataFrame({
        'Sample.name': conditions.index,
        'Condition': conditions.to_numpy(),
    })

    meta = dict(metadata or {})
    meta.update({
        'typeOfData': 'protein',
        'keyId': 'proteinId',
        'proteinId': 'proteinId',
    })

    return ProteinDataset(
        intensities=intensities.reindex(adjacency.proteins),
        tags=protein_tags.reindex(adjacency.proteins),
        features=features,
        samples=samples,
        metadata=meta,
    )


def aggregate(
    intensities: pd.DataFrame,
    tags: pd.DataFrame,
    adjacency: AdjacencyMatrix,
    conditions,
    config: Optional[AggregationConfig] = None,
    metadata: Optional[dict] = None,
    log2_input: bool = True,
) -> AggregationResult:
    """
    Aggregate a peptide dataset into a protein dataset.

    Args:
        intensities: Peptide × sample intensities
        tags: Peptide × sample metacell tags
        adjacency: Peptide × protein adjacency matrix (rows = intensity rows)
        conditions: Sample -> condition mapping (Series/dict) or a sequence
            aligned with the intensity columns
        config: Aggregation parameters (default: Sum)
        metadata: Metadata record to attach to the protein dataset, e.g.
            from config.tool_versions()
        log2_input: Whether intensities are log2 (converted to linear before
            aggregating). Protein intensities are always returned as log2.

    Returns:
        AggregationResult: the dataset on success, or issues (protein ->
        peptides) when peptide tags conflict, in which case dataset is None

    Raises:
        InvalidConfigurationError: on inconsistent parameters
        ShapeMismatchError: when the inputs do not share labels
    """
    config = config or AggregationConfig()
    config.validate()
    validate_aggregation_inputs(intensities, tags, adjacency, conditions)
    conditions = conditions_for_samples(conditions, intensities.columns)

    if config.unique_only:
        _, adjacency = split_adjacency_matrix(adjacency)
        logger.info("Using specific peptides only")

    # Step 1: metacell tags
    metacell = aggregate_metacell(adjacency, tags, conditions)
    if metacell.issues:
        logger.warning(f"Aggregation aborted: {len(metacell.issues)} proteins have "
                       f"conflicting peptide tags")
        return AggregationResult(dataset=None, issues=metacell.issues)

    # Step 2: quantitative data
    linear = np.power(2.0, intensities) if log2_input else intensities

    iterative_results = None
    if config.method == 'Iterative' or config.per_condition:
        protein_linear, details = rollup_by_condition(
            linear, adjacency, conditions,
            n_workers=config.n_workers,
            **config.rollup_params(),
        )
        if config.method == 'Iterative':
            iterative_results = details
    else:
        protein_linear, _ = rollup_to_proteins(linear, adjacency, **config.rollup_params())

    # Step 3: protein dataset
    meta = dict(metadata or {})
    meta['aggregation'] = config.to_dict()
    if iterative_results:
        meta['convergence'] = {
            str(c): {'n_iterations': r.n_iterations, 'converged': r.converged}
            for c, r in iterative_results.items()
        }

    dataset = finalize_aggregation(linear, protein_linear, metacell.tags, adjacency,
                                   conditions, meta)

    logger.info(f"Aggregated {len(intensities)} peptides into {len(dataset.proteins)} proteins")

    return AggregationResult(dataset=dataset, issues=None, iterative_results=iterative_results)


# ============================================================================
# Method-specific entry points
# ============================================================================

def aggregate_sum_dataset(intensities, tags, adjacency, conditions, **kwargs) -> AggregationResult:
    """Protein intensity = sum of its peptides."""
    return aggregate(intensities, tags, adjacency, conditions,
                     config=AggregationConfig(method='Sum'), **kwargs)


def aggregate_mean_dataset(intensities, tags, adjacency, conditions, **kwargs) -> AggregationResult:
    """Protein intensity = mean of its non-missing peptides."""
    return aggregate(intensities, tags, adjacency, conditions,
                     config=AggregationConfig(method='Mean'), **kwargs)


def aggregate_top_n_dataset(
    intensities, tags, adjacency, conditions,
    n: int = 10,
    method: str = 'Mean',
    **kwargs,
) -> AggregationResult:
    """Protein intensity from its n most intense peptides."""
    return aggregate(intensities, tags, adjacency, conditions,
                     config=AggregationConfig(method='TopN', n=n, topn_method=method), **kwargs)


def aggregate_iterative_dataset(
    intensities, tags, adjacency, conditions,
    init_method: str = 'Sum',
    method: str = 'Mean',
    n: Optional[int] = None,
    n_workers: int = 1,
    **kwargs,
) -> AggregationResult:
    """Iterative redistribution of shared peptides, per condition."""
    config = AggregationConfig(
        method='Iterative',
        init_method=init_method,
        iterative_method=method,
        n=n,
        n_workers=n_workers,
    )
    return aggregate(intensities, tags, adjacency, conditions, config=config, **kwargs)


def aggregate_from_config(
    peptide_table: pd.DataFrame,
    intensities: pd.DataFrame,
    tags: pd.DataFrame,
    samples,
    config: Optional[dict] = None,
    metadata: Optional[dict] = None,
) -> AggregationResult:
    """
    Aggregate using a loaded configuration (see config.load_config).

    The 'data' section names the protein group column of the peptide table,
    the condition column of the sample table and whether intensities are
    log2; the 'aggregation' section gives the method parameters.

    Args:
        peptide_table: Peptide metadata, one row per intensity row
        intensities: Peptide × sample intensities
        tags: Peptide × sample metacell tags
        samples: Sample table indexed by sample name with the condition
            column, or a ready sample -> condition mapping
        config: Configuration dict (default: load_config(None))
        metadata: Metadata record to attach to the protein dataset

    Returns:
        AggregationResult
    """
    config = config or load_config(None)
    data = config['data']

    adjacency = build_adjacency_matrix(peptide_table, data['protein_column'])

    if isinstance(samples, pd.DataFrame):
        condition_col = data['condition_column']
        if condition_col not in samples.columns:
            raise KeyError(f"Condition column '{condition_col}' not found in sample table")
        conditions = samples[condition_col]
    else:
        conditions = samples

    return aggregate(
        intensities, tags, adjacency, conditions,
        config=AggregationConfig.from_dict(config['aggregation']),
        metadata=metadata,
        log2_input=bool(data['log2_input']),
    )
