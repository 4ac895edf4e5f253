"""
protein-rollup: peptide → protein aggregation with metacell tag propagation

Aggregates peptide intensities into protein group intensities through a sparse
peptide × protein adjacency matrix (Sum, Mean, Top-N or iterative
redistribution of shared peptides) and combines peptide provenance tags
(quantified / missing / imputed) into protein tags.
"""

__version__ = "0.1.0"

from .adjacency import (
    AdjacencyMatrix,
    build_adjacency_matrix,
    split_adjacency_matrix,
    count_peptides,
    count_peptides_used,
    count_peptides_used_detailed,
    get_proteins_stats,
    build_column_to_protein_dataset,
    ProteinsStats,
)
from .metacell import (
    MetacellTag,
    STOP,
    combine_tags,
    set_pov_mec_tags,
    aggregate_metacell,
    metacell_vocabulary,
    MetacellAggregationResult,
)
from .rollup import (
    rollup_sum,
    rollup_mean,
    rollup_top_n,
    rollup_iterative,
    rollup_to_proteins,
    rollup_by_condition,
    IterativeResult,
)
from .aggregation import (
    aggregate,
    aggregate_sum_dataset,
    aggregate_mean_dataset,
    aggregate_top_n_dataset,
    aggregate_iterative_dataset,
    aggregate_from_config,
    finalize_aggregation,
    AggregationResult,
    ProteinDataset,
)
from .config import (
    AggregationConfig,
    load_config,
    setup_logging,
    tool_versions,
)
from .validation import (
    InvalidConfigurationError,
    ShapeMismatchError,
    NonConvergenceWarning,
)
