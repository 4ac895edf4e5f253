"""Configuration and logging setup for protein rollup."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

import yaml

from .rollup import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_TOLERANCE,
    INIT_METHODS,
    ITERATIVE_METHODS,
    ROLLUP_METHODS,
    TOPN_METHODS,
)
from .validation import InvalidConfigurationError, check_top_n

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def load_config(config_path: Path | None) -> dict:
    """Load configuration from YAML file or return defaults."""
    defaults = {
        'data': {
            'protein_column': 'Protein_group_IDs',
            'condition_column': 'Condition',
            'log2_input': True,
        },
        'aggregation': {
            'method': 'Sum',
            'init_method': 'Sum',
            'n': None,
            'topn_method': 'Mean',
            'iterative_method': 'Mean',
            'unique_only': False,
            'per_condition': False,
            'max_iterations': DEFAULT_MAX_ITERATIONS,
            'convergence_tolerance': DEFAULT_TOLERANCE,
            'n_workers': 1,
        },
    }

    if config_path and Path(config_path).exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        # Deep merge user config over defaults
        defaults = _deep_merge(defaults, user_config)
        logger.debug(f"Loaded configuration from {config_path}")

    return defaults


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _as_count(value):
    """YAML may give whole numbers as floats (n: 2.0); other values pass through."""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


@dataclass
class AggregationConfig:
    """Parameters of one peptide → protein aggregation run."""

    method: str = 'Sum'              # Sum, Mean, TopN or Iterative
    init_method: str = 'Sum'         # Iterative initialisation: Sum or Mean
    n: int | None = None             # Peptides per protein for TopN / iterative TopN
    topn_method: str = 'Mean'        # Mean or Sum over the top N peptides
    iterative_method: str = 'Mean'   # Mean or TopN inside each iteration
    unique_only: bool = False        # Drop shared peptides before aggregating
    per_condition: bool = False      # Aggregate each condition separately (always on for Iterative)
    max_iter: int = DEFAULT_MAX_ITERATIONS
    tol: float = DEFAULT_TOLERANCE
    n_workers: int = 1               # Worker processes for per-condition runs (0 = all CPUs)

    def validate(self) -> None:
        """Raise InvalidConfigurationError if the parameters are inconsistent."""
        if self.method not in ROLLUP_METHODS:
            raise InvalidConfigurationError(
                f"Unknown aggregation method '{self.method}', expected one of {ROLLUP_METHODS}"
            )
        if self.method == 'TopN':
            if self.topn_method not in TOPN_METHODS:
                raise InvalidConfigurationError(f"Unknown Top-N method: {self.topn_method}")
            self._require_n()
        if self.method == 'Iterative':
            if self.init_method not in INIT_METHODS:
                raise InvalidConfigurationError(
                    f"Unknown init method '{self.init_method}', expected one of {INIT_METHODS}"
                )
            if self.iterative_method not in ITERATIVE_METHODS:
                raise InvalidConfigurationError(
                    f"Unknown iterative method: {self.iterative_method}"
                )
            if self.iterative_method in ('TopN', 'onlyN'):
                self._require_n()
            if self.max_iter < 1:
                raise InvalidConfigurationError(f"max_iter must be >= 1, got {self.max_iter}")
            if self.tol < 0:
                raise InvalidConfigurationError(f"tol must be >= 0, got {self.tol}")
        if self.n_workers < 0:
            raise InvalidConfigurationError(f"n_workers must be >= 0, got {self.n_workers}")

    def _require_n(self) -> None:
        self.n = check_top_n(self.n, self.method)

    def rollup_params(self) -> dict:
        """Keyword arguments for rollup_to_proteins."""
        return {
            'method': self.method,
            'init_method': self.init_method,
            'n': self.n,
            'topn_method': self.topn_method,
            'iterative_method': self.iterative_method,
            'tol': self.tol,
            'max_iter': self.max_iter,
        }

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, section: dict) -> AggregationConfig:
        """Build from the 'aggregation' section of a loaded config."""
        return cls(
            method=section.get('method', 'Sum'),
            init_method=section.get('init_method', 'Sum'),
            n=_as_count(section.get('n')),
            topn_method=section.get('topn_method', 'Mean'),
            iterative_method=section.get('iterative_method', 'Mean'),
            unique_only=bool(section.get('unique_only', False)),
            per_condition=bool(section.get('per_condition', False)),
            max_iter=int(section.get('max_iterations', DEFAULT_MAX_ITERATIONS)),
            tol=float(section.get('convergence_tolerance', DEFAULT_TOLERANCE)),
            n_workers=int(section.get('n_workers', 1)),
        )


def tool_versions(*packages: str) -> dict:
    """Version stamp to attach to aggregated datasets.

    Packages that are not installed are reported as 'development'.
    """
    versions = {}
    for package in ('protein-rollup',) + packages:
        try:
            versions[package] = version(package)
        except PackageNotFoundError:
            versions[package] = 'development'
    return {
        'versions': versions,
        'created': datetime.now(timezone.utc).isoformat(),
    }
