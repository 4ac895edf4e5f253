"""Tests for protein rollup module."""

import warnings

import pytest
import pandas as pd
import numpy as np
from scipy import sparse

from protein_rollup.adjacency import AdjacencyMatrix, build_adjacency_matrix
from protein_rollup.rollup import (
    IterativeResult,
    redistribute_weights,
    rollup_by_condition,
    rollup_iterative,
    rollup_mean,
    rollup_sum,
    rollup_to_proteins,
    rollup_top_n,
    select_top_n,
)
from protein_rollup.validation import (
    InvalidConfigurationError,
    NonConvergenceWarning,
    ShapeMismatchError,
)


@pytest.fixture
def small_adjacency():
    """pep1 -> P1, pep2 -> P2, pep3 shared by P1 and P2."""
    df = pd.DataFrame({'prot': ['P1', 'P2', 'P1;P2']}, index=['pep1', 'pep2', 'pep3'])
    return build_adjacency_matrix(df, 'prot')


@pytest.fixture
def small_intensities():
    return pd.DataFrame({
        'S1': [10.0, 20.0, 5.0],
        'S2': [np.nan, np.nan, 5.0],
    }, index=['pep1', 'pep2', 'pep3'])


@pytest.fixture
def shared_scenario():
    """One strong and one weak protein competing for three shared peptides."""
    df = pd.DataFrame({
        'prot': ['P1', 'P2', 'P1;P2', 'P1;P2', 'P1;P2'],
    }, index=['pep1', 'pep2', 'sh1', 'sh2', 'sh3'])
    adjacency = build_adjacency_matrix(df, 'prot')
    intensities = pd.DataFrame(
        np.repeat([[100.0], [10.0], [50.0], [50.0], [50.0]], 3, axis=1),
        index=df.index,
        columns=['S1', 'S2', 'S3'],
    )
    return intensities, adjacency


class TestSumAndMean:
    """Tests for the single-pass Sum and Mean rollups."""

    def test_sum(self, small_intensities, small_adjacency):
        result = rollup_sum(small_intensities, small_adjacency)

        assert list(result.index) == ['P1', 'P2']
        assert list(result.columns) == ['S1', 'S2']
        assert result.loc['P1', 'S1'] == 15.0
        assert result.loc['P2', 'S1'] == 25.0
        assert result.loc['P1', 'S2'] == 5.0
        assert result.loc['P2', 'S2'] == 5.0

    def test_sum_shared_peptide_counts_fully_for_each_protein(self, small_adjacency):
        intensities = pd.DataFrame({
            'S1': [10.0, 20.0, 5.0],
            'S2': [0.0, 0.0, 5.0],
        }, index=['pep1', 'pep2', 'pep3'])

        result = rollup_sum(intensities, small_adjacency)

        np.testing.assert_array_equal(result.to_numpy(), [[15.0, 5.0], [25.0, 5.0]])

    def test_mean_ignores_missing(self, small_intensities, small_adjacency):
        result = rollup_mean(small_intensities, small_adjacency)

        assert result.loc['P1', 'S1'] == pytest.approx(7.5)
        assert result.loc['P2', 'S1'] == pytest.approx(12.5)
        # Only pep3 observed in S2
        assert result.loc['P1', 'S2'] == pytest.approx(5.0)

    def test_mean_all_missing_is_nan(self, small_adjacency):
        intensities = pd.DataFrame({'S1': [np.nan, 4.0, np.nan]}, index=['pep1', 'pep2', 'pep3'])

        result = rollup_mean(intensities, small_adjacency)

        assert np.isnan(result.loc['P1', 'S1'])
        assert result.loc['P2', 'S1'] == 4.0

    def test_sum_all_missing_is_zero(self, small_adjacency):
        intensities = pd.DataFrame({'S1': [np.nan, 4.0, np.nan]}, index=['pep1', 'pep2', 'pep3'])
        result = rollup_sum(intensities, small_adjacency)
        assert result.loc['P1', 'S1'] == 0.0

    def test_mean_times_count_is_sum(self):
        """Without missing values Mean x peptide count equals Sum."""
        rng = np.random.default_rng(7)
        dense = (rng.random((30, 5)) < 0.3).astype(float)
        dense[:, 0] = 1.0
        X = AdjacencyMatrix(sparse.csr_matrix(dense), [f'pep{i}' for i in range(30)],
                            [f'P{j}' for j in range(5)])
        intensities = pd.DataFrame(rng.lognormal(10, 1, (30, 4)), index=X.peptides,
                                   columns=['A', 'B', 'C', 'D'])

        total = rollup_sum(intensities, X)
        mean = rollup_mean(intensities, X)
        counts = dense.sum(axis=0)

        np.testing.assert_allclose(mean.to_numpy() * counts[:, np.newaxis], total.to_numpy())


class TestTopN:
    """Tests for Top-N peptide selection."""

    @pytest.fixture
    def adjacency(self):
        df = pd.DataFrame({
            'prot': ['P1', 'P1', 'P1', 'P2', 'P2'],
        }, index=['a', 'b', 'c', 'd', 'e'])
        return build_adjacency_matrix(df, 'prot')

    @pytest.fixture
    def intensities(self):
        return pd.DataFrame({
            'S1': [100.0, 10.0, 50.0, 8.0, 8.0],
            'S2': [100.0, 10.0, 50.0, 8.0, 8.0],
        }, index=['a', 'b', 'c', 'd', 'e'])

    def test_top_2_mean_and_sum(self, intensities, adjacency):
        mean = rollup_top_n(intensities, adjacency, n=2, method='Mean')
        total = rollup_top_n(intensities, adjacency, n=2, method='Sum')

        assert mean.loc['P1', 'S1'] == pytest.approx(75.0)
        assert total.loc['P1', 'S1'] == pytest.approx(150.0)
        assert total.loc['P2', 'S1'] == pytest.approx(16.0)

    def test_fewer_peptides_than_n(self, intensities, adjacency):
        """All peptides are used when a protein has fewer than n."""
        total = rollup_top_n(intensities, adjacency, n=10, method='Sum')
        assert total.loc['P1', 'S1'] == pytest.approx(160.0)

    def test_ties_keep_matrix_order(self, intensities, adjacency):
        reduced = select_top_n(intensities, adjacency, n=1)
        assert reduced.members('P2') == ['d']
        assert reduced.members('P1') == ['a']

    def test_peptide_with_missing_value_not_selected(self, adjacency):
        intensities = pd.DataFrame({
            'S1': [1000.0, 10.0, 50.0, 8.0, 8.0],
            'S2': [np.nan, 10.0, 50.0, 8.0, 8.0],
        }, index=['a', 'b', 'c', 'd', 'e'])

        reduced = select_top_n(intensities, adjacency, n=1)

        assert reduced.members('P1') == ['c']

    def test_no_selectable_peptide_keeps_all(self, adjacency):
        intensities = pd.DataFrame({
            'S1': [1.0, 2.0, 3.0, np.nan, 8.0],
            'S2': [1.0, 2.0, 3.0, 8.0, np.nan],
        }, index=['a', 'b', 'c', 'd', 'e'])

        reduced = select_top_n(intensities, adjacency, n=1)

        assert reduced.members('P2') == ['d', 'e']

    def test_labels_preserved(self, intensities, adjacency):
        reduced = select_top_n(intensities, adjacency, n=1)
        assert reduced.shape == adjacency.shape
        assert list(reduced.proteins) == list(adjacency.proteins)

    def test_invalid_n(self, intensities, adjacency):
        with pytest.raises(InvalidConfigurationError):
            select_top_n(intensities, adjacency, n=0)

    @pytest.mark.parametrize('n', [1.0, 2.5, True, '2'])
    def test_non_integer_n(self, intensities, adjacency, n):
        with pytest.raises(InvalidConfigurationError):
            select_top_n(intensities, adjacency, n=n)

    def test_numpy_integer_n(self, intensities, adjacency):
        reduced = select_top_n(intensities, adjacency, n=np.int64(1))
        assert reduced.members('P1') == ['a']

    def test_invalid_method(self, intensities, adjacency):
        with pytest.raises(InvalidConfigurationError):
            rollup_top_n(intensities, adjacency, n=2, method='Median')


class TestIterative:
    """Tests for iterative redistribution of shared peptides."""

    def test_converges(self, shared_scenario):
        intensities, adjacency = shared_scenario

        result = rollup_iterative(intensities, adjacency, init_method='Sum', method='Mean')

        assert isinstance(result, IterativeResult)
        assert result.converged
        assert result.n_iterations < 100
        assert result.history[-1] <= 1e-10
        assert len(result.history) == result.n_iterations

    def test_strong_protein_attracts_shared_peptides(self, shared_scenario):
        """The more abundant protein's share of a shared peptide grows each round."""
        intensities, adjacency = shared_scenario

        result = rollup_iterative(intensities, adjacency, track_weights=True)

        shares = [w.matrix[2, 0] for w in result.weight_history]
        assert shares[0] == pytest.approx(250.0 / 410.0)
        assert shares[0] < shares[1] < shares[2]
        assert all(b - a >= -1e-12 for a, b in zip(shares, shares[1:]))
        assert 0.69 < shares[-1] < 0.70

    def test_shared_weights_sum_to_one(self, shared_scenario):
        intensities, adjacency = shared_scenario

        result = rollup_iterative(intensities, adjacency)

        np.testing.assert_allclose(result.weights.row_sums(), 1.0)
        assert result.abundances.loc['P1', 'S1'] > result.abundances.loc['P2', 'S1']

    def test_only_specific_peptides(self):
        """Without shared peptides Mean-initialised iteration stops at once."""
        df = pd.DataFrame({'prot': ['P1', 'P1', 'P2']}, index=['a', 'b', 'c'])
        adjacency = build_adjacency_matrix(df, 'prot')
        intensities = pd.DataFrame({'S1': [2.0, 4.0, 8.0], 'S2': [1.0, 3.0, 5.0]},
                                   index=['a', 'b', 'c'])

        result = rollup_iterative(intensities, adjacency, init_method='Mean')

        assert result.converged
        assert result.n_iterations == 1
        pd.testing.assert_frame_equal(result.abundances, rollup_mean(intensities, adjacency))

    def test_iteration_cap_warns(self, shared_scenario):
        intensities, adjacency = shared_scenario

        with pytest.warns(NonConvergenceWarning):
            result = rollup_iterative(intensities, adjacency, max_iter=2)

        assert not result.converged
        assert result.n_iterations == 2
        assert not result.abundances.isna().any().any()

    def test_top_n_inside_iterations(self, shared_scenario):
        intensities, adjacency = shared_scenario

        result = rollup_iterative(intensities, adjacency, method='TopN', n=2)

        assert result.converged
        assert list(result.abundances.index) == ['P1', 'P2']

    def test_top_n_needs_n(self, shared_scenario):
        intensities, adjacency = shared_scenario
        with pytest.raises(InvalidConfigurationError):
            rollup_iterative(intensities, adjacency, method='TopN')

    def test_invalid_init_method(self, shared_scenario):
        intensities, adjacency = shared_scenario
        with pytest.raises(InvalidConfigurationError):
            rollup_iterative(intensities, adjacency, init_method='Max')

    def test_redistribute_zero_rows_stay_zero(self):
        X = AdjacencyMatrix(sparse.csr_matrix(np.array([[1.0, 1.0], [0.0, 1.0]])),
                            ['a', 'b'], ['P1', 'P2'])

        weighted = redistribute_weights(X, np.array([0.0, 0.0]))

        assert weighted.matrix.nnz == 0
        weighted = redistribute_weights(X, np.array([3.0, 1.0]))
        np.testing.assert_allclose(weighted.matrix.toarray(), [[0.75, 0.25], [0.0, 1.0]])


class TestRollupToProteins:
    """Tests for method dispatch."""

    def test_dispatch(self, small_intensities, small_adjacency):
        total, detail = rollup_to_proteins(small_intensities, small_adjacency, method='Sum')
        assert detail is None
        assert total.loc['P2', 'S1'] == 25.0

        _, detail = rollup_to_proteins(small_intensities.fillna(1.0), small_adjacency,
                                       method='Iterative')
        assert isinstance(detail, IterativeResult)

    def test_unknown_method(self, small_intensities, small_adjacency):
        with pytest.raises(InvalidConfigurationError):
            rollup_to_proteins(small_intensities, small_adjacency, method='Median')

    def test_top_n_requires_n(self, small_intensities, small_adjacency):
        with pytest.raises(InvalidConfigurationError):
            rollup_to_proteins(small_intensities, small_adjacency, method='TopN')

    def test_label_mismatch(self, small_intensities, small_adjacency):
        with pytest.raises(ShapeMismatchError):
            rollup_to_proteins(small_intensities.iloc[::-1], small_adjacency)


class TestRollupByCondition:
    """Tests for per-condition processing and merging."""

    @pytest.fixture
    def data(self, shared_scenario):
        intensities, adjacency = shared_scenario
        rng = np.random.default_rng(3)
        values = rng.lognormal(5, 1, (len(intensities), 4))
        intensities = pd.DataFrame(values, index=intensities.index,
                                   columns=['A1', 'B1', 'A2', 'B2'])
        conditions = ['A', 'B', 'A', 'B']
        return intensities, adjacency, conditions

    def test_columns_keep_original_order(self, data):
        intensities, adjacency, conditions = data

        merged, details = rollup_by_condition(intensities, adjacency, conditions, method='Sum')

        assert list(merged.columns) == ['A1', 'B1', 'A2', 'B2']
        assert list(details) == ['A', 'B']
        pd.testing.assert_frame_equal(merged, rollup_sum(intensities, adjacency))

    def test_iterative_per_condition(self, data):
        intensities, adjacency, conditions = data

        merged, details = rollup_by_condition(intensities, adjacency, conditions,
                                              method='Iterative')

        assert all(isinstance(d, IterativeResult) for d in details.values())
        assert details['A'].converged and details['B'].converged
        pd.testing.assert_frame_equal(merged[['A1', 'A2']], details['A'].abundances)

    def test_parallel_matches_serial(self, data):
        intensities, adjacency, conditions = data

        serial, _ = rollup_by_condition(intensities, adjacency, conditions,
                                        n_workers=1, method='Iterative')
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', DeprecationWarning)
            parallel, _ = rollup_by_condition(intensities, adjacency, conditions,
                                              n_workers=2, method='Iterative')

        pd.testing.assert_frame_equal(serial, parallel)

    def test_conditions_as_mapping(self, data):
        intensities, adjacency, _ = data
        conditions = {'A1': 'A', 'A2': 'A', 'B1': 'B', 'B2': 'B'}

        merged, details = rollup_by_condition(intensities, adjacency, conditions, method='Mean')

        assert list(merged.columns) == ['A1', 'B1', 'A2', 'B2']
        assert set(details) == {'A', 'B'}

    def test_missing_condition(self, data):
        intensities, adjacency, _ = data
        with pytest.raises(ShapeMismatchError):
            rollup_by_condition(intensities, adjacency, {'A1': 'A'}, method='Sum')
