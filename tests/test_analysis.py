import numpy as np
import pytest

from qmethod.core import analysis
from qmethod.core.analysis import configure, default_config, perform_analysis
from qmethod.core.types import BootstrapOptions, ExtractionOptions, QSortMatrix, RotationOptions
from qmethod.errors import InputError

from conftest import match_truths


def test_planted_factors_are_recovered(planted_result, truths):
    assert planted_result.rotated.n_factors == 3
    correlations = match_truths(planted_result.z_score_matrix(), truths)
    assert np.all(correlations >= 0.99)


def test_planted_factors_are_recovered_with_pca_and_promax(planted, config, truths):
    config = config.replace(
        extraction=ExtractionOptions(method="pca", n_factors=3),
        rotation=RotationOptions(method="promax"),
    )
    result = perform_analysis(planted, config)
    assert result.factor_correlations is not None
    assert np.all(match_truths(result.z_score_matrix(), truths) >= 0.99)


def test_analysis_is_deterministic(planted, config):
    first = perform_analysis(planted, config)
    second = perform_analysis(planted, config)
    assert np.array_equal(first.z_score_matrix(), second.z_score_matrix())
    assert np.array_equal(first.rotated.loadings, second.rotated.loadings)


def test_invalid_sort_fails_before_extraction(planted, config, monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("extraction ran on invalid input")

    monkeypatch.setattr(analysis, "extract_factors", fail)
    ranks = np.array(planted.ranks)
    ranks[0, 0] -= 1
    with pytest.raises(InputError):
        perform_analysis(QSortMatrix(ranks=ranks), config)


def test_summary_and_guidance(planted_result):
    summary = planted_result.summary()
    assert summary == {
        'participants': 15,
        'statements': 20,
        'factors': 3,
        'extraction': 'centroid',
        'rotation': 'varimax',
        'converged': True,
    }
    assert planted_result.guidance.kaiser == 3
    assert len(planted_result.crib_sheets) == 3
    assert planted_result.bootstrap is None


def test_analysis_with_bootstrap(planted, config):
    config = config.replace(bootstrap=BootstrapOptions(n_resamples=20, seed=1))
    result = perform_analysis(planted, config)
    assert result.bootstrap is not None
    assert result.bootstrap.lower.shape == (15, 3)
    assert result.bootstrap.n_resamples + result.bootstrap.failed_resamples == 20


def test_configure_sets_defaults(grid, monkeypatch):
    monkeypatch.setattr(analysis, "EXTRACTION_DEFAULTS", analysis.EXTRACTION_DEFAULTS)
    monkeypatch.setattr(analysis, "ROTATION_DEFAULTS", analysis.ROTATION_DEFAULTS)
    monkeypatch.setattr(analysis, "STATISTICS_DEFAULTS", analysis.STATISTICS_DEFAULTS)

    configure(
        extraction={'method': 'pca'},
        rotation={'method': 'quartimax', 'kappa': 3.0},
        statistics={'significance_levels': [0.05, 0.001]},
    )
    config = default_config(grid)
    assert config.extraction.method == 'pca'
    assert config.rotation.method == 'quartimax'
    assert config.rotation.kappa == 3.0
    assert config.statistics.significance_levels == (0.05, 0.001)
    assert config.bootstrap is None


def test_result_carries_factor_characteristics(planted_result):
    characteristics = planted_result.characteristics
    assert [c.factor for c in characteristics] == [1, 2, 3]
    assert all(c.n_defining == 5 for c in characteristics)
    assert all(0.9 < c.reliability < 1.0 for c in characteristics)
    assert all(0.0 <= c.distinctiveness <= 1.0 for c in characteristics)
    for c, array in zip(characteristics, planted_result.arrays):
        assert c.extremity == pytest.approx(np.abs(array.z_scores).max())
    assert planted_result.extraction.heywood is False
