import logging

import numpy as np
import pytest
from factor_analyzer.rotator import Rotator

from qmethod.core.correlation import build_correlation_matrix
from qmethod.core.extraction import extract_factors, orient_loadings
from qmethod.core.rotation import (
    apply_manual_rotation,
    oblimin_kernel,
    plane_rotation_matrix,
    rotate,
    rotate_loadings,
    unrotated,
    varimax_criterion,
)
from qmethod.core.types import ExtractionOptions, RotationOptions
from qmethod.errors import InputError, RotationSingularityError


@pytest.fixture
def extraction(planted, grid):
    correlation = build_correlation_matrix(planted, grid)
    return extract_factors(correlation, ExtractionOptions(method="pca", n_factors=3))


def assert_reproduces(rotated, loadings):
    np.testing.assert_allclose(
        np.asarray(loadings) @ rotated.rotation_matrix, rotated.loadings, atol=1e-10
    )


# ── Orthogonal ──

def test_varimax_is_idempotent(extraction):
    first = rotate(extraction, "varimax", RotationOptions(tolerance=0.0, max_iterations=500))
    second = rotate_loadings(first.loadings, "varimax")
    np.testing.assert_allclose(second.loadings, first.loadings, atol=1e-6)
    np.testing.assert_allclose(second.rotation_matrix, np.eye(3), atol=1e-6)


def test_varimax_matches_factor_analyzer(extraction):
    ours = rotate(extraction, "varimax", RotationOptions(tolerance=1e-10, max_iterations=500))
    reference = Rotator(method="varimax", normalize=True, max_iter=1000, tol=1e-10)
    theirs = orient_loadings(reference.fit_transform(np.array(extraction.loadings)))
    np.testing.assert_allclose(ours.loadings, theirs, atol=1e-3)


@pytest.mark.parametrize("method", ["varimax", "quartimax"])
def test_orthogonal_rotation_preserves_communalities(extraction, method):
    rotated = rotate(extraction, method)
    assert not rotated.oblique
    assert rotated.factor_correlations is None
    np.testing.assert_allclose(rotated.rotation_matrix.T @ rotated.rotation_matrix, np.eye(3), atol=1e-10)
    np.testing.assert_allclose((rotated.loadings ** 2).sum(axis=1), extraction.communalities, atol=1e-10)
    assert_reproduces(rotated, extraction.loadings)


def test_varimax_recovers_simple_structure(extraction):
    rotated = rotate(extraction, "varimax")
    assert rotated.quality.cross_loadings == 0
    assert np.all(np.abs(rotated.loadings).max(axis=1) > 0.9)
    assert varimax_criterion(rotated.loadings) > 0


def test_rotation_is_deterministic(extraction):
    first = rotate(extraction, "varimax")
    second = rotate(extraction, "varimax")
    assert np.array_equal(first.loadings, second.loadings)
    assert np.array_equal(first.rotation_matrix, second.rotation_matrix)


def test_non_convergence_is_flagged_and_logged(extraction, caplog):
    with caplog.at_level(logging.WARNING, logger="qmethod.core.rotation"):
        rotated = rotate(extraction, "varimax", RotationOptions(tolerance=0.0, max_iterations=1))
    assert not rotated.converged
    assert rotated.iterations == 1
    assert "収束しなかった" in caplog.text


def test_single_factor_is_returned_unrotated(planted, grid):
    correlation = build_correlation_matrix(planted, grid)
    solution = extract_factors(correlation, ExtractionOptions(n_factors=1))
    rotated = rotate(solution, "varimax")
    assert rotated.converged
    assert rotated.iterations == 0
    np.testing.assert_array_equal(rotated.rotation_matrix, np.eye(1))
    np.testing.assert_allclose(rotated.loadings, solution.loadings)


def test_none_is_identity(extraction):
    rotated = unrotated(extraction)
    assert rotated.method == "none"
    np.testing.assert_allclose(rotated.loadings, extraction.loadings)
    np.testing.assert_allclose(rotated.rotation_matrix, np.eye(3))


def test_unknown_rotation(extraction):
    with pytest.raises(InputError):
        rotate(extraction, "equamax")


# ── Oblique ──

def test_promax_reports_factor_correlations(extraction):
    rotated = rotate(extraction, "promax")
    phi = rotated.factor_correlations
    assert rotated.oblique
    assert phi.shape == (3, 3)
    np.testing.assert_allclose(np.diag(phi), 1.0)
    np.testing.assert_allclose(phi, phi.T)
    assert np.all(np.abs(phi) <= 1.0 + 1e-12)
    assert_reproduces(rotated, extraction.loadings)


def test_promax_matches_factor_analyzer(extraction):
    ours = rotate(extraction, "promax")
    reference = Rotator(method="promax", power=4, max_iter=1000, tol=1e-10)
    theirs = orient_loadings(reference.fit_transform(np.array(extraction.loadings)))
    np.testing.assert_allclose(ours.loadings, theirs, atol=1e-3)
    assert ours.converged


def test_oblimin_matches_factor_analyzer(extraction):
    ours = rotate(extraction, "oblimin", RotationOptions(normalize=False))
    reference = Rotator(method="oblimin", normalize=False)
    theirs = orient_loadings(reference.fit_transform(np.array(extraction.loadings)))
    np.testing.assert_allclose(ours.loadings, theirs, atol=1e-3)
    assert_reproduces(ours, extraction.loadings)


def test_oblimin_factor_correlations_are_t_transpose_t(extraction):
    pattern, transformation, converged, _ = oblimin_kernel(np.array(extraction.loadings), normalize=False)
    assert converged
    t = np.linalg.inv(transformation.T)
    rotated = rotate(extraction, "oblimin", RotationOptions(normalize=False))
    phi = t.T @ t
    # 向きの正規化で因子が並べ替え・反転されるため、ソートした絶対値で比較する
    np.testing.assert_allclose(
        np.sort(np.abs(rotated.factor_correlations).ravel()),
        np.sort(np.abs(phi).ravel()),
        atol=1e-8,
    )


def test_promax_on_collinear_loadings_is_singular():
    a = np.linspace(0.3, 0.8, 10)
    loadings = np.column_stack([a, a])
    with pytest.raises(RotationSingularityError) as exc_info:
        rotate_loadings(loadings, "promax")
    assert exc_info.value.context['method'] == "promax"


@pytest.mark.parametrize("method,options", [
    ("promax", RotationOptions(kappa=1.0)),
    ("oblimin", RotationOptions(gamma=1.5)),
    ("varimax", RotationOptions(max_iterations=0)),
])
def test_invalid_options(extraction, method, options):
    with pytest.raises(InputError):
        rotate(extraction, method, options)


# ── Manual ──

def test_plane_rotation_matrix():
    matrix = plane_rotation_matrix(3, 0, 2, 90)
    np.testing.assert_allclose(matrix.T @ matrix, np.eye(3), atol=1e-12)
    np.testing.assert_allclose(plane_rotation_matrix(3, 0, 1, 0), np.eye(3))
    loadings = np.array([[1.0, 0.0, 0.5]])
    np.testing.assert_allclose(loadings @ matrix, [[0.5, 0.0, -1.0]], atol=1e-12)


@pytest.mark.parametrize("i,j", [(0, 0), (0, 3), (-1, 1)])
def test_plane_rotation_needs_distinct_factors(i, j):
    with pytest.raises(InputError):
        plane_rotation_matrix(3, i, j, 10)


def test_manual_rotation_composes(extraction):
    base = rotate(extraction, "varimax")
    matrix = plane_rotation_matrix(3, 0, 1, 30)
    manual = apply_manual_rotation(base, matrix)
    assert manual.method == "manual"
    assert not manual.oblique
    assert_reproduces(manual, extraction.loadings)


def test_manual_rotation_rejects_non_orthogonal_matrix(extraction):
    base = unrotated(extraction)
    matrix = np.eye(3)
    matrix[0, 1] = 0.3
    with pytest.raises(InputError) as exc_info:
        apply_manual_rotation(base, matrix, "orthogonal")
    assert exc_info.value.context['deviation'] > 0


def test_manual_rotation_oblique_mode(extraction):
    base = unrotated(extraction)
    matrix = np.eye(3)
    matrix[0, 1] = 0.3
    rotated = apply_manual_rotation(base, matrix, "oblique")
    assert rotated.oblique
    assert rotated.factor_correlations is not None
    assert_reproduces(rotated, extraction.loadings)

    singular = np.ones((3, 3))
    with pytest.raises(RotationSingularityError):
        apply_manual_rotation(base, singular, "oblique")


def test_manual_rotation_shape_mismatch(extraction):
    with pytest.raises(InputError):
        apply_manual_rotation(unrotated(extraction), np.eye(2))
