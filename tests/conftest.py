"""共有フィクスチャ: 3因子を埋め込んだ 20項目 / 15参加者 の研究。"""

import numpy as np
import pytest

from qmethod.core.analysis import perform_analysis
from qmethod.core.types import (
    AnalysisConfig,
    ExtractionOptions,
    GridConfig,
    QSortMatrix,
    RotationOptions,
    SessionOptions,
)

GRID = GridConfig(min_rank=-3, counts=(2, 2, 3, 6, 3, 2, 2))

# GRID に厳密に従う、互いに無相関な3つのソート
TRUTHS = np.array([
    [3, 3, 2, 2, 1, 1, 1, 0, 0, 0, 0, 0, 0, -1, -1, -1, -2, -2, -3, -3],
    [3, -3, 2, -2, 1, -1, 0, 1, -1, 0, 0, 0, 0, 1, -1, 0, 2, -2, 3, -3],
    [0, 0, -1, 1, 3, -3, 2, -2, -2, 1, -1, 0, 0, -3, 3, 2, 1, -1, 0, 0],
])


def perturb(truth: np.ndarray, k: int) -> np.ndarray:
    """グリッド値が1だけ異なる k 番目の項目対を入れ替える。"""
    order = np.argsort(-truth, kind='stable')
    boundaries = [p for p in range(len(order) - 1) if truth[order[p]] - truth[order[p + 1]] == 1]
    p = boundaries[k % len(boundaries)]
    sort = truth.copy()
    i, j = order[p], order[p + 1]
    sort[i], sort[j] = sort[j], sort[i]
    return sort


def planted_ranks() -> np.ndarray:
    return np.array([perturb(truth, k) for truth in TRUTHS for k in range(5)])


def random_ranks(n_participants: int, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    slots = GRID.slots()
    return np.array([rng.permutation(slots) for _ in range(n_participants)])


@pytest.fixture
def grid():
    return GRID


@pytest.fixture
def truths():
    return TRUTHS


@pytest.fixture
def planted():
    return QSortMatrix(
        ranks=planted_ranks(),
        participant_ids=tuple(f"P{i + 1:02d}" for i in range(15)),
    )


@pytest.fixture
def config():
    return AnalysisConfig(
        grid=GRID,
        extraction=ExtractionOptions(method="centroid", n_factors=3),
        rotation=RotationOptions(method="varimax"),
    )


@pytest.fixture
def oblique_config(config):
    return config.replace(session=SessionOptions(mode="oblique"))


@pytest.fixture
def planted_result(planted, config):
    return perform_analysis(planted, config)


def match_truths(z_scores: np.ndarray, truths: np.ndarray) -> np.ndarray:
    """各真値と最もよく一致する因子配列との相関（項目 x k）。"""
    corr = np.corrcoef(truths, z_scores.T)[:len(truths), len(truths):]
    return corr.max(axis=1)
