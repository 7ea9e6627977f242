"""
相関行列構築モジュール

Qソートを強制分布グリッドに照らして検証し、参加者 x 参加者 の
ピアソン相関行列を計算する。検証を先に行い、不正なQソートは
行列計算の前に拒否する。
"""

import logging
from collections import Counter

import numpy as np

from ..errors import InputError, InsufficientDataError, InvalidDistributionError
from .types import CorrelationMatrix, GridConfig, QSortMatrix

logger = logging.getLogger(__name__)


def validate_qsorts(qsorts: QSortMatrix, grid: GridConfig) -> None:
    """項目数と参加者ごとの順位の個数をグリッドと照合する。

    Raises:
        InsufficientDataError: 参加者が2人未満
        InputError: 項目数がグリッドのサイズと異なる
        InvalidDistributionError: ある参加者の順位の個数がグリッドと異なる
    """
    if qsorts.n_participants < 2:
        raise InsufficientDataError(
            "At least two Q-sorts are required",
            participants=qsorts.n_participants,
        )
    if qsorts.n_statements != grid.n_statements:
        raise InputError(
            "Number of statements does not match the grid",
            statements=qsorts.n_statements,
            grid_statements=grid.n_statements,
        )

    expected = grid.expected_counts()
    for p, row in enumerate(qsorts.ranks):
        actual = dict(Counter(int(v) for v in row))
        if any(actual.get(rank, 0) != count for rank, count in expected.items()) \
                or set(actual) - set(expected):
            raise InvalidDistributionError(
                participant=p,
                expected=expected,
                actual=actual,
                participant_id=qsorts.participant_ids[p],
            )


def pearson_matrix(ranks: np.ndarray) -> np.ndarray:
    """行ごとのピアソン相関（対称化し、対角は1）。

    分散のない行は他の全ての行と相関0とする。
    """
    data = np.asarray(ranks, dtype=float)
    centered = data - data.mean(axis=1, keepdims=True)
    norms = np.sqrt((centered ** 2).sum(axis=1))
    safe = np.where(norms > 0, norms, 1.0)
    unit = centered / safe[:, None]
    unit[norms == 0] = 0.0
    corr = unit @ unit.T
    corr = np.clip((corr + corr.T) / 2, -1.0, 1.0)
    np.fill_diagonal(corr, 1.0)
    return corr


def build_correlation_matrix(qsorts: QSortMatrix, grid: GridConfig) -> CorrelationMatrix:
    """Qソートを検証し、相関行列を構築する。

    Args:
        qsorts: 参加者 x 項目 の順位
        grid: Qソートが従うべき強制分布グリッド

    Returns:
        参加者間の CorrelationMatrix
    """
    validate_qsorts(qsorts, grid)
    values = pearson_matrix(qsorts.ranks)
    logger.debug(f"{qsorts.n_participants} 件のQソートから相関行列を構築")
    return CorrelationMatrix(values=values, participant_ids=qsorts.participant_ids)
