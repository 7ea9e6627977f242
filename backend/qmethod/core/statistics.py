"""
統計出力生成モジュール

回転後の解を、解釈可能なQ方法論の出力に変換する:

  1. 因子ごとの定義ソート（自動フラグ付け）とその重み
  2. 因子配列: 項目ごとの重み付きzスコアをグリッドに流し込んだもの
  3. 弁別項目（因子対ごとのzスコア差の検定）
  4. 合意項目
  5. 因子間相関行列（斜交回転のみ）
  6. クリブシート
  7. 因子特性（信頼性、標準誤差、正方向性、極端度、弁別度）
"""

import logging
from typing import List, Optional, Tuple

import numpy as np
from scipy import stats
from sklearn.preprocessing import StandardScaler

from ..errors import InputError
from .rotation import factor_correlations_from
from .types import (
    ConsensusStatement,
    CribEntry,
    CribSheet,
    DistinguishingStatement,
    FactorArray,
    FactorCharacteristics,
    GridConfig,
    PairComparison,
    QSortMatrix,
    RotatedSolution,
    StatisticsOptions,
)

logger = logging.getLogger(__name__)


# ── 定義ソートと因子配列 ─────────────────────────────────────────────────────

def flag_threshold(n_statements: int, alpha: float = 0.05) -> float:
    """ソートが ``alpha``（両側）で有意となるために超えるべき負荷量。"""
    return float(stats.norm.ppf(1 - alpha / 2) / np.sqrt(n_statements))


def flag_defining_sorts(
    loadings: np.ndarray,
    n_statements: int,
    alpha: float = 0.05,
) -> List[Tuple[int, ...]]:
    """定義ソートの自動フラグ付け。因子ごとに参加者のタプルを1つ返す。

    負荷量が有意で、かつその因子が他の全因子の合計より多くの共通分散を
    説明する（a^2 > h^2 - a^2）参加者がその因子を定義する。
    該当者がいない因子は、正の負荷量が最大の参加者で定義する。
    """
    loadings = np.asarray(loadings, dtype=float)
    threshold = flag_threshold(n_statements, alpha)
    squared = loadings ** 2
    communalities = squared.sum(axis=1)

    flagged = []
    for f in range(loadings.shape[1]):
        qualifies = (np.abs(loadings[:, f]) > threshold) & (squared[:, f] > communalities - squared[:, f])
        members = tuple(int(p) for p in np.flatnonzero(qualifies))
        if not members:
            best = int(np.argmax(loadings[:, f]))
            logger.info(
                f"因子 {f + 1} を定義するソートがないため参加者 {best} を使用 "
                f"（負荷量 {loadings[best, f]:.3f}）"
            )
            members = (best,)
        flagged.append(members)
    return flagged


def factor_weights(loadings: np.ndarray, max_loading: float = 0.999) -> np.ndarray:
    """Spearmanの重み w = a / (1 - a^2)。a は +-max_loading でクリップする。"""
    a = np.clip(np.asarray(loadings, dtype=float), -max_loading, max_loading)
    return a / (1 - a ** 2)


def standardize_scores(scores: np.ndarray) -> np.ndarray:
    """母集団zスコア。定数ベクトルはゼロになる。"""
    scaled = StandardScaler().fit_transform(np.asarray(scores, dtype=float).reshape(-1, 1))
    return scaled.ravel()


def grid_ranks(z_scores: np.ndarray, grid: GridConfig) -> np.ndarray:
    """zスコアの降順に項目をグリッドへ流し込む。

    同値の場合は項目インデックスの小さい方を先にする。
    """
    z_scores = np.asarray(z_scores, dtype=float)
    if z_scores.shape[0] != grid.n_statements:
        raise InputError(
            "z-score vector does not match the grid size",
            statements=int(z_scores.shape[0]), grid_statements=grid.n_statements,
        )
    order = np.lexsort((np.arange(z_scores.shape[0]), -z_scores))
    ranks = np.empty(z_scores.shape[0], dtype=int)
    ranks[order] = grid.slots()
    return ranks


def build_factor_arrays(
    qsorts: QSortMatrix,
    rotated: RotatedSolution,
    grid: GridConfig,
    options: Optional[StatisticsOptions] = None,
) -> Tuple[FactorArray, ...]:
    """因子ごとの理想化されたQソート。

    Args:
        qsorts: 分析対象のQソート
        rotated: 回転後の負荷量
        grid: 順位の割り当てに使う強制分布
        options: フラグ付けの有意水準と負荷量のクリップ値

    Returns:
        因子ごとの FactorArray（1始まりの番号）
    """
    options = options or StatisticsOptions()
    ranks = np.asarray(qsorts.ranks, dtype=float)
    defining = flag_defining_sorts(rotated.loadings, qsorts.n_statements, options.flag_alpha)

    arrays = []
    for f, members in enumerate(defining):
        members_idx = list(members)
        weights = factor_weights(rotated.loadings[members_idx, f], options.max_loading)
        scores = weights @ ranks[members_idx]
        z_scores = standardize_scores(scores)
        arrays.append(FactorArray(
            factor=f + 1,
            z_scores=z_scores,
            ranks=grid_ranks(z_scores, grid),
            defining_sorts=members,
            weights=weights,
            statement_ids=qsorts.statement_ids,
        ))
    return tuple(arrays)


# ── 有意性検定 ───────────────────────────────────────────────────────────────

def composite_reliability(n_defining: int, reliability: float = 0.8) -> float:
    """n 個の定義ソートから作った因子のSpearman-Brown信頼性。"""
    return reliability * n_defining / (1 + reliability * (n_defining - 1))


def factor_standard_error(n_defining: int, reliability: float = 0.8) -> float:
    """因子のzスコアの標準誤差。

    ソートあたりの信頼性 R から合成信頼性 r = R n / (1 + R (n - 1)) を求め、
    SE = sqrt(1 - r) とする。
    """
    r = composite_reliability(n_defining, reliability)
    return float(np.sqrt(max(1 - r, 0.0)))


def significance_level(p_value: float, levels: Tuple[float, ...]) -> Optional[float]:
    """p値を下回る設定済み有意水準のうち最小のもの。なければ None。"""
    passed = [level for level in sorted(levels) if p_value < level]
    return passed[0] if passed else None


def pairwise_tests(
    arrays: Tuple[FactorArray, ...],
    options: Optional[StatisticsOptions] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """全ての項目と因子対に対する両側の差の検定。

    Returns:
        (deltas, p_values)。いずれも 項目 x k x k で、
        deltas[s, a, b] = z_a - z_b
    """
    options = options or StatisticsOptions()
    z = np.column_stack([a.z_scores for a in arrays])
    se = np.array([
        factor_standard_error(len(a.defining_sorts), options.reliability) for a in arrays
    ])
    se_diff = np.sqrt(se[:, None] ** 2 + se[None, :] ** 2)

    deltas = z[:, :, None] - z[:, None, :]
    with np.errstate(divide='ignore', invalid='ignore'):
        statistic = np.abs(deltas) / se_diff
    statistic = np.where(se_diff > 0, statistic, np.where(deltas != 0, np.inf, 0.0))
    p_values = 2 * stats.norm.sf(statistic)
    return deltas, p_values


def find_distinguishing(
    arrays: Tuple[FactorArray, ...],
    options: Optional[StatisticsOptions] = None,
) -> Tuple[DistinguishingStatement, ...]:
    """ある因子でのzスコアが他の因子と有意に異なる項目。

    (項目, 注目因子) ごとに1レコード。全ての他因子に対して最も厳しい水準で
    有意な場合は ``pure`` とする。
    """
    options = options or StatisticsOptions()
    k = len(arrays)
    if k < 2:
        return ()
    strictest = min(options.significance_levels)
    loosest = max(options.significance_levels)
    deltas, p_values = pairwise_tests(arrays, options)
    statement_ids = arrays[0].statement_ids

    found = []
    for f in range(k):
        for s in range(deltas.shape[0]):
            comparisons = tuple(
                PairComparison(
                    other_factor=g + 1,
                    delta=float(deltas[s, f, g]),
                    p_value=float(p_values[s, f, g]),
                    level=significance_level(p_values[s, f, g], options.significance_levels),
                )
                for g in range(k) if g != f
            )
            if not any(c.p_value < loosest for c in comparisons):
                continue
            found.append(DistinguishingStatement(
                statement_index=s,
                statement_id=statement_ids[s],
                factor=f + 1,
                z_score=float(arrays[f].z_scores[s]),
                mean_delta=float(np.mean([c.delta for c in comparisons])),
                comparisons=comparisons,
                pure=all(c.p_value < strictest for c in comparisons),
            ))
    return tuple(found)


def find_consensus(
    arrays: Tuple[FactorArray, ...],
    options: Optional[StatisticsOptions] = None,
) -> Tuple[ConsensusStatement, ...]:
    """どの因子対でも弁別されない項目。zスコアの幅が小さい順。"""
    options = options or StatisticsOptions()
    if len(arrays) < 2:
        return ()
    loosest = max(options.significance_levels)
    _, p_values = pairwise_tests(arrays, options)
    z = np.column_stack([a.z_scores for a in arrays])
    r = np.column_stack([a.ranks for a in arrays])
    statement_ids = arrays[0].statement_ids

    consensus = []
    for s in range(z.shape[0]):
        if np.any(p_values[s] < loosest):
            continue
        consensus.append(ConsensusStatement(
            statement_index=s,
            statement_id=statement_ids[s],
            z_scores=tuple(float(v) for v in z[s]),
            ranks=tuple(int(v) for v in r[s]),
            z_range=float(z[s].max() - z[s].min()),
            mean_z=float(z[s].mean()),
        ))
    consensus.sort(key=lambda c: (c.z_range, c.statement_index))
    return tuple(consensus)


def factor_correlation_matrix(rotated: RotatedSolution) -> Optional[np.ndarray]:
    """因子間の相関。直交解では None。"""
    if not rotated.oblique:
        return None
    if rotated.factor_correlations is not None:
        return rotated.factor_correlations
    return factor_correlations_from(np.asarray(rotated.rotation_matrix))


# ── クリブシート ─────────────────────────────────────────────────────────────

def _entry(array: FactorArray, s: int) -> CribEntry:
    return CribEntry(
        statement_index=int(s),
        statement_id=array.statement_ids[s],
        z_score=float(array.z_scores[s]),
        rank=int(array.ranks[s]),
    )


def build_crib_sheets(
    arrays: Tuple[FactorArray, ...],
    distinguishing: Tuple[DistinguishingStatement, ...],
    options: Optional[StatisticsOptions] = None,
) -> Tuple[CribSheet, ...]:
    options = options or StatisticsOptions()
    top_n = options.crib_top_n
    sheets = []
    for f, array in enumerate(arrays):
        index = np.arange(array.z_scores.shape[0])
        descending = np.lexsort((index, -array.z_scores))
        ascending = np.lexsort((index, array.z_scores))

        others = [a.ranks for g, a in enumerate(arrays) if g != f]
        if others:
            other_ranks = np.column_stack(others)
            higher = np.flatnonzero((array.ranks[:, None] > other_ranks).all(axis=1))
            lower = np.flatnonzero((array.ranks[:, None] < other_ranks).all(axis=1))
        else:
            higher = lower = np.array([], dtype=int)
        higher = sorted(higher, key=lambda s: (-array.ranks[s], s))
        lower = sorted(lower, key=lambda s: (array.ranks[s], s))

        sheets.append(CribSheet(
            factor=array.factor,
            highest=tuple(_entry(array, s) for s in descending[:top_n]),
            lowest=tuple(_entry(array, s) for s in ascending[:top_n]),
            ranked_higher=tuple(_entry(array, s) for s in higher),
            ranked_lower=tuple(_entry(array, s) for s in lower),
            distinguishing=tuple(d for d in distinguishing if d.factor == array.factor),
        ))
    return tuple(sheets)


def factor_characteristics(
    arrays: Tuple[FactorArray, ...],
    distinguishing: Tuple[DistinguishingStatement, ...],
    options: Optional[StatisticsOptions] = None,
) -> Tuple[FactorCharacteristics, ...]:
    options = options or StatisticsOptions()
    characteristics = []
    for array in arrays:
        z = array.z_scores
        n = len(array.defining_sorts)
        own = {d.statement_index for d in distinguishing if d.factor == array.factor}
        characteristics.append(FactorCharacteristics(
            factor=array.factor,
            n_defining=n,
            reliability=composite_reliability(n, options.reliability),
            standard_error=factor_standard_error(n, options.reliability),
            positivity=float(np.mean(z > 0)),
            extremity=float(np.max(np.abs(z))),
            distinctiveness=len(own) / z.shape[0],
        ))
    return tuple(characteristics)
