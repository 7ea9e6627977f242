"""
因子抽出モジュール

参加者間の相関行列から未回転の因子を抽出する。

手法（フラットな戦略テーブル EXTRACTORS）:
  - centroid: Brownのセントロイド法。列の反転と残差化を繰り返して
    1因子ずつ抽出する（PQMethodの既定）
  - pca: 主成分法。固有ベクトルを sqrt(固有値) でスケーリングする

解とは別に、因子数の目安を参考情報として計算できる:
カイザー基準、同じ形の順列化Qソートに対する平行分析、スクリー用の固有値列。
"""

import logging
from typing import Callable, Dict, NamedTuple, Optional, Tuple

import numpy as np

from ..errors import ExtractionDivergenceError, InputError
from .correlation import pearson_matrix
from .types import (
    CorrelationMatrix,
    ExtractionOptions,
    FactorCountGuidance,
    FactorSolution,
    QSortMatrix,
    ScreeRow,
)

logger = logging.getLogger(__name__)

# 共通性が 1 + 許容誤差 を超える参加者をヘイウッドケースとして報告する
HEYWOOD_TOLERANCE = 1e-6


# ── 向きの正規化 ─────────────────────────────────────────────────────────────

def factor_orientation(loadings: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """負荷量行列を正規形にする符号と列順。

    各因子は絶対値最大の負荷量が正になるよう反転し、負荷量の二乗和の
    降順に並べる（安定ソートのため、同値の因子は相対順序を保つ）。

    Returns:
        (signs, order): ``(loadings * signs)[:, order]`` として適用する
    """
    loadings = np.asarray(loadings, dtype=float)
    peak_rows = np.argmax(np.abs(loadings), axis=0)
    peaks = loadings[peak_rows, np.arange(loadings.shape[1])]
    signs = np.where(peaks < 0, -1.0, 1.0)
    variance = np.round((loadings ** 2).sum(axis=0), 12)
    order = np.argsort(-variance, kind='stable')
    return signs, order


def orient_loadings(loadings: np.ndarray) -> np.ndarray:
    signs, order = factor_orientation(loadings)
    return (np.asarray(loadings, dtype=float) * signs)[:, order]


# ── 抽出カーネル ─────────────────────────────────────────────────────────────

def centroid_loadings(
    correlations: np.ndarray,
    n_factors: int,
    max_iterations: int = 100,
    residual_threshold: float = 1e-6,
) -> Tuple[np.ndarray, int, float]:
    """Brownのセントロイド法による抽出。

    因子ごとに、対角要素を各列の残差相関の絶対値最大で置き換え、
    非対角の列和が負でなくなるまで（最も負の列から）変数を1つずつ反転する。
    負荷量は列和を総和の平方根で割ったもの。その後、負荷量の積を残差行列から除く。

    Args:
        correlations: 参加者間の相関行列（n x n）
        n_factors: 要求する因子数
        max_iterations: 因子あたりの反転回数の上限
        residual_threshold: 非対角残差の二乗和がこの値を下回ったら早期終了する

    Returns:
        (負荷量 n x k, 反転回数の合計, 最終的な残差二乗和)

    Raises:
        ExtractionDivergenceError: 上限内で反転が収束しない、または
            行列に抽出可能な共通分散がない
    """
    residual = np.array(correlations, dtype=float, copy=True)
    n = residual.shape[0]
    off_diagonal = ~np.eye(n, dtype=bool)
    factors = []
    total_steps = 0
    residual_ss = float((residual[off_diagonal] ** 2).sum())

    for f in range(n_factors):
        work = residual.copy()
        np.fill_diagonal(work, 0.0)
        np.fill_diagonal(work, np.abs(work).max(axis=0))

        signs = np.ones(n)
        steps = 0
        while True:
            reflected = work * np.outer(signs, signs)
            column_sums = reflected.sum(axis=0) - np.diag(reflected)
            j = int(np.argmin(column_sums))
            if column_sums[j] >= -1e-12:
                break
            steps += 1
            if steps > max_iterations:
                raise ExtractionDivergenceError(
                    f"Centroid reflection for factor {f + 1} did not settle "
                    f"within {max_iterations} steps",
                    iterations=steps,
                    residual=residual_ss,
                    factor=f + 1,
                )
            signs[j] = -signs[j]
        total_steps += steps

        reflected = work * np.outer(signs, signs)
        total = reflected.sum()
        if total <= 1e-12:
            if f == 0:
                raise ExtractionDivergenceError(
                    "Correlation matrix holds no common variance to extract",
                    iterations=total_steps,
                    residual=residual_ss,
                    factor=1,
                )
            logger.warning(f"セントロイド抽出は {f} 因子で打ち切り（共通分散なし）")
            break

        loadings = reflected.sum(axis=0) / np.sqrt(total) * signs
        factors.append(loadings)
        residual = residual - np.outer(loadings, loadings)
        residual_ss = float((residual[off_diagonal] ** 2).sum())

        if f + 1 < n_factors and residual_ss < residual_threshold:
            logger.info(
                f"残差分散 {residual_ss:.2e} が閾値を下回ったため "
                f"{n_factors} 因子中 {f + 1} 因子で終了"
            )
            break

    return np.column_stack(factors), total_steps, residual_ss


def principal_component_loadings(
    correlations: np.ndarray, n_factors: int
) -> Tuple[np.ndarray, np.ndarray]:
    """固有値分解による抽出。

    Returns:
        (負荷量 n x k, 降順に並べた全固有値)
    """
    values, vectors = np.linalg.eigh(np.asarray(correlations, dtype=float))
    order = np.argsort(-values, kind='stable')
    values = values[order]
    vectors = vectors[:, order]
    scale = np.sqrt(np.clip(values[:n_factors], 0.0, None))
    return vectors[:, :n_factors] * scale, values


def sorted_eigenvalues(correlations: np.ndarray) -> np.ndarray:
    return np.sort(np.linalg.eigvalsh(np.asarray(correlations, dtype=float)))[::-1]


# ── 戦略テーブル ─────────────────────────────────────────────────────────────

class ExtractionStrategy(NamedTuple):
    name: str
    extract: Callable[[np.ndarray, int, ExtractionOptions], Dict]
    convergence_required: bool


def _extract_centroid(correlations: np.ndarray, n_factors: int, options: ExtractionOptions) -> Dict:
    loadings, steps, residual = centroid_loadings(
        correlations, n_factors, options.max_iterations, options.residual_threshold
    )
    return {'loadings': loadings, 'iterations': steps, 'residual': residual}


def _extract_pca(correlations: np.ndarray, n_factors: int, options: ExtractionOptions) -> Dict:
    loadings, _ = principal_component_loadings(correlations, n_factors)
    return {'loadings': loadings, 'iterations': 0, 'residual': 0.0}


EXTRACTORS: Dict[str, ExtractionStrategy] = {
    'centroid': ExtractionStrategy('centroid', _extract_centroid, True),
    'pca': ExtractionStrategy('pca', _extract_pca, False),
}


def get_extractor(method: str) -> ExtractionStrategy:
    try:
        return EXTRACTORS[method.lower()]
    except KeyError:
        raise InputError(
            f"Unsupported extraction method: {method}",
            method=method,
            supported=sorted(EXTRACTORS),
        ) from None


# ── 公開API ──────────────────────────────────────────────────────────────────

def heywood_cases(communalities: np.ndarray, tolerance: float = HEYWOOD_TOLERANCE) -> Tuple[int, ...]:
    """共通性が1を超える参加者（ヘイウッドケース）のインデックス。"""
    return tuple(int(p) for p in np.flatnonzero(np.asarray(communalities) > 1.0 + tolerance))


def kaiser_criterion(eigenvalues: np.ndarray) -> int:
    """1.0 を超える固有値の数。"""
    return int(np.sum(np.asarray(eigenvalues) > 1.0))


def scree_rows(eigenvalues: np.ndarray) -> Tuple[ScreeRow, ...]:
    eigenvalues = np.asarray(eigenvalues, dtype=float)
    total = eigenvalues.sum()
    variance = eigenvalues / total * 100 if total > 0 else np.zeros_like(eigenvalues)
    cumulative = np.cumsum(variance)
    return tuple(
        ScreeRow(factor=i + 1, eigenvalue=float(ev), variance=float(v), cumulative_variance=float(c))
        for i, (ev, v, c) in enumerate(zip(eigenvalues, variance, cumulative))
    )


def parallel_analysis(
    qsorts: QSortMatrix,
    eigenvalues: np.ndarray,
    iterations: int = 100,
    seed: Optional[int] = 0,
) -> Tuple[int, np.ndarray, np.ndarray]:
    """観測固有値を順列化したQソートの固有値と比較する。

    乱数行列は研究と同じ形を保ち、各参加者の順位の多重集合も保つ
    （各ソートを独立にシャッフルする）ため、同じ強制分布に従う。
    順列は最低100回生成する。

    Returns:
        (推奨因子数, 乱数固有値の平均, 95パーセンタイル)
    """
    rng = np.random.default_rng(seed)
    iterations = max(int(iterations), 100)
    ranks = np.asarray(qsorts.ranks)
    random_values = np.empty((iterations, ranks.shape[0]))
    for i in range(iterations):
        shuffled = rng.permuted(ranks, axis=1)
        random_values[i] = sorted_eigenvalues(pearson_matrix(shuffled))

    mean = random_values.mean(axis=0)
    p95 = np.percentile(random_values, 95, axis=0)

    suggested = 0
    for observed, expected in zip(eigenvalues, mean):
        if observed > expected:
            suggested += 1
        else:
            break
    return suggested, mean, p95


def factor_count_guidance(
    qsorts: QSortMatrix,
    correlation: CorrelationMatrix,
    options: Optional[ExtractionOptions] = None,
) -> FactorCountGuidance:
    """因子数を選ぶためのカイザー基準・平行分析・スクリーのデータ。"""
    options = options or ExtractionOptions()
    eigenvalues = sorted_eigenvalues(correlation.values)
    parallel, mean, p95 = parallel_analysis(
        qsorts, eigenvalues, options.parallel_iterations, options.parallel_seed
    )
    return FactorCountGuidance(
        eigenvalues=eigenvalues,
        kaiser=kaiser_criterion(eigenvalues),
        parallel=parallel,
        random_mean=mean,
        random_p95=p95,
        scree=scree_rows(eigenvalues),
    )


def resolve_factor_count(correlation: CorrelationMatrix, requested: Optional[int]) -> int:
    """要求された因子数。未指定ならカイザー基準による数（最低1）。"""
    n = correlation.size
    if requested is None:
        requested = max(1, kaiser_criterion(sorted_eigenvalues(correlation.values)))
        logger.info(f"因子数が未指定のためカイザー基準を使用: {requested}")
    if requested < 1:
        raise InputError("Number of factors must be positive", n_factors=requested)
    if requested > n:
        raise InputError(
            "Number of factors cannot exceed number of Q-sorts",
            n_factors=requested, participants=n,
        )
    return int(requested)


def extract_factors(
    correlation: CorrelationMatrix,
    options: Optional[ExtractionOptions] = None,
) -> FactorSolution:
    """設定された手法で未回転の因子を抽出する。

    Args:
        correlation: 参加者間の相関行列
        options: 手法、因子数、反復の上限

    Returns:
        符号と順序を正規化した不変の FactorSolution
    """
    options = options or ExtractionOptions()
    strategy = get_extractor(options.method)
    n_factors = resolve_factor_count(correlation, options.n_factors)

    raw = strategy.extract(correlation.values, n_factors, options)
    loadings = orient_loadings(raw['loadings'])
    eigenvalues = (loadings ** 2).sum(axis=0)
    n = correlation.size

    communalities = (loadings ** 2).sum(axis=1)
    heywood = heywood_cases(communalities)
    if heywood:
        logger.warning(
            f"{strategy.name} 抽出でヘイウッドケースを検出: 共通性が1を超える参加者 "
            f"{[p + 1 for p in heywood]}"
        )

    if loadings.shape[1] < n_factors:
        logger.warning(
            f"{strategy.name} 抽出は要求 {n_factors} 因子のうち "
            f"{loadings.shape[1]} 因子のみ生成"
        )

    return FactorSolution(
        loadings=loadings,
        eigenvalues=eigenvalues,
        method=strategy.name,
        converged=True,
        iterations=int(raw['iterations']),
        communalities=communalities,
        explained_variance=eigenvalues / n * 100,
        residual=float(raw['residual']),
        participant_ids=correlation.participant_ids,
        heywood_cases=heywood,
    )
