"""
回転エンジン

未回転の因子解を単純構造に向けて回転する。

手法（フラットな戦略テーブル ROTATIONS）:
  - none:      恒等変換
  - varimax:   直交。Kaiser正規化した因子対ごとの平面回転
  - quartimax: 直交。行の単純性基準による因子対ごとの平面回転
  - promax:    斜交。バリマックスの後、kappa乗したターゲットへ最小二乗で当てはめる
               （factor_analyzer の Rotator）
  - oblimin:   斜交。勾配射影法による直接オブリミン（gamma）

直交回転は収束フラグと反復回数を返す必要があるため、因子対ごとの平面回転を
自前で実装している。この平面回転は対話的な手動回転とも共有する。

手動回転は既存の回転の上に、操作者が指定した k x k 行列を適用する。
plane_rotation_matrix() は対話的回転で使う2因子の回転行列を作る。
出力はすべて符号と順序を正規化するため、同じ入力からは常に同じ行列が得られる。
また、すべての出力は収束フラグを持ち、非収束を致命的とするかは呼び出し側が決める。
"""

import logging
from typing import Callable, Dict, NamedTuple, Optional, Tuple

import numpy as np
from factor_analyzer import Rotator

from ..errors import InputError, RotationSingularityError
from .extraction import factor_orientation
from .types import FactorSolution, RotatedSolution, RotationOptions, RotationQuality

logger = logging.getLogger(__name__)


# ── 補助関数 ─────────────────────────────────────────────────────────────────

def _row_norms(loadings: np.ndarray) -> np.ndarray:
    norms = np.sqrt((loadings ** 2).sum(axis=1))
    return np.where(norms > 0, norms, 1.0)


def plane_rotation_matrix(n_factors: int, i: int, j: int, degrees: float) -> np.ndarray:
    """因子 i と j（0始まり）の平面を ``degrees`` 度回転する k x k 行列。

    負荷量に右から掛けると、列 (x, y) は
    (x cos + y sin, -x sin + y cos) に写る。
    """
    if not (0 <= i < n_factors and 0 <= j < n_factors) or i == j:
        raise InputError(
            "Plane rotation needs two distinct factors within range",
            factor_a=i + 1, factor_b=j + 1, n_factors=n_factors,
        )
    theta = np.deg2rad(degrees)
    c, s = np.cos(theta), np.sin(theta)
    matrix = np.eye(n_factors)
    matrix[i, i] = c
    matrix[i, j] = -s
    matrix[j, i] = s
    matrix[j, j] = c
    return matrix


def varimax_criterion(loadings: np.ndarray) -> float:
    """因子ごとの負荷量二乗の分散の総和。"""
    n = loadings.shape[0]
    squared = loadings ** 2
    return float(((n * (squared ** 2).sum(axis=0) - squared.sum(axis=0) ** 2) / n ** 2).sum())


def quartimax_criterion(loadings: np.ndarray) -> float:
    return float((loadings ** 4).sum())


def _varimax_angle(x: np.ndarray, y: np.ndarray) -> float:
    n = x.shape[0]
    u = x ** 2 - y ** 2
    v = 2 * x * y
    a, b = u.sum(), v.sum()
    c = (u ** 2 - v ** 2).sum()
    d = 2 * (u * v).sum()
    return float(np.arctan2(d - 2 * a * b / n, c - (a ** 2 - b ** 2) / n) / 4)


def _quartimax_angle(x: np.ndarray, y: np.ndarray) -> float:
    u = x ** 2 - y ** 2
    v = 2 * x * y
    return float(np.arctan2(2 * (u * v).sum(), (u ** 2 - v ** 2).sum()) / 4)


def rotation_quality(loadings: np.ndarray, salient: float = 0.4, hyperplane: float = 0.1) -> RotationQuality:
    """負荷量行列の単純構造の要約。"""
    magnitude = np.abs(loadings)
    cross = int(np.sum((magnitude > salient).sum(axis=1) > 1))
    return RotationQuality(
        simplicity_index=float(1 - cross / loadings.shape[0]),
        hyperplane_count=int(np.sum((magnitude < hyperplane).all(axis=1))),
        cross_loadings=cross,
    )


def factor_correlations_from(transformation: np.ndarray) -> np.ndarray:
    """斜交変換 T から導かれる因子間相関行列。

    inv(T'T) を対角が1になるようスケーリングしたもの。
    """
    try:
        phi = np.linalg.inv(transformation.T @ transformation)
    except np.linalg.LinAlgError as e:
        raise RotationSingularityError(
            f"Transformation matrix is singular: {e}", method="oblique"
        ) from e
    scale = np.sqrt(np.abs(np.diag(phi)))
    phi = phi / np.outer(scale, scale)
    np.fill_diagonal(phi, 1.0)
    return (phi + phi.T) / 2


# ── 回転カーネル ─────────────────────────────────────────────────────────────

def pairwise_orthomax(
    loadings: np.ndarray,
    method: str = "varimax",
    normalize: bool = True,
    tolerance: float = 1e-5,
    max_iterations: int = 50,
) -> Tuple[np.ndarray, np.ndarray, bool, int]:
    """因子対ごとの平面回転を繰り返す直交回転。

    各スイープで全ての因子対を、その対の基準を最大化する角度だけ回転する。
    基準の変化が ``tolerance`` 未満になるか ``max_iterations`` 回に達するまで繰り返す。

    Args:
        loadings: 未回転の負荷量（n x k）
        method: "varimax" または "quartimax"
        normalize: 回転中にKaiser（行）正規化を行うか

    Returns:
        (回転後の負荷量, 回転行列 T, 収束したか, スイープ回数)
    """
    angle_fn, criterion_fn = {
        'varimax': (_varimax_angle, varimax_criterion),
        'quartimax': (_quartimax_angle, quartimax_criterion),
    }[method]

    loadings = np.asarray(loadings, dtype=float)
    k = loadings.shape[1]
    norms = _row_norms(loadings) if normalize else np.ones(loadings.shape[0])
    work = loadings / norms[:, None]
    rotation = np.eye(k)

    previous = criterion_fn(work)
    converged = False
    sweeps = 0
    for sweeps in range(1, max_iterations + 1):
        for i in range(k - 1):
            for j in range(i + 1, k):
                phi = angle_fn(work[:, i], work[:, j])
                if phi == 0.0:
                    continue
                c, s = np.cos(phi), np.sin(phi)
                x, y = work[:, i].copy(), work[:, j].copy()
                work[:, i] = c * x + s * y
                work[:, j] = -s * x + c * y
                ri, rj = rotation[:, i].copy(), rotation[:, j].copy()
                rotation[:, i] = c * ri + s * rj
                rotation[:, j] = -s * ri + c * rj
        current = criterion_fn(work)
        if abs(current - previous) < tolerance:
            converged = True
            break
        previous = current

    return work * norms[:, None], rotation, converged, sweeps


def promax_kernel(
    loadings: np.ndarray,
    kappa: float = 4.0,
    normalize: bool = True,
    tolerance: float = 1e-5,
    max_iterations: int = 50,
    condition_limit: float = 1e10,
) -> Tuple[np.ndarray, np.ndarray, bool, int]:
    """プロマックス: バリマックスの後、sign(A)|A|^kappa への最小二乗回転。

    ターゲットへの当てはめは factor_analyzer の Rotator が行う。
    入力はすでにバリマックス最適なので、Rotator 内部のバリマックスはほぼ恒等になる。

    Raises:
        RotationSingularityError: ターゲットの連立方程式が特異、または
            非有限の値が生じた
    """
    varimax, rotation, converged, sweeps = pairwise_orthomax(
        loadings, "varimax", normalize, tolerance, max_iterations
    )
    if varimax.shape[1] < 2:
        return varimax, rotation, converged, sweeps

    gram = varimax.T @ varimax
    condition = np.linalg.cond(gram)
    if not np.isfinite(condition) or condition > condition_limit:
        raise RotationSingularityError(
            "Varimax loadings are singular, promax target cannot be fitted",
            method="promax", condition=condition,
        )

    target_fit = Rotator(method="promax", power=kappa, normalize=normalize, tol=tolerance)
    try:
        with np.errstate(invalid="ignore", divide="ignore"):
            promax = target_fit.fit_transform(varimax)
    except np.linalg.LinAlgError as e:
        raise RotationSingularityError(
            f"Promax target matrix is singular: {e}", method="promax", condition=condition
        ) from e
    fit = target_fit.rotation_
    if not (np.all(np.isfinite(promax)) and np.all(np.isfinite(fit))):
        raise RotationSingularityError(
            "Promax target rotation produced non-finite factor scaling",
            method="promax", condition=condition,
        )

    return varimax @ fit, rotation @ fit, converged, sweeps


def _oblimin_value_gradient(loadings: np.ndarray, gamma: float) -> Tuple[float, np.ndarray]:
    p, k = loadings.shape
    squared = loadings ** 2
    off = np.ones((k, k)) - np.eye(k)
    centered = squared - gamma * squared.mean(axis=0) if gamma != 0 else squared
    x = centered @ off
    return float((squared * x).sum() / 4), loadings * x


def oblimin_kernel(
    loadings: np.ndarray,
    gamma: float = 0.0,
    normalize: bool = True,
    tolerance: float = 1e-5,
    max_iterations: int = 500,
) -> Tuple[np.ndarray, np.ndarray, bool, int]:
    """斜交多様体上の勾配射影法による直接オブリミン。

    結果の因子間相関行列は T'T（T の各列は単位長）。返す変換行列は inv(T)' で、
    ``rotated == loadings @ transformation`` が成り立つ。

    Returns:
        (パターン負荷量, 変換行列, 収束したか, 反復回数)
    """
    loadings = np.asarray(loadings, dtype=float)
    k = loadings.shape[1]
    norms = _row_norms(loadings) if normalize else np.ones(loadings.shape[0])
    work = loadings / norms[:, None]

    t = np.eye(k)
    pattern = work @ np.linalg.inv(t).T
    value, gq = _oblimin_value_gradient(pattern, gamma)
    gradient = -(pattern.T @ gq @ np.linalg.inv(t)).T
    step = 1.0
    converged = False
    iterations = 0

    for iterations in range(1, max_iterations + 1):
        projected = gradient - t @ np.diag((t * gradient).sum(axis=0))
        size = np.sqrt((projected ** 2).sum())
        if size < tolerance:
            converged = True
            break
        step *= 2
        for _ in range(11):
            candidate = t - step * projected
            candidate = candidate / np.sqrt((candidate ** 2).sum(axis=0))
            try:
                inverse = np.linalg.inv(candidate)
            except np.linalg.LinAlgError as e:
                raise RotationSingularityError(
                    f"Oblimin step produced a singular transformation: {e}", method="oblimin"
                ) from e
            candidate_pattern = work @ inverse.T
            candidate_value, candidate_gq = _oblimin_value_gradient(candidate_pattern, gamma)
            if value - candidate_value > 0.5 * size ** 2 * step:
                break
            step /= 2
        t = candidate
        value = candidate_value
        pattern = candidate_pattern
        gradient = -(pattern.T @ candidate_gq @ inverse).T

    transformation = np.linalg.inv(t).T
    if not np.all(np.isfinite(transformation)):
        raise RotationSingularityError("Oblimin produced non-finite values", method="oblimin")
    return pattern * norms[:, None], transformation, converged, iterations


# ── 戦略テーブル ─────────────────────────────────────────────────────────────

class RotationStrategy(NamedTuple):
    name: str
    rotate: Callable[[np.ndarray, RotationOptions], Tuple[np.ndarray, np.ndarray, bool, int]]
    oblique: bool
    convergence_required: bool


def _rotate_none(loadings, options):
    return np.array(loadings, dtype=float), np.eye(loadings.shape[1]), True, 0


def _rotate_varimax(loadings, options):
    return pairwise_orthomax(
        loadings, "varimax", options.normalize, options.tolerance, options.max_iterations
    )


def _rotate_quartimax(loadings, options):
    return pairwise_orthomax(
        loadings, "quartimax", options.normalize, options.tolerance, options.max_iterations
    )


def _rotate_promax(loadings, options):
    return promax_kernel(
        loadings, options.kappa, options.normalize, options.tolerance,
        options.max_iterations, options.condition_limit,
    )


def _rotate_oblimin(loadings, options):
    return oblimin_kernel(
        loadings, options.gamma, options.normalize, options.tolerance,
        options.gradient_max_iterations,
    )


ROTATIONS: Dict[str, RotationStrategy] = {
    'none': RotationStrategy('none', _rotate_none, False, False),
    'varimax': RotationStrategy('varimax', _rotate_varimax, False, True),
    'quartimax': RotationStrategy('quartimax', _rotate_quartimax, False, True),
    'promax': RotationStrategy('promax', _rotate_promax, True, True),
    'oblimin': RotationStrategy('oblimin', _rotate_oblimin, True, True),
}


def get_rotation(method: str) -> RotationStrategy:
    try:
        return ROTATIONS[method.lower()]
    except KeyError:
        raise InputError(
            f"Unsupported rotation method: {method}",
            method=method,
            supported=sorted(ROTATIONS),
        ) from None


def _validate_options(strategy: RotationStrategy, options: RotationOptions) -> None:
    if strategy.name == 'promax' and options.kappa <= 1:
        raise InputError("Promax kappa must be greater than 1", kappa=options.kappa)
    if strategy.name == 'oblimin' and not -1 <= options.gamma <= 1:
        raise InputError("Oblimin gamma must lie between -1 and 1", gamma=options.gamma)
    if options.max_iterations < 1 or options.gradient_max_iterations < 1:
        raise InputError("Iteration caps must be positive")


def build_rotated(
    loadings: np.ndarray,
    transformation: np.ndarray,
    method: str,
    converged: bool,
    iterations: int,
    oblique: bool,
) -> RotatedSolution:
    """回転結果の向きを正規化し、品質指標と因子間相関を付与する。"""
    signs, order = factor_orientation(loadings)
    loadings = (loadings * signs)[:, order]
    transformation = (transformation * signs)[:, order]
    correlations = factor_correlations_from(transformation) if oblique else None
    return RotatedSolution(
        loadings=loadings,
        method=method,
        rotation_matrix=transformation,
        converged=bool(converged),
        iterations=int(iterations),
        oblique=oblique,
        factor_correlations=correlations,
        quality=rotation_quality(loadings),
    )


# ── 公開API ──────────────────────────────────────────────────────────────────

def rotate_loadings(
    loadings: np.ndarray,
    method: Optional[str] = None,
    options: Optional[RotationOptions] = None,
) -> RotatedSolution:
    """負荷量行列をそのまま回転する（rotate() を参照）。"""
    options = options or RotationOptions()
    strategy = get_rotation(method or options.method)
    _validate_options(strategy, options)
    loadings = np.asarray(loadings, dtype=float)

    if loadings.shape[1] == 1 or strategy.name == 'none':
        return build_rotated(
            loadings, np.eye(loadings.shape[1]), strategy.name, True, 0, False
        )

    rotated, transformation, converged, iterations = strategy.rotate(loadings, options)
    if not np.all(np.isfinite(rotated)):
        raise RotationSingularityError(
            f"{strategy.name} rotation produced non-finite loadings", method=strategy.name
        )
    if strategy.convergence_required and not converged:
        logger.warning(
            f"{strategy.name} 回転が {iterations} 回の反復で収束しなかった"
        )
    return build_rotated(
        rotated, transformation, strategy.name, converged, iterations, strategy.oblique
    )


def rotate(
    solution: FactorSolution,
    method: Optional[str] = None,
    options: Optional[RotationOptions] = None,
) -> RotatedSolution:
    """抽出済みの解を回転する。

    Args:
        solution: 未回転の因子
        method: 回転手法名。省略時は ``options.method``
        options: 許容誤差、反復上限、kappa / gamma

    Returns:
        rotation_matrix が未回転の負荷量を回転後の負荷量に写す RotatedSolution。
        因子が1つの場合は回転しない。
    """
    return rotate_loadings(solution.loadings, method, options)


def unrotated(solution: FactorSolution) -> RotatedSolution:
    """抽出結果そのものを恒等回転として表したもの。"""
    return rotate_loadings(solution.loadings, 'none')


def apply_manual_rotation(
    base: RotatedSolution,
    rotation_matrix: np.ndarray,
    mode: str = "orthogonal",
    options: Optional[RotationOptions] = None,
) -> RotatedSolution:
    """操作者が指定した回転行列を ``base`` の上に適用する。

    直交モードでは行列が（``orthogonality_tolerance`` 以内で）直交であること、
    斜交モードでは正則であることを要求する。プレビューと確定の両方で使う純粋関数。

    Raises:
        InputError: 形状の不一致、非有限値、または直交でない行列
        RotationSingularityError: 斜交モードで行列が特異
    """
    options = options or RotationOptions()
    k = base.n_factors
    matrix = np.asarray(rotation_matrix, dtype=float)
    if matrix.shape != (k, k):
        raise InputError(
            "Rotation matrix shape does not match the number of factors",
            shape=list(matrix.shape), n_factors=k,
        )
    if not np.all(np.isfinite(matrix)):
        raise InputError("Rotation matrix contains non-finite values")

    if mode == "orthogonal":
        deviation = float(np.abs(matrix.T @ matrix - np.eye(k)).max())
        if deviation > options.orthogonality_tolerance:
            raise InputError(
                "Rotation matrix is not orthogonal",
                deviation=deviation, tolerance=options.orthogonality_tolerance,
            )
        oblique = base.oblique
    elif mode == "oblique":
        condition = np.linalg.cond(matrix)
        if not np.isfinite(condition) or condition > options.condition_limit:
            raise RotationSingularityError(
                "Rotation matrix is not invertible", method="manual", condition=condition
            )
        deviation = float(np.abs(matrix.T @ matrix - np.eye(k)).max())
        oblique = base.oblique or deviation > options.orthogonality_tolerance
    else:
        raise InputError(f"Unknown rotation mode: {mode}", mode=mode)

    return build_rotated(
        base.loadings @ matrix,
        base.rotation_matrix @ matrix,
        "manual",
        True,
        0,
        oblique,
    )
