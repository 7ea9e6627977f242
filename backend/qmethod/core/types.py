"""
ドメイン型とオプションデータクラスの定義モジュール

分析の各段階の間で受け渡す不変の値オブジェクト:

  QSortMatrix -> CorrelationMatrix -> FactorSolution -> RotatedSolution
              -> FactorArray / DistinguishingStatement / ConsensusStatement

これらのオブジェクトが持つ配列はコピーして読み取り専用にするため、
1つの解をセッション・プレビュー・実行中のブートストラップの間で
コピーせずに共有できる。
"""

import dataclasses
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..errors import InputError


def _frozen(values, dtype=float) -> np.ndarray:
    array = np.array(values, dtype=dtype, copy=True)
    array.setflags(write=False)
    return array


def as_serializable(obj: Any) -> Any:
    """データクラスや numpy の値をJSON互換の構造に変換する。

    NaN と無限大の浮動小数点数は ``None`` になる。
    """
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {
            f.name: as_serializable(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
        }
    if isinstance(obj, np.ndarray):
        return as_serializable(obj.tolist())
    if isinstance(obj, (list, tuple)):
        return [as_serializable(v) for v in obj]
    if isinstance(obj, dict):
        return {str(k): as_serializable(v) for k, v in obj.items()}
    if isinstance(obj, np.generic):
        obj = obj.item()
    if isinstance(obj, float) and not math.isfinite(obj):
        return None
    return obj


# ── 調査データ入力 ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GridConfig:
    """強制分布グリッド。

    Attributes:
        min_rank: 最左列の順位の値（例: -4）
        counts: 左から順に、列ごとの項目数
    """
    min_rank: int
    counts: Tuple[int, ...]

    def __post_init__(self):
        counts = tuple(int(c) for c in self.counts)
        object.__setattr__(self, 'counts', counts)
        if len(counts) < 2:
            raise InputError("Grid needs at least two columns", counts=list(counts))
        if any(c < 0 for c in counts):
            raise InputError("Grid column counts must be non-negative", counts=list(counts))
        if sum(counts) == 0:
            raise InputError("Grid holds no statements", counts=list(counts))

    @property
    def max_rank(self) -> int:
        return self.min_rank + len(self.counts) - 1

    @property
    def ranks(self) -> Tuple[int, ...]:
        return tuple(range(self.min_rank, self.max_rank + 1))

    @property
    def n_statements(self) -> int:
        return sum(self.counts)

    def expected_counts(self) -> Dict[int, int]:
        return dict(zip(self.ranks, self.counts))

    def slots(self) -> np.ndarray:
        """最も同意する列から順に並べたグリッドの値（項目ごとに1つ）。"""
        values = [rank for rank, count in zip(self.ranks, self.counts) for _ in range(count)]
        return np.array(values[::-1], dtype=int)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GridConfig':
        return cls(min_rank=int(data['min_rank']), counts=tuple(data['counts']))


@dataclass(frozen=True)
class QSortMatrix:
    """Qソートの順位からなる 参加者 x 項目 の行列。"""
    ranks: np.ndarray
    participant_ids: Tuple[str, ...] = ()
    statement_ids: Tuple[str, ...] = ()
    statement_texts: Tuple[str, ...] = ()

    def __post_init__(self):
        try:
            raw = np.asarray(self.ranks, dtype=float)
        except (ValueError, TypeError) as e:
            raise InputError(
                "Q-sort matrix must be a rectangular table of integers", reason=str(e)
            ) from e
        if raw.ndim != 2 or raw.size == 0:
            raise InputError(
                "Q-sort matrix must be a non-empty participants x statements table",
                shape=list(raw.shape),
            )
        if not np.all(np.isfinite(raw)):
            raise InputError("Q-sort matrix contains missing values")
        if not np.all(raw == np.round(raw)):
            raise InputError("Q-sort ranks must be integers")
        ranks = _frozen(raw, dtype=int)
        n_participants, n_statements = ranks.shape

        participant_ids = tuple(str(p) for p in self.participant_ids) or tuple(
            str(i + 1) for i in range(n_participants)
        )
        statement_ids = tuple(str(s) for s in self.statement_ids) or tuple(
            str(i + 1) for i in range(n_statements)
        )
        if len(participant_ids) != n_participants:
            raise InputError(
                "participant_ids length does not match the matrix",
                expected=n_participants, actual=len(participant_ids),
            )
        if len(statement_ids) != n_statements:
            raise InputError(
                "statement_ids length does not match the matrix",
                expected=n_statements, actual=len(statement_ids),
            )
        if self.statement_texts and len(self.statement_texts) != n_statements:
            raise InputError(
                "statement_texts length does not match the matrix",
                expected=n_statements, actual=len(self.statement_texts),
            )
        object.__setattr__(self, 'ranks', ranks)
        object.__setattr__(self, 'participant_ids', participant_ids)
        object.__setattr__(self, 'statement_ids', statement_ids)
        object.__setattr__(self, 'statement_texts', tuple(self.statement_texts))

    @property
    def n_participants(self) -> int:
        return self.ranks.shape[0]

    @property
    def n_statements(self) -> int:
        return self.ranks.shape[1]

    def take(self, indices: Sequence[int]) -> 'QSortMatrix':
        """行の部分集合（重複可）。リサンプリングで使う。"""
        indices = list(indices)
        return QSortMatrix(
            ranks=self.ranks[indices],
            participant_ids=tuple(self.participant_ids[i] for i in indices),
            statement_ids=self.statement_ids,
            statement_texts=self.statement_texts,
        )


@dataclass(frozen=True)
class CorrelationMatrix:
    """参加者 x 参加者 の対称なピアソン相関。"""
    values: np.ndarray
    participant_ids: Tuple[str, ...]

    def __post_init__(self):
        object.__setattr__(self, 'values', _frozen(self.values))

    @property
    def size(self) -> int:
        return self.values.shape[0]


# ── オプション ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExtractionOptions:
    method: str = "centroid"
    n_factors: Optional[int] = None
    max_iterations: int = 100
    residual_threshold: float = 1e-6
    parallel_iterations: int = 100
    parallel_seed: Optional[int] = 0


@dataclass(frozen=True)
class RotationOptions:
    method: str = "varimax"
    normalize: bool = True
    tolerance: float = 1e-5
    max_iterations: int = 50
    kappa: float = 4.0
    gamma: float = 0.0
    gradient_max_iterations: int = 500
    orthogonality_tolerance: float = 1e-6
    condition_limit: float = 1e10


@dataclass(frozen=True)
class StatisticsOptions:
    flag_alpha: float = 0.05
    significance_levels: Tuple[float, ...] = (0.05, 0.01)
    reliability: float = 0.8
    crib_top_n: int = 5
    max_loading: float = 0.999


@dataclass(frozen=True)
class BootstrapOptions:
    n_resamples: int = 1000
    confidence: float = 0.95
    seed: Optional[int] = None


@dataclass(frozen=True)
class SessionOptions:
    mode: str = "orthogonal"
    idle_timeout: float = 1800.0
    reaper_interval: float = 60.0


@dataclass(frozen=True)
class AnalysisConfig:
    """perform_analysis やセッションがQソート以外に必要とする全ての設定。"""
    grid: GridConfig
    extraction: ExtractionOptions = field(default_factory=ExtractionOptions)
    rotation: RotationOptions = field(default_factory=RotationOptions)
    statistics: StatisticsOptions = field(default_factory=StatisticsOptions)
    bootstrap: Optional[BootstrapOptions] = None
    session: SessionOptions = field(default_factory=SessionOptions)

    def replace(self, **changes) -> 'AnalysisConfig':
        return dataclasses.replace(self, **changes)


# ── 因子抽出・回転の結果 ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class FactorSolution:
    """未回転の因子。生成後は不変。"""
    loadings: np.ndarray
    eigenvalues: np.ndarray
    method: str
    converged: bool
    iterations: int
    communalities: np.ndarray
    explained_variance: np.ndarray
    residual: float = 0.0
    participant_ids: Tuple[str, ...] = ()
    heywood_cases: Tuple[int, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'loadings', _frozen(self.loadings))
        object.__setattr__(self, 'eigenvalues', _frozen(self.eigenvalues))
        object.__setattr__(self, 'communalities', _frozen(self.communalities))
        object.__setattr__(self, 'explained_variance', _frozen(self.explained_variance))

    @property
    def n_factors(self) -> int:
        return self.loadings.shape[1]

    @property
    def cumulative_variance(self) -> np.ndarray:
        return np.cumsum(self.explained_variance)

    @property
    def heywood(self) -> bool:
        """共通性が1を超える参加者がいれば True（不適解）。"""
        return bool(self.heywood_cases)


@dataclass(frozen=True)
class ScreeRow:
    factor: int
    eigenvalue: float
    variance: float
    cumulative_variance: float


@dataclass(frozen=True)
class FactorCountGuidance:
    """因子数の目安（参考値であり強制はしない）。"""
    eigenvalues: np.ndarray
    kaiser: int
    parallel: int
    random_mean: np.ndarray
    random_p95: np.ndarray
    scree: Tuple[ScreeRow, ...]

    def __post_init__(self):
        object.__setattr__(self, 'eigenvalues', _frozen(self.eigenvalues))
        object.__setattr__(self, 'random_mean', _frozen(self.random_mean))
        object.__setattr__(self, 'random_p95', _frozen(self.random_p95))


@dataclass(frozen=True)
class RotationQuality:
    simplicity_index: float
    hyperplane_count: int
    cross_loadings: int


@dataclass(frozen=True)
class RotatedSolution:
    """回転済みの負荷量（``loadings == unrotated @ rotation_matrix``）。"""
    loadings: np.ndarray
    method: str
    rotation_matrix: np.ndarray
    converged: bool
    iterations: int
    oblique: bool
    factor_correlations: Optional[np.ndarray] = None
    quality: Optional[RotationQuality] = None

    def __post_init__(self):
        object.__setattr__(self, 'loadings', _frozen(self.loadings))
        object.__setattr__(self, 'rotation_matrix', _frozen(self.rotation_matrix))
        if self.factor_correlations is not None:
            object.__setattr__(self, 'factor_correlations', _frozen(self.factor_correlations))

    @property
    def n_factors(self) -> int:
        return self.loadings.shape[1]


# ── 統計出力 ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FactorArray:
    """1つの因子の理想化されたQソート。"""
    factor: int
    z_scores: np.ndarray
    ranks: np.ndarray
    defining_sorts: Tuple[int, ...]
    weights: np.ndarray
    statement_ids: Tuple[str, ...]

    def __post_init__(self):
        object.__setattr__(self, 'z_scores', _frozen(self.z_scores))
        object.__setattr__(self, 'ranks', _frozen(self.ranks, dtype=int))
        object.__setattr__(self, 'weights', _frozen(self.weights))


@dataclass(frozen=True)
class PairComparison:
    other_factor: int
    delta: float
    p_value: float
    level: Optional[float]


@dataclass(frozen=True)
class DistinguishingStatement:
    statement_index: int
    statement_id: str
    factor: int
    z_score: float
    mean_delta: float
    comparisons: Tuple[PairComparison, ...]
    pure: bool

    @property
    def significant_against(self) -> Tuple[int, ...]:
        return tuple(c.other_factor for c in self.comparisons if c.level is not None)


@dataclass(frozen=True)
class ConsensusStatement:
    statement_index: int
    statement_id: str
    z_scores: Tuple[float, ...]
    ranks: Tuple[int, ...]
    z_range: float
    mean_z: float


@dataclass(frozen=True)
class CribEntry:
    statement_index: int
    statement_id: str
    z_score: float
    rank: int


@dataclass(frozen=True)
class CribSheet:
    factor: int
    highest: Tuple[CribEntry, ...]
    lowest: Tuple[CribEntry, ...]
    ranked_higher: Tuple[CribEntry, ...]
    ranked_lower: Tuple[CribEntry, ...]
    distinguishing: Tuple[DistinguishingStatement, ...]


@dataclass(frozen=True)
class FactorCharacteristics:
    """1つの因子配列の要約指標。

    ``positivity`` はzスコアが正の項目の割合、``extremity`` はzスコアの
    絶対値の最大値、``distinctiveness`` はこの因子を弁別する項目の割合。
    ``reliability`` と ``standard_error`` は定義Qソート数から求めた
    合成信頼性と、弁別項目の検定で使うzスコアの標準誤差。
    """
    factor: int
    n_defining: int
    reliability: float
    standard_error: float
    positivity: float
    extremity: float
    distinctiveness: float


@dataclass(frozen=True)
class BootstrapResult:
    """参加者（行）x 因子（列）ごとのパーセンタイル区間。

    ``bound_error`` は各境界のモンテカルロ半幅で、シードを変えた実行間で
    パーセンタイル推定値がどれだけ動きうるかを表す。リサンプル数を増やすと
    小さくなる。一方 ``widths`` は負荷量自体の標本変動に収束する。
    """
    lower: np.ndarray
    upper: np.ndarray
    mean: np.ndarray
    standard_error: np.ndarray
    bound_error: np.ndarray
    n_resamples: int
    failed_resamples: int
    confidence: float
    reliability: float
    seed: Optional[int] = None

    def __post_init__(self):
        for name in ('lower', 'upper', 'mean', 'standard_error', 'bound_error'):
            object.__setattr__(self, name, _frozen(getattr(self, name)))

    @property
    def widths(self) -> np.ndarray:
        return self.upper - self.lower


@dataclass(frozen=True)
class AnalysisResult:
    qsorts: QSortMatrix
    correlation: CorrelationMatrix
    extraction: FactorSolution
    guidance: Optional[FactorCountGuidance]
    rotated: RotatedSolution
    arrays: Tuple[FactorArray, ...]
    distinguishing: Tuple[DistinguishingStatement, ...]
    consensus: Tuple[ConsensusStatement, ...]
    crib_sheets: Tuple[CribSheet, ...]
    config: AnalysisConfig
    bootstrap: Optional[BootstrapResult] = None
    characteristics: Tuple[FactorCharacteristics, ...] = ()

    @property
    def factor_correlations(self) -> Optional[np.ndarray]:
        return self.rotated.factor_correlations

    def z_score_matrix(self) -> np.ndarray:
        """項目 x 因子 のzスコア。"""
        return np.column_stack([a.z_scores for a in self.arrays])

    def summary(self) -> Dict[str, Any]:
        return {
            'participants': self.qsorts.n_participants,
            'statements': self.qsorts.n_statements,
            'factors': self.rotated.n_factors,
            'extraction': self.extraction.method,
            'rotation': self.rotated.method,
            'converged': bool(self.extraction.converged and self.rotated.converged),
        }


@dataclass(frozen=True)
class StatementDelta:
    statement_id: str
    factor: int
    engine: float
    reference: float
    delta: float


@dataclass(frozen=True)
class ValidationReport:
    """参照リスティングとの比較結果（例外としては送出しない）。"""
    correlation: float
    passed: bool
    threshold: float
    per_factor: Tuple[float, ...]
    deltas: Tuple[StatementDelta, ...]
    messages: Tuple[str, ...] = ()

    def failing_factors(self) -> List[int]:
        return [i + 1 for i, r in enumerate(self.per_factor) if not r >= self.threshold]
