"""
ブートストラップ信頼性分析モジュール

参加者を復元抽出し、各リサンプルで因子抽出と回転をやり直す。
リサンプルの因子を基準解に対応付けたうえで、元の各参加者の負荷量を
パーセンタイル信頼区間に集約する。

1回の実行は数秒から数分かかるため、BootstrapAnalyzer はスレッドプール上の
キャンセル可能なタスクとして開始する。タスクは不変の入力
（QSortMatrix、RotatedSolution）しか読まないので、セッションロックには触れない。
"""

import dataclasses
import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from scipy.optimize import linear_sum_assignment

from ..errors import BootstrapCancelledError, ComputationError, InputError
from .correlation import pearson_matrix
from .extraction import extract_factors
from .rotation import ROTATIONS, rotate
from .types import (
    AnalysisConfig,
    BootstrapOptions,
    BootstrapResult,
    CorrelationMatrix,
    QSortMatrix,
    RotatedSolution,
)

logger = logging.getLogger(__name__)

MIN_RESAMPLES = 10


# ── 因子の対応付け ───────────────────────────────────────────────────────────

def tucker_congruence(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """a と b の全ての列の組に対するTuckerの一致係数。"""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    norms = np.sqrt(np.outer((a ** 2).sum(axis=0), (b ** 2).sum(axis=0)))
    with np.errstate(divide='ignore', invalid='ignore'):
        phi = (a.T @ b) / norms
    return np.nan_to_num(phi)


def align_factors(reference: np.ndarray, sample: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """基準解に最もよく一致するようリサンプルの因子を並べ替え・反転する。

    Returns:
        (対応付け後の負荷量, 基準因子ごとの一致係数の絶対値)
    """
    phi = tucker_congruence(reference, sample)
    rows, cols = linear_sum_assignment(-np.abs(phi))
    matched = phi[rows, cols]
    signs = np.where(matched < 0, -1.0, 1.0)
    aligned = np.asarray(sample, dtype=float)[:, cols] * signs
    return aligned, np.abs(matched)


# ── リサンプリング ───────────────────────────────────────────────────────────

def resample_loadings(
    qsorts: QSortMatrix,
    reference: RotatedSolution,
    indices: np.ndarray,
    config: AnalysisConfig,
) -> Tuple[np.ndarray, np.ndarray]:
    """1つのリサンプルで因子抽出と回転をやり直す。

    手動回転は新しいデータで再現できないため、手動回転された基準解は
    設定済みの自動回転手法で近似する。対応付けの段階で結果を基準因子に戻す。

    Args:
        qsorts: 元のQソート
        reference: リサンプルを対応付ける回転済みの解
        indices: 復元抽出した参加者インデックス
        config: 基準分析の抽出・回転オプション

    Returns:
        (抽出された行の対応付け後の負荷量, 因子ごとの一致係数)

    Raises:
        ComputationError: このリサンプルで抽出または回転に失敗した
    """
    k = reference.n_factors
    sample = qsorts.take(indices)
    correlation = CorrelationMatrix(
        values=pearson_matrix(sample.ranks), participant_ids=sample.participant_ids
    )
    extraction = extract_factors(
        correlation, dataclasses.replace(config.extraction, n_factors=k)
    )
    if extraction.n_factors < k:
        raise ComputationError(
            "Resample produced fewer factors than the reference",
            factors=extraction.n_factors, expected=k,
        )
    method = reference.method if reference.method in ROTATIONS else config.rotation.method
    rotated = rotate(extraction, method, config.rotation)
    return align_factors(np.asarray(reference.loadings)[indices], rotated.loadings)


def percentile_bound_error(samples: np.ndarray, tail: float) -> np.ndarray:
    """``tail`` と ``1 - tail`` パーセンタイルのモンテカルロ誤差（半幅）。

    二項分布による順序統計量の区間を使う。有効な抽出が m 回のとき、
    経験的な q 分位点は q -/+ sqrt(q (1 - q) / m) の分位点の間にある。
    その範囲の半幅を両端で平均したもので、おおよそ 1 / sqrt(m) で縮む。

    Args:
        samples: リサンプル x 参加者 x 因子。抽出されなかった要素は NaN
        tail: 下側の裾確率（95%区間なら 0.025）

    Returns:
        参加者 x 因子 の配列。有効な抽出がない要素は NaN
    """
    counts = np.sum(~np.isnan(samples), axis=0)
    errors = np.full(counts.shape, np.nan)
    for cell in zip(*np.nonzero(counts)):
        values = samples[(slice(None),) + cell]
        values = values[~np.isnan(values)]
        spread = np.sqrt(tail * (1 - tail) / values.size)
        halves = []
        for q in (tail, 1 - tail):
            lo, hi = np.quantile(values, [max(q - spread, 0.0), min(q + spread, 1.0)])
            halves.append((hi - lo) / 2)
        errors[cell] = np.mean(halves)
    return errors


def _validate_options(options: BootstrapOptions) -> None:
    if options.n_resamples < MIN_RESAMPLES:
        raise InputError(
            f"Bootstrap needs at least {MIN_RESAMPLES} resamples",
            n_resamples=options.n_resamples,
        )
    if not 0 < options.confidence < 1:
        raise InputError("Confidence level must lie between 0 and 1", confidence=options.confidence)


def run_bootstrap(
    qsorts: QSortMatrix,
    reference: RotatedSolution,
    config: AnalysisConfig,
    options: Optional[BootstrapOptions] = None,
    cancel_event: Optional[threading.Event] = None,
    progress: Optional[Callable[[int, int], None]] = None,
) -> BootstrapResult:
    """全ての参加者の負荷量に対するパーセンタイル信頼区間。

    Args:
        qsorts: 分析対象のQソート
        reference: 全標本の回転済みの解
        config: 基準解を得たときのオプション
        options: リサンプル数、信頼水準、シード
        cancel_event: リサンプルの合間に確認する
        progress: リサンプルごとに (完了数, 総数) で呼ばれる

    Returns:
        参加者 x 因子 の信頼限界を持つ BootstrapResult

    Raises:
        BootstrapCancelledError: cancel_event がセットされた
        ComputationError: 全てのリサンプルが失敗した（最後の失敗を送出する）
    """
    options = options or config.bootstrap or BootstrapOptions()
    _validate_options(options)
    n, k = reference.loadings.shape
    rng = np.random.default_rng(options.seed)

    samples = np.full((options.n_resamples, n, k), np.nan)
    congruences = []
    failed = 0
    last_error: Optional[ComputationError] = None

    for b in range(options.n_resamples):
        if cancel_event is not None and cancel_event.is_set():
            raise BootstrapCancelledError(
                f"Bootstrap cancelled after {b} of {options.n_resamples} resamples",
                completed=b, n_resamples=options.n_resamples,
            )
        indices = rng.integers(0, n, size=n)
        try:
            aligned, congruence = resample_loadings(qsorts, reference, indices, config)
        except ComputationError as e:
            failed += 1
            last_error = e
            logger.warning(f"ブートストラップのリサンプル {b} が失敗: {e}")
        else:
            # 各参加者の最初の抽出のみ使う
            unique, first = np.unique(indices, return_index=True)
            samples[b, unique] = aligned[first]
            congruences.append(congruence)
        if progress is not None:
            progress(b + 1, options.n_resamples)

    if failed == options.n_resamples:
        raise last_error

    tail = (1 - options.confidence) / 2
    with np.errstate(invalid='ignore'):
        lower = np.nanpercentile(samples, tail * 100, axis=0)
        upper = np.nanpercentile(samples, (1 - tail) * 100, axis=0)
        mean = np.nanmean(samples, axis=0)
        standard_error = np.nanstd(samples, axis=0, ddof=1)
    bound_error = percentile_bound_error(samples, tail)

    if failed:
        logger.warning(f"ブートストラップのリサンプル {options.n_resamples} 回中 {failed} 回が失敗")
    return BootstrapResult(
        lower=lower,
        upper=upper,
        mean=mean,
        standard_error=standard_error,
        bound_error=bound_error,
        n_resamples=options.n_resamples - failed,
        failed_resamples=failed,
        confidence=options.confidence,
        reliability=float(np.mean(congruences)),
        seed=options.seed,
    )


# ── キャンセル可能なタスク ───────────────────────────────────────────────────

class BootstrapTask:
    """実行中のブートストラップへのハンドル。"""

    def __init__(self, task_id: str, total: int, session_id: Optional[str] = None):
        self.task_id = task_id
        self.session_id = session_id
        self.total = total
        self.completed = 0
        self.finished_at: Optional[float] = None
        self._cancel = threading.Event()
        self._future: Optional[Future] = None

    def _progress(self, completed: int, total: int) -> None:
        self.completed = completed

    def cancel(self) -> None:
        """キャンセルを要求する。次のリサンプルの前に反映される。"""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def done(self) -> bool:
        return self._future is not None and self._future.done()

    @property
    def status(self) -> str:
        if not self.done():
            return "cancelling" if self.cancelled else "running"
        error = self._future.exception()
        if error is None:
            return "completed"
        if isinstance(error, BootstrapCancelledError):
            return "cancelled"
        return "failed"

    def result(self, timeout: Optional[float] = None) -> BootstrapResult:
        """結果が出るまで待つ。

        Raises:
            BootstrapCancelledError: タスクがキャンセルされた
        """
        return self._future.result(timeout)

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        return self._future.exception(timeout)


class BootstrapAnalyzer:
    """共有スレッドプール上でブートストラップタスクを実行する。

    終了したタスクは終了後 ``task_ttl`` 秒間参照でき、その後 prune() で破棄される。
    prune() は start() のたびと、エンジンのアイドル回収のたびに実行される。
    """

    def __init__(
        self,
        max_workers: int = 2,
        task_ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="bootstrap")
        self._tasks: Dict[str, BootstrapTask] = {}
        self._lock = threading.Lock()
        self.task_ttl = task_ttl
        self._clock = clock

    def start(
        self,
        qsorts: QSortMatrix,
        reference: RotatedSolution,
        config: AnalysisConfig,
        options: Optional[BootstrapOptions] = None,
        session_id: Optional[str] = None,
    ) -> BootstrapTask:
        """オプションを検証して実行を投入する。すぐに戻る。"""
        options = options or config.bootstrap or BootstrapOptions()
        _validate_options(options)
        self.prune()
        task = BootstrapTask(uuid.uuid4().hex, options.n_resamples, session_id)
        with self._lock:
            self._tasks[task.task_id] = task
        task._future = self._executor.submit(self._run, task, qsorts, reference, config, options)
        logger.info(
            f"ブートストラップ {task.task_id} 開始: リサンプル {options.n_resamples} 回、シード {options.seed}"
        )
        return task

    def _run(self, task, qsorts, reference, config, options) -> BootstrapResult:
        try:
            return run_bootstrap(qsorts, reference, config, options, task._cancel, task._progress)
        finally:
            task.finished_at = self._clock()

    def get(self, task_id: str) -> Optional[BootstrapTask]:
        with self._lock:
            return self._tasks.get(task_id)

    def task_ids(self) -> List[str]:
        with self._lock:
            return list(self._tasks)

    def cancel(self, task_id: str) -> Optional[BootstrapTask]:
        with self._lock:
            task = self._tasks.get(task_id)
        if task is not None:
            task.cancel()
            logger.info(f"ブートストラップ {task_id} のキャンセルを要求")
        return task

    def cancel_session(self, session_id: str) -> None:
        """セッションに対して開始した全てのタスクをキャンセルする。"""
        with self._lock:
            tasks = [t for t in self._tasks.values() if t.session_id == session_id]
        for task in tasks:
            task.cancel()

    def prune(self, now: Optional[float] = None) -> List[str]:
        """終了から ``task_ttl`` 秒を超えたタスクを破棄する。

        Returns:
            破棄したタスクのID
        """
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                task_id for task_id, task in self._tasks.items()
                if task.finished_at is not None and now - task.finished_at > self.task_ttl
            ]
            for task_id in expired:
                del self._tasks[task_id]
        if expired:
            logger.debug(f"終了済みブートストラップタスクを {len(expired)} 件破棄")
        return expired

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        self._executor.shutdown(wait=wait)
