"""
エンジンファサードモジュール

エンジンを組み込む呼び出し側（HTTPルート、テスト、バッチスクリプト）の単一の入口。
セッションレジストリ、アイドル回収スレッド、ブートストラップ用スレッドプールを保持する。
"""

import logging
import time
from typing import Callable, List, Optional, Sequence, Union

from .core import pqmethod
from .core.analysis import perform_analysis
from .core.bootstrap import BootstrapAnalyzer, BootstrapTask
from .core.types import (
    AnalysisConfig,
    AnalysisResult,
    BootstrapOptions,
    GridConfig,
    QSortMatrix,
    RotatedSolution,
    SessionOptions,
    ValidationReport,
)
from .errors import QMethodError
from .session import (
    AnalysisSession,
    ConfirmedRotation,
    IdleReaper,
    RotationPreview,
    RotationRequest,
    SessionManager,
    SessionSnapshot,
    SnapshotSink,
    Subscription,
)

logger = logging.getLogger(__name__)


class QMethodEngine:
    """Q方法論分析エンジン。

    Args:
        sink: クローズしたセッションの最終確定状態の受け取り先
        session_options: アイドルタイムアウトと回収間隔
        bootstrap_workers: ブートストラップ用スレッドプールのサイズ
        clock: アイドル判定とタスク期限に使う単調時計
        bootstrap_task_ttl: 完了したブートストラップタスクを参照可能にしておく秒数
    """

    def __init__(
        self,
        sink: Optional[SnapshotSink] = None,
        session_options: Optional[SessionOptions] = None,
        bootstrap_workers: int = 2,
        clock: Callable[[], float] = time.monotonic,
        bootstrap_task_ttl: float = 3600.0,
    ):
        self.session_options = session_options or SessionOptions()
        self.sessions = SessionManager(sink, self.session_options.idle_timeout, clock)
        self.bootstrap = BootstrapAnalyzer(bootstrap_workers, bootstrap_task_ttl, clock)
        self._reaper: Optional[IdleReaper] = None

    # ── バッチ分析 ──

    def perform_analysis(self, qsorts: QSortMatrix, config: AnalysisConfig) -> AnalysisResult:
        return perform_analysis(qsorts, config)

    # ── 対話セッション ──

    def open_interactive_session(self, qsorts: QSortMatrix, config: AnalysisConfig) -> str:
        """検証・因子抽出を行い新しいセッションを登録する。セッションIDを返す。"""
        return self.sessions.open(qsorts, config).session_id

    def session(self, session_id: str) -> AnalysisSession:
        return self.sessions.get(session_id)

    def preview_rotation(self, session_id: str, delta: RotationRequest) -> RotationPreview:
        return self.sessions.get(session_id).preview(delta)

    def apply_rotation(
        self, session_id: str, params: RotationRequest, expected_version: int
    ) -> RotatedSolution:
        return self.sessions.get(session_id).apply_rotation(params, expected_version)

    def confirm_rotation(
        self, session_id: str, params: RotationRequest, expected_version: int
    ) -> ConfirmedRotation:
        """apply_rotation と同じだが、バージョン・回転結果・統計出力をまとめて返す。"""
        return self.sessions.get(session_id).confirm(params, expected_version)

    def session_results(self, session_id: str) -> AnalysisResult:
        return self.sessions.get(session_id).results()

    def subscribe(self, session_id: str) -> Subscription:
        return self.sessions.get(session_id).subscribe()

    def close_session(self, session_id: str) -> SessionSnapshot:
        snapshot = self.sessions.close(session_id)
        self.bootstrap.cancel_session(session_id)
        return snapshot

    def reap_idle(self, now: Optional[float] = None) -> List[str]:
        reaped = self.sessions.reap_idle(now)
        for session_id in reaped:
            self.bootstrap.cancel_session(session_id)
        self.bootstrap.prune(now)
        return reaped

    # ── ブートストラップ ──

    def start_bootstrap(
        self, session_id: str, options: Optional[BootstrapOptions] = None
    ) -> BootstrapTask:
        """セッションの確定済み解に対してブートストラップを開始する。

        タスクは不変のスナップショットを扱うため、その後の確定の影響を受けず、
        セッションロックも取得しない。
        """
        result = self.sessions.get(session_id).results()
        return self.bootstrap.start(
            result.qsorts, result.rotated, result.config, options, session_id=session_id
        )

    def bootstrap_task(self, task_id: str) -> Optional[BootstrapTask]:
        return self.bootstrap.get(task_id)

    def cancel_bootstrap(self, task_id: str) -> Optional[BootstrapTask]:
        return self.bootstrap.cancel(task_id)

    # ── PQMethod ──

    def import_pqmethod(
        self, data: bytes
    ) -> Union[pqmethod.PQMethodStudy, pqmethod.PQMethodOutput]:
        """内容から判別して DAT ファイルまたは分析リスティングを解析する。"""
        if pqmethod.is_listing(data):
            return pqmethod.import_lis(data)
        return pqmethod.import_dat(data)

    def import_statements(self, data: bytes) -> Sequence[str]:
        return pqmethod.import_sta(data)

    def export_pqmethod(self, result: AnalysisResult, title: str = "") -> bytes:
        return pqmethod.export_lis(result, title)

    def export_study(self, qsorts: QSortMatrix, grid: GridConfig, title: str = "") -> bytes:
        return pqmethod.export_dat(qsorts, grid, title)

    def validate_against_reference(
        self, result: AnalysisResult, reference_bytes: bytes, threshold: float = 0.99
    ) -> ValidationReport:
        return pqmethod.validate_against_reference(result, reference_bytes, threshold)

    # ── ライフサイクル ──

    def start_reaper(self, interval: Optional[float] = None) -> IdleReaper:
        if self._reaper is None:
            self._reaper = IdleReaper(self, interval or self.session_options.reaper_interval)
            self._reaper.start()
        return self._reaper

    def shutdown(self) -> None:
        if self._reaper is not None:
            self._reaper.stop()
            self._reaper = None
        try:
            self.sessions.close_all()
        except QMethodError:
            logger.exception("シャットダウン時のセッションクローズに失敗")
        self.bootstrap.shutdown(wait=False)
