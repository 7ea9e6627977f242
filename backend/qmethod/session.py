"""
対話的回転セッションモジュール

1つのセッションは、人が操作する回転のために1件の調査データを保持する:

  CREATED -> EXTRACTED -> ROTATION_PREVIEW <-> ROTATION_CONFIRMED -> CLOSED

プレビューは副作用を持たない。現在のスナップショットを回転し、保存済みの
状態・バージョン・解には触れずに ROTATION_PREVIEW として結果を返す。
状態を変更するのは confirm()（と apply_rotation()）だけで、
セッション固有のロックで直列化し楽観的バージョン管理を行う。
古いバージョンに基づくリクエストは StaleSessionVersionError となり、
何も変更しない。

SessionManager はセッションをIDで管理する。レジストリのロックは登録と削除
だけを保護し、セッションごとの操作はそのセッションのロックの下で実行する。
アイドル状態のセッションは IdleReaper が定期的に呼ぶ reap_idle() でクローズし、
クローズしたセッションの最終確定状態は SnapshotSink に渡す。
"""

import dataclasses
import logging
import queue
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from .core.analysis import assemble_result
from .core.correlation import build_correlation_matrix
from .core.extraction import extract_factors, factor_count_guidance
from .core.rotation import (
    apply_manual_rotation,
    get_rotation,
    plane_rotation_matrix,
    rotate,
    unrotated,
)
from .core.statistics import build_factor_arrays
from .core.types import (
    AnalysisConfig,
    AnalysisResult,
    CorrelationMatrix,
    FactorArray,
    FactorCountGuidance,
    FactorSolution,
    QSortMatrix,
    RotatedSolution,
    as_serializable,
)
from .errors import (
    InputError,
    InvalidSessionStateError,
    SessionClosedError,
    SessionNotFoundError,
    StaleSessionVersionError,
)

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CREATED = "created"
    EXTRACTED = "extracted"
    ROTATION_PREVIEW = "rotation_preview"
    ROTATION_CONFIRMED = "rotation_confirmed"
    CLOSED = "closed"


# ── リクエスト・イベント・スナップショット ───────────────────────────────────

@dataclass(frozen=True)
class RotationRequest:
    """1回分の回転操作。

    以下のいずれか1つだけを指定する:
      - method: 未回転の抽出結果に対する自動回転
      - rotation_matrix: 現在の回転に合成する k x k 行列
      - factor_a / factor_b / angle_degrees: 現在の回転に合成する平面回転
        （因子番号は1始まり）
    """
    method: Optional[str] = None
    rotation_matrix: Optional[Sequence[Sequence[float]]] = None
    factor_a: Optional[int] = None
    factor_b: Optional[int] = None
    angle_degrees: float = 0.0
    kappa: Optional[float] = None
    gamma: Optional[float] = None

    def __post_init__(self):
        forms = [
            self.method is not None,
            self.rotation_matrix is not None,
            self.factor_a is not None or self.factor_b is not None,
        ]
        if sum(forms) != 1:
            raise InputError(
                "Give exactly one of method, rotation_matrix or factor_a/factor_b"
            )
        if forms[2] and (self.factor_a is None or self.factor_b is None):
            raise InputError("Plane rotation needs both factor_a and factor_b")

    @property
    def automatic(self) -> bool:
        return self.method is not None


@dataclass(frozen=True)
class SessionEvent:
    type: str
    session_id: str
    version: int
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'session_id': self.session_id,
            'version': self.version,
            'payload': as_serializable(self.payload),
        }


@dataclass(frozen=True)
class RotationPreview:
    """一時的な回転結果。セッションには保存しない。"""
    session_id: str
    base_version: int
    rotated: RotatedSolution
    arrays: Tuple[FactorArray, ...]
    state: SessionState = SessionState.ROTATION_PREVIEW


@dataclass(frozen=True)
class SessionSnapshot:
    """クローズ時に受け取り先へ渡す、セッションの最終確定状態。"""
    session_id: str
    version: int
    state: SessionState
    qsorts: QSortMatrix
    config: AnalysisConfig
    rotated: Optional[RotatedSolution]
    result: Optional[AnalysisResult]
    reason: str = ""


class SnapshotSink(Protocol):
    """クローズしたセッションを永続化する協調オブジェクト。"""

    def persist(self, snapshot: SessionSnapshot) -> None:
        ...


class LoggingSnapshotSink:
    """デフォルトの受け取り先。引き渡しをログに記録するだけ。"""

    def persist(self, snapshot: SessionSnapshot) -> None:
        logger.info(
            f"セッション {snapshot.session_id} をクローズ（{snapshot.reason}、バージョン "
            f"{snapshot.version}）。永続化先は未設定"
        )


class InMemorySnapshotSink:
    """スナップショットをリストに保持する（テストや単一プロセス運用向け）。"""

    def __init__(self):
        self._lock = threading.Lock()
        self.snapshots: List[SessionSnapshot] = []

    def persist(self, snapshot: SessionSnapshot) -> None:
        with self._lock:
            self.snapshots.append(snapshot)


class Subscription:
    """キューに基づく SessionEvent のストリーム。

    ``closed`` イベントの後、または呼び出し側が購読をクローズした時点で
    反復を終了する。
    """

    _END = object()

    def __init__(self, session_id: str, on_close: Optional[Callable[['Subscription'], None]] = None):
        self.session_id = session_id
        self._queue: "queue.Queue" = queue.Queue()
        self._on_close = on_close
        self.closed = False

    def put(self, event: SessionEvent) -> None:
        self._queue.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[SessionEvent]:
        """次のイベント。タイムアウトまたはストリーム終端では None。"""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is self._END:
            self._queue.put(self._END)
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put(self._END)
        if self._on_close is not None:
            self._on_close(self)

    def __iter__(self) -> Iterator[SessionEvent]:
        while True:
            item = self._queue.get()
            if item is self._END:
                return
            yield item
            if item.type == "closed":
                return


# ── セッション ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ConfirmedRotation:
    """確定した回転と、それが生んだバージョン・統計出力の組。"""
    version: int
    rotated: RotatedSolution
    result: AnalysisResult


class AnalysisSession:
    """1つの対話的回転セッション。

    Args:
        session_id: レジストリのキー
        qsorts: 因子抽出時に ``config.grid`` で検証するQソート
        config: グリッドと各段階のオプション。``config.session.mode`` で
            直交回転か斜交回転かを選ぶ
        sink: クローズ時に最終確定状態を受け取る
        clock: アイドル判定に使う単調時計
    """

    def __init__(
        self,
        session_id: str,
        qsorts: QSortMatrix,
        config: AnalysisConfig,
        sink: Optional[SnapshotSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if config.session.mode not in ("orthogonal", "oblique"):
            raise InputError(f"Unknown session mode: {config.session.mode}", mode=config.session.mode)
        self.session_id = session_id
        self.qsorts = qsorts
        self.config = config
        self._sink = sink or LoggingSnapshotSink()
        self._clock = clock
        self._lock = threading.Lock()
        self._subscribers: List[Subscription] = []
        self._subscribers_lock = threading.Lock()

        self._state = SessionState.CREATED
        self._version = 0
        self._correlation: Optional[CorrelationMatrix] = None
        self._guidance: Optional[FactorCountGuidance] = None
        self._extraction: Optional[FactorSolution] = None
        self._unrotated: Optional[RotatedSolution] = None
        self._confirmed: Optional[ConfirmedRotation] = None
        self.last_activity = clock()

    # ── プロパティ ──

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def version(self) -> int:
        return self._version

    @property
    def mode(self) -> str:
        return self.config.session.mode

    @property
    def extraction(self) -> Optional[FactorSolution]:
        return self._extraction

    @property
    def guidance(self) -> Optional[FactorCountGuidance]:
        return self._guidance

    @property
    def rotated(self) -> Optional[RotatedSolution]:
        confirmed = self._confirmed
        return confirmed.rotated if confirmed else None

    def idle_for(self, now: Optional[float] = None) -> float:
        return (self._clock() if now is None else now) - self.last_activity

    def _touch(self) -> None:
        self.last_activity = self._clock()

    def _ensure_open(self) -> None:
        if self._state is SessionState.CLOSED:
            raise SessionClosedError(self.session_id)

    # ── ライフサイクル ──

    def extract(self, with_guidance: bool = True) -> FactorSolution:
        """Qソートを検証し、未回転の因子を抽出する（CREATED -> EXTRACTED）。"""
        with self._lock:
            self._ensure_open()
            if self._state is not SessionState.CREATED:
                raise InvalidSessionStateError(self.session_id, self._state.value, "extract")
            correlation = build_correlation_matrix(self.qsorts, self.config.grid)
            if with_guidance:
                self._guidance = factor_count_guidance(self.qsorts, correlation, self.config.extraction)
            self._extraction = extract_factors(correlation, self.config.extraction)
            self._correlation = correlation
            self._unrotated = unrotated(self._extraction)
            self._state = SessionState.EXTRACTED
            self._touch()
        logger.info(
            f"セッション {self.session_id}: {self._extraction.n_factors} 因子を抽出 "
            f"({self._extraction.method})"
        )
        return self._extraction

    def _rotate(self, request: RotationRequest, confirmed: Optional[ConfirmedRotation]) -> RotatedSolution:
        options = self.config.rotation
        overrides = {k: v for k, v in (('kappa', request.kappa), ('gamma', request.gamma)) if v is not None}
        if overrides:
            options = dataclasses.replace(options, **overrides)

        if request.automatic:
            strategy = get_rotation(request.method)
            if strategy.oblique and self.mode == "orthogonal":
                raise InputError(
                    f"{strategy.name} is oblique, session is orthogonal",
                    method=strategy.name, mode=self.mode,
                )
            return rotate(self._extraction, strategy.name, options)

        base = confirmed.rotated if confirmed else self._unrotated
        if request.rotation_matrix is not None:
            matrix = np.asarray(request.rotation_matrix, dtype=float)
        else:
            matrix = plane_rotation_matrix(
                base.n_factors, request.factor_a - 1, request.factor_b - 1, request.angle_degrees
            )
        return apply_manual_rotation(base, matrix, self.mode, options)

    def _require_extracted(self, operation: str) -> None:
        self._ensure_open()
        if self._state is SessionState.CREATED:
            raise InvalidSessionStateError(self.session_id, self._state.value, operation)

    def preview(self, request: RotationRequest) -> RotationPreview:
        """セッションを変更せずに現在のスナップショットを回転する。

        読み取るスナップショットは不変なので、セッションロックは取得しない。
        """
        self._require_extracted("preview")
        confirmed = self._confirmed
        base_version = confirmed.version if confirmed else self._version
        rotated = self._rotate(request, confirmed)
        arrays = build_factor_arrays(self.qsorts, rotated, self.config.grid, self.config.statistics)
        self._touch()
        preview = RotationPreview(
            session_id=self.session_id, base_version=base_version, rotated=rotated, arrays=arrays
        )
        self._publish(SessionEvent("preview", self.session_id, base_version, {
            'loadings': rotated.loadings, 'method': rotated.method,
        }))
        return preview

    def apply_rotation(self, request: RotationRequest, expected_version: int) -> RotatedSolution:
        """回転を確定し、新しい回転済みの解を返す。"""
        return self.confirm(request, expected_version).rotated

    def confirm(self, request: RotationRequest, expected_version: int) -> ConfirmedRotation:
        """回転を確定し、確定した記録を返す。

        バージョン・回転結果・統計出力はセッションロックの下で取得するため、
        直後に別の適用が続いても常に同じ確定に属する。

        Raises:
            StaleSessionVersionError: ``expected_version`` が現在のバージョンと異なる
            SessionClosedError: セッションがクローズ済み
            InputError / ComputationError: 回転が不正または失敗した。
                セッションは変更されない
        """
        with self._lock:
            self._require_extracted("apply a rotation")
            if expected_version != self._version:
                raise StaleSessionVersionError(self.session_id, expected_version, self._version)

            rotated = self._rotate(request, self._confirmed)
            result = assemble_result(
                self.qsorts, self._correlation, self._extraction, self._guidance, rotated, self.config
            )
            version = self._version + 1
            confirmed = ConfirmedRotation(version, rotated, result)
            self._confirmed = confirmed
            self._version = version
            self._state = SessionState.ROTATION_CONFIRMED
            self._touch()
            self._publish(SessionEvent("confirmed", self.session_id, version, {
                'method': rotated.method,
                'loadings': rotated.loadings,
                'converged': rotated.converged,
            }))
        logger.info(f"セッション {self.session_id}: {rotated.method} 回転を確定（バージョン {version}）")
        return confirmed

    def results(self) -> AnalysisResult:
        """最後に確定した回転から導いた統計出力。"""
        self._ensure_open()
        confirmed = self._confirmed
        if self._state is not SessionState.ROTATION_CONFIRMED or confirmed is None:
            raise InvalidSessionStateError(self.session_id, self._state.value, "read results")
        self._touch()
        return confirmed.result

    def snapshot(self, reason: str = "") -> SessionSnapshot:
        confirmed = self._confirmed
        return SessionSnapshot(
            session_id=self.session_id,
            version=confirmed.version if confirmed else self._version,
            state=self._state,
            qsorts=self.qsorts,
            config=self.config,
            rotated=confirmed.rotated if confirmed else None,
            result=confirmed.result if confirmed else None,
            reason=reason,
        )

    def close(self, reason: str = "closed") -> SessionSnapshot:
        """セッションをクローズし、最終確定状態を受け取り先に渡す。"""
        with self._lock:
            self._ensure_open()
            snapshot = self.snapshot(reason)
            self._state = SessionState.CLOSED
            self._publish(SessionEvent("closed", self.session_id, self._version, {'reason': reason}))
            with self._subscribers_lock:
                subscribers, self._subscribers = self._subscribers, []
        for subscription in subscribers:
            subscription.close()
        self._sink.persist(snapshot)
        logger.info(f"セッション {self.session_id} をクローズ（{reason}、バージョン {snapshot.version}）")
        return snapshot

    # ── イベント ──

    def subscribe(self) -> Subscription:
        self._ensure_open()
        subscription = Subscription(self.session_id, on_close=self._unsubscribe)
        with self._subscribers_lock:
            self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._subscribers_lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def _publish(self, event: SessionEvent) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.put(event)

    def describe(self) -> Dict[str, Any]:
        extraction = self._extraction
        return {
            'session_id': self.session_id,
            'state': self._state.value,
            'version': self._version,
            'mode': self.mode,
            'participants': self.qsorts.n_participants,
            'statements': self.qsorts.n_statements,
            'factors': extraction.n_factors if extraction else None,
            'rotation': self.rotated.method if self.rotated else None,
            'idle_seconds': self.idle_for(),
        }


# ── レジストリ ───────────────────────────────────────────────────────────────

class SessionManager:
    """全セッションを保持する。レジストリのロックは登録と削除だけを保護する。"""

    def __init__(
        self,
        sink: Optional[SnapshotSink] = None,
        idle_timeout: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
        tombstone_ttl: Optional[float] = None,
    ):
        self._sink = sink or LoggingSnapshotSink()
        self.idle_timeout = idle_timeout
        # この秒数の間、クローズ済みIDには "not found" ではなく "closed" を返す
        self.tombstone_ttl = idle_timeout if tombstone_ttl is None else tombstone_ttl
        self._clock = clock
        self._sessions: Dict[str, AnalysisSession] = {}
        self._closed: Dict[str, float] = {}
        self._lock = threading.Lock()

    def open(self, qsorts: QSortMatrix, config: AnalysisConfig) -> AnalysisSession:
        """セッションを作成し、因子抽出を実行する。"""
        session = AnalysisSession(uuid.uuid4().hex, qsorts, config, self._sink, self._clock)
        session.extract()
        with self._lock:
            self._sessions[session.session_id] = session
        logger.info(f"セッション {session.session_id} を開始（{session.mode}）")
        return session

    def get(self, session_id: str) -> AnalysisSession:
        with self._lock:
            session = self._sessions.get(session_id)
            closed = session_id in self._closed
        if session is None:
            if closed:
                raise SessionClosedError(session_id)
            raise SessionNotFoundError(session_id)
        return session

    def close(self, session_id: str, reason: str = "closed") -> SessionSnapshot:
        session = self.get(session_id)
        snapshot = session.close(reason)
        self._forget(session_id)
        return snapshot

    def _forget(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)
            self._closed[session_id] = self._clock()

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def reap_idle(self, now: Optional[float] = None) -> List[str]:
        """``idle_timeout`` を超えてアイドル状態のセッションをクローズする。

        Returns:
            この呼び出しでクローズしたセッションのIDリスト
        """
        now = self._clock() if now is None else now
        with self._lock:
            candidates = list(self._sessions.values())
        reaped = []
        for session in candidates:
            if session.idle_for(now) <= self.idle_timeout:
                continue
            try:
                session.close("idle timeout")
            except SessionClosedError:
                # 所有者が同時にクローズ済み
                pass
            self._forget(session.session_id)
            reaped.append(session.session_id)
        if reaped:
            logger.info(f"アイドル状態のセッションを {len(reaped)} 件クローズ")
        self._prune_tombstones(now)
        return reaped

    def _prune_tombstones(self, now: float) -> None:
        with self._lock:
            expired = [s for s, closed_at in self._closed.items() if now - closed_at > self.tombstone_ttl]
            for session_id in expired:
                del self._closed[session_id]
        if expired:
            logger.debug(f"クローズ済みセッションIDを {len(expired)} 件破棄")

    def close_all(self, reason: str = "shutdown") -> None:
        for session_id in self.session_ids():
            try:
                self.close(session_id, reason)
            except (SessionClosedError, SessionNotFoundError):
                continue


class IdleReaper(threading.Thread):
    """``interval`` 秒ごとに ``manager.reap_idle()`` を呼ぶデーモンスレッド。

    ``manager`` は SessionManager、または reap_idle() を持つ任意のオブジェクト。
    """

    def __init__(self, manager, interval: float = 60.0):
        super().__init__(name="session-reaper", daemon=True)
        self.manager = manager
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.manager.reap_idle()
            except Exception:
                logger.exception("アイドルセッションの回収中にエラーが発生")

    def stop(self) -> None:
        self._stop_event.set()
