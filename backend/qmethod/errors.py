"""
エンジン例外体系

エンジンが送出する全ての例外は QMethodError を継承し、呼び出し側が
具体的なメッセージを組み立てられるよう ``context`` 辞書に構造化された詳細
（参加者インデックス、反復回数、バージョン、問題の行など）を保持する。

  QMethodError
    InputError                  行列計算の前に入力を拒否
      InvalidDistributionError
      InsufficientDataError
      PQMethodFormatError
    ComputationError            数値計算の失敗（再試行しない）
      ExtractionDivergenceError
      RotationSingularityError
    SessionError                同時実行制御（再取得後に再試行可能）
      StaleSessionVersionError
      SessionClosedError
      SessionNotFoundError
      InvalidSessionStateError
    BootstrapCancelledError
"""

from typing import Any, Dict, Optional


class QMethodError(Exception):
    """エンジン例外の基底クラス。"""

    code = "qmethod_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        """HTTP 層とセッションイベントで使うシリアライズ可能な形式。"""
        return {
            'error': self.code,
            'message': self.message,
            'context': self.context,
        }


# ── 入力エラー ───────────────────────────────────────────────────────────────

class InputError(QMethodError):
    code = "input_error"


class InvalidDistributionError(InputError):
    """参加者の順位の個数が強制分布グリッドと一致しない。"""

    code = "invalid_distribution"

    def __init__(
        self,
        participant: int,
        expected: Dict[int, int],
        actual: Dict[int, int],
        participant_id: Optional[str] = None,
    ):
        label = participant_id if participant_id is not None else participant
        mismatched = sorted(
            rank for rank in set(expected) | set(actual)
            if expected.get(rank, 0) != actual.get(rank, 0)
        )
        super().__init__(
            f"Q-sort of participant {label} does not match the grid "
            f"(ranks {mismatched})",
            participant=participant,
            participant_id=participant_id,
            expected=expected,
            actual=actual,
            mismatched_ranks=mismatched,
        )


class InsufficientDataError(InputError):
    code = "insufficient_data"


class PQMethodFormatError(InputError):
    """PQMethod ファイルを解析できない。"""

    code = "pqmethod_format"

    def __init__(self, message: str, line: int, field: Optional[str] = None):
        super().__init__(f"line {line}: {message}", line=line, field=field)
        self.line = line
        self.field = field


# ── 計算エラー ───────────────────────────────────────────────────────────────

class ComputationError(QMethodError):
    code = "computation_error"


class ExtractionDivergenceError(ComputationError):
    code = "extraction_divergence"

    def __init__(self, message: str, iterations: int, residual: float, factor: int):
        super().__init__(
            message, iterations=iterations, residual=float(residual), factor=factor
        )


class RotationSingularityError(ComputationError):
    code = "rotation_singularity"

    def __init__(self, message: str, method: str, condition: Optional[float] = None):
        super().__init__(
            message,
            method=method,
            condition=None if condition is None else float(condition),
        )


# ── セッションエラー ─────────────────────────────────────────────────────────

class SessionError(QMethodError):
    code = "session_error"


class StaleSessionVersionError(SessionError):
    code = "stale_version"

    def __init__(self, session_id: str, expected: int, current: int):
        super().__init__(
            f"Session {session_id} is at version {current}, "
            f"request was based on version {expected}",
            session_id=session_id,
            expected=expected,
            current=current,
        )
        self.expected = expected
        self.current = current


class SessionClosedError(SessionError):
    code = "session_closed"

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} is closed", session_id=session_id)


class SessionNotFoundError(SessionError):
    code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Unknown session {session_id}", session_id=session_id)


class InvalidSessionStateError(SessionError):
    code = "invalid_session_state"

    def __init__(self, session_id: str, state: str, operation: str):
        super().__init__(
            f"Cannot {operation} while session {session_id} is {state}",
            session_id=session_id,
            state=state,
            operation=operation,
        )


class BootstrapCancelledError(QMethodError):
    code = "bootstrap_cancelled"
