"""
Q方法論分析エンジン パッケージ初期化モジュール

エンジンのファサード、セッション関連の型、例外体系を一括エクスポートする。
"""

from .core import (
    AnalysisConfig,
    AnalysisResult,
    GridConfig,
    QSortMatrix,
    configure,
    perform_analysis,
)
from .engine import QMethodEngine
from .errors import (
    BootstrapCancelledError,
    ComputationError,
    InputError,
    QMethodError,
    SessionClosedError,
    SessionError,
    StaleSessionVersionError,
)
from .session import RotationRequest, SessionState

__all__ = [
    'AnalysisConfig',
    'AnalysisResult',
    'GridConfig',
    'QSortMatrix',
    'configure',
    'perform_analysis',
    'QMethodEngine',
    'BootstrapCancelledError',
    'ComputationError',
    'InputError',
    'QMethodError',
    'SessionClosedError',
    'SessionError',
    'StaleSessionVersionError',
    'RotationRequest',
    'SessionState',
]
