"""
コア分析モジュールパッケージ

相関・因子抽出・回転・統計出力・ブートストラップ・PQMethod入出力の
数値カーネルと同期分析パイプラインを集約する。
"""

from .analysis import configure, default_config, derive_outputs, perform_analysis
from .bootstrap import BootstrapAnalyzer, BootstrapTask, run_bootstrap
from .correlation import build_correlation_matrix, validate_qsorts
from .extraction import extract_factors, factor_count_guidance
from .pqmethod import (
    PQMethodOutput,
    PQMethodStudy,
    export_dat,
    export_lis,
    export_sta,
    import_dat,
    import_lis,
    import_sta,
    validate_against_reference,
)
from .rotation import apply_manual_rotation, plane_rotation_matrix, rotate
from .types import (
    AnalysisConfig,
    AnalysisResult,
    BootstrapOptions,
    BootstrapResult,
    ExtractionOptions,
    GridConfig,
    QSortMatrix,
    RotatedSolution,
    RotationOptions,
    SessionOptions,
    StatisticsOptions,
)

__all__ = [
    'configure',
    'default_config',
    'derive_outputs',
    'perform_analysis',
    'BootstrapAnalyzer',
    'BootstrapTask',
    'run_bootstrap',
    'build_correlation_matrix',
    'validate_qsorts',
    'extract_factors',
    'factor_count_guidance',
    'PQMethodOutput',
    'PQMethodStudy',
    'export_dat',
    'export_lis',
    'export_sta',
    'import_dat',
    'import_lis',
    'import_sta',
    'validate_against_reference',
    'apply_manual_rotation',
    'plane_rotation_matrix',
    'rotate',
    'AnalysisConfig',
    'AnalysisResult',
    'BootstrapOptions',
    'BootstrapResult',
    'ExtractionOptions',
    'GridConfig',
    'QSortMatrix',
    'RotatedSolution',
    'RotationOptions',
    'SessionOptions',
    'StatisticsOptions',
]
