"""
分析パイプラインモジュール

1件の調査データに対するQ方法論分析の全工程を同期的に実行する:

  1. Qソートの検証と相関行列の構築 (build_correlation_matrix)
  2. 因子数の目安 (factor_count_guidance)
  3. 未回転因子の抽出 (extract_factors)
  4. 回転 (rotate)
  5. 回転済みの解から因子配列・弁別項目・合意項目・クリブシートを導出
     (derive_outputs)。あわせて因子ごとの特性を計算
  6. 必要に応じてブートストラップ信頼区間 (run_bootstrap)

モジュールレベルのデフォルト値は起動時に configure() で一度だけ適用する。
"""

import dataclasses
import logging
from typing import Dict, Optional, Tuple

from ..errors import InputError
from .bootstrap import run_bootstrap
from .correlation import build_correlation_matrix
from .extraction import extract_factors, factor_count_guidance
from .rotation import rotate
from .statistics import (
    build_crib_sheets,
    build_factor_arrays,
    factor_characteristics,
    find_consensus,
    find_distinguishing,
)
from .types import (
    AnalysisConfig,
    AnalysisResult,
    ConsensusStatement,
    CorrelationMatrix,
    CribSheet,
    DistinguishingStatement,
    ExtractionOptions,
    FactorArray,
    FactorCountGuidance,
    FactorSolution,
    GridConfig,
    QSortMatrix,
    RotatedSolution,
    RotationOptions,
    StatisticsOptions,
)

logger = logging.getLogger(__name__)


# ── デフォルトオプション ─────────────────────────────────────────────────────

# 設定で段階が指定されない場合に使うオプション（configure() で上書き可能）
EXTRACTION_DEFAULTS = ExtractionOptions()
ROTATION_DEFAULTS = RotationOptions()
STATISTICS_DEFAULTS = StatisticsOptions()


def configure(
    *,
    extraction: Optional[Dict] = None,
    rotation: Optional[Dict] = None,
    statistics: Optional[Dict] = None,
) -> None:
    """YAML設定からデフォルトのオプションを適用する。

    起動時に main.py から一度だけ呼ばれる。指定したキーだけを上書きし、
    それ以外は組み込みのデフォルト値のまま。

    Args:
        extraction: ExtractionOptions の一部のフィールド
        rotation: RotationOptions の一部のフィールド
        statistics: StatisticsOptions の一部のフィールド
    """
    global EXTRACTION_DEFAULTS, ROTATION_DEFAULTS, STATISTICS_DEFAULTS
    if extraction:
        EXTRACTION_DEFAULTS = _options(ExtractionOptions, extraction)
    if rotation:
        ROTATION_DEFAULTS = _options(RotationOptions, rotation)
    if statistics:
        if 'significance_levels' in statistics:
            statistics = {**statistics, 'significance_levels': tuple(statistics['significance_levels'])}
        STATISTICS_DEFAULTS = _options(StatisticsOptions, statistics)


def _options(cls, section: Dict):
    try:
        return cls(**section)
    except TypeError as e:
        raise InputError(f"Invalid {cls.__name__} configuration: {e}", section=dict(section)) from e


def default_config(grid: GridConfig, **overrides) -> AnalysisConfig:
    """設定済みのデフォルト値から ``grid`` 用の AnalysisConfig を生成する。"""
    return AnalysisConfig(
        grid=grid,
        extraction=overrides.pop('extraction', EXTRACTION_DEFAULTS),
        rotation=overrides.pop('rotation', ROTATION_DEFAULTS),
        statistics=overrides.pop('statistics', STATISTICS_DEFAULTS),
        **overrides,
    )


# ── パイプライン ─────────────────────────────────────────────────────────────

def derive_outputs(
    qsorts: QSortMatrix,
    rotated: RotatedSolution,
    config: AnalysisConfig,
) -> Tuple[
    Tuple[FactorArray, ...],
    Tuple[DistinguishingStatement, ...],
    Tuple[ConsensusStatement, ...],
    Tuple[CribSheet, ...],
]:
    """回転済みの解の統計出力。

    Returns:
        (因子配列, 弁別項目, 合意項目, クリブシート)
    """
    arrays = build_factor_arrays(qsorts, rotated, config.grid, config.statistics)
    distinguishing = find_distinguishing(arrays, config.statistics)
    consensus = find_consensus(arrays, config.statistics)
    crib_sheets = build_crib_sheets(arrays, distinguishing, config.statistics)
    return arrays, distinguishing, consensus, crib_sheets


def assemble_result(
    qsorts: QSortMatrix,
    correlation: CorrelationMatrix,
    extraction: FactorSolution,
    guidance: Optional[FactorCountGuidance],
    rotated: RotatedSolution,
    config: AnalysisConfig,
) -> AnalysisResult:
    """回転済みの解に対する AnalysisResult（ブートストラップなし）。"""
    arrays, distinguishing, consensus, crib_sheets = derive_outputs(qsorts, rotated, config)
    return AnalysisResult(
        qsorts=qsorts,
        correlation=correlation,
        extraction=extraction,
        guidance=guidance,
        rotated=rotated,
        arrays=arrays,
        distinguishing=distinguishing,
        consensus=consensus,
        crib_sheets=crib_sheets,
        characteristics=factor_characteristics(arrays, distinguishing, config.statistics),
        config=config,
    )


def perform_analysis(
    qsorts: QSortMatrix,
    config: AnalysisConfig,
    with_guidance: bool = True,
) -> AnalysisResult:
    """分析の全工程を同期的に実行する。

    Args:
        qsorts: 参加者 x 項目 の順位
        config: グリッドと各段階のオプション。``config.bootstrap`` を指定すると
            ブートストラップ信頼区間も計算する
        with_guidance: カイザー基準・平行分析・スクリーの目安を計算するか

    Returns:
        AnalysisResult

    Raises:
        InputError: Qソートまたはオプションが不正（行列計算の前に送出）
        ComputationError: 因子抽出または回転で解が得られない
    """
    correlation = build_correlation_matrix(qsorts, config.grid)
    guidance = factor_count_guidance(qsorts, correlation, config.extraction) if with_guidance else None
    extraction = extract_factors(correlation, config.extraction)
    rotated = rotate(extraction, config.rotation.method, config.rotation)
    result = assemble_result(qsorts, correlation, extraction, guidance, rotated, config)

    if config.bootstrap is not None:
        bootstrap = run_bootstrap(qsorts, rotated, config, config.bootstrap)
        result = dataclasses.replace(result, bootstrap=bootstrap)

    logger.info(
        f"分析完了: Qソート {qsorts.n_participants} 件、{rotated.n_factors} 因子 "
        f"({extraction.method}/{rotated.method})、"
        f"弁別項目 {len(result.distinguishing)} 件、合意項目 {len(result.consensus)} 件"
    )
    return result
