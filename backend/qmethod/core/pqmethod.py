"""
PQMethod互換のファイル入出力とベンチマーク検証

固定幅レイアウト（列は1始まり、両端を含む）:

DAT（Qソート）
  1行目       1-3列 "  0"、4-6列 ソート数、7-9列 項目数、10列以降 研究タイトル
  2行目       1-3列 最低順位、4-6列 最高順位、続いて順位ごとの項目数を
              3列ずつ（最低順位から）
  3行目以降   1行に1ソート: 1-8列 ソートID（左詰め）、9-10列 空白、
              続いて項目ごとに2列右詰めの順位

STA（項目文）
  1行に1項目の本文、項目順

LIS（分析リスティング）
  自由記述のヘッダ行の後に以下のセクションが続く。各セクションは単独行の
  タイトルで始まり、空行で終わる:
  Correlation Matrix Between Sorts
                            ソート番号(4) + ソートごとの相関(7, 小数3桁)
  Unrotated Factor Matrix   ソート番号(4) + 因子ごとの負荷量(8, 小数4桁)
  Rotated Factor Matrix     ソート番号(4) + 因子ごとの負荷量(8, 小数4桁)
                            + 定義フラグ列（"X" または空白）
  Factor Arrays             項目番号(4) + 因子ごとのzスコア
                            (8, 符号付き小数3桁) と順位(4)
  Distinguishing Statements 因子(4) + 項目番号(4) + zスコア(8)
                            + 順位(4) + 空白2つ + 有意性マーカー
  Consensus Statements      項目番号(4) + 因子ごとのzスコア(8) と順位(4)

ファイルはDOSテキスト（CRLF改行、latin-1）。セクション内で数字から始まらない行は
列見出しとして扱う。
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from ..errors import InputError, PQMethodFormatError
from .types import (
    AnalysisResult,
    FactorSolution,
    GridConfig,
    QSortMatrix,
    StatementDelta,
    ValidationReport,
)

logger = logging.getLogger(__name__)

ENCODING = "latin-1"
NEWLINE = "\r\n"

CORRELATIONS = "Correlation Matrix Between Sorts"
UNROTATED = "Unrotated Factor Matrix"
ROTATED = "Rotated Factor Matrix"
ARRAYS = "Factor Arrays"
DISTINGUISHING = "Distinguishing Statements"
CONSENSUS = "Consensus Statements"
SECTIONS = (CORRELATIONS, UNROTATED, ROTATED, ARRAYS, DISTINGUISHING, CONSENSUS)


class PQMethodStudy(NamedTuple):
    qsorts: QSortMatrix
    grid: GridConfig
    title: str


@dataclass(frozen=True)
class PQMethodOutput:
    """分析リスティングの内容。"""
    title: str
    extraction_method: str
    rotation_method: str
    unrotated: FactorSolution
    rotated_loadings: np.ndarray
    defining: np.ndarray
    statement_ids: Tuple[str, ...]
    z_scores: np.ndarray
    ranks: np.ndarray
    correlations: Optional[np.ndarray] = None

    @property
    def n_factors(self) -> int:
        return self.z_scores.shape[1]


# ── フィールド補助関数 ───────────────────────────────────────────────────────

def _decode(data: bytes) -> List[str]:
    if isinstance(data, str):
        text = data
    else:
        text = bytes(data).decode(ENCODING)
    return text.splitlines()


def _encode(lines: Sequence[str]) -> bytes:
    return (NEWLINE.join(lines) + NEWLINE).encode(ENCODING, errors="replace")


def _int_field(line: str, start: int, end: int, line_no: int, field: str) -> int:
    raw = line[start:end]
    try:
        return int(raw)
    except ValueError:
        raise PQMethodFormatError(
            f"expected an integer in columns {start + 1}-{end}, got {raw!r}",
            line=line_no, field=field,
        ) from None


def _float_field(line: str, start: int, end: int, line_no: int, field: str) -> float:
    raw = line[start:end]
    try:
        return float(raw)
    except ValueError:
        raise PQMethodFormatError(
            f"expected a number in columns {start + 1}-{end}, got {raw!r}",
            line=line_no, field=field,
        ) from None


# ── DAT ──────────────────────────────────────────────────────────────────────

def import_dat(data: bytes) -> PQMethodStudy:
    """DATファイルをQソート、グリッド、タイトルに解析する。

    Raises:
        PQMethodFormatError: フィールドが解析できない、または件数が矛盾している
    """
    lines = _decode(data)
    while lines and not lines[-1].strip():
        lines.pop()
    if len(lines) < 2:
        raise PQMethodFormatError("file needs a header and a grid line", line=len(lines) + 1, field="header")

    header = lines[0]
    _int_field(header, 0, 3, 1, "header")
    n_sorts = _int_field(header, 3, 6, 1, "sorts")
    n_statements = _int_field(header, 6, 9, 1, "statements")
    title = header[9:].strip()

    grid_line = lines[1]
    min_rank = _int_field(grid_line, 0, 3, 2, "min_rank")
    max_rank = _int_field(grid_line, 3, 6, 2, "max_rank")
    if max_rank <= min_rank:
        raise PQMethodFormatError("highest rank must exceed lowest rank", line=2, field="max_rank")
    counts = [
        _int_field(grid_line, 6 + 3 * i, 9 + 3 * i, 2, f"count[{min_rank + i}]")
        for i in range(max_rank - min_rank + 1)
    ]
    if sum(counts) != n_statements:
        raise PQMethodFormatError(
            f"grid holds {sum(counts)} statements, header declares {n_statements}",
            line=2, field="counts",
        )
    grid = GridConfig(min_rank=min_rank, counts=tuple(counts))

    sort_lines = lines[2:]
    if len(sort_lines) != n_sorts:
        raise PQMethodFormatError(
            f"header declares {n_sorts} sorts, file holds {len(sort_lines)}",
            line=len(lines), field="sorts",
        )

    ids = []
    ranks = np.empty((n_sorts, n_statements), dtype=int)
    for p, line in enumerate(sort_lines):
        line_no = p + 3
        if len(line.rstrip()) < 10 + 2 * n_statements:
            raise PQMethodFormatError(
                f"sort line holds fewer than {n_statements} ranks", line=line_no, field="ranks"
            )
        ids.append(line[:8].strip() or str(p + 1))
        for s in range(n_statements):
            ranks[p, s] = _int_field(line, 10 + 2 * s, 12 + 2 * s, line_no, f"statement[{s + 1}]")

    logger.info(f"DAT '{title}' を読み込み: ソート {n_sorts} 件、項目 {n_statements} 件")
    return PQMethodStudy(QSortMatrix(ranks=ranks, participant_ids=tuple(ids)), grid, title)


def export_dat(qsorts: QSortMatrix, grid: GridConfig, title: str = "") -> bytes:
    """QソートをDATレイアウトで書き出す。"""
    if qsorts.n_participants > 999 or qsorts.n_statements > 999:
        raise InputError("DAT files hold at most 999 sorts and statements")
    if grid.min_rank < -9 or grid.max_rank > 99:
        raise InputError("DAT ranks must fit two columns", min_rank=grid.min_rank, max_rank=grid.max_rank)

    lines = [f"  0{qsorts.n_participants:3d}{qsorts.n_statements:3d}{title}"]
    lines.append(f"{grid.min_rank:3d}{grid.max_rank:3d}" + "".join(f"{c:3d}" for c in grid.counts))
    for pid, row in zip(qsorts.participant_ids, qsorts.ranks):
        lines.append(f"{pid[:8]:<8}  " + "".join(f"{int(v):2d}" for v in row))
    return _encode(lines)


# ── STA ──────────────────────────────────────────────────────────────────────

def import_sta(data: bytes) -> Tuple[str, ...]:
    lines = [line.rstrip() for line in _decode(data)]
    while lines and not lines[-1]:
        lines.pop()
    return tuple(lines)


def export_sta(texts: Sequence[str]) -> bytes:
    for i, text in enumerate(texts):
        if "\n" in text or "\r" in text:
            raise InputError("Statement text must fit on one line", statement=i + 1)
    return _encode(list(texts))


# ── LIS ──────────────────────────────────────────────────────────────────────

def _matrix_lines(loadings: np.ndarray, defining: Optional[np.ndarray] = None) -> List[str]:
    k = loadings.shape[1]
    width = 9 if defining is not None else 8
    lines = [" Sort" + "".join(f"{'F' + str(f + 1):>{width}}" for f in range(k))]
    for p, row in enumerate(loadings):
        cells = []
        for f, value in enumerate(row):
            cell = f"{value:8.4f}"
            if defining is not None:
                cell += "X" if defining[p, f] else " "
            cells.append(cell)
        lines.append(f"{p + 1:4d}" + "".join(cells))
    return lines


def export_lis(result: AnalysisResult, title: str = "") -> bytes:
    """分析結果のリスティングを書き出す。"""
    k = result.rotated.n_factors
    n = result.qsorts.n_participants
    defining = np.zeros((n, k), dtype=bool)
    for array in result.arrays:
        defining[list(array.defining_sorts), array.factor - 1] = True

    lines = [
        "PQMethod-compatible analysis listing",
        f"Title: {title}",
        f"Sorts: {n}  Statements: {result.qsorts.n_statements}  Factors: {k}",
        f"Extraction: {result.extraction.method}  Rotation: {result.rotated.method}",
        "",
        CORRELATIONS,
        " Sort" + "".join(f"{p + 1:>7}" for p in range(n)),
    ]
    for p, row in enumerate(np.asarray(result.correlation.values)):
        lines.append(f"{p + 1:4d}" + "".join(f"{v:7.3f}" for v in row))
    lines += ["", UNROTATED]
    lines += _matrix_lines(np.asarray(result.extraction.loadings))
    lines.append("Eigen" + "".join(f"{v:8.4f}" for v in result.extraction.eigenvalues))
    lines.append("%Var " + "".join(f"{v:8.1f}" for v in result.extraction.explained_variance))
    lines += ["", ROTATED]
    lines += _matrix_lines(np.asarray(result.rotated.loadings), defining)

    lines += ["", ARRAYS, " No." + "".join(f"{'Z' + str(f + 1):>8}{'R':>4}" for f in range(k))]
    z = result.z_score_matrix()
    ranks = np.column_stack([a.ranks for a in result.arrays])
    for s in range(z.shape[0]):
        lines.append(f"{s + 1:>4}" + "".join(f"{z[s, f]:8.3f}{ranks[s, f]:4d}" for f in range(k)))

    lines += ["", DISTINGUISHING, "  F No.       Z   R  Sig"]
    for d in result.distinguishing:
        array = result.arrays[d.factor - 1]
        marker = "**" if d.pure else "*"
        lines.append(
            f"{d.factor:4d}{d.statement_index + 1:>4}{d.z_score:8.3f}"
            f"{int(array.ranks[d.statement_index]):4d}  {marker}"
        )

    lines += ["", CONSENSUS, " No." + "".join(f"{'Z' + str(f + 1):>8}{'R':>4}" for f in range(k))]
    for c in result.consensus:
        lines.append(
            f"{c.statement_index + 1:>4}"
            + "".join(f"{zv:8.3f}{rv:4d}" for zv, rv in zip(c.z_scores, c.ranks))
        )
    lines.append("")
    return _encode(lines)


def _split_sections(lines: List[str]) -> Dict[str, List[Tuple[int, str]]]:
    """セクションごとのデータ行（1始まりの行番号付き）。"""
    sections: Dict[str, List[Tuple[int, str]]] = {}
    current = None
    for i, line in enumerate(lines, start=1):
        stripped = line.strip()
        if stripped in SECTIONS:
            current = stripped
            sections[current] = []
        elif not stripped:
            current = None
        elif current is not None and stripped[0].isdigit():
            sections[current].append((i, line))
    return sections


def _header_value(lines: List[str], key: str) -> str:
    for line in lines:
        if line.startswith(key):
            return line[len(key):].strip()
    return ""


def _parse_matrix(rows: List[Tuple[int, str]], width: int, section: str) -> Tuple[np.ndarray, np.ndarray]:
    if not rows:
        raise PQMethodFormatError(f"section '{section}' holds no rows", line=0, field=section)
    k = (len(rows[0][1].rstrip()) - 4 + (width - 8)) // width
    if k < 1:
        raise PQMethodFormatError("row holds no factor columns", line=rows[0][0], field=section)
    values = np.empty((len(rows), k))
    flags = np.zeros((len(rows), k), dtype=bool)
    for p, (line_no, line) in enumerate(rows):
        _int_field(line, 0, 4, line_no, "sort")
        for f in range(k):
            start = 4 + width * f
            values[p, f] = _float_field(line, start, start + 8, line_no, f"{section}[F{f + 1}]")
            if width > 8:
                flags[p, f] = line[start + 8:start + 9] == "X"
    return values, flags


def _parse_correlations(rows: List[Tuple[int, str]]) -> np.ndarray:
    n = len(rows)
    values = np.empty((n, n))
    for p, (line_no, line) in enumerate(rows):
        if len(line.rstrip()) < 4 + 7 * n:
            raise PQMethodFormatError(
                f"correlation row holds fewer than {n} columns", line=line_no, field=CORRELATIONS
            )
        _int_field(line, 0, 4, line_no, "sort")
        for q in range(n):
            start = 4 + 7 * q
            values[p, q] = _float_field(line, start, start + 7, line_no, f"{CORRELATIONS}[{q + 1}]")
    return values


def import_lis(data: bytes) -> PQMethodOutput:
    """export_lis が書き出した分析リスティングを解析する。

    Raises:
        PQMethodFormatError: 必須セクションがない、またはフィールドが解析できない
    """
    lines = _decode(data)
    sections = _split_sections(lines)
    for name in (UNROTATED, ROTATED, ARRAYS):
        if name not in sections:
            raise PQMethodFormatError(f"missing section '{name}'", line=len(lines), field=name)

    unrotated, _ = _parse_matrix(sections[UNROTATED], 8, UNROTATED)
    rotated, defining = _parse_matrix(sections[ROTATED], 9, ROTATED)
    if rotated.shape != unrotated.shape:
        raise PQMethodFormatError(
            "rotated and unrotated matrices differ in shape",
            line=sections[ROTATED][0][0], field=ROTATED,
        )
    k = unrotated.shape[1]

    rows = sections[ARRAYS]
    statement_ids = []
    z_scores = np.empty((len(rows), k))
    ranks = np.empty((len(rows), k), dtype=int)
    for s, (line_no, line) in enumerate(rows):
        statement_ids.append(str(_int_field(line, 0, 4, line_no, "statement")))
        for f in range(k):
            start = 4 + 12 * f
            z_scores[s, f] = _float_field(line, start, start + 8, line_no, f"z[F{f + 1}]")
            ranks[s, f] = _int_field(line, start + 8, start + 12, line_no, f"rank[F{f + 1}]")

    methods = _header_value(lines, "Extraction:").split()
    extraction_method = methods[0] if methods else "unknown"
    rotation_method = methods[2] if len(methods) > 2 else "unknown"
    n = unrotated.shape[0]
    eigenvalues = (unrotated ** 2).sum(axis=0)

    correlations = None
    if sections.get(CORRELATIONS):
        correlations = _parse_correlations(sections[CORRELATIONS])
        if correlations.shape[0] != n:
            raise PQMethodFormatError(
                f"correlation matrix covers {correlations.shape[0]} sorts, factor matrix {n}",
                line=sections[CORRELATIONS][0][0], field=CORRELATIONS,
            )

    return PQMethodOutput(
        title=_header_value(lines, "Title:"),
        extraction_method=extraction_method,
        rotation_method=rotation_method,
        unrotated=FactorSolution(
            loadings=unrotated,
            eigenvalues=eigenvalues,
            method=extraction_method,
            converged=True,
            iterations=0,
            communalities=(unrotated ** 2).sum(axis=1),
            explained_variance=eigenvalues / n * 100,
            participant_ids=tuple(str(p + 1) for p in range(n)),
        ),
        rotated_loadings=rotated,
        defining=defining,
        statement_ids=tuple(statement_ids),
        z_scores=z_scores,
        ranks=ranks,
        correlations=correlations,
    )


def is_listing(data: bytes) -> bool:
    """バイト列がDATファイルではなく分析リスティングに見える場合に True。"""
    return any(line.strip() == ARRAYS for line in _decode(data))


# ── 検証 ─────────────────────────────────────────────────────────────────────

def _pearson(a: np.ndarray, b: np.ndarray) -> float:
    with np.errstate(divide='ignore', invalid='ignore'):
        r = np.corrcoef(a, b)[0, 1]
    return float(r) if np.isfinite(r) else 0.0


def validate_against_reference(
    result: AnalysisResult,
    reference_bytes: bytes,
    threshold: float = 0.99,
    tolerance: float = 0.001,
) -> ValidationReport:
    """同じ入力に対する参照リスティングと因子配列を比較する。

    因子は位置で対応付ける。全体の相関は因子ごとの相関の最小値。zスコアの差が
    ``tolerance`` を超える項目は差分として列挙する。不一致は例外ではなく報告する。

    Raises:
        PQMethodFormatError: 参照リスティングを解析できない
    """
    reference = import_lis(reference_bytes)
    engine_z = result.z_score_matrix()
    messages = []

    if reference.z_scores.shape[0] != engine_z.shape[0]:
        messages.append(
            f"Statement count differs: engine {engine_z.shape[0]}, reference {reference.z_scores.shape[0]}"
        )
        return ValidationReport(
            correlation=0.0, passed=False, threshold=threshold,
            per_factor=(), deltas=(), messages=tuple(messages),
        )

    k = min(engine_z.shape[1], reference.n_factors)
    if engine_z.shape[1] != reference.n_factors:
        messages.append(
            f"Factor count differs: engine {engine_z.shape[1]}, reference {reference.n_factors}; "
            f"comparing the first {k}"
        )

    per_factor = tuple(_pearson(engine_z[:, f], reference.z_scores[:, f]) for f in range(k))
    deltas = []
    for f in range(k):
        for s in range(engine_z.shape[0]):
            delta = float(engine_z[s, f] - reference.z_scores[s, f])
            if abs(delta) > tolerance:
                deltas.append(StatementDelta(
                    statement_id=result.qsorts.statement_ids[s],
                    factor=f + 1,
                    engine=float(engine_z[s, f]),
                    reference=float(reference.z_scores[s, f]),
                    delta=delta,
                ))

    correlation = min(per_factor) if per_factor else 0.0
    passed = correlation >= threshold and not messages
    if not passed:
        logger.warning(
            f"参照との検証が閾値未満: r={correlation:.4f}（閾値 {threshold}）"
        )
    return ValidationReport(
        correlation=correlation,
        passed=passed,
        threshold=threshold,
        per_factor=per_factor,
        deltas=tuple(deltas),
        messages=tuple(messages),
    )
