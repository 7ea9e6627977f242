"""
Pydanticリクエスト/レスポンスモデル定義

qmethod/routes.py の各エンドポイントで使用される全てのリクエストボディと
レスポンスボディの型定義を集約する。
"""

from pydantic import BaseModel
from typing import List, Dict, Any, Optional


# ── 調査データ入力 ───────────────────────────────────────────────────────────

class GridModel(BaseModel):
    """強制分布グリッド。最左列の順位と、列ごとの項目数。"""
    min_rank: int
    counts: List[int]


class ExtractionSettings(BaseModel):
    method: Optional[str] = None        # "centroid" または "pca"
    n_factors: Optional[int] = None     # None の場合はカイザー基準


class RotationSettings(BaseModel):
    method: Optional[str] = None        # none / varimax / quartimax / promax / oblimin
    normalize: Optional[bool] = None
    kappa: Optional[float] = None       # promax のべき指数
    gamma: Optional[float] = None       # oblimin の斜交度


class BootstrapSettings(BaseModel):
    n_resamples: int = 1000
    confidence: float = 0.95
    seed: Optional[int] = None


class StudyRequest(BaseModel):
    """調査のQソートと、リクエストごとのオプション上書き。

    省略したセクションはサーバー設定の値を使う。
    """
    qsorts: List[List[int]]                 # 参加者 x 項目 の順位
    participant_ids: List[str] = []
    statement_ids: List[str] = []
    statement_texts: List[str] = []
    grid: Optional[GridModel] = None
    extraction: Optional[ExtractionSettings] = None
    rotation: Optional[RotationSettings] = None
    bootstrap: Optional[BootstrapSettings] = None
    mode: Optional[str] = None              # セッションモード: "orthogonal" / "oblique"


# ── 対話的回転 ───────────────────────────────────────────────────────────────

class RotationRequestModel(BaseModel):
    """1回分の回転操作。回転法、k x k 行列、平面回転のいずれか。"""
    method: Optional[str] = None
    rotation_matrix: Optional[List[List[float]]] = None
    factor_a: Optional[int] = None          # 1始まり
    factor_b: Optional[int] = None
    angle_degrees: float = 0.0
    kappa: Optional[float] = None
    gamma: Optional[float] = None


class ApplyRotationRequest(RotationRequestModel):
    expected_version: int


class SessionResponse(BaseModel):
    session_id: str
    state: str
    version: int
    mode: str
    factors: Optional[int] = None
    rotation: Optional[str] = None
    guidance: Optional[Dict[str, Any]] = None


class RotationResponse(BaseModel):
    """プレビューと適用で返す回転済みの解。

    Attributes:
        state: プレビューは "rotation_preview"、適用後は "rotation_confirmed"
        version: 確定バージョン（プレビューでは基準バージョン）
        loadings: 参加者 x 因子 の負荷量
        rotation_matrix: k x k 行列（loadings = unrotated @ rotation_matrix）
        factor_correlations: 斜交回転の場合のみ
    """
    session_id: str
    state: str
    version: int
    method: str
    loadings: List[List[float]]
    rotation_matrix: List[List[float]]
    factor_correlations: Optional[List[List[float]]] = None
    converged: bool
    iterations: int
    z_scores: Optional[List[List[float]]] = None
    ranks: Optional[List[List[int]]] = None


# ── ブートストラップ ─────────────────────────────────────────────────────────

class BootstrapTaskResponse(BaseModel):
    task_id: str
    session_id: Optional[str] = None
    status: str                             # running / cancelling / completed / cancelled / failed
    completed: int
    total: int
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None


# ── PQMethod 入出力 ──────────────────────────────────────────────────────────

class PQMethodImportRequest(BaseModel):
    """DAT ファイルまたは分析リスティングの内容と、任意の STA 項目文。"""
    content: str
    statements: Optional[str] = None


class PQMethodExportRequest(BaseModel):
    session_id: str
    format: str = "lis"                     # "lis" / "dat" / "sta"
    title: str = ""


class PQMethodValidateRequest(BaseModel):
    session_id: str
    reference: str                          # 参照リスティングの内容
    threshold: float = 0.99
