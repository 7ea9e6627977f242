"""
APIルート定義モジュール

全てのエンドポイントハンドラをこのファイルに集約する。
各ハンドラは `request.app.state` 経由で共有のエンジンと設定にアクセスする。

エンドポイント一覧:
  POST   /api/analysis                   - 調査データの一括分析
  POST   /api/sessions                   - 対話セッションの開始
  GET    /api/sessions/{id}              - セッションの状態とバージョン
  POST   /api/sessions/{id}/preview      - セッションを変更しない回転プレビュー
  POST   /api/sessions/{id}/apply        - 回転の確定（楽観的バージョン管理）
  GET    /api/sessions/{id}/results      - 確定済み回転の統計出力
  GET    /api/sessions/{id}/events       - セッションイベントのNDJSONストリーム
  DELETE /api/sessions/{id}              - セッションのクローズ
  POST   /api/sessions/{id}/bootstrap    - ブートストラップタスクの開始
  GET    /api/bootstrap/{task_id}        - ブートストラップの進捗・結果
  DELETE /api/bootstrap/{task_id}        - ブートストラップタスクのキャンセル
  POST   /api/pqmethod/import            - DAT・STA・リスティングの解析
  POST   /api/pqmethod/export            - セッションの DAT・STA・リスティング出力
  POST   /api/pqmethod/validate          - 参照リスティングとの比較検証
  GET    /api/health                     - ヘルスチェック
"""

import dataclasses
import json
import logging
import os

from fastapi import APIRouter, HTTPException, Request, Response
from fastapi.responses import StreamingResponse

from qmethod.core.pqmethod import PQMethodStudy, export_dat, export_sta
from qmethod.core.types import (
    AnalysisConfig,
    AnalysisResult,
    BootstrapOptions,
    GridConfig,
    QSortMatrix,
    RotatedSolution,
    as_serializable,
)
from qmethod.errors import (
    BootstrapCancelledError,
    InvalidSessionStateError,
    QMethodError,
    SessionClosedError,
    SessionNotFoundError,
    StaleSessionVersionError,
)
from qmethod.session import RotationRequest, SessionState
from models import (
    StudyRequest, RotationRequestModel, ApplyRotationRequest,
    SessionResponse, RotationResponse, BootstrapSettings, BootstrapTaskResponse,
    PQMethodImportRequest, PQMethodExportRequest, PQMethodValidateRequest,
)

logger = logging.getLogger(__name__)

# APIルーターの作成（全エンドポイントに /api プレフィックスを適用）
router = APIRouter(prefix="/api")

PQMETHOD_MEDIA_TYPE = "text/plain; charset=latin-1"


# ── ヘルパー関数 ─────────────────────────────────────────────────────────────

def _status_for(error: QMethodError) -> int:
    if isinstance(error, SessionNotFoundError):
        return 404
    if isinstance(error, SessionClosedError):
        return 410
    if isinstance(error, (StaleSessionVersionError, InvalidSessionStateError, BootstrapCancelledError)):
        return 409
    return 422


def _http_error(error: QMethodError) -> HTTPException:
    return HTTPException(status_code=_status_for(error), detail=error.to_dict())


def _override(options, settings):
    """設定モデルの非 null フィールドを適用したオプションデータクラスを返す。"""
    if settings is None:
        return options
    return dataclasses.replace(options, **settings.model_dump(exclude_none=True))


def _study(body: StudyRequest, request: Request):
    """サーバー設定を基にリクエストの QSortMatrix と AnalysisConfig を組み立てる。"""
    base: AnalysisConfig = request.app.state.engine_config
    qsorts = QSortMatrix(
        ranks=body.qsorts,
        participant_ids=tuple(body.participant_ids),
        statement_ids=tuple(body.statement_ids),
        statement_texts=tuple(body.statement_texts),
    )
    config = base.replace(
        grid=GridConfig(min_rank=body.grid.min_rank, counts=tuple(body.grid.counts)) if body.grid else base.grid,
        extraction=_override(base.extraction, body.extraction),
        rotation=_override(base.rotation, body.rotation),
        bootstrap=BootstrapOptions(**body.bootstrap.model_dump()) if body.bootstrap else None,
        session=dataclasses.replace(base.session, mode=body.mode) if body.mode else base.session,
    )
    return qsorts, config


def _rotation_request(body: RotationRequestModel) -> RotationRequest:
    return RotationRequest(
        method=body.method,
        rotation_matrix=body.rotation_matrix,
        factor_a=body.factor_a,
        factor_b=body.factor_b,
        angle_degrees=body.angle_degrees,
        kappa=body.kappa,
        gamma=body.gamma,
    )


def _rotation_response(session_id: str, state: str, version: int, rotated: RotatedSolution, arrays=None):
    return RotationResponse(
        session_id=session_id,
        state=state,
        version=version,
        method=rotated.method,
        loadings=rotated.loadings.tolist(),
        rotation_matrix=rotated.rotation_matrix.tolist(),
        factor_correlations=(
            rotated.factor_correlations.tolist() if rotated.factor_correlations is not None else None
        ),
        converged=rotated.converged,
        iterations=rotated.iterations,
        z_scores=[a.z_scores.tolist() for a in arrays] if arrays else None,
        ranks=[a.ranks.tolist() for a in arrays] if arrays else None,
    )


def _result_payload(result: AnalysisResult) -> dict:
    return as_serializable({
        'summary': result.summary(),
        'participant_ids': result.qsorts.participant_ids,
        'statement_ids': result.qsorts.statement_ids,
        'extraction': result.extraction,
        'guidance': result.guidance,
        'rotated': result.rotated,
        'factor_correlations': result.factor_correlations,
        'arrays': result.arrays,
        'distinguishing': result.distinguishing,
        'consensus': result.consensus,
        'crib_sheets': result.crib_sheets,
        'characteristics': result.characteristics,
        'bootstrap': result.bootstrap,
    })


def _session_response(session) -> SessionResponse:
    info = session.describe()
    return SessionResponse(
        session_id=info['session_id'],
        state=info['state'],
        version=info['version'],
        mode=info['mode'],
        factors=info['factors'],
        rotation=info['rotation'],
        guidance=as_serializable(session.guidance) if session.guidance else None,
    )


# ── 一括分析 ─────────────────────────────────────────────────────────────────

@router.post("/analysis")
def run_analysis(body: StudyRequest, request: Request):
    """調査データに全パイプラインを実行し、全ての出力を返す。"""
    try:
        qsorts, config = _study(body, request)
        result = request.app.state.engine.perform_analysis(qsorts, config)
        return _result_payload(result)
    except QMethodError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("分析処理中にエラーが発生")
        raise HTTPException(status_code=500, detail=str(e))


# ── 対話セッション ───────────────────────────────────────────────────────────

@router.post("/sessions", response_model=SessionResponse)
def open_session(body: StudyRequest, request: Request):
    """調査データを検証・因子抽出し、セッションを開始する（状態: extracted）。"""
    try:
        engine = request.app.state.engine
        qsorts, config = _study(body, request)
        session_id = engine.open_interactive_session(qsorts, config)
        return _session_response(engine.session(session_id))
    except QMethodError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("セッション開始中にエラーが発生")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/sessions/{session_id}", response_model=SessionResponse)
def get_session(session_id: str, request: Request):
    try:
        return _session_response(request.app.state.engine.session(session_id))
    except QMethodError as e:
        raise _http_error(e)


@router.post("/sessions/{session_id}/preview", response_model=RotationResponse)
def preview_rotation(session_id: str, body: RotationRequestModel, request: Request):
    """セッションを変更せずに回転する。結果は rotation_preview として返す。"""
    try:
        preview = request.app.state.engine.preview_rotation(session_id, _rotation_request(body))
        return _rotation_response(
            session_id, preview.state.value, preview.base_version, preview.rotated, preview.arrays
        )
    except QMethodError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("回転プレビュー中にエラーが発生")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/sessions/{session_id}/apply", response_model=RotationResponse)
def apply_rotation(session_id: str, body: ApplyRotationRequest, request: Request):
    """回転を確定する。expected_version が古い場合は 409 を返す。"""
    try:
        confirmed = request.app.state.engine.confirm_rotation(
            session_id, _rotation_request(body), body.expected_version
        )
        return _rotation_response(
            session_id, SessionState.ROTATION_CONFIRMED.value, confirmed.version,
            confirmed.rotated, confirmed.result.arrays,
        )
    except QMethodError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("回転の適用中にエラーが発生")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/sessions/{session_id}/results")
def session_results(session_id: str, request: Request):
    try:
        return _result_payload(request.app.state.engine.session_results(session_id))
    except QMethodError as e:
        raise _http_error(e)


@router.get("/sessions/{session_id}/events")
def session_events(session_id: str, request: Request):
    """preview / confirmed / closed イベントの改行区切りJSONストリーム。"""
    try:
        subscription = request.app.state.engine.subscribe(session_id)
    except QMethodError as e:
        raise _http_error(e)

    def stream():
        try:
            while not subscription.closed:
                event = subscription.get(timeout=15.0)
                if event is None:
                    continue
                yield json.dumps(event.to_dict()) + "\n"
                if event.type == "closed":
                    break
        finally:
            subscription.close()

    return StreamingResponse(stream(), media_type="application/x-ndjson")


@router.delete("/sessions/{session_id}")
def close_session(session_id: str, request: Request):
    """セッションをクローズする。最終確定状態はスナップショットの受け取り先に渡す。"""
    try:
        snapshot = request.app.state.engine.close_session(session_id)
        return {"session_id": session_id, "state": "closed", "version": snapshot.version}
    except QMethodError as e:
        raise _http_error(e)


# ── ブートストラップ ─────────────────────────────────────────────────────────

def _task_response(task) -> BootstrapTaskResponse:
    status = task.status
    result = error = None
    if status == "completed":
        result = as_serializable(task.result())
    elif status in ("failed", "cancelled"):
        exc = task.exception()
        error = exc.to_dict() if isinstance(exc, QMethodError) else {'error': 'internal', 'message': str(exc)}
    return BootstrapTaskResponse(
        task_id=task.task_id,
        session_id=task.session_id,
        status=status,
        completed=task.completed,
        total=task.total,
        result=result,
        error=error,
    )


@router.post("/sessions/{session_id}/bootstrap", response_model=BootstrapTaskResponse)
def start_bootstrap(session_id: str, body: BootstrapSettings, request: Request):
    """確定済み回転に対してキャンセル可能なブートストラップを開始する。"""
    try:
        task = request.app.state.engine.start_bootstrap(
            session_id, BootstrapOptions(**body.model_dump())
        )
        return _task_response(task)
    except QMethodError as e:
        raise _http_error(e)


@router.get("/bootstrap/{task_id}", response_model=BootstrapTaskResponse)
def bootstrap_status(task_id: str, request: Request):
    task = request.app.state.engine.bootstrap_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Unknown bootstrap task {task_id}")
    return _task_response(task)


@router.delete("/bootstrap/{task_id}", response_model=BootstrapTaskResponse)
def cancel_bootstrap(task_id: str, request: Request):
    task = request.app.state.engine.cancel_bootstrap(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Unknown bootstrap task {task_id}")
    return _task_response(task)


# ── PQMethod 入出力 ──────────────────────────────────────────────────────────

@router.post("/pqmethod/import")
def import_pqmethod(body: PQMethodImportRequest, request: Request):
    """DAT ファイル（任意で STA 項目文も）または分析リスティングを解析する。"""
    try:
        engine = request.app.state.engine
        parsed = engine.import_pqmethod(body.content.encode("latin-1", errors="replace"))
        if isinstance(parsed, PQMethodStudy):
            texts = (
                engine.import_statements(body.statements.encode("latin-1", errors="replace"))
                if body.statements else ()
            )
            return as_serializable({
                'kind': 'dat',
                'title': parsed.title,
                'grid': parsed.grid,
                'qsorts': parsed.qsorts.ranks,
                'participant_ids': parsed.qsorts.participant_ids,
                'statement_texts': texts,
            })
        return {'kind': 'lis', **as_serializable(parsed)}
    except QMethodError as e:
        raise _http_error(e)


@router.post("/pqmethod/export")
def export_pqmethod(body: PQMethodExportRequest, request: Request):
    """セッションの確定済み分析を固定幅形式で出力する。"""
    try:
        engine = request.app.state.engine
        result = engine.session_results(body.session_id)
        if body.format == "lis":
            content = engine.export_pqmethod(result, body.title)
        elif body.format == "dat":
            content = export_dat(result.qsorts, result.config.grid, body.title)
        elif body.format == "sta":
            content = export_sta(result.qsorts.statement_texts)
        else:
            raise HTTPException(status_code=422, detail=f"Unknown export format: {body.format}")
        return Response(content=content, media_type=PQMETHOD_MEDIA_TYPE)
    except QMethodError as e:
        raise _http_error(e)


@router.post("/pqmethod/validate")
def validate_pqmethod(body: PQMethodValidateRequest, request: Request):
    """セッションの因子配列を参照リスティングと比較検証する。

    比較に失敗した場合もエラーではなく passed=false として返す。
    """
    try:
        engine = request.app.state.engine
        result = engine.session_results(body.session_id)
        report = engine.validate_against_reference(
            result, body.reference.encode("latin-1", errors="replace"), body.threshold
        )
        return as_serializable(report)
    except QMethodError as e:
        raise _http_error(e)


@router.get("/health")
async def health_check(request: Request):
    """サーバー状態、開いているセッション数、有効な設定を返す。"""
    s = request.app.state
    return {
        "status": "healthy",
        "sessions": len(s.engine.sessions.session_ids()),
        "config": os.getenv('APP_CONFIG', 'default'),
    }
