"""
FastAPIアプリケーション エントリーポイント

このモジュールは以下を担当する:
  - YAML設定ファイルの読み込みとエンジンのデフォルト値の適用
  - FastAPIアプリケーションの作成とCORSミドルウェアの設定
  - 共有状態（エンジン、基本分析設定）の初期化
  - ルーターとライフスパンハンドラ（アイドル回収、シャットダウン）の登録
全エンドポイントハンドラは qmethod/routes.py に定義されている。
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# 環境変数を最初に読み込む（APP_CONFIG が .env にある場合があるため）
load_dotenv()

from qmethod import QMethodEngine, configure
from qmethod.config_loader import load_config, build_engine_config, session_options
from qmethod.routes import router

# ── 設定読み込み ─────────────────────────────────────────────────────────────

config = load_config()

# YAMLの各段階のデフォルト値を分析モジュールに適用
configure(
    extraction=config.get('extraction'),
    rotation=config.get('rotation'),
    statistics=config.get('statistics'),
)

# ── アプリケーション生成 ──────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    # 稼働中はアイドル回収を動かし、終了時にセッションとブートストラップタスクを閉じる
    app.state.engine.start_reaper()
    yield
    app.state.engine.shutdown()


app = FastAPI(
    title="Q-Methodology Analysis API",
    description="Q方法論分析（因子抽出・回転・対話セッション・PQMethod入出力）のバックエンドAPI",
    version="1.0.0",
    lifespan=lifespan,
)

# CORSミドルウェア設定（フロントエンドからのクロスオリジンリクエストを許可）
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.get('cors_origins', ["http://localhost:5173"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── 共有状態の初期化（各ルートから request.app.state でアクセス） ─────────────

# 基本分析設定（configure() のデフォルト値に基づく）。リクエストごとに一部を上書きする
app.state.engine_config = build_engine_config(config)

# エンジン（セッションレジストリ、アイドル回収、ブートストラップ用スレッドプール）
app.state.engine = QMethodEngine(
    session_options=session_options(config),
    bootstrap_workers=config.get('bootstrap_workers', 2),
    bootstrap_task_ttl=config.get('bootstrap_task_ttl', 3600.0),
)


# ── ルーター登録 ──────────────────────────────────────────────────────────────

app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
