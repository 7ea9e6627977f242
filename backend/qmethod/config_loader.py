"""
設定ファイルローダーモジュール

YAML設定ファイルを読み込み、各セクションをエンジンのオプションデータクラスに変換する。
設定ファイルのパスは以下の優先順位で決定される:
  1. load_config() の引数で直接指定
  2. 環境変数 APP_CONFIG（ファイル名のみ、拡張子省略可）
  3. デフォルト: "default.yaml"
ファイルはプロジェクトルートの configs/ ディレクトリから読み込む。
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .core.analysis import default_config
from .core.types import AnalysisConfig, BootstrapOptions, GridConfig, SessionOptions
from .errors import InputError

CONFIG_DIR = Path(__file__).parent.parent.parent / "configs"

DEFAULT_GRID = {'min_rank': -4, 'counts': [2, 3, 4, 5, 6, 5, 4, 3, 2]}


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """YAML設定ファイルを読み込んで辞書として返す。

    Args:
        config_path: 設定ファイルへのパス。
                     None の場合、環境変数 APP_CONFIG またはデフォルト値を使用。

    Returns:
        設定辞書（グリッド、各段階のオプション、セッション、CORSオリジン等を含む）
    """
    if config_path is None:
        # 環境変数からファイル名を取得（デフォルト: default）
        config_name = os.getenv('APP_CONFIG', 'default')
        if not config_name.endswith('.yaml'):
            config_name = f"{config_name}.yaml"
        config_path = CONFIG_DIR / config_name
    else:
        config_path = Path(config_path)

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f)

    return config or {}


def _options(cls, section: Optional[Dict[str, Any]]):
    try:
        return cls(**(section or {}))
    except TypeError as e:
        raise InputError(f"Invalid {cls.__name__} configuration: {e}", section=section) from e


def build_engine_config(config: Dict[str, Any]) -> AnalysisConfig:
    """読み込んだ設定辞書から AnalysisConfig を生成する。

    抽出・回転・統計のオプションは main.py が configure() で設定した
    デフォルト値を使う。ここではグリッドとセッションオプションを加え、
    ``bootstrap`` セクションがあればバッチ分析のブートストラップ区間も有効にする。
    """
    bootstrap = config.get('bootstrap')
    return default_config(
        GridConfig.from_dict(config.get('grid') or DEFAULT_GRID),
        bootstrap=_options(BootstrapOptions, bootstrap) if bootstrap else None,
        session=session_options(config),
    )


def session_options(config: Dict[str, Any]) -> SessionOptions:
    return _options(SessionOptions, config.get('sessions'))
