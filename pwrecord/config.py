"""
記録設定 — RecordingConfig の定義と読み込み

記録・コード生成・注入・バックアップの動作を制御する設定モデル。
以下の優先順位で適用される:
  明示的な引数 > 環境変数 > YAML 設定ファイル > デフォルト値

主な機能:
  - RecordingConfig: Pydantic v2 strict モデル（camelCase キー）
  - load_config(): YAML・環境変数・明示値のマージと検証
  - load_config_from_env(): PWRECORD_* 環境変数の読み込み
  - 既知でないキーは警告ログを出して無視する
  - 型不正は記録開始前に ConfigurationError として即座に通知する

環境変数一覧（一部）:
  PWRECORD_TIMEOUT              : 記録タイムアウト秒（デフォルト: 1800）
  PWRECORD_AUTO_ASSERTIONS      : アサーション自動生成（true/false）
  PWRECORD_SELECTOR_PRIORITY    : セレクタ属性の優先順（カンマ区切り）
  PWRECORD_BACKUP_FILES         : 注入前バックアップ（true/false, デフォルト: false）
  PWRECORD_DEVICE_EMULATION     : mobile / desktop / none
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from .errors import ConfigurationError
from .injector.backup import BackupManager
from .selector import DEFAULT_SELECTOR_PRIORITY, SelectorStrategy

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "pwrecord.yaml"
"""カレントディレクトリで自動検出する設定ファイル名。"""

_ENV_PREFIX = "PWRECORD_"


# ---------------------------------------------------------------------------
# 設定モデル
# ---------------------------------------------------------------------------

class RecordingConfig(BaseModel):
    """記録セッション全体の設定。

    strict モードのため、"true" のような文字列を bool に暗黙変換しない。
    環境変数由来の値は load_config_from_env() で事前に型変換される。
    """

    model_config = ConfigDict(strict=True, frozen=True, extra="ignore")

    timeout: int = Field(default=1800, gt=0, description="記録タイムアウト（秒）")
    autoAssertions: bool = Field(default=True, description="URL・エラー無しアサーションを自動生成するか")
    generateComments: bool = Field(default=True, description="各ステートメントに説明コメントを付けるか")
    selectorPriority: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SELECTOR_PRIORITY),
        description="セレクタ生成で優先する属性名（先頭ほど優先）",
    )
    useStableSelectors: bool = Field(default=True, description="安定したセレクタのみを優先するか")
    includeAriaAttributes: bool = Field(default=True, description="aria-* 属性をセレクタに含めるか")
    includeHoverActions: bool = Field(default=False, description="ホバー操作を記録するか")
    captureKeyboardShortcuts: bool = Field(default=False, description="キーボードショートカットを記録するか")
    recordScrollPosition: bool = Field(default=False, description="スクロール位置を記録・再現するか")
    backupFiles: bool = Field(default=False, description="注入前にバックアップを作成するか")
    backupDirectory: str = Field(default=".pwrecord-backups", description="バックアップ保存先")
    maxBackupsPerFile: int = Field(default=10, ge=0, description="ファイル毎のバックアップ保持数")
    autoCleanupBackups: bool = Field(default=True, description="保持数超過時に古いバックアップを削除するか")
    useTypeForInputs: bool = Field(default=True, description="特定の input 種別で 1 文字ずつ入力するか")
    chainMethods: bool = Field(default=True, description="page.locator(...).click() 形式で出力するか")
    deviceEmulation: Optional[Literal["mobile", "desktop"]] = Field(
        default=None, description="デバイスエミュレーション",
    )
    colorScheme: Optional[Literal["dark", "light"]] = Field(
        default=None, description="カラースキームのエミュレーション",
    )
    maxActionsPerSession: int = Field(default=10000, ge=0, description="セッション毎の最大アクション数")
    anchorCall: str = Field(default="record", min_length=1, description="注入位置を示すアンカー呼び出し名")
    verifyInjection: bool = Field(default=True, description="注入結果を再解析して検証するか")
    maxFileSize: int = Field(default=1024 * 1024, gt=0, description="注入対象ファイルの最大サイズ（バイト）")

    # ----- 派生オブジェクト -----

    def selector_strategy(self) -> SelectorStrategy:
        """設定に従った SelectorStrategy を生成する。"""
        return SelectorStrategy(
            priority=self.selectorPriority,
            include_aria=self.includeAriaAttributes,
            stable_only=self.useStableSelectors,
        )

    def backup_manager(self) -> BackupManager:
        """設定に従った BackupManager を生成する。"""
        return BackupManager(
            backup_dir=Path(self.backupDirectory),
            enabled=self.backupFiles,
            max_backups_per_file=self.maxBackupsPerFile,
            auto_cleanup=self.autoCleanupBackups,
        )


# ---------------------------------------------------------------------------
# 環境変数からの読み込み
# ---------------------------------------------------------------------------

def _parse_bool(value: str) -> bool:
    """文字列を bool に変換する。

    Args:
        value: "true", "1", "yes" → True、それ以外 → False

    Returns:
        変換結果
    """
    return value.lower() in ("true", "1", "yes")


def _env_name(key: str) -> str:
    """camelCase のキーを PWRECORD_UPPER_SNAKE に変換する。"""
    return _ENV_PREFIX + re.sub(r"(?<!^)(?=[A-Z])", "_", key).upper()


_BOOL_KEYS = {
    name for name, info in RecordingConfig.model_fields.items() if info.annotation is bool
}
_INT_KEYS = {
    name for name, info in RecordingConfig.model_fields.items() if info.annotation is int
}
_OPTIONAL_KEYS = ("deviceEmulation", "colorScheme")


def load_config_from_env(environ: Optional[Mapping[str, str]] = None) -> dict[str, Any]:
    """PWRECORD_* 環境変数から設定値の辞書を生成する。

    設定されていない環境変数は結果に含めない。数値に変換できない値は
    そのまま文字列として残し、モデル検証で ConfigurationError とする。

    Args:
        environ: 参照する環境変数（省略時は os.environ）

    Returns:
        camelCase キーの設定値辞書
    """
    env = os.environ if environ is None else environ
    values: dict[str, Any] = {}

    for key in RecordingConfig.model_fields:
        name = _env_name(key)
        if name not in env:
            continue
        raw = env[name]
        if key in _BOOL_KEYS:
            values[key] = _parse_bool(raw)
        elif key in _INT_KEYS:
            try:
                values[key] = int(raw)
            except ValueError:
                logger.warning("%s の値が不正です: %s", name, raw)
                values[key] = raw
        elif key == "selectorPriority":
            values[key] = [item.strip() for item in raw.split(",") if item.strip()]
        elif key in _OPTIONAL_KEYS:
            values[key] = None if raw.lower() in ("", "none", "null") else raw
        else:
            values[key] = raw

    return values


# ---------------------------------------------------------------------------
# YAML 設定ファイル
# ---------------------------------------------------------------------------

def _to_plain(data: object) -> object:
    """ruamel.yaml の CommentedMap / CommentedSeq を通常の dict / list に変換する。"""
    if isinstance(data, dict):
        return {str(k): _to_plain(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_to_plain(v) for v in data]
    return data


def load_config_file(path: Path) -> dict[str, Any]:
    """YAML 設定ファイルを読み込む。

    Raises:
        ConfigurationError: ファイルが存在しない・構文エラー・トップレベルが辞書でない場合
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(
            f"設定ファイルが見つかりません: {path}",
            context={"path": str(path)},
        )

    yaml = YAML(typ="safe")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.load(f)
    except YAMLError as e:
        raise ConfigurationError(
            f"設定ファイルの YAML 構文エラー: {e}",
            context={"path": str(path)},
        ) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            "設定ファイルのトップレベルはマッピングである必要があります",
            context={"path": str(path)},
        )
    return _to_plain(data)  # type: ignore[return-value]


def save_config_file(config: RecordingConfig, path: Path) -> None:
    """設定を YAML ファイルに書き出す。"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    yaml = YAML()
    yaml.default_flow_style = False
    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(config.model_dump(mode="python"), f)


# ---------------------------------------------------------------------------
# マージと検証
# ---------------------------------------------------------------------------

def build_config(values: Mapping[str, Any]) -> RecordingConfig:
    """辞書から RecordingConfig を生成する。

    未知のキーは警告ログを出して無視する。

    Raises:
        ConfigurationError: 既知キーの型・範囲が不正な場合
    """
    known = RecordingConfig.model_fields
    unknown = sorted(k for k in values if k not in known)
    for key in unknown:
        logger.warning("未知の設定キーを無視します: %s", key)

    filtered = {k: v for k, v in values.items() if k in known}
    try:
        return RecordingConfig(**filtered)
    except PydanticValidationError as e:
        fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        raise ConfigurationError(
            f"設定値が不正です: {', '.join(fields)}",
            context={"fields": fields, "detail": str(e)},
            recovery_suggestion="設定値の型と範囲を確認してください",
        ) from e


def load_config(
    path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RecordingConfig:
    """デフォルト < YAML < 環境変数 < 明示値 の順にマージした設定を返す。

    Args:
        path: 設定ファイルのパス（省略時はカレントの pwrecord.yaml があれば使用）
        overrides: 明示的に指定された設定値
        environ: 参照する環境変数（テスト用）

    Returns:
        検証済みの RecordingConfig

    Raises:
        ConfigurationError: ファイル読み込み失敗・型不正の場合
    """
    values: dict[str, Any] = {}

    if path is not None:
        values.update(load_config_file(path))
    elif Path(DEFAULT_CONFIG_FILE).exists():
        logger.debug("設定ファイルを検出しました: %s", DEFAULT_CONFIG_FILE)
        values.update(load_config_file(Path(DEFAULT_CONFIG_FILE)))

    values.update(load_config_from_env(environ))

    if overrides:
        values.update(overrides)

    return build_config(values)
