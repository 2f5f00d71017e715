"""
pwrecord — ブラウザ操作の記録から pytest-playwright テストを生成

テスト内に置いた record(page) の位置で記録を開始し、ブラウザで行った操作を
Playwright のテストコードに変換して、同じテストファイルの record(page) の直後に注入する。

主な構成:
  - selector: 要素記述からの CSS セレクタ生成
  - recorder: 操作のキャプチャ・検証・保持と記録セッション
  - generator: アクション列 → テストコード変換
  - injector: AST ベースのコード注入とバックアップ
  - recovery: 失敗時の部分コード生成・復元
  - config: 記録設定（pwrecord.yaml / PWRECORD_* 環境変数）
"""

from __future__ import annotations

from .config import RecordingConfig, load_config
from .errors import (
    AnchorNotFoundError,
    BrowserCrashError,
    CommunicationError,
    ConfigurationError,
    EnvironmentFailure,
    FileAccessError,
    InjectionFailedError,
    InvalidInputError,
    RecordingError,
    SessionError,
    StructuralFailure,
)
from .generator import CodeGenerator, GenerationResult
from .injector import BackupManager, FileInjector, InjectionResult
from .models import ActionType, RecordedAction, SessionMetadata
from .recorder import ActionStore, RecordingSession, record
from .recovery import ErrorHandler, RecoveryResult
from .selector import SelectorCandidate, SelectorStrategy

__version__ = "0.1.0"

__all__ = [
    "ActionStore",
    "ActionType",
    "AnchorNotFoundError",
    "BackupManager",
    "BrowserCrashError",
    "CodeGenerator",
    "CommunicationError",
    "ConfigurationError",
    "EnvironmentFailure",
    "ErrorHandler",
    "FileAccessError",
    "FileInjector",
    "GenerationResult",
    "InjectionFailedError",
    "InjectionResult",
    "InvalidInputError",
    "RecordedAction",
    "RecordingConfig",
    "RecordingError",
    "RecordingSession",
    "RecoveryResult",
    "SelectorCandidate",
    "SelectorStrategy",
    "SessionError",
    "SessionMetadata",
    "StructuralFailure",
    "load_config",
    "record",
]
