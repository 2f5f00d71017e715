"""
例外定義 — 記録・生成・注入で発生するエラーの分類

呼び出し元がリトライ可否や復旧手段を判断できるよう、エラーを種別ごとの
クラス階層で表現する。全ての例外は RecordingError を基底とし、
context（パス・セッション ID 等の診断情報）と recovery_suggestion を保持する。

分類:
  - InvalidInputError: 設定・アクションスキーマ・必須フィールドの不正（リトライ不可）
  - StructuralFailure: 構文解析・アンカー未検出・検証不一致（リトライ不可）
  - EnvironmentFailure: ファイルの読み書き不可・サイズ超過（リトライ不可）
  - CommunicationError: ブラウザ通信の一時的な失敗（有限回リトライ）
  - SessionError: ブラウザクラッシュ・タイムアウト（部分コード生成後にエスカレート）
"""

from __future__ import annotations

from typing import Any, Optional


class RecordingError(Exception):
    """pwrecord の全例外の基底クラス。

    Attributes:
        context: 診断用の付加情報（ファイルパス、セッション ID 等）
        recovery_suggestion: ユーザー向けの復旧手順
    """

    error_type = "recording_error"

    def __init__(
        self,
        message: str,
        *,
        context: Optional[dict[str, Any]] = None,
        recovery_suggestion: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = dict(context or {})
        self.recovery_suggestion = recovery_suggestion

    def to_dict(self) -> dict[str, Any]:
        """ログ・レポート出力用の辞書に変換する。"""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "context": self.context,
            "recovery_suggestion": self.recovery_suggestion,
        }


# ---------------------------------------------------------------------------
# 入力不正
# ---------------------------------------------------------------------------

class InvalidInputError(RecordingError, ValueError):
    """呼び出し元の入力が不正な場合のエラー。"""

    error_type = "invalid_input"


class ConfigurationError(InvalidInputError):
    """設定値の型・範囲が不正な場合のエラー。"""

    error_type = "configuration"


# ---------------------------------------------------------------------------
# 実行環境
# ---------------------------------------------------------------------------

class EnvironmentFailure(RecordingError):
    """ファイルシステム等の実行環境に起因するエラー。"""

    error_type = "environment"


class FileAccessError(EnvironmentFailure, InvalidInputError):
    """対象ファイルが存在しない・読み書きできない・大きすぎる場合のエラー。"""

    error_type = "file_access"


# ---------------------------------------------------------------------------
# 構造エラー
# ---------------------------------------------------------------------------

class StructuralFailure(RecordingError):
    """構文解析やアンカー検出など、ソースコード構造に起因するエラー。"""

    error_type = "structural"


class AnchorNotFoundError(StructuralFailure):
    """注入先ファイルにアンカー呼び出しが見つからない場合のエラー。"""

    error_type = "anchor_not_found"


class InjectionParseError(StructuralFailure):
    """注入先ファイルまたは注入コードの構文解析に失敗した場合のエラー。"""

    error_type = "parse_error"


class VerificationError(StructuralFailure):
    """注入後のソース検証に失敗した場合のエラー。"""

    error_type = "verification_failed"


# ---------------------------------------------------------------------------
# 通信・セッション
# ---------------------------------------------------------------------------

class CommunicationError(RecordingError):
    """ブラウザとの通信の一時的な失敗。"""

    error_type = "communication"


class SessionError(RecordingError):
    """記録セッションの継続が不可能になった場合のエラー。"""

    error_type = "session"


class BrowserCrashError(SessionError):
    """記録中にブラウザ（ページ）が失われた場合のエラー。"""

    error_type = "browser_crash"


class InjectionFailedError(RecordingError):
    """生成コードの注入に失敗し、復旧も完了しなかった場合のエラー。"""

    error_type = "injection_failed"
