"""
ErrorHandler — 記録・注入の失敗時の復旧処理

ブラウザのクラッシュ、セッションエラー、コード注入の失敗が起きても、
それまでに記録した操作を失わないよう部分コードを生成し、
バックアップからの復元とクリップボードへの退避を行う。

主な機能:
  - handle_browser_crash(): 記録済みアクションから部分コードを生成
  - handle_session_error(): セッションエラー時の部分コード生成
  - handle_injection_failure(): バックアップ復元 + クリップボード退避
  - retry_communication(): 一時的な通信失敗の有限回リトライ
  - error_log / error_statistics(): エラー履歴と統計
"""

from __future__ import annotations

import logging
import platform
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Sequence, TypeVar

from .errors import (
    BrowserCrashError,
    CommunicationError,
    InjectionFailedError,
    RecordingError,
    SessionError,
)
from .generator.code_generator import CodeGenerator
from .injector.backup import BackupManager
from .models import RecordedAction

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0


class RecordedSession(Protocol):
    """復旧処理が参照する記録セッションのインターフェース。"""

    session_id: str

    def get_recorded_actions(self) -> list[dict[str, Any]]: ...

    def get_structured_actions(self) -> list[RecordedAction]: ...


# ---------------------------------------------------------------------------
# クリップボード
# ---------------------------------------------------------------------------

def _clipboard_commands() -> list[list[str]]:
    system = platform.system()
    if system == "Darwin":
        return [["pbcopy"]]
    if system == "Windows":
        return [["clip"]]
    return [["xclip", "-selection", "clipboard"], ["xsel", "--clipboard", "--input"]]


def copy_to_clipboard(text: str) -> bool:
    """OS のクリップボードコマンドでテキストをコピーする。

    利用可能なコマンドが無い・失敗した場合は False を返す。
    """
    for command in _clipboard_commands():
        if shutil.which(command[0]) is None:
            continue
        try:
            subprocess.run(command, input=text.encode("utf-8"), check=True, timeout=5)
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("クリップボードへのコピーに失敗しました: %s (%s)", command[0], e)
            continue
        return True
    return False


# ---------------------------------------------------------------------------
# 結果データクラス
# ---------------------------------------------------------------------------

@dataclass
class RecoveryResult:
    """復旧処理の結果。

    復旧自体が成功しても、部分コードがあれば必ず partial_code に保持する。
    """

    success: bool
    recovery_type: str
    partial_code: Optional[str] = None
    backup_restored: bool = False
    clipboard_used: bool = False
    error: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "recoveryType": self.recovery_type,
            "partialCode": self.partial_code,
            "backupRestored": self.backup_restored,
            "clipboardUsed": self.clipboard_used,
            "error": self.error,
            "context": self.context,
        }


# ---------------------------------------------------------------------------
# ErrorHandler 本体
# ---------------------------------------------------------------------------

class ErrorHandler:
    """記録セッションの失敗からの復旧を担当する。

    Args:
        code_generator: 部分コード生成に使用する CodeGenerator
        backup_manager: 注入失敗時の復元に使用する BackupManager
        max_retries: 通信リトライの最大試行回数
        retry_delay: リトライ間隔（秒）
        clipboard_fallback: 部分コードをクリップボードへ退避するか
        clipboard: クリップボードへのコピー関数（テスト用に差し替え可能）
        sleep: 待機関数（テスト用に差し替え可能）
    """

    def __init__(
        self,
        code_generator: Optional[CodeGenerator] = None,
        backup_manager: Optional[BackupManager] = None,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        clipboard_fallback: bool = True,
        clipboard: Callable[[str], bool] = copy_to_clipboard,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.code_generator = code_generator or CodeGenerator()
        self.backup_manager = backup_manager
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.clipboard_fallback = clipboard_fallback
        self._clipboard = clipboard
        self._sleep = sleep
        self._error_log: list[dict[str, Any]] = []

    # ----- セッション障害 -----

    def handle_browser_crash(
        self,
        session: RecordedSession,
        test_file: Optional[Path] = None,
        original: Optional[BaseException] = None,
    ) -> RecoveryResult:
        """ブラウザクラッシュ時に記録済みアクションから部分コードを生成する。

        Raises:
            BrowserCrashError: 部分コードの生成自体に失敗した場合
        """
        context = {
            "session_id": session.session_id,
            "recorded_actions": len(session.get_recorded_actions()),
            "test_file": str(test_file) if test_file else None,
            "original_error": str(original) if original else None,
        }
        self._log_error("browser_crash", "記録中にブラウザがクラッシュしました", context)

        try:
            partial = self._partial_code(session, "partial recording (browser crashed)")
        except RecordingError as e:
            raise BrowserCrashError(
                f"ブラウザがクラッシュし、部分コードの生成にも失敗しました: {e}",
                context=context,
            ) from e

        restored = False
        if self.backup_manager is not None and test_file is not None:
            restored = self.backup_manager.restore_from_backup(test_file).success

        clipboard_used = bool(partial) and self._copy(partial)
        return RecoveryResult(
            success=True,
            recovery_type="browser_crash",
            partial_code=partial,
            backup_restored=restored,
            clipboard_used=clipboard_used,
            context=context,
        )

    def handle_session_error(
        self,
        session: RecordedSession,
        error_type: str,
        original: Optional[BaseException] = None,
    ) -> RecoveryResult:
        """セッションエラー（タイムアウト等）時に部分コードを生成する。

        Raises:
            SessionError: 部分コードの生成自体に失敗した場合
        """
        context = {
            "session_id": session.session_id,
            "error_type": error_type,
            "recorded_actions": len(session.get_recorded_actions()),
            "original_error": str(original) if original else None,
        }
        self._log_error("session_error", f"セッションエラー: {error_type}", context)

        try:
            partial = self._partial_code(session, f"partial recording (session error: {error_type})")
        except RecordingError as e:
            raise SessionError(
                f"セッションエラーからの復旧に失敗しました: {e}",
                context=context,
            ) from e

        return RecoveryResult(
            success=True,
            recovery_type="session_error",
            partial_code=partial,
            context=context,
        )

    # ----- 注入失敗 -----

    def handle_injection_failure(
        self,
        code: str,
        test_file: Path,
        original: Optional[BaseException | str] = None,
    ) -> RecoveryResult:
        """注入に失敗したコードを退避し、対象ファイルをバックアップから復元する。

        Raises:
            InjectionFailedError: 退避・復元のいずれも行えなかった場合
        """
        context = {
            "test_file": str(test_file),
            "code_length": len(code),
            "original_error": str(original) if original else None,
        }
        self._log_error("injection_failed", "コード注入に失敗しました", context)

        if not code:
            raise InjectionFailedError(
                "注入に失敗し、退避するコードもありません",
                context=context,
            )

        restored = False
        if self.backup_manager is not None and self.backup_manager.is_enabled():
            restored = self.backup_manager.restore_from_backup(test_file).success

        clipboard_used = self._copy(code)
        if not clipboard_used:
            logger.warning("生成コードをクリップボードに退避できませんでした。以下を手動で貼り付けてください:\n%s", code)

        return RecoveryResult(
            success=True,
            recovery_type="injection_failure",
            partial_code=code,
            backup_restored=restored,
            clipboard_used=clipboard_used,
            context=context,
        )

    # ----- 通信リトライ -----

    def retry_communication(self, operation: str, func: Callable[[], T]) -> T:
        """一時的な通信失敗を固定間隔で有限回リトライする。

        Args:
            operation: 操作名（ログ用）
            func: 実行する処理

        Returns:
            func の戻り値

        Raises:
            SessionError: 全ての試行が CommunicationError で失敗した場合
        """
        last_error: Optional[CommunicationError] = None
        for attempt in range(1, self.max_retries + 1):
            if attempt > 1:
                self._sleep(self.retry_delay)
            try:
                return func()
            except CommunicationError as e:
                last_error = e
                self._log_error(
                    "communication_error",
                    f"{operation} の通信に失敗しました（{attempt}/{self.max_retries} 回目）",
                    {"operation": operation, "attempt": attempt, "error": str(e)},
                )

        raise SessionError(
            f"{operation} の通信が {self.max_retries} 回失敗しました: {last_error}",
            context={"operation": operation, "attempts": self.max_retries},
            recovery_suggestion="ブラウザが応答しているか確認してください",
        ) from last_error

    # ----- エラー履歴 -----

    @property
    def error_log(self) -> list[dict[str, Any]]:
        return list(self._error_log)

    def clear_error_log(self) -> None:
        self._error_log.clear()

    def error_statistics(self) -> dict[str, Any]:
        by_type: dict[str, int] = {}
        for entry in self._error_log:
            by_type[entry["type"]] = by_type.get(entry["type"], 0) + 1
        return {
            "total_errors": len(self._error_log),
            "error_types": by_type,
            "last_error": self._error_log[-1] if self._error_log else None,
        }

    # ----- 内部処理 -----

    def _partial_code(self, session: RecordedSession, test_name: str) -> Optional[str]:
        actions: Sequence[RecordedAction] = session.get_structured_actions()
        if not actions:
            return None
        return self.code_generator.generate_test(actions, test_name).code

    def _copy(self, text: str) -> bool:
        if not self.clipboard_fallback or not text:
            return False
        return self._clipboard(text)

    def _log_error(self, error_type: str, message: str, context: dict[str, Any]) -> None:
        logger.error("%s: %s", message, context)
        self._error_log.append({
            "type": error_type,
            "message": message,
            "context": context,
            "timestamp": datetime.now().isoformat(),
        })
