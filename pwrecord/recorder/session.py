"""
RecordingSession — ブラウザ操作の記録セッション

ページにキャプチャスクリプトを設置し、ブラウザ側で発生した操作を定期的に
取り出して ActionStore に記録する。記録終了後はテストコードを生成し、
アンカー呼び出しを含むテストファイルに注入する。

主な機能:
  - start() / poll() / stop(): 記録のライフサイクル（停止時は未取得分を同期的に取り出す）
  - wait(): ブラウザ側の停止またはタイムアウトまで待機
  - finish(): コード生成と注入（失敗時は ErrorHandler で復旧）
  - get_recorded_actions() / get_structured_actions(): 記録内容の参照
  - record(): テスト内に置くアンカー呼び出し

使用例::

    from pwrecord import record

    def test_login(page):
        page.goto("https://example.com/login")
        record(page)
"""

from __future__ import annotations

import enum
import inspect
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from ..config import RecordingConfig, build_config, load_config
from ..errors import FileAccessError, InvalidInputError, SessionError
from ..generator.code_generator import CodeGenerator, GenerationResult
from ..injector.file_injector import FileInjector, InjectionResult
from ..models import ActionType, RecordedAction
from ..recovery import ErrorHandler, RecoveryResult
from .action_store import ActionStore
from .channel import BrowserChannel, ScriptEvaluator

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.5
_MAX_DRAIN_ROUNDS = 1000


# ---------------------------------------------------------------------------
# セッション状態
# ---------------------------------------------------------------------------

class SessionState(enum.Enum):
    """記録セッションの状態。"""

    IDLE = "idle"
    RECORDING = "recording"
    STOPPED = "stopped"


@dataclass
class SessionOutcome:
    """記録セッション終了時の成果物。

    Attributes:
        generation: コード生成結果（アクションが無い場合は None）
        injection: 注入結果（注入先が無い場合は None）
        recovery: 復旧処理の結果（失敗が無い場合は None）
        timed_out: タイムアウトで終了したか
    """

    generation: Optional[GenerationResult] = None
    injection: Optional[InjectionResult] = None
    recovery: Optional[RecoveryResult] = None
    timed_out: bool = False


# ---------------------------------------------------------------------------
# RecordingSession 本体
# ---------------------------------------------------------------------------

class RecordingSession:
    """1 回分の記録セッション。

    Args:
        page: スクリプトを評価できるページ（Playwright の Page 等）
        config: 記録設定
        store: アクションの保存先（省略時は新規作成）
        code_generator: コード生成器（省略時は config から生成）
        injector: 注入器（省略時は config から生成）
        error_handler: 復旧処理（省略時は config から生成）
        session_id: セッション ID（省略時は自動生成）
        clock: 経過時間の計測関数（テスト用に差し替え可能）
        sleep: 待機関数（テスト用に差し替え可能）
    """

    def __init__(
        self,
        page: ScriptEvaluator,
        config: Optional[RecordingConfig] = None,
        *,
        store: Optional[ActionStore] = None,
        code_generator: Optional[CodeGenerator] = None,
        injector: Optional[FileInjector] = None,
        error_handler: Optional[ErrorHandler] = None,
        session_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or RecordingConfig()
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self.store = store or ActionStore(self.config.maxActionsPerSession)
        self.code_generator = code_generator or CodeGenerator(self.config)
        self.injector = injector or FileInjector.from_config(self.config)
        self.error_handler = error_handler or ErrorHandler(
            self.code_generator, self.injector.backup_manager,
        )
        self.channel = BrowserChannel(page)
        self._clock = clock
        self._sleep = sleep
        self._state = SessionState.IDLE
        self._raw_actions: list[dict[str, Any]] = []
        self._ended = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_recording(self) -> bool:
        return self._state == SessionState.RECORDING

    # ----- ライフサイクル -----

    def start(self) -> None:
        """キャプチャスクリプトを設置して記録を開始する。

        Raises:
            SessionError: 記録中・停止済みの場合、または設置に失敗し続けた場合
        """
        if self._state != SessionState.IDLE:
            raise SessionError(
                f"セッションは既に開始されています: {self.session_id}",
                context={"session_id": self.session_id, "state": self._state.value},
            )

        options = {
            "sessionId": self.session_id,
            "selectorPriority": list(self.config.selectorPriority),
            "includeHoverActions": self.config.includeHoverActions,
            "captureKeyboardShortcuts": self.config.captureKeyboardShortcuts,
            "recordScrollPosition": self.config.recordScrollPosition,
        }
        self.error_handler.retry_communication("install", lambda: self.channel.install(options))
        self._state = SessionState.RECORDING
        logger.info("記録を開始しました: %s", self.session_id)

    def poll(self) -> int:
        """ブラウザ側のキューから 1 バッチ取り出して記録し、取り出した件数を返す。"""
        batch = self.error_handler.retry_communication("poll", self.channel.poll)
        for raw in batch:
            self.handle_action(raw)
        return len(batch)

    def handle_action(self, raw: dict[str, Any]) -> Optional[RecordedAction]:
        """生のアクションを保持し、検証に通ったものを ActionStore に記録する。

        検証に失敗したアクションは警告ログを出して破棄し、記録は継続する。
        """
        self._raw_actions.append(raw)
        context = {
            "timestamp": raw.get("timestamp"),
            "url": raw.get("url"),
            "viewport": raw.get("viewport"),
            "metadata": raw.get("metadata"),
        }
        try:
            action = self.store.record(self.session_id, raw.get("type", ""), raw.get("data") or {}, context)
        except InvalidInputError as e:
            logger.warning("アクションを記録できませんでした: %s", e)
            return None

        if action.type is ActionType.SESSION_END:
            self._ended = True
        return action

    def wait(self, timeout: Optional[float] = None, poll_interval: float = DEFAULT_POLL_INTERVAL) -> bool:
        """ブラウザ側で記録が停止されるまでポーリングを続ける。

        Args:
            timeout: 最大待機秒数（省略時は config.timeout）
            poll_interval: ポーリング間隔（秒）

        Returns:
            ブラウザ側で停止された場合 True、タイムアウトした場合 False

        Raises:
            SessionError: 通信が回復しなかった場合
        """
        limit = self.config.timeout if timeout is None else timeout
        deadline = self._clock() + limit

        while self.is_recording:
            fetched = self.poll()
            if self._ended or not self.error_handler.retry_communication("status", self.channel.is_active):
                return True
            if self._clock() >= deadline:
                logger.warning("記録がタイムアウトしました: %s (%s 秒)", self.session_id, limit)
                return False
            if fetched < self.channel.batch_size:
                self._sleep(poll_interval)
        return True

    def stop(self) -> None:
        """記録を停止し、ブラウザ側に残っているアクションを全て取り出す。"""
        if not self.is_recording:
            return

        self.error_handler.retry_communication("stop", self.channel.teardown)
        for _ in range(_MAX_DRAIN_ROUNDS):
            if self.poll() == 0:
                break
        self._state = SessionState.STOPPED
        logger.info(
            "記録を停止しました: %s (%d アクション)",
            self.session_id, len(self.store.get_session_actions(self.session_id)),
        )

    # ----- 成果物 -----

    def finish(
        self, test_file: Optional[Path] = None, test_name: Optional[str] = None,
    ) -> SessionOutcome:
        """記録内容からテストコードを生成し、test_file があれば注入する。

        注入に失敗した場合は ErrorHandler で復旧し、生成コードを結果に保持する。
        """
        self.stop()
        outcome = SessionOutcome()

        actions = self.get_structured_actions()
        if not actions:
            logger.warning("記録されたアクションが無いため、コードを生成しません: %s", self.session_id)
            return outcome

        outcome.generation = self.code_generator.generate_test(actions, test_name)
        if test_file is None:
            return outcome

        body = outcome.generation.body
        try:
            outcome.injection = self.injector.inject_after_anchor(Path(test_file), body)
        except FileAccessError as e:
            outcome.recovery = self.error_handler.handle_injection_failure(body, Path(test_file), e)
            return outcome

        if not outcome.injection.success:
            outcome.recovery = self.error_handler.handle_injection_failure(
                body, Path(test_file), outcome.injection.error,
            )
        return outcome

    def get_recorded_actions(self) -> list[dict[str, Any]]:
        """ブラウザから受信した生のアクション（検証前）を返す。"""
        return list(self._raw_actions)

    def get_structured_actions(self) -> list[RecordedAction]:
        """ActionStore に記録されたアクションを記録順で返す。"""
        return self.store.get_session_actions(self.session_id)


# ---------------------------------------------------------------------------
# アンカー呼び出し
# ---------------------------------------------------------------------------

def _caller_file() -> Optional[Path]:
    frame = inspect.currentframe()
    try:
        caller = frame.f_back.f_back if frame and frame.f_back else None
        if caller is None:
            return None
        return Path(caller.f_code.co_filename)
    finally:
        del frame


def record(
    page: ScriptEvaluator,
    *,
    test_file: Optional[Path] = None,
    test_name: Optional[str] = None,
    config: Optional[RecordingConfig] = None,
    **options: Any,
) -> SessionOutcome:
    """ブラウザ操作を記録し、呼び出し元のテストファイルにコードを注入する。

    テスト内でこの呼び出しを置いた位置の直後に、記録した操作のコードが挿入される。
    ブラウザ右下の停止ボタンを押すか、timeout 秒が経過すると記録を終了する。

    Args:
        page: Playwright の Page
        test_file: 注入先（省略時は呼び出し元のファイル）
        test_name: 生成するテストの名前
        config: 記録設定（省略時は pwrecord.yaml・環境変数から読み込む）
        **options: 設定の上書き（autoAssertions=False 等）

    Returns:
        生成・注入・復旧の結果
    """
    if config is None:
        config = load_config(overrides=options)
    elif options:
        config = build_config({**config.model_dump(), **options})

    target = Path(test_file) if test_file is not None else _caller_file()
    session = RecordingSession(page, config)
    outcome = SessionOutcome()

    try:
        session.start()
        finished = session.wait()
        outcome.timed_out = not finished
        session.stop()
    except SessionError as e:
        outcome.recovery = session.error_handler.handle_browser_crash(session, None, e)
        return outcome

    result = session.finish(target, test_name)
    result.timed_out = outcome.timed_out
    return result
