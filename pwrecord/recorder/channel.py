"""
BrowserChannel — キャプチャスクリプトの設置とアクションのバッチ取得

ページにキャプチャスクリプト（capture.js）を設置し、ブラウザ側のキューに
溜まったアクションを一定件数ずつ取り出す。ページ遷移でスクリプトが失われた
場合は、次回の取得時に再設置して記録を継続する。

ページとのやり取りは evaluate() のみを持つ ScriptEvaluator 経由で行うため、
Playwright の Page をそのまま渡すことも、テスト用の偽オブジェクトを渡すこともできる。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol

from playwright.sync_api import Error as PlaywrightError

from ..errors import CommunicationError

logger = logging.getLogger(__name__)

CAPTURE_SCRIPT_PATH = Path(__file__).parent / "capture.js"
DEFAULT_BATCH_SIZE = 50

_DRAIN_EXPRESSION = "(limit) => window.__pwrecord ? window.__pwrecord.drain(limit) : null"
_ACTIVE_EXPRESSION = "() => window.__pwrecord ? window.__pwrecord.active : null"
_START_EXPRESSION = "(config) => window.__pwrecord.start(config)"
_STOP_EXPRESSION = "() => { if (window.__pwrecord) { window.__pwrecord.stop(); } }"


class ScriptEvaluator(Protocol):
    """ページ上で JavaScript を評価するオブジェクト（Playwright の Page 等）。"""

    def evaluate(self, expression: str, arg: Any = None) -> Any: ...


def load_capture_script() -> str:
    return CAPTURE_SCRIPT_PATH.read_text(encoding="utf-8")


class BrowserChannel:
    """ブラウザ側キューとの通信路。

    Args:
        evaluator: スクリプトを評価するページ
        batch_size: 1 回の取得で取り出す最大件数
    """

    def __init__(self, evaluator: ScriptEvaluator, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self.evaluator = evaluator
        self.batch_size = batch_size
        self._script = "() => {\n" + load_capture_script() + "\n}"
        self._options: dict[str, Any] = {}

    def install(self, options: Optional[Mapping[str, Any]] = None) -> None:
        """キャプチャスクリプトを設置して記録を開始する。

        Raises:
            CommunicationError: ページでの評価に失敗した場合
        """
        self._options = dict(options or {})
        self._evaluate(self._script)
        self._evaluate(_START_EXPRESSION, self._options)
        logger.debug("キャプチャスクリプトを設置しました: %s", self._options.get("sessionId"))

    def poll(self) -> list[dict[str, Any]]:
        """キューから最大 batch_size 件のアクションを取り出す。

        スクリプトが見つからない場合（ページ遷移後）は再設置して空リストを返す。
        """
        batch = self._evaluate(_DRAIN_EXPRESSION, self.batch_size)
        if batch is None:
            logger.info("ページ遷移を検出したため、キャプチャスクリプトを再設置します")
            self._evaluate(self._script)
            self._evaluate(_START_EXPRESSION, {**self._options, "resume": True})
            return []

        if not isinstance(batch, list):
            raise CommunicationError(
                "ブラウザから不正な形式の応答を受信しました",
                context={"response_type": type(batch).__name__},
            )

        actions = []
        for item in batch:
            if isinstance(item, dict) and isinstance(item.get("type"), str) and "data" in item:
                actions.append(item)
            else:
                logger.warning("不正な形式のアクションを破棄しました: %r", item)
        return actions

    def is_active(self) -> bool:
        """ブラウザ側の記録が継続中かを返す。スクリプト未設置（遷移直後）は継続中とみなす。"""
        active = self._evaluate(_ACTIVE_EXPRESSION)
        return True if active is None else bool(active)

    def teardown(self) -> None:
        """ブラウザ側の記録を停止する（session:end がキューに追加される）。"""
        self._evaluate(_STOP_EXPRESSION)

    def _evaluate(self, expression: str, arg: Any = None) -> Any:
        try:
            if arg is None:
                return self.evaluator.evaluate(expression)
            return self.evaluator.evaluate(expression, arg)
        except PlaywrightError as e:
            raise CommunicationError(
                f"ブラウザとの通信に失敗しました: {e.message}",
                context={"expression": expression[:80]},
            ) from e
