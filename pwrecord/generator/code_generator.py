"""
CodeGenerator — 記録アクションから pytest-playwright テストコードを生成

ActionStore が保持する RecordedAction 列を、アクション種別毎のハンドラで
Playwright（同期 API）のステートメントに変換し、アサーションを補ってから
Jinja2 テンプレートでテストモジュールに組み立てる。

主な機能:
  - generate_test(): アクション列 → テストモジュールのソースコード
  - 種別毎のハンドラ表（ActionType → ステートメント生成メソッド）
  - セレクタ解決: ペイロードの selector → SelectorStrategy → タグ名 / body
  - アサーション自動生成: 最終 URL の確認とページエラーが無いことの確認
  - 説明コメントの付与（generateComments）

出力例::

    page.goto("https://example.com/login")
    # Click on [data-testid="submit"]
    page.locator("[data-testid=\\"submit\\"]").click()
"""

from __future__ import annotations

import ast
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Literal, Optional, Sequence

from jinja2 import Environment, FileSystemLoader

from ..config import RecordingConfig
from ..errors import InvalidInputError, StructuralFailure
from ..models import ActionType, RecordedAction
from ..selector import SelectorStrategy

logger = logging.getLogger(__name__)

# テンプレートディレクトリのパス
_TEMPLATES_DIR = Path(__file__).parent / "templates"

DEFAULT_TEST_NAME = "recorded flow"

TYPE_SIMULATION_INPUT_TYPES = ("search", "url", "tel", "email")
"""1 文字ずつの入力（press_sequentially）で再現する input 種別。"""

NAVIGATION_SUBTYPES = ("pushstate", "replacestate", "popstate")

DEVICE_VIEWPORTS: dict[str, dict[str, int]] = {
    "mobile": {"width": 375, "height": 667},
    "desktop": {"width": 1920, "height": 1080},
}

_ERRORS_VAR = "page_errors"

StatementClass = Literal["navigation", "interaction", "assertion"]


# ---------------------------------------------------------------------------
# 結果データクラス
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GeneratedStatement:
    """生成された 1 ステートメント。

    Attributes:
        expression: Python の式・文（1 行）
        comment: 説明コメント（無効時は None）
        statement_class: navigation / interaction / assertion
        selector: 使用したセレクタ（ある場合）
    """

    expression: str
    comment: Optional[str] = None
    statement_class: StatementClass = "interaction"
    selector: Optional[str] = None

    def render(self) -> list[str]:
        """コメント行を含むソース行のリストを返す。"""
        if self.comment:
            return [f"# {self.comment}", self.expression]
        return [self.expression]


@dataclass
class GenerationResult:
    """generate_test() の結果。

    Attributes:
        code: テストモジュール全体のソースコード
        body: テスト関数本体のステートメントのみ（注入用、インデントなし）
        test_name: テスト名
        action_count: 入力アクション数
        statement_count: 生成ステートメント数
        has_assertions: アサーションを含むか
        used_selectors: 使用したセレクタ（出現順・重複なし）
        statements: 生成ステートメント
    """

    code: str
    body: str
    test_name: str
    action_count: int
    statement_count: int
    has_assertions: bool
    used_selectors: list[str] = field(default_factory=list)
    statements: list[GeneratedStatement] = field(default_factory=list)


# ---------------------------------------------------------------------------
# 文字列ヘルパー
# ---------------------------------------------------------------------------

def _escape_string(s: str) -> str:
    """Python 文字列リテラル用にエスケープする。

    Args:
        s: エスケープ対象の文字列

    Returns:
        エスケープ済み文字列
    """
    return (
        s.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def _literal(s: str) -> str:
    return f'"{_escape_string(s)}"'


def _comment_text(s: str) -> str:
    """コメント 1 行に収まるよう改行を空白に置き換える。"""
    return re.sub(r"\s*[\r\n]+\s*", " ", s).strip()


def python_function_name(test_name: str) -> str:
    """テスト名から pytest が収集できる関数名を生成する。"""
    slug = re.sub(r"\W+", "_", test_name.lower(), flags=re.ASCII).strip("_")
    if not slug:
        slug = "recorded_flow"
    if slug.startswith("test_"):
        return slug
    return f"test_{slug}"


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value))
        except ValueError:
            return 0
    return 0


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ---------------------------------------------------------------------------
# CodeGenerator 本体
# ---------------------------------------------------------------------------

class CodeGenerator:
    """RecordedAction 列からテストコードを生成する。

    Args:
        config: 記録設定（省略時はデフォルト設定）
        selector_strategy: セレクタ生成器（省略時は config から生成）
        generate_waits: スクロール操作を出力するか（省略時は recordScrollPosition）
    """

    def __init__(
        self,
        config: Optional[RecordingConfig] = None,
        *,
        selector_strategy: Optional[SelectorStrategy] = None,
        generate_waits: Optional[bool] = None,
    ) -> None:
        self.config = config or RecordingConfig()
        self.selector_strategy = selector_strategy or self.config.selector_strategy()
        self.generate_waits = (
            self.config.recordScrollPosition if generate_waits is None else generate_waits
        )
        self._env = Environment(
            loader=FileSystemLoader(str(_TEMPLATES_DIR)),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self._handlers: dict[ActionType, Callable[[RecordedAction], list[GeneratedStatement]]] = {
            ActionType.SESSION_START: self._session_start,
            ActionType.CLICK: self._click,
            ActionType.DOUBLE_CLICK: self._double_click,
            ActionType.RIGHT_CLICK: self._right_click,
            ActionType.INPUT: self._input,
            ActionType.CHANGE: self._change,
            ActionType.SUBMIT: self._submit,
            ActionType.KEY_PRESS: self._key_press,
            ActionType.SCROLL: self._scroll,
            ActionType.HOVER: self._hover,
            ActionType.NAVIGATION: self._navigation,
        }

    # ----- 公開 API -----

    def generate_test(
        self, actions: Sequence[RecordedAction], test_name: Optional[str] = None,
    ) -> GenerationResult:
        """アクション列からテストモジュールを生成する。

        Args:
            actions: 記録順のアクション列
            test_name: テスト名（省略時は "recorded flow"）

        Returns:
            生成結果

        Raises:
            InvalidInputError: アクション列が空の場合
        """
        if not actions:
            raise InvalidInputError(
                "アクションが 1 件も記録されていないため、テストを生成できません",
                recovery_suggestion="ブラウザで操作を行ってから記録を終了してください",
            )

        name = (test_name or DEFAULT_TEST_NAME).strip() or DEFAULT_TEST_NAME
        statements = self.generate_statements(actions)

        used_selectors: list[str] = []
        for statement in statements:
            if statement.selector and statement.selector not in used_selectors:
                used_selectors.append(statement.selector)

        body_lines = [line for statement in statements for line in statement.render()]
        if not body_lines:
            body_lines = ["pass"]

        code = self._render_module(name, body_lines)
        try:
            ast.parse(code)
        except SyntaxError as e:
            raise StructuralFailure(
                f"生成したコードが Python として解析できません: {e.msg} (行 {e.lineno})",
                context={"test_name": name},
            ) from e

        logger.info(
            "テストコードを生成しました: %s (%d アクション → %d ステートメント)",
            name, len(actions), len(statements),
        )
        return GenerationResult(
            code=code,
            body="\n".join(body_lines) + "\n",
            test_name=name,
            action_count=len(actions),
            statement_count=len(statements),
            has_assertions=any(s.statement_class == "assertion" for s in statements),
            used_selectors=used_selectors,
            statements=statements,
        )

    def generate_statements(self, actions: Sequence[RecordedAction]) -> list[GeneratedStatement]:
        """アクション列をステートメント列に変換する（アサーションを含む）。"""
        statements: list[GeneratedStatement] = []
        for action in actions:
            handler = self._handlers.get(action.type)
            if handler is None:
                continue
            statements.extend(handler(action))

        if self.config.autoAssertions:
            statements = self._with_assertions(actions, statements)
        return statements

    # ----- モジュール組み立て -----

    def _render_module(self, test_name: str, body_lines: list[str]) -> str:
        template = self._env.get_template("test_module.py.j2")
        return template.render(
            function_name=python_function_name(test_name),
            docstring=_escape_string(test_name),
            body_lines=body_lines,
        )

    # ----- 共通ヘルパー -----

    def _comment(self, text: str) -> Optional[str]:
        return _comment_text(text) if self.config.generateComments else None

    def _resolve_selector(self, action: RecordedAction) -> str:
        """ペイロードからセレクタを決定する。

        selector があればそのまま使用し、無ければ tagName / attributes から生成する。
        生成にも失敗した場合はタグ名、タグ名も無ければ body を使用する。
        """
        explicit = action.data.get("selector")
        if isinstance(explicit, str) and explicit.strip():
            return explicit

        descriptor = {
            "tagName": action.data.get("tagName"),
            "attributes": action.data.get("attributes") or {},
            "path": action.data.get("path") or [],
            "className": action.data.get("className") or "",
        }
        try:
            return self.selector_strategy.generate(descriptor).selector
        except InvalidInputError:
            tag = action.data.get("tagName")
            return tag.lower() if isinstance(tag, str) and tag else "body"

    def _locator_call(self, selector: str, method: str, *args: str) -> str:
        """chainMethods に従ってロケーター操作の式を組み立てる。"""
        if self.config.chainMethods:
            return f"page.locator({_literal(selector)}).{method}({', '.join(args)})"
        return f"page.{method}({', '.join((_literal(selector),) + args)})"

    # ----- ハンドラ: ナビゲーション -----

    def _session_start(self, action: RecordedAction) -> list[GeneratedStatement]:
        url = action.url or "/"
        statements: list[GeneratedStatement] = []

        device = self.config.deviceEmulation
        if device:
            size = DEVICE_VIEWPORTS[device]
            statements.append(GeneratedStatement(
                f'page.set_viewport_size({{"width": {size["width"]}, "height": {size["height"]}}})',
                self._comment(f"Emulate {device} viewport"),
                "navigation",
            ))

        scheme = self.config.colorScheme
        if scheme:
            statements.append(GeneratedStatement(
                f"page.emulate_media(color_scheme={_literal(scheme)})",
                self._comment(f"Emulate {scheme} color scheme"),
                "navigation",
            ))

        statements.append(GeneratedStatement(
            f"page.goto({_literal(url)})", self._comment(f"Visit {url}"), "navigation",
        ))
        return statements

    def _navigation(self, action: RecordedAction) -> list[GeneratedStatement]:
        subtype = _as_text(action.data.get("type")).lower()
        if subtype not in NAVIGATION_SUBTYPES:
            return []
        url = _as_text(action.data.get("url")) or action.url or "/"
        return [GeneratedStatement(
            f"page.goto({_literal(url)})", self._comment(f"Navigate to {url}"), "navigation",
        )]

    # ----- ハンドラ: クリック系 -----

    def _click(self, action: RecordedAction) -> list[GeneratedStatement]:
        selector = self._resolve_selector(action)
        return [GeneratedStatement(
            self._locator_call(selector, "click"),
            self._comment(f"Click on {selector}"),
            selector=selector,
        )]

    def _double_click(self, action: RecordedAction) -> list[GeneratedStatement]:
        selector = self._resolve_selector(action)
        return [GeneratedStatement(
            self._locator_call(selector, "dblclick"),
            self._comment(f"Double-click on {selector}"),
            selector=selector,
        )]

    def _right_click(self, action: RecordedAction) -> list[GeneratedStatement]:
        selector = self._resolve_selector(action)
        return [GeneratedStatement(
            self._locator_call(selector, "click", 'button="right"'),
            self._comment(f"Right-click on {selector}"),
            selector=selector,
        )]

    def _hover(self, action: RecordedAction) -> list[GeneratedStatement]:
        # mouseleave は再現不要
        if _as_text(action.data.get("action")).lower() == "leave":
            return []
        selector = self._resolve_selector(action)
        return [GeneratedStatement(
            self._locator_call(selector, "hover"),
            self._comment(f"Hover over {selector}"),
            selector=selector,
        )]

    # ----- ハンドラ: 入力系 -----

    def _input(self, action: RecordedAction) -> list[GeneratedStatement]:
        selector = self._resolve_selector(action)
        value = _as_text(action.data.get("value"))
        input_type = _as_text(action.data.get("inputType") or action.data.get("type") or "text").lower()

        use_type = self.config.useTypeForInputs and input_type in TYPE_SIMULATION_INPUT_TYPES
        if use_type:
            method = "press_sequentially" if self.config.chainMethods else "type"
        else:
            method = "fill"

        return [GeneratedStatement(
            self._locator_call(selector, method, _literal(value)),
            self._comment(f"{'type' if use_type else 'fill'} '{value}' in {selector}"),
            selector=selector,
        )]

    def _change(self, action: RecordedAction) -> list[GeneratedStatement]:
        tag = _as_text(action.data.get("tagName")).lower()
        selector = self._resolve_selector(action)

        if tag == "select":
            value = _as_text(action.data.get("value"))
            return [GeneratedStatement(
                self._locator_call(selector, "select_option", _literal(value)),
                self._comment(f"Select '{value}' in {selector}"),
                selector=selector,
            )]

        input_type = _as_text(action.data.get("type")).lower()
        checked = action.data.get("checked")
        if input_type in ("checkbox", "radio") and isinstance(checked, bool):
            if not checked and input_type == "radio":
                # ラジオボタンの選択解除は別の選択肢の check として記録される
                return []
            method = "check" if checked else "uncheck"
            return [GeneratedStatement(
                self._locator_call(selector, method),
                self._comment(f"{method.capitalize()} {selector}"),
                selector=selector,
            )]

        logger.debug("change アクションをスキップしました: tag=%s type=%s", tag, input_type)
        return []

    def _submit(self, action: RecordedAction) -> list[GeneratedStatement]:
        selector = self._resolve_selector(action)
        return [GeneratedStatement(
            self._locator_call(selector, "press", '"Enter"'),
            self._comment(f"Submit form via {selector}"),
            selector=selector,
        )]

    def _key_press(self, action: RecordedAction) -> list[GeneratedStatement]:
        key = _as_text(action.data.get("key"))
        if not key:
            return []

        modifiers = action.data.get("modifiers")
        if not isinstance(modifiers, dict):
            modifiers = {}
        combo = [
            name for flag, name in (
                ("ctrl", "Control"), ("shift", "Shift"), ("alt", "Alt"), ("meta", "Meta"),
            )
            if modifiers.get(flag)
        ]
        combo.append(key)
        key_string = "+".join(combo)

        return [GeneratedStatement(
            f"page.keyboard.press({_literal(key_string)})",
            self._comment(f"Press {key_string}"),
        )]

    def _scroll(self, action: RecordedAction) -> list[GeneratedStatement]:
        if not self.generate_waits:
            return []
        x = _as_int(action.data.get("scrollX"))
        y = _as_int(action.data.get("scrollY"))
        return [GeneratedStatement(
            f'page.evaluate("window.scrollTo({x}, {y})")',
            self._comment(f"Scroll to ({x}, {y})"),
        )]

    # ----- アサーション -----

    def _with_assertions(
        self, actions: Sequence[RecordedAction], statements: list[GeneratedStatement],
    ) -> list[GeneratedStatement]:
        """ページエラー収集の登録を先頭に、URL・エラー無しの確認を末尾に追加する。"""
        setup = [
            GeneratedStatement(
                f"{_ERRORS_VAR} = []",
                self._comment("Collect uncaught page errors"),
                "assertion",
            ),
            GeneratedStatement(f'page.on("pageerror", {_ERRORS_VAR}.append)', None, "assertion"),
        ]
        result = setup + statements

        final_url = next(
            (
                a.url for a in reversed(actions)
                if a.type is not ActionType.SESSION_START and a.url and a.url != "/"
            ),
            None,
        )
        if final_url:
            result.append(GeneratedStatement(
                f"assert {_literal(final_url)} in page.url",
                self._comment("Assert final URL"),
                "assertion",
            ))

        result.append(GeneratedStatement(
            f"assert not {_ERRORS_VAR}",
            self._comment("Ensure no JavaScript errors"),
            "assertion",
        ))
        return result
