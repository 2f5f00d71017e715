"""
セレクタ生成 — 要素記述から安定した CSS セレクタを導出

キャプチャスクリプトが送る要素記述（tagName, attributes, path, className）から、
テストコードで使用する CSS セレクタ候補を信頼度付きで生成する。

主な機能:
  - generate(): 優先順位に従い最初に成功した戦略のセレクタを返す
  - generate_candidates(): 全戦略の候補を信頼度の降順で返す
  - validate(): HTML に対してセレクタの一致数・一意性を検証する（例外を送出しない）
  - validate_stability(): 複数の HTML サンプルに対する検証

戦略（優先順）:
  1. 優先属性（data-testid 0.98 / id 0.95 / その他 0.90）
  2. タグ + 識別属性（type, placeholder, value, aria-*）0.8
  3. 信頼できるクラス（最大 3 個）0.7
  4. 階層パス 0.6（パスなしの場合はタグ名のみ 0.3）

要素記述の path はキャプチャスクリプトの出力順（外側の祖先が先頭、
要素自身が末尾）で受け取る。
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Optional, Sequence

from bs4 import BeautifulSoup

from .errors import InvalidInputError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# 定数
# ---------------------------------------------------------------------------

DEFAULT_SELECTOR_PRIORITY: tuple[str, ...] = (
    "data-testid",
    "data-cy",
    "data-test",
    "id",
    "name",
    "data-qa",
    "role",
)
"""デフォルトの優先属性（先頭ほど優先）。"""

DEFAULT_MAX_DEPTH = 5

_UNRELIABLE_CLASS_PATTERNS = [
    re.compile(r"^_"),
    re.compile(r"\d{6,}"),
    re.compile(r"^css-"),
    re.compile(r"^makeStyles"),
    re.compile(r"random"),
    re.compile(r"hash"),
    re.compile(r"temp"),
    re.compile(r"^jss\d+"),
]
"""ビルドツールやライブラリが自動生成する、変化しやすいクラス名のパターン。"""

_CSS_SPECIAL = re.compile(r"([!\"#$%&'()*+,./:;<=>?@\[\\\]^`{|}~])")

_VALUE_ATTRIBUTE_INPUT_TYPES = ("submit", "button", "reset")


# ---------------------------------------------------------------------------
# 結果データクラス
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SelectorCandidate:
    """生成されたセレクタ候補。

    Attributes:
        selector: CSS セレクタ文字列
        strategy: 生成した戦略名（attribute-data-testid, class-based 等）
        confidence: 信頼度（0.0〜1.0）
        is_stable: マークアップ変更に強い属性のみに依存するか
    """

    selector: str
    strategy: str
    confidence: float
    is_stable: bool


@dataclass(frozen=True)
class SelectorValidation:
    """HTML に対するセレクタ検証結果。"""

    is_valid: bool
    is_unique: bool
    match_count: int
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# エスケープ
# ---------------------------------------------------------------------------

def escape_attribute_value(value: str) -> str:
    """属性値セレクタ [attr="..."] に埋め込むため、引用符とバックスラッシュをエスケープする。"""
    return value.replace("\\", "\\\\").replace('"', '\\"')


def escape_identifier(value: str) -> str:
    """クラス名・ID を CSS 識別子として埋め込めるようエスケープする。

    CSS の特殊文字はバックスラッシュで、先頭の数字はコードポイントでエスケープする。
    """
    escaped = _CSS_SPECIAL.sub(r"\\\1", value)
    if escaped and escaped[0].isdigit():
        escaped = f"\\{ord(escaped[0]):x} {escaped[1:]}"
    return escaped


def is_reliable_class(class_name: str) -> bool:
    """クラス名が自動生成されたものでなく、セレクタに使えるかを判定する。"""
    if not class_name:
        return False
    return not any(p.search(class_name) for p in _UNRELIABLE_CLASS_PATTERNS)


# ---------------------------------------------------------------------------
# SelectorStrategy 本体
# ---------------------------------------------------------------------------

class SelectorStrategy:
    """要素記述からセレクタを生成する。

    状態は設定値のみで、同じ記述に対しては常に同じ結果を返す。

    Args:
        priority: 優先属性のリスト（省略時は DEFAULT_SELECTOR_PRIORITY）
        include_aria: aria-* 属性をタグ + 属性戦略に含めるか
        max_depth: 階層セレクタの最大段数
        use_direct_descendants: 階層セレクタを子結合子（>）で連結するか
        stable_only: generate_candidates() から is_stable でない候補を除くか
    """

    def __init__(
        self,
        priority: Optional[Sequence[str]] = None,
        *,
        include_aria: bool = True,
        max_depth: int = DEFAULT_MAX_DEPTH,
        use_direct_descendants: bool = False,
        stable_only: bool = False,
    ) -> None:
        self.priority: list[str] = list(priority) if priority else list(DEFAULT_SELECTOR_PRIORITY)
        self.include_aria = include_aria
        self.max_depth = max_depth
        self.use_direct_descendants = use_direct_descendants
        self.stable_only = stable_only

    # ----- 公開 API -----

    def generate(self, descriptor: Mapping[str, Any]) -> SelectorCandidate:
        """最も優先度の高い戦略で成功したセレクタを返す。

        Args:
            descriptor: 要素記述（tagName 必須、attributes / path / className 任意）

        Returns:
            生成されたセレクタ候補

        Raises:
            InvalidInputError: tagName が無い場合
        """
        tag = self._tag_name(descriptor)
        attributes = self._attributes(descriptor)

        result = (
            next(self._attribute_candidates(attributes), None)
            or self._tag_with_attributes(tag, attributes)
            or self._class_based(tag, self._class_string(descriptor, attributes))
        )
        if result is not None:
            return result

        return self._hierarchical(tag, descriptor.get("path") or [])

    def generate_candidates(self, descriptor: Mapping[str, Any]) -> list[SelectorCandidate]:
        """全戦略の候補を信頼度の降順（同率は戦略の宣言順）で返す。

        stable_only の場合は安定した候補のみを返す。安定した候補が無ければ
        最後の手段として階層セレクタ（またはタグ名）の 1 件だけを返す。
        """
        tag = self._tag_name(descriptor)
        attributes = self._attributes(descriptor)

        candidates: list[SelectorCandidate] = list(self._attribute_candidates(attributes))
        for result in (
            self._tag_with_attributes(tag, attributes),
            self._class_based(tag, self._class_string(descriptor, attributes)),
        ):
            if result is not None:
                candidates.append(result)
        fallback = self._hierarchical(tag, descriptor.get("path") or [])
        candidates.append(fallback)

        if self.stable_only:
            candidates = [c for c in candidates if c.is_stable] or [fallback]

        # sorted は安定ソートのため、同率の候補は追加順を保つ
        return sorted(candidates, key=lambda c: c.confidence, reverse=True)

    def validate(self, selector: str, html: str) -> SelectorValidation:
        """HTML 文書に対してセレクタの一致数を検証する。

        不正なセレクタや HTML の解析失敗は is_valid=False / match_count=0 として返し、
        例外は送出しない。
        """
        try:
            soup = BeautifulSoup(html, "html.parser")
            count = len(soup.select(selector))
        except Exception as e:
            logger.debug("セレクタ検証に失敗しました: %s (%s)", selector, e)
            return SelectorValidation(is_valid=False, is_unique=False, match_count=0, error=str(e))

        return SelectorValidation(is_valid=count > 0, is_unique=count == 1, match_count=count)

    def validate_stability(
        self, selector: str, html_samples: Sequence[str],
    ) -> dict[str, SelectorValidation]:
        """複数の DOM サンプルそれぞれに対してセレクタを検証する。"""
        return {
            f"sample_{i}": self.validate(selector, html)
            for i, html in enumerate(html_samples)
        }

    # ----- 記述の取り出し -----

    @staticmethod
    def _tag_name(descriptor: Mapping[str, Any]) -> str:
        tag = descriptor.get("tagName") if isinstance(descriptor, Mapping) else None
        if not tag or not isinstance(tag, str):
            raise InvalidInputError(
                "要素記述には tagName が必要です",
                context={"descriptor": dict(descriptor) if isinstance(descriptor, Mapping) else None},
            )
        return tag.lower()

    @staticmethod
    def _attributes(descriptor: Mapping[str, Any]) -> dict[str, Any]:
        attributes = descriptor.get("attributes") or {}
        return dict(attributes) if isinstance(attributes, Mapping) else {}

    @staticmethod
    def _class_string(descriptor: Mapping[str, Any], attributes: Mapping[str, Any]) -> str:
        value = descriptor.get("className") or descriptor.get("class") or attributes.get("class") or ""
        return value if isinstance(value, str) else ""

    # ----- 戦略 -----

    def _attribute_candidates(
        self, attributes: Mapping[str, Any],
    ) -> Iterator[SelectorCandidate]:
        """優先属性ごとの候補を優先順に生成する。"""
        for attr in self.priority:
            value = attributes.get(attr)
            if value is None or value == "" or isinstance(value, (dict, list)):
                continue
            text = str(value)
            if attr == "id":
                yield SelectorCandidate(f"#{escape_identifier(text)}", "attribute-id", 0.95, True)
            else:
                confidence = 0.98 if attr == "data-testid" else 0.9
                yield SelectorCandidate(
                    f'[{attr}="{escape_attribute_value(text)}"]',
                    f"attribute-{attr}",
                    confidence,
                    True,
                )

    def _tag_with_attributes(
        self, tag: str, attributes: Mapping[str, Any],
    ) -> Optional[SelectorCandidate]:
        parts: list[str] = []
        input_type = attributes.get("type")

        if input_type and tag in ("input", "button"):
            parts.append(f'type="{escape_attribute_value(str(input_type))}"')

        if attributes.get("placeholder"):
            parts.append(f'placeholder="{escape_attribute_value(str(attributes["placeholder"]))}"')

        # ユーザー入力値を含めないよう、ボタン系 input の value のみ使用する
        if (
            tag == "input"
            and attributes.get("value") is not None
            and input_type in _VALUE_ATTRIBUTE_INPUT_TYPES
        ):
            parts.append(f'value="{escape_attribute_value(str(attributes["value"]))}"')

        if self.include_aria:
            for name, value in attributes.items():
                if isinstance(name, str) and name.startswith("aria-") and value:
                    parts.append(f'{name}="{escape_attribute_value(str(value))}"')

        if not parts:
            return None
        return SelectorCandidate(f"{tag}[{']['.join(parts)}]", "tag-with-attributes", 0.8, True)

    @staticmethod
    def _class_based(tag: str, class_string: str) -> Optional[SelectorCandidate]:
        classes = [c for c in class_string.split() if is_reliable_class(c)]
        if not classes:
            return None
        selector = tag + "".join(f".{escape_identifier(c)}" for c in classes[:3])
        return SelectorCandidate(selector, "class-based", 0.7, False)

    def _hierarchical(self, tag: str, path: Sequence[Any]) -> SelectorCandidate:
        if not path:
            return SelectorCandidate(tag, "tag-fallback", 0.3, False)

        parts: list[str] = []
        for element in reversed(list(path)):
            if len(parts) >= self.max_depth:
                break
            part = self._path_element(element)
            if part is not None:
                parts.append(part)

        if not parts:
            return SelectorCandidate(tag, "tag-fallback", 0.3, False)

        combinator = " > " if self.use_direct_descendants else " "
        return SelectorCandidate(combinator.join(reversed(parts)), "hierarchical", 0.6, False)

    @staticmethod
    def _path_element(element: Any) -> Optional[str]:
        """階層パスの 1 段分のセレクタを組み立てる。"""
        if not isinstance(element, Mapping):
            return None
        tag = str(element.get("tagName") or "").lower()
        if not tag:
            return None

        attributes = element.get("attributes") or {}
        if isinstance(attributes, Mapping):
            if attributes.get("id"):
                return f"#{escape_identifier(str(attributes['id']))}"
            if attributes.get("data-testid"):
                return f'[data-testid="{escape_attribute_value(str(attributes["data-testid"]))}"]'

        nth = element.get("nthChild")
        if isinstance(nth, int) and not isinstance(nth, bool) and nth > 1:
            return f"{tag}:nth-child({nth})"
        return tag
