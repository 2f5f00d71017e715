"""
記録データモデル — アクション種別・記録済みアクション・セッションメタデータ

ブラウザ側キャプチャスクリプトから届くアクションを表現するデータクラス群。
RecordedAction は不変で、ActionStore が採番・サニタイズした後にのみ生成される。

主な機能:
  - ActionType: 固定のアクション種別（ワイヤ上のタグ名を値に持つ）
  - ActionType.parse(): 別名（double-click, key-press 等）を含む種別解決
  - RecordedAction: 1 件の記録済みアクション（to_dict / from_dict）
  - SessionMetadata: セッション単位の集約情報
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .errors import InvalidInputError


# ---------------------------------------------------------------------------
# アクション種別
# ---------------------------------------------------------------------------

class ActionType(str, Enum):
    """記録対象のアクション種別。値はキャプチャスクリプトが送るタグ名。"""

    CLICK = "click"
    DOUBLE_CLICK = "dblclick"
    RIGHT_CLICK = "rightclick"
    INPUT = "input"
    CHANGE = "change"
    FOCUS = "focus"
    BLUR = "blur"
    SUBMIT = "submit"
    KEY_PRESS = "keydown"
    SCROLL = "scroll"
    HOVER = "hover"
    NAVIGATION = "navigation"
    SESSION_START = "session:start"
    SESSION_END = "session:end"
    HEARTBEAT = "session:heartbeat"
    DOM_ADDED = "dom:added"
    VISIBILITY_CHANGE = "visibility"
    BEFORE_UNLOAD = "beforeunload"
    COMMUNICATION_ERROR = "communication:error"

    @classmethod
    def parse(cls, value: str | ActionType) -> ActionType:
        """タグ名または別名から ActionType を解決する。

        Raises:
            InvalidInputError: 未知の種別の場合
        """
        if isinstance(value, ActionType):
            return value
        if not isinstance(value, str):
            raise InvalidInputError(f"アクション種別は文字列である必要があります: {value!r}")
        try:
            return cls(value)
        except ValueError:
            pass
        alias = _ALIASES.get(value.strip().lower())
        if alias is None:
            raise InvalidInputError(
                f"未知のアクション種別です: {value}",
                context={"type": value},
            )
        return alias


_ALIASES: dict[str, ActionType] = {
    "double-click": ActionType.DOUBLE_CLICK,
    "right-click": ActionType.RIGHT_CLICK,
    "key-press": ActionType.KEY_PRESS,
    "keypress": ActionType.KEY_PRESS,
    "session-start": ActionType.SESSION_START,
    "session-end": ActionType.SESSION_END,
    "heartbeat": ActionType.HEARTBEAT,
    "dom-added": ActionType.DOM_ADDED,
    "visibility-change": ActionType.VISIBILITY_CHANGE,
    "before-unload": ActionType.BEFORE_UNLOAD,
    "communication-error": ActionType.COMMUNICATION_ERROR,
}
"""ハイフン区切り・旧表記の別名 → ActionType のマッピング。"""


# ---------------------------------------------------------------------------
# 記録済みアクション
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RecordedAction:
    """ActionStore に記録された 1 件のアクション。

    Attributes:
        type: アクション種別
        data: 種別ごとのペイロード（サニタイズ済み）
        timestamp: 記録時刻（ミリ秒）
        url: 記録時のページ URL
        session_id: セッション ID
        sequence: セッション内の連番（1 始まり）
        viewport: ビューポートサイズ（width / height）
        metadata: 任意の付加情報
    """

    type: ActionType
    data: dict[str, Any]
    timestamp: int
    url: str
    session_id: str
    sequence: int
    viewport: Optional[dict[str, int]] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """エクスポート用の辞書に変換する。"""
        return {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
            "url": self.url,
            "sessionId": self.session_id,
            "sequence": self.sequence,
            "viewport": self.viewport,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecordedAction:
        """辞書から RecordedAction を復元する。

        Raises:
            InvalidInputError: 必須キーの欠落・型不正・未知の種別の場合
        """
        if not isinstance(data, dict):
            raise InvalidInputError("アクションは辞書である必要があります")
        missing = [
            key for key in ("type", "data", "timestamp", "sessionId", "sequence")
            if key not in data
        ]
        if missing:
            raise InvalidInputError(
                f"アクションに必須キーがありません: {', '.join(missing)}",
                context={"missing": missing},
            )
        if not isinstance(data["data"], dict):
            raise InvalidInputError("アクションの data は辞書である必要があります")
        try:
            timestamp = int(data["timestamp"])
            sequence = int(data["sequence"])
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f"timestamp / sequence が数値ではありません: {e}") from e

        viewport = data.get("viewport") or None
        if viewport is not None and not isinstance(viewport, dict):
            raise InvalidInputError("アクションの viewport は辞書である必要があります")
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise InvalidInputError("アクションの metadata は辞書である必要があります")
        url = data.get("url") or ""
        if not isinstance(url, str):
            raise InvalidInputError("アクションの url は文字列である必要があります")

        return cls(
            type=ActionType.parse(data["type"]),
            data=dict(data["data"]),
            timestamp=timestamp,
            url=url,
            session_id=str(data["sessionId"]),
            sequence=sequence,
            viewport=dict(viewport) if viewport is not None else None,
            metadata=dict(metadata),
        )


# ---------------------------------------------------------------------------
# セッションメタデータ
# ---------------------------------------------------------------------------

@dataclass
class SessionMetadata:
    """セッション単位の集約情報。最初のアクション記録時に生成される。"""

    session_id: str
    start_time: int
    last_action_time: int
    user_agent: str = ""
    viewport: Optional[dict[str, int]] = None
    url: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "startTime": self.start_time,
            "lastActionTime": self.last_action_time,
            "userAgent": self.user_agent,
            "viewport": self.viewport,
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], session_id: str) -> SessionMetadata:
        """辞書から SessionMetadata を復元する。

        Raises:
            InvalidInputError: 時刻が数値でない・viewport が辞書でない場合
        """
        try:
            start = int(data.get("startTime") or 0)
            last = int(data.get("lastActionTime") or start)
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f"メタデータの時刻が数値ではありません: {e}") from e

        viewport = data.get("viewport") or None
        if viewport is not None and not isinstance(viewport, dict):
            raise InvalidInputError("メタデータの viewport は辞書である必要があります")

        return cls(
            session_id=session_id,
            start_time=start,
            last_action_time=last,
            user_agent=str(data.get("userAgent") or ""),
            viewport=dict(viewport) if viewport is not None else None,
            url=str(data.get("url") or ""),
        )
