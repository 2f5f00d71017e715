"""
ActionStore — 記録アクションの検証・サニタイズ・セッション毎の保持

ブラウザから届いたアクションをスキーマで検証し、文字列のサニタイズと
連番付与を行ってセッション単位で保持する。保持したアクションは
CodeGenerator への入力や、エクスポート / インポートに使用する。

主な機能:
  - record(): スキーマ検証・サニタイズ・連番付与・メタデータ更新
  - get_session_actions() / get_actions_in_range() / get_actions_by_types(): 参照
  - export_session() / import_session(): スナップショットの入出力（不正なアクションはスキップ）
  - clear_session() / clear_all(): 破棄
  - statistics(): 記録状況の統計
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from ..errors import InvalidInputError
from ..models import ActionType, RecordedAction, SessionMetadata

logger = logging.getLogger(__name__)

MAX_STRING_LENGTH = 10_000
DEFAULT_MAX_ACTIONS_PER_SESSION = 10_000

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
"""タブ・改行・復帰を除く制御文字。"""

_UNSAFE_KEY_CHARS = re.compile(r"[^\w\-.]")


# ---------------------------------------------------------------------------
# アクション種別毎の必須フィールド
# ---------------------------------------------------------------------------

ACTION_SCHEMAS: dict[ActionType, tuple[str, ...]] = {
    ActionType.CLICK: ("selector", "coordinates"),
    ActionType.DOUBLE_CLICK: ("selector",),
    ActionType.RIGHT_CLICK: ("selector",),
    ActionType.INPUT: ("selector", "value", "inputType"),
    ActionType.CHANGE: ("selector", "value"),
    ActionType.FOCUS: ("selector",),
    ActionType.BLUR: ("selector",),
    ActionType.SUBMIT: ("selector", "data"),
    ActionType.KEY_PRESS: ("key", "modifiers"),
    ActionType.SCROLL: ("scrollX", "scrollY"),
    ActionType.HOVER: ("selector", "action"),
    ActionType.NAVIGATION: ("type", "url"),
    ActionType.SESSION_START: ("sessionId", "viewport", "userAgent"),
    ActionType.SESSION_END: ("sessionId", "totalActions"),
    ActionType.HEARTBEAT: (),
    ActionType.DOM_ADDED: ("target", "elements"),
    ActionType.VISIBILITY_CHANGE: ("selector", "visible"),
    ActionType.BEFORE_UNLOAD: ("url",),
    ActionType.COMMUNICATION_ERROR: ("error",),
}


# ---------------------------------------------------------------------------
# サニタイズ
# ---------------------------------------------------------------------------

def sanitize_string(value: str) -> str:
    """制御文字を除去し、最大長で切り詰める。"""
    return _CONTROL_CHARS.sub("", value)[:MAX_STRING_LENGTH]


def sanitize_value(value: Any) -> Any:
    """ペイロードの値をスカラー・辞書・リストのみに正規化する。

    文字列以外のキーは破棄し、それ以外のオブジェクトは None に置き換える。
    """
    if isinstance(value, str):
        return sanitize_string(value)
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Mapping):
        return sanitize_mapping(value)
    if isinstance(value, (list, tuple)):
        return [sanitize_value(v) for v in value]
    return None


def sanitize_mapping(data: Mapping[Any, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in data.items():
        if not isinstance(key, str):
            continue
        clean_key = _UNSAFE_KEY_CHARS.sub("", key)
        if not clean_key:
            continue
        result[clean_key] = sanitize_value(value)
    return result


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# ActionStore 本体
# ---------------------------------------------------------------------------

class ActionStore:
    """セッション毎の記録アクションを保持する。

    セッション間で共有する状態は持たないため、セッション ID が異なれば
    並行する記録同士で干渉しない。

    Args:
        max_actions_per_session: セッション毎の最大アクション数
    """

    def __init__(self, max_actions_per_session: int = DEFAULT_MAX_ACTIONS_PER_SESSION) -> None:
        self.max_actions_per_session = max_actions_per_session
        self._actions: dict[str, list[RecordedAction]] = {}
        self._metadata: dict[str, SessionMetadata] = {}

    # ----- 記録 -----

    def record(
        self,
        session_id: str,
        action_type: str | ActionType,
        data: Mapping[str, Any],
        context: Optional[Mapping[str, Any]] = None,
    ) -> RecordedAction:
        """アクションを検証して記録する。

        Args:
            session_id: セッション ID（空文字不可）
            action_type: アクション種別（タグ名または別名）
            data: 種別毎のペイロード
            context: timestamp / url / viewport / metadata

        Returns:
            連番付与済みの RecordedAction

        Raises:
            InvalidInputError: セッション ID・種別・必須フィールド・上限の違反
        """
        if not isinstance(session_id, str) or not session_id.strip():
            raise InvalidInputError("セッション ID が空です")

        kind = ActionType.parse(action_type)

        if not isinstance(data, Mapping):
            raise InvalidInputError(
                f"アクションデータは辞書である必要があります: {kind.value}",
                context={"session_id": session_id, "type": kind.value},
            )

        missing = [name for name in ACTION_SCHEMAS[kind] if name not in data]
        if missing:
            raise InvalidInputError(
                f"{kind.value} アクションに必須フィールドがありません: {', '.join(missing)}",
                context={"session_id": session_id, "type": kind.value, "missing": missing},
            )

        actions = self._actions.setdefault(session_id, [])
        if len(actions) >= self.max_actions_per_session:
            raise InvalidInputError(
                f"セッションのアクション数が上限に達しました: {self.max_actions_per_session}",
                context={"session_id": session_id, "limit": self.max_actions_per_session},
                recovery_suggestion="maxActionsPerSession を増やすか、記録を分割してください",
            )

        context = context or {}
        timestamp = context.get("timestamp")
        if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
            timestamp = _now_ms()
        url = context.get("url")
        viewport = context.get("viewport")
        metadata = context.get("metadata")

        action = RecordedAction(
            type=kind,
            data=sanitize_mapping(data),
            timestamp=int(timestamp),
            url=sanitize_string(url) if isinstance(url, str) else "",
            session_id=session_id,
            sequence=len(actions) + 1,
            viewport=sanitize_mapping(viewport) if isinstance(viewport, Mapping) else None,
            metadata=sanitize_mapping(metadata) if isinstance(metadata, Mapping) else {},
        )
        actions.append(action)
        self._update_metadata(action)

        logger.debug("アクションを記録しました: %s #%d %s", session_id, action.sequence, kind.value)
        return action

    def _update_metadata(self, action: RecordedAction) -> None:
        meta = self._metadata.get(action.session_id)
        if meta is None:
            meta = SessionMetadata(
                session_id=action.session_id,
                start_time=action.timestamp,
                last_action_time=action.timestamp,
            )
            self._metadata[action.session_id] = meta

        meta.last_action_time = action.timestamp
        if action.url:
            meta.url = action.url
        if action.viewport:
            meta.viewport = action.viewport
        if action.type is ActionType.SESSION_START:
            user_agent = action.data.get("userAgent")
            if isinstance(user_agent, str):
                meta.user_agent = user_agent

    # ----- 参照 -----

    def get_session_actions(self, session_id: str) -> list[RecordedAction]:
        return list(self._actions.get(session_id, []))

    def get_session_metadata(self, session_id: str) -> Optional[SessionMetadata]:
        return self._metadata.get(session_id)

    def get_actions_in_range(self, session_id: str, start: int, end: int) -> list[RecordedAction]:
        """タイムスタンプが start 以上 end 以下のアクションを返す。"""
        return [a for a in self._actions.get(session_id, []) if start <= a.timestamp <= end]

    def get_actions_by_types(
        self, session_id: str, types: Iterable[str | ActionType],
    ) -> list[RecordedAction]:
        """指定した種別のアクションを記録順で返す。"""
        wanted = {ActionType.parse(t) for t in types}
        return [a for a in self._actions.get(session_id, []) if a.type in wanted]

    def active_sessions(self) -> list[str]:
        return list(self._actions)

    # ----- エクスポート / インポート -----

    def export_session(self, session_id: str) -> dict[str, Any]:
        """セッションのスナップショットを返す。

        Raises:
            InvalidInputError: 未知のセッションの場合
        """
        if session_id not in self._actions:
            raise InvalidInputError(
                f"セッションが存在しません: {session_id}",
                context={"session_id": session_id},
            )
        actions = self._actions[session_id]
        meta = self._metadata.get(session_id)
        return {
            "sessionId": session_id,
            "metadata": meta.to_dict() if meta else {},
            "actions": [a.to_dict() for a in actions],
            "totalActions": len(actions),
            "exportedAt": datetime.now(timezone.utc).isoformat(),
        }

    def import_session(self, snapshot: Mapping[str, Any]) -> int:
        """スナップショットを取り込み、同じ ID の既存セッションを置き換える。

        不正なアクションは警告ログを出してスキップし、取り込み全体は中断しない。
        取り込んだアクションは 1 から連番を振り直し、上限を超えた分は破棄する。
        スナップショットのメタデータが不正な場合はアクションから導出し直す。

        Returns:
            取り込んだアクション数

        Raises:
            InvalidInputError: sessionId が無い場合
        """
        if not isinstance(snapshot, Mapping):
            raise InvalidInputError("スナップショットは辞書である必要があります")
        session_id = snapshot.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            raise InvalidInputError("スナップショットに sessionId がありません")

        imported: list[RecordedAction] = []
        raw_actions = snapshot.get("actions") or []
        if not isinstance(raw_actions, list):
            logger.warning("actions がリストではないため無視します: %s", session_id)
            raw_actions = []
        for position, raw in enumerate(raw_actions):
            try:
                action = RecordedAction.from_dict(raw)
            except InvalidInputError as e:
                logger.warning("不正なアクションをスキップしました: %s #%d (%s)", session_id, position, e)
                continue
            if len(imported) >= self.max_actions_per_session:
                logger.warning(
                    "アクション数が上限 %d を超えたため、残りを破棄しました: %s",
                    self.max_actions_per_session, session_id,
                )
                break
            imported.append(replace(
                action,
                data=sanitize_mapping(action.data),
                url=sanitize_string(action.url),
                session_id=session_id,
                sequence=len(imported) + 1,
                viewport=sanitize_mapping(action.viewport) if action.viewport else None,
                metadata=sanitize_mapping(action.metadata),
            ))

        self._actions[session_id] = imported

        meta: Optional[SessionMetadata] = None
        raw_meta = snapshot.get("metadata")
        if isinstance(raw_meta, Mapping) and raw_meta:
            try:
                meta = SessionMetadata.from_dict(sanitize_mapping(raw_meta), session_id)
            except InvalidInputError as e:
                logger.warning("不正なメタデータを無視し、アクションから導出します: %s (%s)", session_id, e)

        if meta is not None:
            self._metadata[session_id] = meta
        else:
            self._metadata.pop(session_id, None)
            for action in imported:
                self._update_metadata(action)

        logger.info("セッションを取り込みました: %s (%d 件)", session_id, len(imported))
        return len(imported)

    def export_session_json(self, session_id: str) -> str:
        return json.dumps(self.export_session(session_id), ensure_ascii=False, indent=2)

    def import_session_json(self, text: str) -> int:
        try:
            snapshot = json.loads(text)
        except json.JSONDecodeError as e:
            raise InvalidInputError(f"セッション JSON を解析できません: {e}") from e
        return self.import_session(snapshot)

    # ----- 破棄・統計 -----

    def clear_session(self, session_id: str) -> None:
        self._actions.pop(session_id, None)
        self._metadata.pop(session_id, None)

    def clear_all(self) -> None:
        self._actions.clear()
        self._metadata.clear()

    def statistics(self) -> dict[str, Any]:
        by_type: dict[str, int] = {}
        for actions in self._actions.values():
            for action in actions:
                by_type[action.type.value] = by_type.get(action.type.value, 0) + 1
        return {
            "total_sessions": len(self._actions),
            "total_actions": sum(by_type.values()),
            "actions_by_type": by_type,
            "max_actions_per_session": self.max_actions_per_session,
        }
