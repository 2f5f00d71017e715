# Recorder モジュール
# ブラウザ操作のキャプチャ、アクションの検証・保持、記録セッション管理を提供

from .action_store import ACTION_SCHEMAS, ActionStore, sanitize_mapping, sanitize_string
from .channel import BrowserChannel, ScriptEvaluator
from .session import RecordingSession, SessionOutcome, SessionState, record

__all__ = [
    "ACTION_SCHEMAS",
    "ActionStore",
    "BrowserChannel",
    "RecordingSession",
    "ScriptEvaluator",
    "SessionOutcome",
    "SessionState",
    "record",
    "sanitize_mapping",
    "sanitize_string",
]
