"""
テスト共通フィクスチャ・Hypothesis ストラテジー定義

全テストモジュールで共有するフィクスチャとデータ生成器を提供する。
ブラウザを起動する代わりに、evaluate() だけを持つ偽ページ（FakePage）で
キャプチャスクリプトとのやり取りを再現する。
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Optional

import pytest
from hypothesis import strategies as st

from pwrecord.config import RecordingConfig
from pwrecord.models import ActionType, RecordedAction
from pwrecord.recorder.action_store import ActionStore


# ---------------------------------------------------------------------------
# 偽ページ
# ---------------------------------------------------------------------------

class FakePage:
    """キャプチャスクリプトの代わりにキューを保持する偽の Playwright Page。

    drain 式にはキューの先頭から limit 件を返し、active 式には active を返す。
    installed が False の間（ページ遷移直後）は両方とも None を返す。
    """

    def __init__(self, actions: Optional[list[dict[str, Any]]] = None) -> None:
        self.queue: list[dict[str, Any]] = list(actions or [])
        self.active = True
        self.installed = False
        self.calls: list[tuple[str, Any]] = []
        self.start_options: list[dict[str, Any]] = []
        self.on_drain: Optional[Callable[[], None]] = None

    def evaluate(self, expression: str, arg: Any = None) -> Any:
        self.calls.append((expression, arg))
        if "window.__pwrecord = api" in expression:
            # キャプチャスクリプト本体の設置
            self.installed = True
            return None
        if expression.startswith("(limit) =>"):
            if not self.installed:
                return None
            if self.on_drain is not None:
                self.on_drain()
            batch, self.queue = self.queue[:arg], self.queue[arg:]
            return batch
        if "__pwrecord.active : null" in expression:
            return self.active if self.installed else None
        if expression.startswith("(config) =>"):
            self.start_options.append(dict(arg or {}))
            self.active = True
            return None
        if "__pwrecord.stop();" in expression:
            if self.active:
                self.queue.append(raw_action("session:end", {"sessionId": "s", "totalActions": 0}))
            self.active = False
            return None
        raise AssertionError(f"unexpected expression: {expression[:60]}")


def raw_action(action_type: str, data: dict[str, Any], url: str = "https://example.com/") -> dict[str, Any]:
    """ブラウザ側キューに入る形式のアクションを生成する。"""
    return {
        "type": action_type,
        "data": data,
        "timestamp": 1_700_000_000_000,
        "url": url,
        "viewport": {"width": 1280, "height": 720},
    }


# ---------------------------------------------------------------------------
# pytest フィクスチャ
# ---------------------------------------------------------------------------

@pytest.fixture
def config() -> RecordingConfig:
    """デフォルトの記録設定。"""
    return RecordingConfig()


@pytest.fixture
def store() -> ActionStore:
    return ActionStore()


@pytest.fixture
def make_action() -> Callable[..., RecordedAction]:
    """RecordedAction を直接生成するファクトリ。

    CodeGenerator のテストで、ActionStore を経由せずにアクション列を組み立てる。
    """
    counter = {"sequence": 0}

    def _make(
        action_type: ActionType,
        data: Optional[dict[str, Any]] = None,
        url: str = "https://example.com/",
    ) -> RecordedAction:
        counter["sequence"] += 1
        return RecordedAction(
            type=action_type,
            data=dict(data or {}),
            timestamp=1_700_000_000_000 + counter["sequence"],
            url=url,
            session_id="session-1",
            sequence=counter["sequence"],
        )

    return _make


@pytest.fixture
def login_actions(store: ActionStore) -> list[RecordedAction]:
    """ログインフローを ActionStore に記録したアクション列。"""
    session = "login-session"
    store.record(
        session, "session:start",
        {"sessionId": session, "viewport": {"width": 1280, "height": 720}, "userAgent": "UA"},
        {"url": "https://example.com/login", "timestamp": 1000},
    )
    store.record(
        session, "input",
        {"selector": "#email", "value": "user@example.com", "inputType": "text"},
        {"url": "https://example.com/login", "timestamp": 2000},
    )
    store.record(
        session, "click",
        {"selector": '[data-testid="login"]', "coordinates": {"x": 10, "y": 20}},
        {"url": "https://example.com/dashboard", "timestamp": 3000},
    )
    return store.get_session_actions(session)


@pytest.fixture
def anchor_file(tmp_path: Path) -> Path:
    """record(page) を含むテストファイル。"""
    path = tmp_path / "test_flow.py"
    path.write_text(
        "from pwrecord import record\n"
        "\n"
        "\n"
        "def test_flow(page):\n"
        "    # 記録開始\n"
        "    record(page)\n"
        "    assert True\n",
        encoding="utf-8",
    )
    return path


# ---------------------------------------------------------------------------
# Hypothesis ストラテジー
# ---------------------------------------------------------------------------

def make_attribute_value_strategy():
    """引用符・バックスラッシュ・空白を含み得る属性値を生成する。"""
    return st.text(
        alphabet=st.characters(exclude_categories=("Cs", "Cc")),
        min_size=1,
        max_size=40,
    ).filter(lambda s: s.strip() != "")


def make_payload_strategy():
    """ActionStore.record() に渡す任意のペイロード値を生成する。"""
    scalars = st.one_of(
        st.none(),
        st.booleans(),
        st.integers(min_value=-(2 ** 31), max_value=2 ** 31),
        st.text(max_size=200),
    )
    return st.recursive(
        scalars,
        lambda children: st.one_of(
            st.lists(children, max_size=4),
            st.dictionaries(st.text(max_size=10), children, max_size=4),
        ),
        max_leaves=12,
    )


@pytest.fixture
def fake_page() -> FakePage:
    return FakePage()
