"""
FileInjector のユニットテスト

テスト対象:
  - find_anchor(): 入れ子の文リスト・except 節・match 文の探索
  - splice_statements(): 元の木を変更しない挿入
  - inject_after_anchor(): 成功時の書式保持、失敗種別毎の全か無か
  - check_file(): 事前条件（存在・サイズ）
  - restore_from_backup() / cleanup_backup()
"""

from __future__ import annotations

import ast
import codecs
import os
from pathlib import Path

import pytest

from pwrecord.errors import AnchorNotFoundError, FileAccessError, InjectionParseError
from pwrecord.injector import file_injector
from pwrecord.injector.backup import BackupManager
from pwrecord.injector.file_injector import (
    FileInjector,
    collect_call_names,
    find_anchor,
    splice_statements,
)


def _write(tmp_path: Path, text: str, name: str = "test_target.py") -> Path:
    path = tmp_path / name
    path.write_bytes(text.encode("utf-8"))
    return path


# ===========================================================================
# アンカー探索
# ===========================================================================

class TestFindAnchor:
    """find_anchor() のテスト。"""

    def test_innermost_statement(self) -> None:
        tree = ast.parse(
            "def test_a(page):\n"
            "    with ctx():\n"
            "        record(page)\n"
        )
        anchor = find_anchor(tree)
        assert anchor is not None
        assert anchor.lineno == 3
        assert anchor.list_field == "body"
        assert anchor.path == (("body", 0), ("body", 0))

    def test_attribute_call(self) -> None:
        anchor = find_anchor(ast.parse("x = 1\nrecorder.record(page)\n"))
        assert anchor is not None and anchor.index == 1

    def test_first_match_wins(self) -> None:
        anchor = find_anchor(ast.parse("record(a)\nrecord(b)\n"))
        assert anchor.lineno == 1

    def test_except_handler_and_finally(self) -> None:
        tree = ast.parse(
            "try:\n"
            "    pass\n"
            "except ValueError:\n"
            "    record(page)\n"
        )
        anchor = find_anchor(tree)
        assert anchor.path == (("body", 0), ("handlers", 0))
        assert anchor.lineno == 4

    def test_match_case(self) -> None:
        tree = ast.parse(
            "match mode:\n"
            "    case 'rec':\n"
            "        record(page)\n"
        )
        anchor = find_anchor(tree)
        assert anchor.path == (("body", 0), ("cases", 0))

    def test_expression_statement_containing_call(self) -> None:
        anchor = find_anchor(ast.parse("outcome = record(page, timeout=5)\n"))
        assert anchor is not None
        assert anchor.to_dict()["node_type"] == "Assign"

    def test_custom_anchor_name(self) -> None:
        tree = ast.parse("record(page)\nstart_recording(page)\n")
        assert find_anchor(tree, "start_recording").index == 1

    def test_not_found(self) -> None:
        assert find_anchor(ast.parse("def test_x():\n    pass\n")) is None


class TestSpliceStatements:
    """splice_statements() のテスト。"""

    def test_original_tree_is_unchanged(self) -> None:
        tree = ast.parse("def f():\n    record(page)\n    done()\n")
        before = ast.dump(tree)
        anchor = find_anchor(tree)

        modified = splice_statements(tree, anchor, ast.parse("a()\nb()\n").body)

        assert ast.dump(tree) == before
        body = modified.body[0].body
        assert [ast.unparse(s) for s in body] == ["record(page)", "a()", "b()", "done()"]

    def test_reuse_across_retries(self) -> None:
        """同じ木に対して複数回挿入しても、互いに影響しないこと。"""
        tree = ast.parse("record(page)\n")
        anchor = find_anchor(tree)
        first = splice_statements(tree, anchor, ast.parse("a()").body)
        second = splice_statements(tree, anchor, ast.parse("b()").body)
        assert ast.unparse(first) == "record(page)\na()"
        assert ast.unparse(second) == "record(page)\nb()"


# ===========================================================================
# 注入
# ===========================================================================

class TestInjectAfterAnchor:
    """inject_after_anchor() のテスト。"""

    def test_single_anchor_at_end_of_block(self, tmp_path: Path) -> None:
        original = "def test_x(page):\n    record(page)\n"
        path = _write(tmp_path, original)

        result = FileInjector().inject_after_anchor(path, 'page.goto("/")')

        assert result.success is True
        assert result.error is None
        assert result.new_size > result.original_size == len(original)
        names = collect_call_names(ast.parse(path.read_text(encoding="utf-8")))
        assert {"record", "goto"} <= names

    def test_formatting_and_comments_preserved(self, anchor_file: Path) -> None:
        result = FileInjector().inject_after_anchor(
            anchor_file, "# Click\npage.locator(\"#a\").click()\n",
        )
        assert result.success
        assert result.anchor_info["line"] == 6
        assert anchor_file.read_text(encoding="utf-8") == (
            "from pwrecord import record\n"
            "\n"
            "\n"
            "def test_flow(page):\n"
            "    # 記録開始\n"
            "    record(page)\n"
            "    # Click\n"
            '    page.locator("#a").click()\n'
            "    assert True\n"
        )

    def test_indented_fragment_is_dedented(self, anchor_file: Path) -> None:
        result = FileInjector().inject_after_anchor(anchor_file, "    a()\n    b()\n")
        assert result.success
        assert "    a()\n    b()\n    assert True\n" in anchor_file.read_text(encoding="utf-8")

    def test_multiline_anchor_statement(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "def test_x(page):\n    record(\n        page,\n    )\n    done()\n")
        result = FileInjector().inject_after_anchor(path, "a()")
        assert result.success
        assert path.read_text(encoding="utf-8") == (
            "def test_x(page):\n    record(\n        page,\n    )\n    a()\n    done()\n"
        )

    def test_crlf_line_endings_preserved(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "def test_x(page):\r\n    record(page)\r\n    done()\r\n")
        result = FileInjector().inject_after_anchor(path, "a()")
        assert result.success
        assert path.read_bytes() == b"def test_x(page):\r\n    record(page)\r\n    a()\r\n    done()\r\n"

    def test_utf8_bom_preserved(self, tmp_path: Path) -> None:
        """BOM 付きのファイルにも注入でき、BOM が残ること。"""
        path = tmp_path / "test_bom.py"
        path.write_bytes(codecs.BOM_UTF8 + b"def test_x(page):\n    record(page)\n")
        result = FileInjector().inject_after_anchor(path, "a()")
        assert result.success is True
        assert path.read_bytes() == codecs.BOM_UTF8 + b"def test_x(page):\n    record(page)\n    a()\n"

    def test_one_line_compound_falls_back_to_unparse(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "if ready: record(page)\n")
        result = FileInjector().inject_after_anchor(path, "a()")
        assert result.success
        tree = ast.parse(path.read_text(encoding="utf-8"))
        assert ast.unparse(tree.body[0]) == "if ready:\n    record(page)\n    a()"

    def test_no_anchor_leaves_file_unchanged(self, tmp_path: Path) -> None:
        original = "def test_x(page):\n    page.goto('/')\n"
        path = _write(tmp_path, original)
        before = path.read_bytes()

        result = FileInjector().inject_after_anchor(path, "a()")

        assert result.success is False
        assert result.error_kind == "anchor_not_found"
        assert "anchor" in result.error
        assert path.read_bytes() == before
        with pytest.raises(AnchorNotFoundError):
            result.raise_for_error()

    def test_source_parse_error(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "def broken(:\n    record(page)\n")
        before = path.read_bytes()
        result = FileInjector().inject_after_anchor(path, "a()")
        assert result.error_kind == "parse_error"
        assert result.error.startswith("parse error:")
        assert path.read_bytes() == before

    @pytest.mark.parametrize("fragment", ["a(", "", "   \n"])
    def test_fragment_parse_error(self, anchor_file: Path, fragment: str) -> None:
        before = anchor_file.read_bytes()
        result = FileInjector().inject_after_anchor(anchor_file, fragment)
        assert result.error_kind == "fragment_parse_error"
        assert result.error.startswith("parse error in code to inject")
        assert anchor_file.read_bytes() == before
        with pytest.raises(InjectionParseError):
            result.raise_for_error()

    def test_failure_after_backup_reports_backup_path(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "x = 1\n")
        injector = FileInjector(BackupManager(backup_dir=tmp_path / "bk", enabled=True))
        result = injector.inject_after_anchor(path, "a()")
        assert result.success is False
        assert result.backup_path is not None and result.backup_path.exists()
        assert injector.restore_from_backup(path, result.backup_path) is True
        assert path.read_text(encoding="utf-8") == "x = 1\n"

    def test_verification_failure_leaves_file_unchanged(
        self, anchor_file: Path, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        before = anchor_file.read_bytes()
        monkeypatch.setattr(FileInjector, "_verify", staticmethod(lambda text, tree: "calls differ"))
        result = FileInjector().inject_after_anchor(anchor_file, "a()")
        assert result.success is False
        assert result.error_kind == "verification_failed"
        assert result.error == "verification failed: calls differ"
        assert anchor_file.read_bytes() == before

    def test_backup_failure_leaves_file_unchanged(self, anchor_file: Path, tmp_path: Path) -> None:
        """バックアップディレクトリを作成できない場合、対象に触れないこと。"""
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("", encoding="utf-8")
        before = anchor_file.read_bytes()

        injector = FileInjector(BackupManager(backup_dir=blocker / "bk", enabled=True))
        result = injector.inject_after_anchor(anchor_file, "a()")

        assert result.success is False
        assert result.error_kind == "backup_failed"
        assert result.backup_path is None
        assert anchor_file.read_bytes() == before

    def test_write_failure_leaves_file_unchanged(
        self, anchor_file: Path, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def refuse(src, dst):
            raise PermissionError("read-only file system")

        before = anchor_file.read_bytes()
        monkeypatch.setattr(file_injector.os, "replace", refuse)
        result = FileInjector().inject_after_anchor(anchor_file, "a()")

        assert result.success is False
        assert result.error_kind == "write_failed"
        assert "read-only file system" in result.error
        assert anchor_file.read_bytes() == before
        assert [p.name for p in anchor_file.parent.iterdir() if p.suffix == ".tmp"] == []

    def test_successful_injection_with_backup(self, anchor_file: Path, tmp_path: Path) -> None:
        original = anchor_file.read_bytes()
        injector = FileInjector(BackupManager(backup_dir=tmp_path / "bk", enabled=True))
        result = injector.inject_after_anchor(anchor_file, "a()")
        assert result.success
        assert result.backup_path.read_bytes() == original
        assert FileInjector.cleanup_backup(result.backup_path) is True
        assert FileInjector.cleanup_backup(result.backup_path) is False


# ===========================================================================
# 事前条件
# ===========================================================================

class TestPreconditions:
    """check_file() のテスト。"""

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileAccessError, match="存在しません"):
            FileInjector().inject_after_anchor(tmp_path / "missing.py", "a()")

    def test_oversized_file(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "record(page)\n" + "#" * 200 + "\n")
        before = path.read_bytes()
        with pytest.raises(FileAccessError, match="大きすぎます"):
            FileInjector(max_file_size=100).inject_after_anchor(path, "a()")
        assert path.read_bytes() == before

    @pytest.mark.parametrize(
        "denied, message",
        [(os.R_OK, "読み取れません"), (os.W_OK, "書き込めません")],
    )
    def test_permission_denied(
        self, anchor_file: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
        denied: int, message: str,
    ) -> None:
        """権限の無いファイルは副作用なく FileAccessError になること。"""
        before = anchor_file.read_bytes()
        monkeypatch.setattr(file_injector.os, "access", lambda path, mode: mode != denied)
        injector = FileInjector(BackupManager(backup_dir=tmp_path / "bk", enabled=True))

        with pytest.raises(FileAccessError, match=message):
            injector.inject_after_anchor(anchor_file, "a()")
        assert anchor_file.read_bytes() == before
        assert not (tmp_path / "bk").exists()

    def test_file_access_error_is_invalid_input(self, tmp_path: Path) -> None:
        """事前条件違反は入力不正としても捕捉できること。"""
        with pytest.raises(ValueError):
            FileInjector().check_file(tmp_path / "missing.py")

    def test_restore_with_missing_backup(self, anchor_file: Path, tmp_path: Path) -> None:
        assert FileInjector().restore_from_backup(anchor_file, tmp_path / "nope.backup") is False
