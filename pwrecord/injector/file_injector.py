"""
FileInjector — アンカー呼び出し直後への生成コードの安全な注入

Python テストファイルを AST 解析し、アンカー呼び出し（デフォルト: record(...)）を
含む文の直後に生成コードを挿入する。挿入は全か無かで行い、アンカーが見つからない・
注入コードが解析できない・検証に失敗した場合はファイルを一切変更しない。

主な機能:
  - find_anchor(): アンカーを含む最も内側の文を深さ優先で探索（純粋関数）
  - splice_statements(): 探索経路上のノードのみを複製して文リストに挿入
  - inject_after_anchor(): 事前条件チェック → バックアップ → 解析 → 挿入 → 検証 → 書き込み
  - 書式保持モード: 元のソースにテキストとして挿入し、AST が一致しない場合は ast.unparse
  - restore_from_backup() / cleanup_backup(): 失敗時の復旧
"""

from __future__ import annotations

import ast
import codecs
import copy
import logging
import os
import re
import shutil
import tempfile
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from ..errors import (
    AnchorNotFoundError,
    EnvironmentFailure,
    FileAccessError,
    InjectionParseError,
    RecordingError,
    StructuralFailure,
    VerificationError,
)
from .backup import BackupManager

if TYPE_CHECKING:
    from ..config import RecordingConfig

logger = logging.getLogger(__name__)

DEFAULT_ANCHOR_NAME = "record"
DEFAULT_MAX_FILE_SIZE = 1024 * 1024

_STATEMENT_LIST_FIELDS = ("body", "handlers", "orelse", "finalbody", "cases")
"""文リスト（または body を持つ ExceptHandler / match_case のリスト）を保持するフィールド。"""

_LEADING_WS = re.compile(r"^[ \t]*")


# ---------------------------------------------------------------------------
# データクラス
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InjectionAnchor:
    """解析済みソース内のアンカー位置。

    Attributes:
        path: モジュールから文リストを持つノードまでの (フィールド名, 添字) の列
        list_field: 文リストのフィールド名（body / orelse / finalbody）
        index: 文リスト内のアンカー文の添字
        node: アンカー文（同一性の比較にのみ使用し、変更しない）
    """

    path: tuple[tuple[str, int], ...]
    list_field: str
    index: int
    node: ast.stmt = field(compare=False, repr=False)

    @property
    def lineno(self) -> int:
        return self.node.lineno

    @property
    def end_lineno(self) -> int:
        return self.node.end_lineno or self.node.lineno

    def to_dict(self) -> dict[str, Any]:
        return {
            "line": self.lineno,
            "end_line": self.end_lineno,
            "column": self.node.col_offset,
            "index": self.index,
            "depth": len(self.path),
            "node_type": type(self.node).__name__,
        }


@dataclass
class InjectionResult:
    """inject_after_anchor() の結果。

    失敗時も作成済みのバックアップパスを保持し、呼び出し元が復元できるようにする。
    """

    success: bool
    file_path: Path
    backup_path: Optional[Path] = None
    original_size: int = 0
    new_size: int = 0
    anchor_info: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def raise_for_error(self) -> None:
        """失敗した結果であれば、失敗種別に対応する例外を送出する。"""
        if self.success:
            return
        error_class = _ERROR_CLASSES.get(self.error_kind or "", StructuralFailure)
        raise error_class(
            self.error or "injection failed",
            context={
                "path": str(self.file_path),
                "error_kind": self.error_kind,
                "backup_path": str(self.backup_path) if self.backup_path else None,
            },
        )


_ERROR_CLASSES: dict[str, type[RecordingError]] = {
    "parse_error": InjectionParseError,
    "fragment_parse_error": InjectionParseError,
    "anchor_not_found": AnchorNotFoundError,
    "verification_failed": VerificationError,
    "backup_failed": EnvironmentFailure,
    "write_failed": EnvironmentFailure,
}


# ---------------------------------------------------------------------------
# アンカー探索・挿入（純粋関数）
# ---------------------------------------------------------------------------

def call_name(func: ast.expr) -> Optional[str]:
    """呼び出し式の関数名を返す（record / recorder.record → "record"）。"""
    if isinstance(func, ast.Name):
        return func.id
    if isinstance(func, ast.Attribute):
        return func.attr
    return None


def collect_call_names(tree: ast.AST) -> set[str]:
    """木に含まれる全呼び出しの関数名を収集する。"""
    names = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Call):
            name = call_name(node.func)
            if name:
                names.add(name)
    return names


def _contains_call(node: ast.AST, anchor_name: str) -> bool:
    return any(
        isinstance(child, ast.Call) and call_name(child.func) == anchor_name
        for child in ast.walk(node)
    )


def find_anchor(tree: ast.AST, anchor_name: str = DEFAULT_ANCHOR_NAME) -> Optional[InjectionAnchor]:
    """アンカー呼び出しを含む最初の文を深さ優先で探索する。

    アンカーを含む文が入れ子の文リストを持つ場合はその内側を優先し、
    最も内側でアンカーを含む文の位置を返す。見つからない場合は None。
    """
    return _search(tree, (), anchor_name)


def _search(
    node: ast.AST, path: tuple[tuple[str, int], ...], anchor_name: str,
) -> Optional[InjectionAnchor]:
    for field_name in _STATEMENT_LIST_FIELDS:
        children = getattr(node, field_name, None)
        if not isinstance(children, list):
            continue

        for index, child in enumerate(children):
            if not _contains_call(child, anchor_name):
                continue

            # except 節・case 節は文ではないため、その body を探索する
            if isinstance(child, (ast.ExceptHandler, ast.match_case)):
                found = _search(child, path + ((field_name, index),), anchor_name)
                if found is not None:
                    return found
                continue

            inner = _search(child, path + ((field_name, index),), anchor_name)
            if inner is not None:
                return inner
            return InjectionAnchor(path=path, list_field=field_name, index=index, node=child)

    return None


def splice_statements(
    tree: ast.AST, anchor: InjectionAnchor, statements: list[ast.stmt],
) -> ast.AST:
    """アンカー文の直後に statements を挿入した新しい木を返す。

    経路上のノードのみ浅く複製し、元の木は変更しない。
    """
    return _splice(tree, anchor.path, anchor, statements)


def _splice(
    node: ast.AST,
    path: tuple[tuple[str, int], ...],
    anchor: InjectionAnchor,
    statements: list[ast.stmt],
) -> ast.AST:
    clone = copy.copy(node)
    if not path:
        body = list(getattr(node, anchor.list_field))
        if body[anchor.index] is not anchor.node:
            raise ValueError("アンカー位置が木と一致しません")
        body[anchor.index + 1:anchor.index + 1] = statements
        setattr(clone, anchor.list_field, body)
        return clone

    (field_name, index), rest = path[0], path[1:]
    children = list(getattr(node, field_name))
    children[index] = _splice(children[index], rest, anchor, statements)
    setattr(clone, field_name, children)
    return clone


# ---------------------------------------------------------------------------
# FileInjector 本体
# ---------------------------------------------------------------------------

@dataclass
class FileInjector:
    """テストファイルへの生成コード注入を行う。

    Attributes:
        backup_manager: 注入前バックアップ（省略時はバックアップ無効）
        anchor_name: アンカーとみなす呼び出し名
        verify: 書き込み前に再解析・呼び出し名の検証を行うか
        preserve_formatting: 元のソースの書式・コメントを保持して挿入するか
        max_file_size: 注入対象の最大ファイルサイズ（バイト）
    """

    backup_manager: BackupManager = field(default_factory=BackupManager)
    anchor_name: str = DEFAULT_ANCHOR_NAME
    verify: bool = True
    preserve_formatting: bool = True
    max_file_size: int = DEFAULT_MAX_FILE_SIZE

    @classmethod
    def from_config(cls, config: RecordingConfig) -> FileInjector:
        """RecordingConfig から FileInjector を生成する。"""
        return cls(
            backup_manager=config.backup_manager(),
            anchor_name=config.anchorCall,
            verify=config.verifyInjection,
            max_file_size=config.maxFileSize,
        )

    # ----- 事前条件 -----

    def check_file(self, file_path: Path) -> int:
        """注入対象ファイルの事前条件を確認し、ファイルサイズを返す。

        Raises:
            FileAccessError: 存在しない・読めない・書けない・大きすぎる場合
        """
        context = {"path": str(file_path)}
        if not file_path.is_file():
            raise FileAccessError(f"ファイルが存在しません: {file_path}", context=context)
        if not os.access(file_path, os.R_OK):
            raise FileAccessError(f"ファイルを読み取れません: {file_path}", context=context)
        if not os.access(file_path, os.W_OK):
            raise FileAccessError(f"ファイルに書き込めません: {file_path}", context=context)

        size = file_path.stat().st_size
        if size > self.max_file_size:
            raise FileAccessError(
                f"ファイルが大きすぎます: {file_path} ({size} > {self.max_file_size} bytes)",
                context={**context, "size": size, "max_file_size": self.max_file_size},
            )
        return size

    # ----- 注入 -----

    def inject_after_anchor(self, file_path: Path, code: str) -> InjectionResult:
        """アンカー呼び出しを含む文の直後に code を挿入する。

        Args:
            file_path: 注入対象の Python ファイル
            code: 挿入するステートメント群（インデントは自動調整）

        Returns:
            注入結果（失敗時は success=False と error / error_kind）

        Raises:
            FileAccessError: 事前条件を満たさない場合（副作用なし）
        """
        file_path = Path(file_path)
        original_size = self.check_file(file_path)

        raw = file_path.read_bytes()
        has_bom = raw.startswith(codecs.BOM_UTF8)
        try:
            original = raw.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise FileAccessError(
                f"ファイルを UTF-8 として読み取れません: {file_path}",
                context={"path": str(file_path)},
            ) from e

        result = InjectionResult(success=False, file_path=file_path, original_size=original_size)

        try:
            backup = self.backup_manager.create_backup(file_path)
        except EnvironmentFailure as e:
            return self._fail(result, "backup_failed", str(e))
        result.backup_path = backup.backup_path

        try:
            tree = ast.parse(original, filename=str(file_path))
        except SyntaxError as e:
            return self._fail(result, "parse_error", f"parse error: {e.msg} (line {e.lineno})")

        anchor = find_anchor(tree, self.anchor_name)
        if anchor is None:
            return self._fail(
                result, "anchor_not_found", f"no anchor call found: {self.anchor_name}()",
            )
        result.anchor_info = anchor.to_dict()

        fragment = textwrap.dedent(code).strip("\n")
        try:
            fragment_tree = ast.parse(fragment)
        except SyntaxError as e:
            return self._fail(
                result,
                "fragment_parse_error",
                f"parse error in code to inject: {e.msg} (line {e.lineno})",
            )
        if not fragment_tree.body:
            return self._fail(
                result, "fragment_parse_error", "parse error in code to inject: no statements",
            )

        modified = splice_statements(tree, anchor, fragment_tree.body)
        new_text = self._render(original, anchor, fragment, modified)

        if self.verify:
            problem = self._verify(new_text, fragment_tree)
            if problem is not None:
                return self._fail(result, "verification_failed", f"verification failed: {problem}")

        data = new_text.encode("utf-8")
        if has_bom:
            data = codecs.BOM_UTF8 + data
        try:
            self._write_atomic(file_path, data)
        except OSError as e:
            return self._fail(result, "write_failed", f"write failed: {e}")

        result.success = True
        result.new_size = file_path.stat().st_size
        logger.info(
            "コードを注入しました: %s (行 %d の後, %d 文)",
            file_path, anchor.end_lineno, len(fragment_tree.body),
        )
        return result

    # ----- 復旧 -----

    def restore_from_backup(self, file_path: Path, backup_path: Path) -> bool:
        """バックアップの内容で対象ファイルを上書きする。"""
        backup_path = Path(backup_path)
        if not backup_path.is_file():
            logger.error("バックアップが見つかりません: %s", backup_path)
            return False
        try:
            shutil.copyfile(backup_path, file_path)
        except OSError as e:
            logger.error("バックアップからの復元に失敗しました: %s (%s)", file_path, e)
            return False
        logger.info("バックアップから復元しました: %s", file_path)
        return True

    @staticmethod
    def cleanup_backup(backup_path: Path) -> bool:
        """バックアップファイルが存在すれば削除する。"""
        try:
            Path(backup_path).unlink()
        except FileNotFoundError:
            return False
        return True

    # ----- 内部処理 -----

    @staticmethod
    def _fail(result: InjectionResult, kind: str, message: str) -> InjectionResult:
        logger.warning("コード注入に失敗しました: %s (%s)", result.file_path, message)
        result.error = message
        result.error_kind = kind
        return result

    def _render(
        self, original: str, anchor: InjectionAnchor, fragment: str, modified: ast.AST,
    ) -> str:
        """変更後の木をソーステキストに変換する。

        書式保持モードではアンカー文の最終行の後にテキストとして挿入し、
        その解析結果が変更後の木と一致する場合のみ採用する。
        """
        if self.preserve_formatting:
            text = self._text_splice(original, anchor, fragment)
            try:
                if ast.dump(ast.parse(text)) == ast.dump(modified):
                    return text
            except SyntaxError:
                pass
            logger.warning("書式を保持した挿入ができないため ast.unparse で再生成します")

        return ast.unparse(modified) + "\n"

    @staticmethod
    def _text_splice(original: str, anchor: InjectionAnchor, fragment: str) -> str:
        newline = "\r\n" if "\r\n" in original else "\n"
        lines = original.splitlines(keepends=True)

        indent = _LEADING_WS.match(lines[anchor.lineno - 1]).group(0)
        inserted = [
            (indent + line if line.strip() else "") + newline
            for line in fragment.splitlines()
        ]

        end = anchor.end_lineno
        if end <= len(lines) and not lines[end - 1].endswith(("\n", "\r")):
            lines[end - 1] += newline
        return "".join(lines[:end] + inserted + lines[end:])

    @staticmethod
    def _write_atomic(file_path: Path, data: bytes) -> None:
        """同じディレクトリの一時ファイルに書き込んでから置き換える。"""
        fd, tmp_name = tempfile.mkstemp(prefix=f".{file_path.name}.", suffix=".tmp", dir=file_path.parent)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            shutil.copymode(file_path, tmp_path)
            os.replace(tmp_path, file_path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

    @staticmethod
    def _verify(new_text: str, fragment_tree: ast.Module) -> Optional[str]:
        """再解析と呼び出し名の包含を確認し、問題があればその説明を返す。"""
        try:
            new_tree = ast.parse(new_text)
        except SyntaxError as e:
            return f"result is not valid Python ({e.msg}, line {e.lineno})"

        missing = collect_call_names(fragment_tree) - collect_call_names(new_tree)
        if missing:
            return f"injected calls missing from result: {', '.join(sorted(missing))}"
        return None
