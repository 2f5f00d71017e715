"""
CLI エントリポイント — Typer ベースのコマンドラインインターフェース

pwrecord コマンドとして以下のサブコマンドを提供する:
  - init: 設定ファイル（pwrecord.yaml）の雛形生成
  - generate: エクスポート済みセッション JSON → テストモジュール変換
  - inject: 生成コードをテストファイルの record(page) の直後に注入
  - validate-selector: HTML に対するセレクタの一意性確認
  - restore: 注入前バックアップからの復元

記録そのものはテスト内の record(page) 呼び出しで開始する。
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import typer

if TYPE_CHECKING:
    from .config import RecordingConfig
    from .generator.code_generator import GenerationResult

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Typer アプリ定義
# ---------------------------------------------------------------------------

app = typer.Typer(
    help=(
        "pwrecord — ブラウザ操作の記録から pytest-playwright テストを生成\n\n"
        "基本の流れ:\n"
        "  1. テスト内に record(page) を書く\n"
        "  2. pytest --headed で実行し、ブラウザを操作して停止ボタンを押す\n"
        "  3. record(page) の直後に操作のコードが挿入されます\n\n"
        "詳しくは各コマンドに --help を付けてください。"
    ),
    no_args_is_help=True,
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="詳細ログを表示"),
) -> None:
    """pwrecord — ブラウザ操作の記録から pytest-playwright テストを生成"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# init コマンド
# ---------------------------------------------------------------------------

@app.command()
def init(
    project_dir: Path = typer.Argument(
        Path("."), help="プロジェクトディレクトリ（デフォルト: カレント）",
    ),
    force: bool = typer.Option(False, "--force", help="既存の設定ファイルを上書きする"),
) -> None:
    """デフォルト値を書き込んだ pwrecord.yaml を生成する。"""
    from .config import DEFAULT_CONFIG_FILE, RecordingConfig, save_config_file

    config_path = project_dir / DEFAULT_CONFIG_FILE
    if config_path.exists() and not force:
        typer.echo(f"  スキップ: {config_path}（既存）")
        return

    try:
        save_config_file(RecordingConfig(), config_path)
    except OSError as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"  作成: {config_path}")


# ---------------------------------------------------------------------------
# generate コマンド
# ---------------------------------------------------------------------------

@app.command()
def generate(
    session_file: Path = typer.Argument(..., help="エクスポート済みのセッション JSON"),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="出力先 .py ファイル（省略時は標準出力）",
    ),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="テスト名"),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="設定ファイル（省略時は ./pwrecord.yaml）",
    ),
) -> None:
    """記録セッションの JSON から pytest-playwright のテストモジュールを生成する。"""
    from .errors import RecordingError

    try:
        code = _generate_from_session(session_file, name, config_file).code
    except RecordingError as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)

    if output is None:
        typer.echo(code, nl=False)
        return

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(code, encoding="utf-8")
    typer.echo(f"✓ 生成完了: {output}")


# ---------------------------------------------------------------------------
# inject コマンド
# ---------------------------------------------------------------------------

@app.command()
def inject(
    target: Path = typer.Argument(..., help="注入先のテストファイル"),
    code_file: Optional[Path] = typer.Option(
        None, "--code-file", help="注入するステートメントを書いたファイル",
    ),
    session_file: Optional[Path] = typer.Option(
        None, "--session", "-s", help="コードを生成するセッション JSON",
    ),
    backup: Optional[bool] = typer.Option(
        None, "--backup/--no-backup", help="注入前にバックアップを作成する（省略時は設定値）",
    ),
    anchor: Optional[str] = typer.Option(
        None, "--anchor", help="アンカーとみなす呼び出し名（省略時は設定値）",
    ),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="設定ファイル（省略時は ./pwrecord.yaml）",
    ),
) -> None:
    """生成コードをテストファイル内のアンカー呼び出しの直後に注入する。"""
    from .config import load_config
    from .errors import RecordingError
    from .injector.file_injector import FileInjector

    if (code_file is None) == (session_file is None):
        typer.echo("エラー: --code-file と --session のどちらか一方を指定してください", err=True)
        raise typer.Exit(code=1)

    overrides: dict[str, object] = {}
    if backup is not None:
        overrides["backupFiles"] = backup
    if anchor is not None:
        overrides["anchorCall"] = anchor

    try:
        config = load_config(config_file, overrides=overrides)
        if code_file is not None:
            code = code_file.read_text(encoding="utf-8")
        else:
            code = _generate_from_session(session_file, None, config_file, config).body

        result = FileInjector.from_config(config).inject_after_anchor(target, code)
        result.raise_for_error()
    except (RecordingError, OSError) as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"✓ 注入完了: {target} (行 {result.anchor_info['end_line']} の後)")
    if result.backup_path is not None:
        typer.echo(f"  バックアップ: {result.backup_path}")


# ---------------------------------------------------------------------------
# validate-selector コマンド
# ---------------------------------------------------------------------------

@app.command("validate-selector")
def validate_selector(
    selector: str = typer.Argument(..., help="検証する CSS セレクタ"),
    html_file: Path = typer.Argument(..., help="検証に使う HTML ファイル"),
) -> None:
    """CSS セレクタが HTML 内でちょうど 1 要素に一致するか確認する。"""
    from .selector import SelectorStrategy

    try:
        html = html_file.read_text(encoding="utf-8")
    except OSError as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)

    validation = SelectorStrategy().validate(selector, html)
    if not validation.is_valid:
        typer.echo(f"✗ {selector}: 不正なセレクタです ({validation.error})", err=True)
        raise typer.Exit(code=1)
    if not validation.is_unique:
        typer.echo(f"✗ {selector}: {validation.match_count} 要素に一致しました", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"✓ {selector}: 一意に一致します")


# ---------------------------------------------------------------------------
# restore コマンド
# ---------------------------------------------------------------------------

@app.command()
def restore(
    target: Path = typer.Argument(..., help="復元するテストファイル"),
    backup_file: Optional[Path] = typer.Option(
        None, "--backup", "-b", help="復元に使うバックアップ（省略時は最新のもの）",
    ),
    backup_dir: Optional[Path] = typer.Option(
        None, "--backup-dir", help="バックアップディレクトリ（省略時は設定値）",
    ),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="設定ファイル（省略時は ./pwrecord.yaml）",
    ),
) -> None:
    """注入前に作成したバックアップからテストファイルを復元する。"""
    from .config import load_config
    from .errors import RecordingError
    from .injector.backup import BackupManager
    from .injector.file_injector import FileInjector

    if backup_file is not None:
        if not FileInjector().restore_from_backup(target, backup_file):
            typer.echo(f"エラー: 復元に失敗しました: {backup_file}", err=True)
            raise typer.Exit(code=1)
        typer.echo(f"✓ 復元完了: {target} ← {backup_file}")
        return

    try:
        config = load_config(config_file)
    except RecordingError as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)

    manager = BackupManager(
        backup_dir=backup_dir or Path(config.backupDirectory),
        enabled=True,
        auto_cleanup=False,
    )
    manager.discover_backups(target)
    result = manager.restore_from_backup(target)
    if not result.success:
        typer.echo(f"エラー: {result.error}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"✓ 復元完了: {target} ← {result.backup_path}")


# ---------------------------------------------------------------------------
# 内部処理
# ---------------------------------------------------------------------------

def _generate_from_session(
    session_file: Path,
    name: Optional[str],
    config_file: Optional[Path],
    config: Optional[RecordingConfig] = None,
) -> GenerationResult:
    """セッション JSON を読み込み、テストコードを生成する。"""
    from .config import load_config
    from .errors import FileAccessError, InvalidInputError
    from .generator.code_generator import CodeGenerator
    from .recorder.action_store import ActionStore

    try:
        text = session_file.read_text(encoding="utf-8")
    except OSError as exc:
        raise FileAccessError(
            f"セッションファイルを読み込めません: {session_file}",
            context={"path": str(session_file)},
        ) from exc

    try:
        snapshot = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidInputError(f"セッション JSON を解析できません: {exc}") from exc

    if config is None:
        config = load_config(config_file)
    store = ActionStore(config.maxActionsPerSession)
    store.import_session(snapshot)
    actions = store.get_session_actions(snapshot["sessionId"])
    return CodeGenerator(config).generate_test(actions, name)
