"""
BackupManager — 注入前バックアップの作成・復元・保持数管理

コード注入の前に対象ファイルを退避し、失敗時に最新のバックアップから
復元できるようにする。無効化されている場合、全ての操作は副作用のない
no-op として成功（skipped）を返す。

主な機能:
  - create_backup(): バックアップ作成（<名前>.<パスのハッシュ>.<日時>.<乱数>.backup）
  - discover_backups(): 別プロセスで作成された同一パスのバックアップの取り込み
  - restore_from_backup(): 最新のバックアップから復元
  - cleanup_backups_for_file() / cleanup_all(): バックアップの削除
  - 保持数（max_backups_per_file）を超えた古いバックアップの自動削除
  - statistics(): 追跡中のバックアップ統計
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..errors import EnvironmentFailure, FileAccessError

logger = logging.getLogger(__name__)

MAX_BACKUP_FILE_SIZE = 10 * 1024 * 1024
"""バックアップ対象の最大ファイルサイズ（10 MiB）。"""


# ---------------------------------------------------------------------------
# 結果データクラス
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BackupRecord:
    """作成済みバックアップ 1 件の情報。"""

    original_path: Path
    backup_path: Path
    created_at: datetime
    size_bytes: int


@dataclass(frozen=True)
class BackupResult:
    """create_backup() の結果。無効時は skipped=True / backup_path=None。"""

    success: bool
    skipped: bool = False
    backup_path: Optional[Path] = None
    record: Optional[BackupRecord] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class RestoreResult:
    """restore_from_backup() の結果。"""

    success: bool
    backup_path: Optional[Path] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# BackupManager 本体
# ---------------------------------------------------------------------------

@dataclass
class BackupManager:
    """ファイル毎のバックアップを管理する。

    Attributes:
        backup_dir: バックアップ保存ディレクトリ
        enabled: バックアップを作成するか
        max_backups_per_file: ファイル毎の保持数
        auto_cleanup: 保持数超過時に古いものを削除するか
    """

    backup_dir: Path = field(default_factory=lambda: Path(".pwrecord-backups"))
    enabled: bool = False
    max_backups_per_file: int = 10
    auto_cleanup: bool = True
    _tracked: dict[str, list[BackupRecord]] = field(default_factory=dict, init=False, repr=False)

    # ----- 有効・無効 -----

    def enable(self) -> None:
        self.enabled = True

    def disable(self) -> None:
        self.enabled = False

    def is_enabled(self) -> bool:
        return self.enabled

    # ----- 作成 -----

    def create_backup(self, file_path: Path) -> BackupResult:
        """対象ファイルのバックアップを作成する。

        Args:
            file_path: バックアップ対象のファイル

        Returns:
            作成結果（無効時は skipped=True）

        Raises:
            FileAccessError: 対象ファイルが存在しない・読めない・大きすぎる場合
            EnvironmentFailure: バックアップディレクトリを作成・書き込みできない場合
        """
        if not self.enabled:
            return BackupResult(success=True, skipped=True)

        file_path = Path(file_path)
        if not file_path.is_file():
            raise FileAccessError(
                f"バックアップ対象のファイルが存在しません: {file_path}",
                context={"path": str(file_path)},
            )
        size = file_path.stat().st_size
        if size > MAX_BACKUP_FILE_SIZE:
            raise FileAccessError(
                f"バックアップ対象のファイルが大きすぎます: {file_path} ({size} bytes)",
                context={"path": str(file_path), "size": size},
            )

        now = datetime.now()
        backup_path = self.backup_dir / self._backup_name(file_path, now)
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy(file_path, backup_path)
        except OSError as e:
            raise EnvironmentFailure(
                f"バックアップの作成に失敗しました: {e}",
                context={"path": str(file_path), "backup_dir": str(self.backup_dir)},
                recovery_suggestion="バックアップディレクトリの権限を確認してください",
            ) from e

        record = BackupRecord(
            original_path=file_path,
            backup_path=backup_path,
            created_at=now,
            size_bytes=size,
        )
        records = self._tracked.setdefault(self._key(file_path), [])
        records.insert(0, record)
        logger.info("バックアップを作成しました: %s → %s", file_path, backup_path)

        if self.auto_cleanup:
            self._enforce_retention(file_path)

        return BackupResult(success=True, backup_path=backup_path, record=record)

    # ----- 復元 -----

    def restore_from_backup(self, file_path: Path) -> RestoreResult:
        """最新のバックアップで対象ファイルを上書きする。"""
        if not self.enabled:
            return RestoreResult(success=False, error="backups are disabled")

        file_path = Path(file_path)
        records = self._tracked.get(self._key(file_path), [])
        if not records:
            return RestoreResult(success=False, error=f"no backup found for {file_path}")

        latest = records[0]
        if not latest.backup_path.exists():
            return RestoreResult(
                success=False,
                backup_path=latest.backup_path,
                error=f"backup file is missing: {latest.backup_path}",
            )

        try:
            shutil.copyfile(latest.backup_path, file_path)
        except OSError as e:
            logger.error("バックアップからの復元に失敗しました: %s (%s)", file_path, e)
            return RestoreResult(success=False, backup_path=latest.backup_path, error=str(e))

        logger.info("バックアップから復元しました: %s ← %s", file_path, latest.backup_path)
        return RestoreResult(success=True, backup_path=latest.backup_path)

    # ----- 参照・削除 -----

    def backups_for_file(self, file_path: Path) -> list[BackupRecord]:
        """対象ファイルのバックアップを新しい順で返す。"""
        return list(self._tracked.get(self._key(Path(file_path)), []))

    def discover_backups(self, file_path: Path) -> list[BackupRecord]:
        """backup_dir に残っている対象ファイルのバックアップを追跡対象に取り込む。

        別プロセスで作成されたバックアップから復元する場合に使用する。
        戻り値は新しい順。
        """
        file_path = Path(file_path)
        if not self.backup_dir.is_dir():
            return self.backups_for_file(file_path)

        known = {r.backup_path for r in self._tracked.get(self._key(file_path), [])}
        found = []
        prefix = f"{file_path.name}.{self._path_digest(file_path)}."
        for path in sorted(self.backup_dir.iterdir()):
            if not (path.name.startswith(prefix) and path.name.endswith(".backup")):
                continue
            if path in known:
                continue
            stat = path.stat()
            found.append(BackupRecord(
                original_path=file_path,
                backup_path=path,
                created_at=datetime.fromtimestamp(stat.st_mtime),
                size_bytes=stat.st_size,
            ))

        records = self._tracked.setdefault(self._key(file_path), [])
        records.extend(found)
        records.sort(key=lambda r: (r.created_at, r.backup_path.name), reverse=True)
        logger.debug("既存のバックアップを %d 件検出しました: %s", len(found), file_path)
        return list(records)

    def cleanup_backups_for_file(self, file_path: Path) -> int:
        """対象ファイルの全バックアップを削除し、削除件数を返す。"""
        if not self.enabled:
            return 0
        records = self._tracked.pop(self._key(Path(file_path)), [])
        return sum(1 for record in records if self._delete(record.backup_path))

    def cleanup_all(self) -> int:
        """追跡中の全バックアップを削除し、削除件数を返す。"""
        if not self.enabled:
            return 0
        deleted = 0
        for records in self._tracked.values():
            deleted += sum(1 for record in records if self._delete(record.backup_path))
        self._tracked.clear()
        return deleted

    def statistics(self) -> dict[str, Any]:
        """追跡中のバックアップ統計を返す。"""
        all_records = [r for records in self._tracked.values() for r in records]
        return {
            "enabled": self.enabled,
            "backup_dir": str(self.backup_dir),
            "tracked_files": len(self._tracked),
            "total_backups": len(all_records),
            "total_size_bytes": sum(r.size_bytes for r in all_records),
            "max_backups_per_file": self.max_backups_per_file,
            "auto_cleanup": self.auto_cleanup,
        }

    # ----- 内部処理 -----

    @staticmethod
    def _key(file_path: Path) -> str:
        return str(file_path.resolve())

    @staticmethod
    def _path_digest(file_path: Path) -> str:
        """元ファイルの絶対パスから求める 8 桁のハッシュ。同名の別ファイルを区別する。"""
        return hashlib.sha256(str(file_path.resolve()).encode("utf-8")).hexdigest()[:8]

    @classmethod
    def _backup_name(cls, file_path: Path, now: datetime) -> str:
        """同一時刻の連続呼び出しでも衝突しないバックアップファイル名を生成する。"""
        return (
            f"{file_path.name}.{cls._path_digest(file_path)}."
            f"{now.strftime('%Y-%m-%d_%H-%M-%S')}.{secrets.token_hex(4)}.backup"
        )

    def _enforce_retention(self, file_path: Path) -> None:
        # 0 は保持数無制限
        if self.max_backups_per_file <= 0:
            return
        records = self._tracked.get(self._key(file_path), [])
        excess = records[self.max_backups_per_file:]
        if not excess:
            return
        del records[self.max_backups_per_file:]
        for record in excess:
            self._delete(record.backup_path)
        logger.debug("古いバックアップを %d 件削除しました: %s", len(excess), file_path)

    @staticmethod
    def _delete(path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("バックアップの削除に失敗しました: %s (%s)", path, e)
            return False
        return True
