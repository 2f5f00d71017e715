"""
BackupManager のユニットテスト

テスト対象:
  - 無効時の no-op（skipped / "backups are disabled"）
  - create_backup(): 命名規則・衝突回避・保持数管理
  - restore_from_backup(): 最新のバックアップからの復元
  - discover_backups(): ディスク上の既存バックアップの取り込み
  - cleanup_backups_for_file() / cleanup_all() / statistics()
"""

from __future__ import annotations

import re
from pathlib import Path

import pytest

from pwrecord.errors import FileAccessError
from pwrecord.injector.backup import BackupManager


@pytest.fixture
def target(tmp_path: Path) -> Path:
    path = tmp_path / "test_sample.py"
    path.write_text("record(page)\n", encoding="utf-8")
    return path


@pytest.fixture
def manager(tmp_path: Path) -> BackupManager:
    return BackupManager(backup_dir=tmp_path / "backups", enabled=True)


class TestDisabled:
    """無効時の振る舞いのテスト。"""

    def test_create_is_skipped(self, tmp_path: Path, target: Path) -> None:
        manager = BackupManager(backup_dir=tmp_path / "backups")
        result = manager.create_backup(target)
        assert result.success is True
        assert result.skipped is True
        assert result.backup_path is None
        assert not (tmp_path / "backups").exists()

    def test_create_is_skipped_even_for_missing_file(self, tmp_path: Path) -> None:
        result = BackupManager().create_backup(tmp_path / "missing.py")
        assert result.skipped is True

    def test_restore_fails(self, target: Path) -> None:
        result = BackupManager().restore_from_backup(target)
        assert result.success is False
        assert result.backup_path is None
        assert result.error == "backups are disabled"

    def test_cleanup_is_noop(self, target: Path) -> None:
        manager = BackupManager()
        assert manager.cleanup_backups_for_file(target) == 0
        assert manager.cleanup_all() == 0

    def test_enable_disable(self, manager: BackupManager) -> None:
        manager.disable()
        assert manager.is_enabled() is False
        manager.enable()
        assert manager.is_enabled() is True


class TestCreateAndRestore:
    """作成と復元のテスト。"""

    def test_backup_name_format(self, manager: BackupManager, target: Path) -> None:
        result = manager.create_backup(target)
        assert result.success and not result.skipped
        assert re.fullmatch(
            r"test_sample\.py\.[0-9a-f]{8}\.\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}\.[0-9a-f]{8}\.backup",
            result.backup_path.name,
        )
        assert result.backup_path.read_text(encoding="utf-8") == "record(page)\n"
        assert result.record.size_bytes == len("record(page)\n")

    def test_names_do_not_collide(self, manager: BackupManager, target: Path) -> None:
        paths = {manager.create_backup(target).backup_path for _ in range(5)}
        assert len(paths) == 5
        assert all(p.exists() for p in paths)

    def test_restore_uses_latest(self, manager: BackupManager, target: Path) -> None:
        manager.create_backup(target)
        target.write_text("second\n", encoding="utf-8")
        latest = manager.create_backup(target).backup_path
        target.write_text("broken\n", encoding="utf-8")

        result = manager.restore_from_backup(target)
        assert result.success is True
        assert result.backup_path == latest
        assert target.read_text(encoding="utf-8") == "second\n"

    def test_restore_without_backup(self, manager: BackupManager, target: Path) -> None:
        result = manager.restore_from_backup(target)
        assert result.success is False
        assert "no backup found" in result.error

    def test_restore_with_deleted_backup_file(self, manager: BackupManager, target: Path) -> None:
        manager.create_backup(target).backup_path.unlink()
        result = manager.restore_from_backup(target)
        assert result.success is False
        assert "missing" in result.error

    def test_missing_file_raises(self, manager: BackupManager, tmp_path: Path) -> None:
        with pytest.raises(FileAccessError):
            manager.create_backup(tmp_path / "missing.py")


class TestRetention:
    """保持数管理のテスト。"""

    def test_oldest_are_deleted(self, tmp_path: Path, target: Path) -> None:
        manager = BackupManager(backup_dir=tmp_path / "backups", enabled=True, max_backups_per_file=3)
        created = [manager.create_backup(target).backup_path for _ in range(5)]

        tracked = [r.backup_path for r in manager.backups_for_file(target)]
        assert tracked == list(reversed(created))[:3]
        assert not created[0].exists()
        assert not created[1].exists()
        assert all(p.exists() for p in created[2:])

    def test_no_cleanup_when_disabled(self, tmp_path: Path, target: Path) -> None:
        manager = BackupManager(
            backup_dir=tmp_path / "backups", enabled=True, max_backups_per_file=2, auto_cleanup=False,
        )
        for _ in range(4):
            manager.create_backup(target)
        assert len(manager.backups_for_file(target)) == 4

    def test_zero_means_unlimited(self, tmp_path: Path, target: Path) -> None:
        manager = BackupManager(backup_dir=tmp_path / "backups", enabled=True, max_backups_per_file=0)
        for _ in range(12):
            manager.create_backup(target)
        assert len(manager.backups_for_file(target)) == 12


class TestCleanupAndDiscovery:
    """削除・統計・既存バックアップ取り込みのテスト。"""

    def test_cleanup_for_file(self, manager: BackupManager, target: Path, tmp_path: Path) -> None:
        other = tmp_path / "test_other.py"
        other.write_text("x = 1\n", encoding="utf-8")
        manager.create_backup(target)
        manager.create_backup(target)
        kept = manager.create_backup(other).backup_path

        assert manager.cleanup_backups_for_file(target) == 2
        assert manager.backups_for_file(target) == []
        assert kept.exists()
        assert manager.cleanup_all() == 1
        assert not kept.exists()

    def test_statistics(self, manager: BackupManager, target: Path) -> None:
        manager.create_backup(target)
        stats = manager.statistics()
        assert stats["enabled"] is True
        assert stats["tracked_files"] == 1
        assert stats["total_backups"] == 1
        assert stats["total_size_bytes"] == len("record(page)\n")

    def test_discover_backups_from_another_process(self, tmp_path: Path, target: Path) -> None:
        first = BackupManager(backup_dir=tmp_path / "backups", enabled=True)
        backup = first.create_backup(target).backup_path
        target.write_text("changed\n", encoding="utf-8")

        second = BackupManager(backup_dir=tmp_path / "backups", enabled=True)
        assert second.restore_from_backup(target).success is False

        found = second.discover_backups(target)
        assert [r.backup_path for r in found] == [backup]
        assert second.restore_from_backup(target).success is True
        assert target.read_text(encoding="utf-8") == "record(page)\n"

    def test_discover_ignores_same_name_in_other_directory(self, tmp_path: Path) -> None:
        """同名の別ファイルのバックアップから復元しないこと。"""
        first = tmp_path / "a" / "test_login.py"
        second = tmp_path / "b" / "test_login.py"
        for path, text in ((first, "A = 1\n"), (second, "B = 1\n")):
            path.parent.mkdir()
            path.write_text(text, encoding="utf-8")

        writer = BackupManager(backup_dir=tmp_path / "backups", enabled=True)
        kept = writer.create_backup(first).backup_path
        writer.create_backup(second)
        first.write_text("changed\n", encoding="utf-8")

        reader = BackupManager(backup_dir=tmp_path / "backups", enabled=True)
        assert [r.backup_path for r in reader.discover_backups(first)] == [kept]
        assert reader.restore_from_backup(first).success is True
        assert first.read_text(encoding="utf-8") == "A = 1\n"
        assert second.read_text(encoding="utf-8") == "B = 1\n"

    def test_discover_without_directory(self, tmp_path: Path, target: Path) -> None:
        manager = BackupManager(backup_dir=tmp_path / "none", enabled=True)
        assert manager.discover_backups(target) == []
