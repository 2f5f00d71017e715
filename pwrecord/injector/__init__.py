# Injector モジュール
# アンカー呼び出し直後へのコード注入と、注入前バックアップの管理

from .backup import BackupManager, BackupRecord, BackupResult, RestoreResult
from .file_injector import FileInjector, InjectionAnchor, InjectionResult, find_anchor

__all__ = [
    "BackupManager",
    "BackupRecord",
    "BackupResult",
    "FileInjector",
    "InjectionAnchor",
    "InjectionResult",
    "RestoreResult",
    "find_anchor",
]
