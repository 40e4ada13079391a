"""有界记忆与会话存储。"""

from tutor_core.memory.system import MemorySystem, StorageStatus, truncate_log

__all__ = ["MemorySystem", "StorageStatus", "truncate_log"]
