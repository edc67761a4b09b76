"""
工具模块

包含性能分析、设备分配与结构哈希工具。
"""

from .devices import estimate_replica_memory, get_devices
from .hashing import hash_combine, hash_value
from .profiler import Profiler

__all__ = [
    "Profiler",
    "get_devices",
    "estimate_replica_memory",
    "hash_combine",
    "hash_value",
]
