"""
结构哈希工具

为计算图节点提供跨进程稳定的 64 位结构哈希（不依赖 Python 内置
``hash()``，后者对字符串做随机化）。组合方式与 boost::hash_combine 相同。
"""

from __future__ import annotations

import struct
import zlib
from typing import Any

_MASK64: int = (1 << 64) - 1
_GOLDEN: int = 0x9E3779B9


def hash_value(value: Any) -> int:
    """将标量 / 字符串 / 序列映射为稳定的 64 位整数。"""
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value & _MASK64
    if isinstance(value, float):
        # -0.0 与 0.0 比较相等，哈希也必须相等
        if value == 0.0:
            value = 0.0
        return struct.unpack("<Q", struct.pack("<d", value))[0]
    if isinstance(value, str):
        return zlib.crc32(value.encode("utf-8"))
    if isinstance(value, (tuple, list)):
        seed = len(value)
        for item in value:
            seed = hash_combine(seed, item)
        return seed
    raise TypeError(f"无法计算结构哈希: {type(value).__name__}")


def hash_combine(seed: int, value: Any) -> int:
    """``seed ^= h(v) + 0x9e3779b9 + (seed << 6) + (seed >> 2)``，截断到 64 位。"""
    h = hash_value(value)
    return (seed ^ ((h + _GOLDEN + ((seed << 6) & _MASK64) + (seed >> 2)) & _MASK64)) & _MASK64
