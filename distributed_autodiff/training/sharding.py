"""
参数分片 (Parameter Sharding)

把长度为 ``total`` 的扁平参数向量切成 ``count`` 个连续、互不重叠的分片：
``shard_size = ceil(total / count)``，按顺序依次取 ``min(shard_size, 剩余)``，
因此末尾的分片可能更短甚至为空。
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class Shard:
    """分片 ``[pos, pos + size)``，归属副本 ``index``。"""
    index: int
    pos: int
    size: int

    @property
    def end(self) -> int:
        return self.pos + self.size


def shard_size(total: int, count: int) -> int:
    return math.ceil(total / count) if total else 0


def compute_shards(total: int, count: int) -> List[Shard]:
    """
    计算分片划分。

    Args:
        total: 参数向量长度（>= 0）
        count: 副本数量（>= 1）

    Returns:
        长度为 *count* 的分片列表，并集恰为 ``[0, total)``
    """
    if count < 1:
        raise ValueError(f"副本数量必须 >= 1，实际为 {count}")
    if total < 0:
        raise ValueError(f"参数总数不能为负，实际为 {total}")

    size = shard_size(total, count)
    shards: List[Shard] = []
    pos = 0
    remaining = total
    for idx in range(count):
        n = min(size, remaining)
        shards.append(Shard(idx, pos, n))
        pos += n
        remaining -= n
    return shards
