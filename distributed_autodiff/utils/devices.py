"""
设备分配 (Device Placement)

为每个图副本选择计算设备：有 CUDA 时按轮询绑定 ``cuda:i``，否则回退 CPU。
"""

from __future__ import annotations

import math
from typing import Dict, List

import torch

# ── 常量 ──────────────────────────────────────────────────────
_GB: float = 1024.0 ** 3

_DTYPE_BYTES: Dict[torch.dtype, int] = {
    torch.float16: 2,
    torch.bfloat16: 2,
    torch.float32: 4,
    torch.float64: 8,
}


def get_devices(count: int) -> List[torch.device]:
    """
    为 *count* 个副本分配设备。

    Args:
        count: 副本数量（>= 1）

    Returns:
        长度为 *count* 的设备列表；GPU 不足时多个副本共享同一块卡
    """
    if count < 1:
        raise ValueError(f"副本数量必须 >= 1，实际为 {count}")
    if not torch.cuda.is_available():
        return [torch.device("cpu") for _ in range(count)]
    gpu_count = torch.cuda.device_count()
    return [torch.device(f"cuda:{i % gpu_count}") for i in range(count)]


def estimate_replica_memory(
    total_params: int,
    num_replicas: int,
    dtype: torch.dtype = torch.float32,
) -> float:
    """
    估算参数 + 梯度缓冲区在所有副本上的总显存（GB）。

    每个副本持有完整的 vals/grads，另加通信器为本分片准备的临时缓冲区。
    """
    bytes_per_element = _DTYPE_BYTES.get(dtype, 4)
    shard = math.ceil(total_params / num_replicas) if num_replicas else 0
    per_replica = (2 * total_params + shard) * bytes_per_element
    return per_replica * num_replicas / _GB
