"""
张量算子库 (Tensor Operators)

计算图节点使用的逐元素 / 归约 / 形状变换内核，全部基于 PyTorch。
约定：``*_grad`` / ``*_backward`` 内核只向目标梯度 **累加**（+=），从不覆盖。
"""

from __future__ import annotations

import math
from typing import Sequence, Tuple

import torch
import torch.nn.functional as F


# ==================== 累加 ====================


def add_into(target: torch.Tensor, value: torch.Tensor) -> None:
    """
    ``target += value``，支持广播。

    当 *value* 比 *target* 更"宽"（target 在某些维度上为 1 或维度更少）时，
    先沿广播维度求和，再累加。
    """
    if value.shape != target.shape:
        lead = value.dim() - target.dim()
        if lead > 0:
            value = value.sum(dim=tuple(range(lead)))
        dims = tuple(
            i for i, (t, v) in enumerate(zip(target.shape, value.shape))
            if t == 1 and v != 1
        )
        if dims:
            value = value.sum(dim=dims, keepdim=True)
    target.add_(value)


# ==================== 逐元素函数 ====================


def bump(x: torch.Tensor, c: float) -> torch.Tensor:
    """``1[|x| < c]``（clip 的导数）"""
    return (x.abs() < c).to(x.dtype)


def relu_back(x: torch.Tensor) -> torch.Tensor:
    """``1[x > 0]``，x = 0 处为 0"""
    return (x > 0).to(x.dtype)


def prelu(x: torch.Tensor, alpha: float) -> torch.Tensor:
    return torch.where(x > 0, x, alpha * x)


def prelu_back(x: torch.Tensor, alpha: float) -> torch.Tensor:
    return torch.where(x > 0, torch.ones_like(x), torch.full_like(x, alpha))


# ==================== softmax 族（沿最后一维） ====================


def softmax(out: torch.Tensor, x: torch.Tensor) -> None:
    out.copy_(torch.softmax(x, dim=-1))


def softmax_grad(grad: torch.Tensor, adj: torch.Tensor, val: torch.Tensor) -> None:
    """
    雅可比-向量积：``grad += p * (dy - <p, dy>)``

    参见 Martins & Astudillo, "From Softmax to Sparsemax", ICML 2016, 2.5 节。
    """
    dot = (val * adj).sum(dim=-1, keepdim=True)
    grad.add_(val * (adj - dot))


def log_softmax(out: torch.Tensor, x: torch.Tensor) -> None:
    out.copy_(torch.log_softmax(x, dim=-1))


def log_softmax_grad(grad: torch.Tensor, adj: torch.Tensor, val: torch.Tensor) -> None:
    """``grad += dy - exp(val) * sum(dy)``"""
    total = adj.sum(dim=-1, keepdim=True)
    grad.add_(adj - torch.exp(val) * total)


# ==================== 形状变换 ====================


def transpose_nd(out: torch.Tensor, x: torch.Tensor, axes: Sequence[int]) -> None:
    out.copy_(x.permute(*axes))


def transpose_nd_grad(grad: torch.Tensor, adj: torch.Tensor, axes_bw: Sequence[int]) -> None:
    grad.add_(adj.permute(*axes_bw))


def _shift_slices(
    shape: Sequence[int], shift: Sequence[int],
) -> Tuple[Tuple[slice, ...], Tuple[slice, ...]]:
    """返回 ``(dst, src)`` 切片，使 ``dst_region = src_region`` 实现平移。"""
    dst, src = [], []
    for i, n in enumerate(shape):
        s = shift[i] if i < len(shift) else 0
        if s >= 0:
            dst.append(slice(min(s, n), n))
            src.append(slice(0, max(n - s, 0)))
        else:
            dst.append(slice(0, max(n + s, 0)))
            src.append(slice(min(-s, n), n))
    return tuple(dst), tuple(src)


def shift(out: torch.Tensor, x: torch.Tensor, offsets: Sequence[int], pad_value: float) -> None:
    """``out[i] = x[i - offsets]``，越界位置填 *pad_value*。"""
    dst, src = _shift_slices(x.shape, offsets)
    out.fill_(pad_value)
    out[dst] = x[src]


def shift_grad(grad: torch.Tensor, adj: torch.Tensor, offsets: Sequence[int]) -> None:
    """反向平移并累加：``grad[i] += adj[i + offsets]``。"""
    dst, src = _shift_slices(adj.shape, offsets)
    grad[src] += adj[dst]


# ==================== 池化 ====================


def pooling_output_size(size: int, kernel: int, pad: int, stride: int) -> int:
    return (size + 2 * pad - kernel) // stride + 1


def _pool(x: torch.Tensor, kernel: Tuple[int, int], pad: Tuple[int, int],
          stride: Tuple[int, int], mode: str) -> torch.Tensor:
    if mode == "max":
        return F.max_pool2d(x, kernel, stride=stride, padding=pad)
    return F.avg_pool2d(x, kernel, stride=stride, padding=pad, count_include_pad=True)


def pooling_forward(out: torch.Tensor, x: torch.Tensor, kernel: Tuple[int, int],
                    pad: Tuple[int, int], stride: Tuple[int, int], mode: str) -> None:
    out.copy_(_pool(x, kernel, pad, stride, mode))


def pooling_backward(grad: torch.Tensor, x: torch.Tensor, adj: torch.Tensor,
                     kernel: Tuple[int, int], pad: Tuple[int, int],
                     stride: Tuple[int, int], mode: str) -> None:
    """窗口对齐的梯度回传（重叠窗口的贡献相加）。"""
    with torch.enable_grad():
        xi = x.detach().requires_grad_(True)
        y = _pool(xi, kernel, pad, stride, mode)
        (dx,) = torch.autograd.grad(y, xi, grad_outputs=adj)
    grad.add_(dx)


def _masked_windows(x: torch.Tensor, mask: torch.Tensor, width: int,
                    is_even: bool) -> Tuple[torch.Tensor, int, int]:
    cols = x.shape[-1] - 1 if is_even else x.shape[-1]
    out_cols = math.ceil(cols / width)
    masked = x[..., :cols] * mask[..., :cols]
    padding = out_cols * width - cols
    if padding:
        masked = F.pad(masked, (0, padding), value=float("-inf"))
    windows = masked.reshape(*masked.shape[:-1], out_cols, width)
    return windows, cols, out_cols


def pooling_with_masking_forward(out: torch.Tensor, x: torch.Tensor, mask: torch.Tensor,
                                 width: int, is_even: bool) -> None:
    """沿最后一维做宽度为 *width* 的 max 池化，掩码为 0 的位置按 0 参与比较。"""
    windows, _, _ = _masked_windows(x, mask, width, is_even)
    out.copy_(windows.max(dim=-1).values)


def pooling_with_masking_backward(adj: torch.Tensor, grad: torch.Tensor, x: torch.Tensor,
                                  mask: torch.Tensor, width: int, is_even: bool) -> None:
    windows, cols, out_cols = _masked_windows(x, mask, width, is_even)
    idx = windows.argmax(dim=-1, keepdim=True)
    routed = torch.zeros_like(windows).scatter_(-1, idx, adj.unsqueeze(-1))
    routed = routed.reshape(*routed.shape[:-2], out_cols * width)[..., :cols]
    grad[..., :cols] += routed * mask[..., :cols]
