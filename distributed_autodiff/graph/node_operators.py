"""
算子节点 (Operator Nodes)

逐元素一元算子、softmax 族、归约、形状变换以及零拷贝别名节点。
所有 backward 都只向子节点梯度累加（``add_into`` / ``add_``）。
"""

from __future__ import annotations

import math
from typing import Any, List, Optional, Sequence, Tuple

import torch

from ..tensors import tensor_operators as ops
from .node import NaryNodeOp, Node, NodeOp, ShapeError, normalize_axis, num_elements


class UnaryNodeOp(NaryNodeOp):
    """单输入算子；默认输出形状与输入相同。"""

    def __init__(self, a: Node, shape: Optional[Sequence[int]] = None, **kwargs: Any) -> None:
        super().__init__([a], shape, **kwargs)


# ==================== 带标量参数的逐元素算子 ====================


class ScalarAddNodeOp(UnaryNodeOp):
    kind = "scalar_add"

    def __init__(self, a: Node, scalar: float) -> None:
        super().__init__(a)
        self.scalar = float(scalar)

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: torch.add(self.child(0).val(), self.scalar, out=self._val)]

    def backward_ops(self) -> List[NodeOp]:
        return [lambda: ops.add_into(self.child(0).grad(), self.grad())]

    def attributes(self) -> Tuple[Any, ...]:
        return (self.scalar,)


class ScalarMultNodeOp(UnaryNodeOp):
    kind = "scalar_mult"

    def __init__(self, a: Node, scalar: float) -> None:
        super().__init__(a)
        self.scalar = float(scalar)

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: torch.mul(self.child(0).val(), self.scalar, out=self._val)]

    def backward_ops(self) -> List[NodeOp]:
        return [lambda: ops.add_into(self.child(0).grad(), self.scalar * self.grad())]

    def attributes(self) -> Tuple[Any, ...]:
        return (self.scalar,)


class ClipNodeOp(UnaryNodeOp):
    kind = "clip"

    def __init__(self, a: Node, clip: float) -> None:
        super().__init__(a)
        self.clip = float(clip)

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: torch.clamp(self.child(0).val(), -self.clip, self.clip, out=self._val)]

    def backward_ops(self) -> List[NodeOp]:
        x = self.child(0)
        return [lambda: ops.add_into(x.grad(), ops.bump(x.val(), self.clip) * self.grad())]

    def attributes(self) -> Tuple[Any, ...]:
        return (self.clip,)


# ==================== 激活函数 ====================


class SigmoidNodeOp(UnaryNodeOp):
    kind = "sigmoid"

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: torch.sigmoid(self.child(0).val(), out=self._val)]

    def backward_ops(self) -> List[NodeOp]:
        return [lambda: ops.add_into(
            self.child(0).grad(), self.grad() * self._val * (1.0 - self._val))]


class TanhNodeOp(NaryNodeOp):
    """``tanh(x_0 + x_1 + ...)``，输入按广播规则相加。"""

    kind = "tanh"

    def __init__(self, nodes: Sequence[Node]) -> None:
        if not nodes:
            raise ShapeError("tanh: 至少需要一个子节点")
        super().__init__(nodes, self._broadcast_shape(nodes))

    @staticmethod
    def _broadcast_shape(nodes: Sequence[Node]) -> Tuple[int, ...]:
        try:
            return tuple(torch.broadcast_shapes(*(n.shape for n in nodes)))
        except RuntimeError as exc:
            shapes = [n.shape for n in nodes]
            raise ShapeError(f"tanh: 子节点形状无法广播 {shapes}") from exc

    def _forward(self) -> None:
        total = self.child(0).val()
        for c in self.children[1:]:
            total = total + c.val()
        torch.tanh(total.expand(self.shape), out=self._val)

    def forward_ops(self) -> List[NodeOp]:
        return [self._forward]

    def backward_ops(self) -> List[NodeOp]:
        def make(c: Node) -> NodeOp:
            return lambda: ops.add_into(c.grad(), self.grad() * (1.0 - self._val * self._val))
        return [make(c) for c in self.children]


class ReLUNodeOp(UnaryNodeOp):
    kind = "ReLU"

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: torch.clamp(self.child(0).val(), min=0.0, out=self._val)]

    def backward_ops(self) -> List[NodeOp]:
        # dJ/dx += dJ/df * 1[x > 0]
        x = self.child(0)
        return [lambda: ops.add_into(x.grad(), self.grad() * ops.relu_back(x.val()))]


class PReLUNodeOp(UnaryNodeOp):
    """
    参数化 ReLU：``f(x) = x (x > 0), alpha * x (x <= 0)``。

    alpha = 0.01 时即 Leaky ReLU。
    """

    kind = "PReLU"

    def __init__(self, a: Node, alpha: float = 0.01) -> None:
        super().__init__(a)
        self.alpha = float(alpha)

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: self._val.copy_(ops.prelu(self.child(0).val(), self.alpha))]

    def backward_ops(self) -> List[NodeOp]:
        x = self.child(0)
        return [lambda: ops.add_into(x.grad(), self.grad() * ops.prelu_back(x.val(), self.alpha))]

    def attributes(self) -> Tuple[Any, ...]:
        return (self.alpha,)


class SwishNodeOp(UnaryNodeOp):
    """``f(x) = x * sigmoid(x)``，``f'(x) = f(x) + sigmoid(x) * (1 - f(x))``"""

    kind = "swish"

    def forward_ops(self) -> List[NodeOp]:
        def fwd() -> None:
            x = self.child(0).val()
            torch.mul(x, torch.sigmoid(x), out=self._val)
        return [fwd]

    def backward_ops(self) -> List[NodeOp]:
        x = self.child(0)

        def bwd() -> None:
            sig = torch.sigmoid(x.val())
            ops.add_into(x.grad(), self.grad() * (self._val + sig * (1.0 - self._val)))
        return [bwd]


class SoftmaxNodeOp(UnaryNodeOp):
    kind = "softmax"

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: ops.softmax(self._val, self.child(0).val())]

    def backward_ops(self) -> List[NodeOp]:
        return [lambda: ops.softmax_grad(self.child(0).grad(), self.grad(), self._val)]


class LogSoftmaxNodeOp(UnaryNodeOp):
    kind = "logsoftmax"

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: ops.log_softmax(self._val, self.child(0).val())]

    def backward_ops(self) -> List[NodeOp]:
        return [lambda: ops.log_softmax_grad(self.child(0).grad(), self.grad(), self._val)]


# ==================== 归约 ====================


class _AxisReduceNodeOp(UnaryNodeOp):
    """沿单个轴归约，输出在该轴上保留长度 1。"""

    def __init__(self, a: Node, axis: int) -> None:
        self.axis = normalize_axis(a.shape, axis)
        shape = list(a.shape)
        shape[self.axis] = 1
        super().__init__(a, shape)

    def attributes(self) -> Tuple[Any, ...]:
        return (self.axis,)


class SumNodeOp(_AxisReduceNodeOp):
    kind = "sum"

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: torch.sum(self.child(0).val(), dim=self.axis, keepdim=True, out=self._val)]

    def backward_ops(self) -> List[NodeOp]:
        return [lambda: self.child(0).grad().add_(self.grad())]


class MeanNodeOp(_AxisReduceNodeOp):
    kind = "mean"

    def _scale(self) -> float:
        left = num_elements(self.child(0).shape) // max(num_elements(self.shape), 1)
        return 1.0 / left if left else 0.0

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: torch.mul(
            self.child(0).val().sum(dim=self.axis, keepdim=True), self._scale(), out=self._val)]

    def backward_ops(self) -> List[NodeOp]:
        return [lambda: self.child(0).grad().add_(self.grad(), alpha=self._scale())]


# ==================== 初等函数 ====================


class LogNodeOp(UnaryNodeOp):
    kind = "log"

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: torch.log(self.child(0).val(), out=self._val)]

    def backward_ops(self) -> List[NodeOp]:
        x = self.child(0)
        return [lambda: ops.add_into(x.grad(), self.grad() / x.val())]


class ExpNodeOp(UnaryNodeOp):
    kind = "exp"

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: torch.exp(self.child(0).val(), out=self._val)]

    def backward_ops(self) -> List[NodeOp]:
        x = self.child(0)
        return [lambda: ops.add_into(x.grad(), self.grad() * torch.exp(x.val()))]


class SqrtNodeOp(UnaryNodeOp):
    kind = "sqrt"

    def __init__(self, a: Node, epsilon: float = 0.0) -> None:
        super().__init__(a)
        self.epsilon = float(epsilon)

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: torch.sqrt(self.child(0).val() + self.epsilon, out=self._val)]

    def backward_ops(self) -> List[NodeOp]:
        return [lambda: ops.add_into(self.child(0).grad(), 0.5 * self.grad() / self._val)]

    def attributes(self) -> Tuple[Any, ...]:
        return (self.epsilon,)


class SquareNodeOp(UnaryNodeOp):
    kind = "square"

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: torch.mul(self.child(0).val(), self.child(0).val(), out=self._val)]

    def backward_ops(self) -> List[NodeOp]:
        x = self.child(0)
        return [lambda: ops.add_into(x.grad(), 2.0 * x.val() * self.grad())]


class NegNodeOp(UnaryNodeOp):
    kind = "-"

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: torch.neg(self.child(0).val(), out=self._val)]

    def backward_ops(self) -> List[NodeOp]:
        return [lambda: ops.add_into(self.child(0).grad(), -self.grad())]


# ==================== 形状变换 ====================


class TransposeNodeOp(UnaryNodeOp):
    kind = "transpose"

    def __init__(self, a: Node, axes: Sequence[int]) -> None:
        axes = tuple(int(ax) for ax in axes)
        if len(axes) != len(a.shape):
            raise ShapeError(
                f"transpose: 轴排列长度 {len(axes)} 与张量维度 {len(a.shape)} 不一致")
        if sorted(axes) != list(range(len(axes))):
            raise ShapeError(f"transpose: {axes} 不是合法的轴排列")
        super().__init__(a, [a.shape[ax] for ax in axes])
        self.axes = axes
        axes_bw = [0] * len(axes)
        for i, ax in enumerate(axes):
            axes_bw[ax] = i
        self.axes_bw = tuple(axes_bw)

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: ops.transpose_nd(self._val, self.child(0).val(), self.axes)]

    def backward_ops(self) -> List[NodeOp]:
        return [lambda: ops.transpose_nd_grad(self.child(0).grad(), self.grad(), self.axes_bw)]

    def attributes(self) -> Tuple[Any, ...]:
        return (self.axes,)


class ShiftNodeOp(UnaryNodeOp):
    """按偏移平移元素，空出的位置填 *pad_value*；偏移向量短于维度时只平移前几维。"""

    kind = "shift"

    def __init__(self, a: Node, shift: Sequence[int], pad_value: float = 0.0) -> None:
        shift = tuple(int(s) for s in shift)
        if len(shift) > len(a.shape):
            raise ShapeError(f"shift: 偏移维度 {len(shift)} 超过张量维度 {len(a.shape)}")
        super().__init__(a)
        self.shift = shift
        self.pad_value = float(pad_value)

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: ops.shift(self._val, self.child(0).val(), self.shift, self.pad_value)]

    def backward_ops(self) -> List[NodeOp]:
        return [lambda: ops.shift_grad(self.child(0).grad(), self.grad(), self.shift)]

    def attributes(self) -> Tuple[Any, ...]:
        return (self.shift, self.pad_value)


# ==================== 零拷贝别名节点 ====================


class _AliasNodeOp(UnaryNodeOp):
    """
    别名节点基类

    不分配自有存储；``val()`` / ``grad()`` 每次调用都在父节点的存储上
    重新构造视图。父节点保存在 ``children`` 中（强引用），生命周期覆盖别名。
    """

    def __init__(self, a: Node, shape: Sequence[int]) -> None:
        super().__init__(a, shape)
        self.owns_storage = False

    def _view(self, parent: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def layout(self) -> torch.Tensor:
        return self._view(self.child(0).layout())

    def val(self) -> torch.Tensor:
        return self._view(self.child(0).val())

    def grad(self) -> torch.Tensor:
        return self._view(self.child(0).grad())

    def allocate(self) -> int:
        return 0

    def free(self) -> None:
        pass

    def forward(self) -> None:
        pass

    def backward(self) -> None:
        pass

    def init_dependent(self) -> None:
        self.child(0).init_dependent()

    def set_zero_adjoint(self) -> None:
        self.child(0).set_zero_adjoint()


class ReshapeNodeOp(_AliasNodeOp):
    kind = "reshape"

    def __init__(self, a: Node, shape: Sequence[int]) -> None:
        shape = tuple(int(s) for s in shape)
        if num_elements(shape) != num_elements(a.shape):
            raise ShapeError(f"reshape: 无法将 {a.shape} 变形为 {shape}（元素个数不同）")
        try:
            a.layout().view(shape)
        except RuntimeError as exc:
            raise ShapeError(
                f"reshape: {a.kind} 的视图在内存中不连续，无法零拷贝变形为 {shape}") from exc
        super().__init__(a, shape)

    def _view(self, parent: torch.Tensor) -> torch.Tensor:
        return parent.view(self.shape)

    def attributes(self) -> Tuple[Any, ...]:
        return (self.shape,)


class StepNodeOp(_AliasNodeOp):
    """沿 *axis* 选取第 *step* 个切片（该轴长度变为 1）。"""

    kind = "step"

    def __init__(self, a: Node, step: int, axis: int) -> None:
        self.axis = normalize_axis(a.shape, axis)
        if not 0 <= step < a.shape[self.axis]:
            raise ShapeError(
                f"step: 下标 {step} 超出轴 {self.axis} 的范围 [0, {a.shape[self.axis]})")
        self.step = int(step)
        shape = list(a.shape)
        shape[self.axis] = 1
        super().__init__(a, shape)

    def _view(self, parent: torch.Tensor) -> torch.Tensor:
        return parent.narrow(self.axis, self.step, 1)

    def attributes(self) -> Tuple[Any, ...]:
        return (self.step, self.axis)


# ==================== 池化 ====================


class PoolingNodeOp(UnaryNodeOp):
    """固定窗口 2D 池化（输入 NCHW，mode 为 ``max`` 或 ``avg``）。"""

    kind = "pooling"

    def __init__(self, x: Node, height: int, width: int, pad_height: int = 0,
                 pad_width: int = 0, stride_height: int = 1, stride_width: int = 1,
                 mode: str = "max") -> None:
        if len(x.shape) != 4:
            raise ShapeError(f"pooling: 输入必须为 4 维 NCHW，实际为 {x.shape}")
        if mode not in ("max", "avg"):
            raise ShapeError(f"pooling: 未知模式 {mode!r}（可选 'max' / 'avg'）")
        self.kernel = (int(height), int(width))
        self.pad = (int(pad_height), int(pad_width))
        self.stride = (int(stride_height), int(stride_width))
        self.mode = mode
        n, c, h, w = x.shape
        out_h = ops.pooling_output_size(h, self.kernel[0], self.pad[0], self.stride[0])
        out_w = ops.pooling_output_size(w, self.kernel[1], self.pad[1], self.stride[1])
        if out_h < 1 or out_w < 1:
            raise ShapeError(f"pooling: 窗口 {self.kernel} 大于输入 {x.shape}")
        super().__init__(x, (n, c, out_h, out_w))

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: ops.pooling_forward(
            self._val, self.child(0).val(), self.kernel, self.pad, self.stride, self.mode)]

    def backward_ops(self) -> List[NodeOp]:
        x = self.child(0)
        return [lambda: ops.pooling_backward(
            x.grad(), x.val(), self.grad(), self.kernel, self.pad, self.stride, self.mode)]

    def attributes(self) -> Tuple[Any, ...]:
        return (*self.kernel, *self.pad, *self.stride, self.mode)


class PoolingWithMaskingNodeOp(NaryNodeOp):
    """
    带掩码的 max 池化

    x 形状 ``[batch, dim, cols]``，mask 可广播到 x（通常为 ``[batch, 1, cols]``）。
    ``is_even`` 时忽略最后一列。输出 ``[batch, dim, ceil(cols / width)]``，
    最后一个窗口可以更短。mask 不接收梯度。
    """

    kind = "masked_pooling"

    def __init__(self, x: Node, mask: Node, width: int, is_even: bool = False) -> None:
        if len(x.shape) != 3:
            raise ShapeError(f"masked_pooling: 输入必须为 3 维，实际为 {x.shape}")
        if width < 1:
            raise ShapeError(f"masked_pooling: 窗口宽度必须 >= 1，实际为 {width}")
        try:
            torch.broadcast_shapes(x.shape, mask.shape)
        except RuntimeError as exc:
            raise ShapeError(f"masked_pooling: 掩码 {mask.shape} 无法广播到 {x.shape}") from exc
        self.width = int(width)
        self.is_even = bool(is_even)
        batch, dim, cols = x.shape
        cols = cols - 1 if self.is_even else cols
        if cols < 1:
            raise ShapeError(f"masked_pooling: 有效列数为 {cols}")
        super().__init__([x, mask], (batch, dim, math.ceil(cols / self.width)))

    def forward_ops(self) -> List[NodeOp]:
        return [lambda: ops.pooling_with_masking_forward(
            self._val, self.child(0).val(), self.child(1).val(), self.width, self.is_even)]

    def backward_ops(self) -> List[NodeOp]:
        x, mask = self.children
        return [lambda: ops.pooling_with_masking_backward(
            self.grad(), x.grad(), x.val(), mask.val(), self.width, self.is_even)]

    def attributes(self) -> Tuple[Any, ...]:
        return (self.width, self.is_even)
