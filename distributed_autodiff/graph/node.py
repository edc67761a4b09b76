"""
计算图节点 (Graph Node)

计算图中的一个顶点：持有前向值张量、惰性分配的梯度张量以及子节点引用。
子节点以强引用保存（同一节点可被多个父节点引用，构成 DAG），
因此别名节点（reshape / step）始终能保证其父节点存活。

节点契约：
- ``forward()`` 幂等：相同输入得到相同输出，无隐藏状态
- ``backward()`` 只向子节点梯度 **累加**，从不覆盖
- ``hash()`` / ``equal()`` 提供结构身份，供图构建器做公共子表达式消除
"""

from __future__ import annotations

import itertools
import logging
from typing import Any, Callable, List, Optional, Sequence, Tuple

import torch

from ..utils.hashing import hash_combine

_logger = logging.getLogger("distributed_autodiff.graph")

NodeOp = Callable[[], None]
Shape = Tuple[int, ...]

_name_counter = itertools.count()


# ══════════════════════════════════════════════════════════════════
#  异常类
# ══════════════════════════════════════════════════════════════════

class ShapeError(ValueError):
    """节点构造时的形状 / 参数错误（模型定义缺陷，不可恢复）。"""


# ══════════════════════════════════════════════════════════════════
#  形状辅助
# ══════════════════════════════════════════════════════════════════

def normalize_axis(shape: Sequence[int], axis: int) -> int:
    """将负轴索引（-1 = 最后一维）规范化并检查范围。"""
    rank = len(shape)
    ax = axis + rank if axis < 0 else axis
    if not 0 <= ax < rank:
        raise ShapeError(f"轴 {axis} 超出范围，张量维度为 {rank}（shape={tuple(shape)}）")
    return ax


def num_elements(shape: Sequence[int]) -> int:
    n = 1
    for s in shape:
        n *= int(s)
    return n


# ══════════════════════════════════════════════════════════════════
#  节点基类
# ══════════════════════════════════════════════════════════════════

class Node:
    """
    计算图节点基类

    子类通过 ``forward_ops()`` / ``backward_ops()`` 返回零参数可调用对象列表，
    通过 ``attributes()`` 声明参与哈希和相等比较的标量 / 形状参数。
    """

    kind: str = "node"

    def __init__(
        self,
        children: Sequence[Node],
        shape: Sequence[int],
        *,
        graph: Any = None,
        device: Optional[torch.device] = None,
        dtype: torch.dtype = torch.float32,
        name: Optional[str] = None,
    ) -> None:
        self.children: List[Node] = list(children)
        self.shape: Shape = tuple(int(s) for s in shape)
        if any(s < 0 for s in self.shape):
            raise ShapeError(f"{self.kind}: 形状不能含负数维度 {self.shape}")

        first = self.children[0] if self.children else None
        self.graph = graph if graph is not None else (first.graph if first else None)
        if device is not None:
            self.device: torch.device = torch.device(device)
        elif first is not None:
            self.device = first.device
        elif self.graph is not None:
            self.device = self.graph.device
        else:
            self.device = torch.device("cpu")
        self.dtype: torch.dtype = dtype
        self.name: str = name or f"{self.kind}_{next(_name_counter)}"

        # 别名节点置为 False：不分配、不释放自有存储
        self.owns_storage: bool = True
        self.trainable: bool = False

        self._val: Optional[torch.Tensor] = None
        self._adj: Optional[torch.Tensor] = None
        self._hash: Optional[int] = None

    # ── 子节点访问 ──────────────────────────────────────────────

    def child(self, i: int) -> Node:
        return self.children[i]

    # ── 存储 ────────────────────────────────────────────────────

    def val(self) -> torch.Tensor:
        if self._val is None:
            self.allocate()
        return self._val

    def grad(self) -> torch.Tensor:
        """梯度张量，首次访问时分配并清零。"""
        if self._adj is None:
            self._adj = torch.zeros(self.shape, dtype=self.dtype, device=self.device)
        return self._adj

    def allocate(self) -> int:
        """分配值张量，返回新分配的元素个数。"""
        if self._val is not None:
            return 0
        self._val = torch.empty(self.shape, dtype=self.dtype, device=self.device)
        return self._val.numel()

    def layout(self) -> torch.Tensor:
        """与值张量步长一致的 meta 张量（不分配内存），用于构造期检查视图是否可行。"""
        return torch.empty(self.shape, dtype=self.dtype, device="meta")

    def free(self) -> None:
        if self.owns_storage:
            self._val = None
            self._adj = None

    def init_dependent(self) -> None:
        """损失节点：梯度置 1（dJ/dJ）。"""
        self.grad().fill_(1.0)

    def set_zero_adjoint(self) -> None:
        self.grad().zero_()

    # ── 前向 / 反向 ─────────────────────────────────────────────

    def forward_ops(self) -> List[NodeOp]:
        return []

    def backward_ops(self) -> List[NodeOp]:
        return []

    def forward(self) -> None:
        self.allocate()
        for op in self.forward_ops():
            op()

    def backward(self) -> None:
        for op in self.backward_ops():
            op()

    # ── 结构身份 ────────────────────────────────────────────────

    def attributes(self) -> Tuple[Any, ...]:
        """参与哈希 / 相等比较的参数（无参数算子为空元组）。"""
        return ()

    def hash(self) -> int:
        if self._hash is None:
            seed = hash_combine(0, self.kind)
            for c in self.children:
                seed = hash_combine(seed, c.hash())
            for attr in self.attributes():
                seed = hash_combine(seed, attr)
            self._hash = seed
        return self._hash

    def equal(self, other: Node) -> bool:
        if self is other:
            return True
        if self.kind != other.kind or len(self.children) != len(other.children):
            return False
        for a, b in zip(self.children, other.children):
            if a is not b and not a.equal(b):
                return False
        return self.attributes() == other.attributes()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, shape={self.shape})"


class NaryNodeOp(Node):
    """带子节点的算子节点基类（至少一个子节点）。"""

    def __init__(self, children: Sequence[Node], shape: Optional[Sequence[int]] = None,
                 **kwargs: Any) -> None:
        if not children:
            raise ShapeError(f"{self.kind}: 至少需要一个子节点")
        super().__init__(children, children[0].shape if shape is None else shape, **kwargs)


# ══════════════════════════════════════════════════════════════════
#  叶子节点
# ══════════════════════════════════════════════════════════════════

class ParamNode(Node):
    """
    可训练参数

    参数集完成布局后，值与梯度都是图内扁平参数缓冲区上的视图。
    结构身份只由名字决定：参数不参与公共子表达式消除。
    """

    kind = "param"

    def __init__(self, graph: Any, name: str, shape: Sequence[int],
                 init: Optional[torch.Tensor] = None, **kwargs: Any) -> None:
        super().__init__([], shape, graph=graph, name=name, **kwargs)
        self.trainable = True
        if init is None:
            init = torch.zeros(self.shape, dtype=self.dtype)
        init = torch.as_tensor(init, dtype=self.dtype)
        if tuple(init.shape) != self.shape:
            raise ShapeError(f"参数 {name!r} 初值形状 {tuple(init.shape)} 与声明形状 {self.shape} 不一致")
        self._val = init.to(self.device).clone()

    def bind(self, val: torch.Tensor, adj: torch.Tensor) -> None:
        """绑定到扁平参数缓冲区上的视图（由 Parameters 调用）。"""
        self._val = val
        self._adj = adj

    def free(self) -> None:
        pass

    def attributes(self) -> Tuple[Any, ...]:
        return (self.name,)

    def equal(self, other: Node) -> bool:
        return self is other


class ConstantNode(Node):
    """输入数据（不可训练）。"""

    kind = "const"

    def __init__(self, graph: Any, data: Any, name: Optional[str] = None, **kwargs: Any) -> None:
        tensor = torch.as_tensor(data, dtype=kwargs.get("dtype", torch.float32))
        super().__init__([], tuple(tensor.shape), graph=graph, name=name, **kwargs)
        self._val = tensor.to(self.device).clone()

    def free(self) -> None:
        pass

    def attributes(self) -> Tuple[Any, ...]:
        return (self.name,)

    def equal(self, other: Node) -> bool:
        return self is other
