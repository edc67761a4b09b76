"""
表达式图 (Expression Graph)

单个设备上的计算图：按插入顺序（即拓扑序）保存节点，
并把全部可训练参数排布到一对扁平缓冲区（vals / grads）中，
供通信器按分片做跨副本归约与广播。
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Dict, Iterator, List, Optional, Sequence

import torch

from .node import ConstantNode, Node, ParamNode, ShapeError

_logger = logging.getLogger("distributed_autodiff.graph")


# ══════════════════════════════════════════════════════════════════
#  参数集
# ══════════════════════════════════════════════════════════════════

class Parameters:
    """
    参数集

    参数按注册顺序排布：``vals()`` 与 ``grads()`` 是等长的一维张量，
    每个 :class:`ParamNode` 的值 / 梯度都是其上的视图。
    布局完成后再注册新参数会触发重新布局（保留已有参数的当前值），
    此时通信器需要调用 ``reset()`` 重新计算分片。
    """

    def __init__(self, device: torch.device, dtype: torch.dtype = torch.float32) -> None:
        self.device: torch.device = device
        self.dtype: torch.dtype = dtype
        self._params: "OrderedDict[str, ParamNode]" = OrderedDict()
        self._vals: Optional[torch.Tensor] = None
        self._grads: Optional[torch.Tensor] = None

    # ── 注册与查询 ──────────────────────────────────────────────

    def add(self, param: ParamNode) -> None:
        if param.name in self._params:
            raise ShapeError(f"参数 {param.name!r} 已存在")
        self._params[param.name] = param
        if self._vals is not None:
            self.allocate(force=True)

    def get(self, name: str) -> ParamNode:
        return self._params[name]

    def __contains__(self, name: str) -> bool:
        return name in self._params

    def __iter__(self) -> Iterator[ParamNode]:
        return iter(self._params.values())

    def __len__(self) -> int:
        return len(self._params)

    def total_size(self) -> int:
        return sum(p.val().numel() for p in self._params.values())

    # ── 扁平缓冲区 ──────────────────────────────────────────────

    def allocate(self, force: bool = False) -> None:
        """排布扁平缓冲区并把每个参数重新绑定为视图。"""
        if self._vals is not None and not force:
            return
        total = self.total_size()
        vals = torch.empty(total, dtype=self.dtype, device=self.device)
        grads = torch.zeros(total, dtype=self.dtype, device=self.device)
        pos = 0
        for p in self._params.values():
            n = p.val().numel()
            vals.narrow(0, pos, n).copy_(p.val().reshape(-1))
            p.bind(vals.narrow(0, pos, n).view(p.shape), grads.narrow(0, pos, n).view(p.shape))
            pos += n
        self._vals, self._grads = vals, grads
        _logger.debug("参数布局完成: %d 个参数, %d 个元素", len(self._params), total)

    def vals(self) -> torch.Tensor:
        self.allocate()
        return self._vals

    def grads(self) -> torch.Tensor:
        self.allocate()
        return self._grads

    def set_zero_adjoint(self) -> None:
        self.grads().zero_()


# ══════════════════════════════════════════════════════════════════
#  表达式图
# ══════════════════════════════════════════════════════════════════

class ExpressionGraph:
    """
    表达式图

    职责：
    - 按插入顺序保存节点（插入顺序即拓扑序）
    - 利用节点的 ``hash()`` / ``equal()`` 做公共子表达式消除
    - 顺序执行前向、反向传播（单线程，不重排）
    """

    def __init__(self, device: Any = "cpu", name: Optional[str] = None) -> None:
        self.device: torch.device = torch.device(device)
        self.name: str = name or f"graph@{self.device}"
        self.params: Parameters = Parameters(self.device)
        self.nodes: List[Node] = []
        self._cache: Dict[int, List[Node]] = {}

    # ── 构图 ────────────────────────────────────────────────────

    def param(self, name: str, shape: Sequence[int],
              init: Optional[torch.Tensor] = None) -> ParamNode:
        node = ParamNode(self, name, shape, init)
        self.params.add(node)
        self.nodes.append(node)
        return node

    def constant(self, data: Any, name: Optional[str] = None) -> ConstantNode:
        node = ConstantNode(self, data, name=name)
        self.nodes.append(node)
        return node

    def add(self, node: Node) -> Node:
        """注册算子节点；若已存在结构相同的节点则返回已有节点。"""
        h = node.hash()
        for candidate in self._cache.get(h, []):
            if candidate.equal(node):
                return candidate
        for c in node.children:
            if c.graph is not self:
                raise ShapeError(f"{node.kind}: 子节点 {c.name!r} 不属于图 {self.name!r}")
        node.graph = self
        self._cache.setdefault(h, []).append(node)
        self.nodes.append(node)
        return node

    def clear(self) -> None:
        """丢弃本轮计算的中间节点，只保留参数。"""
        self.nodes = [n for n in self.nodes if isinstance(n, ParamNode)]
        self._cache.clear()

    # ── 执行 ────────────────────────────────────────────────────

    def forward(self) -> None:
        self.params.allocate()
        for node in self.nodes:
            node.forward()

    def backward(self, loss: Optional[Node] = None) -> None:
        """以 *loss*（默认最后一个节点）为起点反向传播，参数梯度被覆盖为本轮结果。"""
        if not self.nodes:
            return
        top = self.nodes[-1] if loss is None else loss
        end = self.nodes.index(top) + 1
        active = self.nodes[:end]

        self.params.set_zero_adjoint()
        for node in active:
            if not isinstance(node, ParamNode):
                node.set_zero_adjoint()
        top.init_dependent()

        for node in reversed(active):
            node.backward()

    def forward_backward(self, loss: Optional[Node] = None) -> float:
        self.forward()
        self.backward(loss)
        top = self.nodes[-1] if loss is None else loss
        return float(top.val().sum().item())
