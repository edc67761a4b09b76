"""
图副本集 (Replica Set)

在每个设备上构建一份相同的模型图，并保证训练开始前所有副本的参数一致。
"""

from __future__ import annotations

import logging
from typing import Callable, Iterator, List, Optional, Sequence

import torch

from ..graph.expression_graph import ExpressionGraph
from ..graph.node import Node, ShapeError
from ..utils.devices import estimate_replica_memory, get_devices

_logger = logging.getLogger("distributed_autodiff.comm")

BuildFn = Callable[[ExpressionGraph, int], Node]


class ReplicaSet:
    """
    一组数据并行的图副本

    Args:
        build_fn: ``build_fn(graph, index) -> loss``，在给定图上构建模型并返回损失节点
        devices: 每个副本的设备（默认按 *num_replicas* 自动分配）
        num_replicas: 未给出 *devices* 时的副本数量
    """

    def __init__(
        self,
        build_fn: BuildFn,
        devices: Optional[Sequence[torch.device]] = None,
        num_replicas: int = 1,
    ) -> None:
        devices = list(devices) if devices is not None else get_devices(num_replicas)
        if not devices:
            raise ValueError("至少需要一个设备")

        self.graphs: List[ExpressionGraph] = []
        self.losses: List[Node] = []
        for idx, device in enumerate(devices):
            graph = ExpressionGraph(device, name=f"replica{idx}")
            self.losses.append(build_fn(graph, idx))
            graph.params.allocate()
            self.graphs.append(graph)

        self.sync_params()

        total = self.graphs[0].params.vals().numel()
        _logger.info(
            "构建 %d 个副本: 每个 %d 个参数, 预计占用 %.4f GB",
            len(self.graphs), total,
            estimate_replica_memory(total, len(self.graphs), self.graphs[0].params.dtype),
        )

    def sync_params(self) -> None:
        """把副本 0 的参数拷贝到其它副本。"""
        src = self.graphs[0].params.vals()
        for graph in self.graphs[1:]:
            dst = graph.params.vals()
            if dst.numel() != src.numel():
                raise ShapeError(
                    f"{graph.name} 的参数总数 ({dst.numel()}) 与 replica0 ({src.numel()}) 不一致")
            dst.copy_(src)

    def forward_backward(self) -> List[float]:
        """依次在每个副本上执行前向与反向，返回各副本的损失。"""
        return [graph.forward_backward(loss) for graph, loss in zip(self.graphs, self.losses)]

    def __len__(self) -> int:
        return len(self.graphs)

    def __getitem__(self, idx: int) -> ExpressionGraph:
        return self.graphs[idx]

    def __iter__(self) -> Iterator[ExpressionGraph]:
        return iter(self.graphs)
