"""
表达式构建函数

每个函数构造对应的算子节点并注册到输入节点所在的图中
（图负责按结构身份去重）。
"""

from __future__ import annotations

from typing import Sequence

from .node import Node
from . import node_operators as nops


def _register(node: Node) -> Node:
    graph = node.child(0).graph
    return graph.add(node) if graph is not None else node


def scalar_add(x: Node, scalar: float) -> Node:
    return _register(nops.ScalarAddNodeOp(x, scalar))


def scalar_mult(x: Node, scalar: float) -> Node:
    return _register(nops.ScalarMultNodeOp(x, scalar))


def clip(x: Node, c: float) -> Node:
    return _register(nops.ClipNodeOp(x, c))


def sigmoid(x: Node) -> Node:
    return _register(nops.SigmoidNodeOp(x))


def tanh(*nodes: Node) -> Node:
    return _register(nops.TanhNodeOp(nodes))


def relu(x: Node) -> Node:
    return _register(nops.ReLUNodeOp(x))


def prelu(x: Node, alpha: float = 0.01) -> Node:
    return _register(nops.PReLUNodeOp(x, alpha))


def swish(x: Node) -> Node:
    return _register(nops.SwishNodeOp(x))


def softmax(x: Node) -> Node:
    return _register(nops.SoftmaxNodeOp(x))


def logsoftmax(x: Node) -> Node:
    return _register(nops.LogSoftmaxNodeOp(x))


def sum(x: Node, axis: int = 0) -> Node:  # noqa: A001
    return _register(nops.SumNodeOp(x, axis))


def mean(x: Node, axis: int = 0) -> Node:
    return _register(nops.MeanNodeOp(x, axis))


def log(x: Node) -> Node:
    return _register(nops.LogNodeOp(x))


def exp(x: Node) -> Node:
    return _register(nops.ExpNodeOp(x))


def sqrt(x: Node, eps: float = 0.0) -> Node:
    return _register(nops.SqrtNodeOp(x, eps))


def square(x: Node) -> Node:
    return _register(nops.SquareNodeOp(x))


def neg(x: Node) -> Node:
    return _register(nops.NegNodeOp(x))


def transpose(x: Node, axes: Sequence[int]) -> Node:
    return _register(nops.TransposeNodeOp(x, axes))


def reshape(x: Node, shape: Sequence[int]) -> Node:
    return _register(nops.ReshapeNodeOp(x, shape))


def step(x: Node, k: int, axis: int = 0) -> Node:
    return _register(nops.StepNodeOp(x, k, axis))


def shift(x: Node, offsets: Sequence[int], pad_value: float = 0.0) -> Node:
    return _register(nops.ShiftNodeOp(x, offsets, pad_value))


def pooling(x: Node, height: int, width: int, pad_height: int = 0, pad_width: int = 0,
            stride_height: int = 1, stride_width: int = 1, mode: str = "max") -> Node:
    return _register(nops.PoolingNodeOp(
        x, height, width, pad_height, pad_width, stride_height, stride_width, mode))


def pooling_with_masking(x: Node, mask: Node, width: int, is_even: bool = False) -> Node:
    return _register(nops.PoolingWithMaskingNodeOp(x, mask, width, is_even))
