"""
计算图模块

节点基类、算子节点、表达式图与构建函数。
"""

from .node import ConstantNode, NaryNodeOp, Node, ParamNode, ShapeError
from .node_operators import (
    ClipNodeOp,
    ExpNodeOp,
    LogNodeOp,
    LogSoftmaxNodeOp,
    MeanNodeOp,
    NegNodeOp,
    PoolingNodeOp,
    PoolingWithMaskingNodeOp,
    PReLUNodeOp,
    ReLUNodeOp,
    ReshapeNodeOp,
    ScalarAddNodeOp,
    ScalarMultNodeOp,
    ShiftNodeOp,
    SigmoidNodeOp,
    SoftmaxNodeOp,
    SqrtNodeOp,
    SquareNodeOp,
    StepNodeOp,
    SumNodeOp,
    SwishNodeOp,
    TanhNodeOp,
    TransposeNodeOp,
    UnaryNodeOp,
)
from .expression_graph import ExpressionGraph, Parameters
from . import expression_operators

__all__ = [
    "Node",
    "NaryNodeOp",
    "UnaryNodeOp",
    "ParamNode",
    "ConstantNode",
    "ShapeError",
    "ScalarAddNodeOp",
    "ScalarMultNodeOp",
    "ClipNodeOp",
    "SigmoidNodeOp",
    "TanhNodeOp",
    "ReLUNodeOp",
    "PReLUNodeOp",
    "SwishNodeOp",
    "SoftmaxNodeOp",
    "LogSoftmaxNodeOp",
    "SumNodeOp",
    "MeanNodeOp",
    "LogNodeOp",
    "ExpNodeOp",
    "SqrtNodeOp",
    "SquareNodeOp",
    "NegNodeOp",
    "TransposeNodeOp",
    "ReshapeNodeOp",
    "StepNodeOp",
    "ShiftNodeOp",
    "PoolingNodeOp",
    "PoolingWithMaskingNodeOp",
    "ExpressionGraph",
    "Parameters",
    "expression_operators",
]
