"""
张量算子模块

计算图节点消费的 PyTorch 内核（逐元素、softmax、转置、平移、池化）。
"""

from . import tensor_operators

__all__ = ["tensor_operators"]
