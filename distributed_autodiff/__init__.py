"""
分布式自动微分框架

基于表达式图的反向模式自动微分，以及面向数据并行训练的梯度通信器。

核心组成：
1. 计算图节点与算子（逐元素、softmax、归约、转置、零拷贝 reshape / step 视图、平移、池化）
2. 基于结构哈希的公共子表达式消除
3. 分片 scatter-reduce / all-gather 梯度通信器（每个分片一个工作线程）
4. 可插拔的集合通信传输层（单进程空实现、线程实现、mpi4py 实现）
"""

from .config import CommConfig
from .graph import ExpressionGraph, Node, ParamNode, ShapeError, expression_operators
from .training import (
    Communicator,
    CommunicatorError,
    DefaultCommunicator,
    MPICommunicator,
    ReplicaSet,
    create_communicator,
)
from .transport import (
    FakeMPIWrapper,
    MPIError,
    MPIWrapper,
    ThreadGroup,
    ThreadMPIWrapper,
    finalize_mpi,
    init_mpi,
)
from .utils import Profiler

__version__ = "0.1.0"
__all__ = [
    "CommConfig",
    "ExpressionGraph",
    "Node",
    "ParamNode",
    "ShapeError",
    "expression_operators",
    "Communicator",
    "CommunicatorError",
    "DefaultCommunicator",
    "MPICommunicator",
    "ReplicaSet",
    "create_communicator",
    "MPIWrapper",
    "MPIError",
    "FakeMPIWrapper",
    "ThreadGroup",
    "ThreadMPIWrapper",
    "init_mpi",
    "finalize_mpi",
    "Profiler",
]
