"""
数据并行训练模块

参数分片、梯度通信器与图副本集。
"""

from .sharding import Shard, compute_shards, shard_size
from .communicator import (
    Communicator,
    CommunicatorError,
    DefaultCommunicator,
    MPICommunicator,
    create_communicator,
)
from .replicas import ReplicaSet

__all__ = [
    "Shard",
    "compute_shards",
    "shard_size",
    "Communicator",
    "CommunicatorError",
    "DefaultCommunicator",
    "MPICommunicator",
    "create_communicator",
    "ReplicaSet",
]
