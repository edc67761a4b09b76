#!/usr/bin/env python
"""
数据并行训练示例

在每个可用设备上构建一个小型模型副本，每步前向 / 反向后用通信器做梯度
all-reduce，再在所有副本上执行相同的 SGD 更新。

运行方式：
    python examples/train_replicas.py [副本数]
    mpirun -n 2 python examples/train_replicas.py 2
"""

import logging
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import torch

from distributed_autodiff import CommConfig, ReplicaSet, create_communicator, finalize_mpi, init_mpi
from distributed_autodiff.graph import expression_operators as eo
from distributed_autodiff.utils import get_devices


def build_model(graph, index, batch=8, dim=16, classes=4):
    """两层 tanh 网络 + log-softmax 损失（每个副本使用不同的输入批次）"""
    gen = torch.Generator().manual_seed(1000 + index)
    x = graph.constant(torch.randn(batch, dim, generator=gen), name="x")
    w1 = graph.param("w1", (batch, dim), torch.randn(batch, dim) * 0.1)
    b1 = graph.param("b1", (1, dim))
    h = eo.tanh(x, w1, b1)
    pooled = eo.mean(h, axis=1)
    logits = eo.tanh(eo.reshape(pooled, (1, batch)), graph.param("w2", (1, batch)))
    return eo.neg(eo.sum(eo.logsoftmax(logits), axis=1))


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    num_replicas = int(sys.argv[1]) if len(sys.argv) > 1 else 2

    config = CommConfig.from_auto_detect()
    config.profile = True
    mpi = init_mpi(config=config)
    is_master = mpi.my_rank() == 0

    torch.manual_seed(0)
    replicas = ReplicaSet(build_model, devices=get_devices(num_replicas))
    comm = create_communicator(replicas.graphs, mpi=mpi, config=config)

    lr = 0.1
    for step in range(50):
        losses = replicas.forward_backward()
        comm.all_reduce_grads()
        for graph in replicas:
            graph.params.vals().sub_(lr * graph.params.grads())
        if is_master and step % 10 == 0:
            print(f"step {step:3d}  loss {sum(losses) / len(losses):.6f}")

    first = replicas[0].params.vals()
    in_sync = all(torch.equal(g.params.vals(), first) for g in replicas)
    if is_master:
        print(f"\n副本参数一致: {'✓' if in_sync else '✗'}")
        comm.profiler.print_summary()

    finalize_mpi(mpi)


if __name__ == "__main__":
    main()
