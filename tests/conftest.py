"""测试公共夹具"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Sequence

import pytest
import torch

from distributed_autodiff.graph import ExpressionGraph


def make_graphs(count: int, sizes: Sequence[int] = (3, 4)) -> List[ExpressionGraph]:
    """构造 *count* 个结构相同、参数已布局的 CPU 图副本。"""
    graphs = []
    for i in range(count):
        graph = ExpressionGraph("cpu", name=f"replica{i}")
        for j, size in enumerate(sizes):
            graph.param(f"w{j}", (size,))
        graph.params.allocate()
        graphs.append(graph)
    return graphs


def run_ranks(wrappers: Sequence, fn: Callable, timeout: float = 30.0) -> list:
    """每个线程 rank 执行 ``fn(wrapper)``，按 rank 顺序返回结果。"""
    with ThreadPoolExecutor(max_workers=len(wrappers)) as pool:
        futures = [pool.submit(fn, w) for w in wrappers]
        return [f.result(timeout=timeout) for f in futures]


@pytest.fixture
def graph():
    return ExpressionGraph("cpu", name="test")


@pytest.fixture
def seeded():
    torch.manual_seed(0)
