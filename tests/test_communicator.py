"""分片与梯度通信器测试"""

import threading

import pytest
import torch

from distributed_autodiff.config import CommConfig
from distributed_autodiff.training import (
    CommunicatorError,
    DefaultCommunicator,
    MPICommunicator,
    compute_shards,
    create_communicator,
)
from distributed_autodiff.transport import FakeMPIWrapper, ThreadGroup

from conftest import make_graphs, run_ranks


# ==================== 分片 ====================


@pytest.mark.parametrize("total,count", [(7, 3), (10, 4), (1, 3), (0, 2), (12, 1), (9, 3)])
def test_shards_cover_range_without_overlap(total, count):
    shards = compute_shards(total, count)
    assert len(shards) == count
    assert sum(s.size for s in shards) == total
    pos = 0
    for idx, shard in enumerate(shards):
        assert shard.index == idx
        assert shard.pos == pos
        pos = shard.end
    assert pos == total


def test_trailing_shards_may_be_empty():
    assert [s.size for s in compute_shards(10, 4)] == [3, 3, 3, 1]
    assert [s.size for s in compute_shards(1, 3)] == [1, 0, 0]


def test_shard_argument_validation():
    with pytest.raises(ValueError):
        compute_shards(4, 0)
    with pytest.raises(ValueError):
        compute_shards(-1, 2)


# ==================== 梯度归约 ====================


def fill_grads(graphs):
    for i, g in enumerate(graphs):
        g.params.grads().copy_((i + 1) * torch.arange(g.params.grads().numel(), dtype=torch.float32))


def test_scatter_reduce_owner_holds_sum():
    graphs = make_graphs(3)
    fill_grads(graphs)
    comm = DefaultCommunicator(graphs)
    comm.scatter_reduce()

    expected = 6 * torch.arange(7, dtype=torch.float32)
    for shard in comm.shards():
        owned = graphs[shard.index].params.grads()[shard.pos:shard.end]
        assert torch.equal(owned, expected[shard.pos:shard.end])


def test_all_reduce_grads_makes_replicas_identical():
    graphs = make_graphs(3)
    fill_grads(graphs)
    DefaultCommunicator(graphs).all_reduce_grads()
    expected = 6 * torch.arange(7, dtype=torch.float32)
    for g in graphs:
        assert torch.equal(g.params.grads(), expected)


def test_all_reduce_grads_single_replica_is_noop():
    (graph,) = make_graphs(1)
    graph.params.grads().fill_(2.0)
    DefaultCommunicator([graph]).all_reduce_grads()
    assert torch.equal(graph.params.grads(), torch.full((7,), 2.0))


def test_fewer_params_than_replicas():
    graphs = make_graphs(3, sizes=(1,))
    for i, g in enumerate(graphs):
        g.params.grads().fill_(float(i + 1))
    DefaultCommunicator(graphs).all_reduce_grads()
    for g in graphs:
        assert g.params.grads().item() == 6.0


def test_reduce_grads_behaves_like_all_reduce():
    graphs = make_graphs(2)
    fill_grads(graphs)
    comm = DefaultCommunicator(graphs)
    comm.reduce_grads(root=1)
    for g in graphs:
        assert torch.equal(g.params.grads(), 3 * torch.arange(7, dtype=torch.float32))
    with pytest.raises(CommunicatorError):
        comm.reduce_grads(root=2)


def test_all_gather_values_is_idempotent():
    graphs = make_graphs(3)
    for i, g in enumerate(graphs):
        g.params.vals().fill_(float(i))
    comm = DefaultCommunicator(graphs)
    comm.all_gather(vals=True)
    first = graphs[0].params.vals().clone()
    assert torch.equal(first, torch.tensor([0.0, 0.0, 0.0, 1.0, 1.0, 1.0, 2.0]))
    comm.all_gather(vals=True)
    for g in graphs:
        assert torch.equal(g.params.vals(), first)


def test_param_views_see_reduced_gradients():
    graphs = make_graphs(2)
    fill_grads(graphs)
    DefaultCommunicator(graphs).all_reduce_grads()
    w1 = graphs[1].params.get("w1")
    assert torch.equal(w1.grad(), 3 * torch.arange(3, 7, dtype=torch.float32))


# ==================== 参数推送 / 拉取 / 交换 ====================


def shard_buffers(comm, fill=None):
    buffers = []
    for shard in comm.shards():
        buf = torch.empty(shard.size)
        if fill is not None:
            buf.fill_(fill(shard))
        buffers.append(buf)
    return buffers


def test_push_params_copies_owned_shards():
    graphs = make_graphs(3)
    for g in graphs:
        g.params.vals().copy_(torch.arange(7, dtype=torch.float32))
    comm = DefaultCommunicator(graphs)
    buffers = shard_buffers(comm)
    comm.push_params(buffers)
    for shard, buf in zip(comm.shards(), buffers):
        assert torch.equal(buf, torch.arange(shard.pos, shard.end, dtype=torch.float32))


def test_pull_params_writes_every_replica():
    graphs = make_graphs(3)
    comm = DefaultCommunicator(graphs)
    comm.pull_params(shard_buffers(comm, fill=lambda s: s.index + 10.0))
    expected = torch.tensor([10.0, 10.0, 10.0, 11.0, 11.0, 11.0, 12.0])
    for g in graphs:
        assert torch.equal(g.params.vals(), expected)


def test_swap_params_exchanges_with_shadow_copy():
    graphs = make_graphs(3)
    current = torch.arange(7, dtype=torch.float32)
    for g in graphs:
        g.params.vals().copy_(current)
    comm = DefaultCommunicator(graphs)
    buffers = shard_buffers(comm, fill=lambda s: -1.0)

    comm.swap_params(buffers)
    for g in graphs:
        assert torch.equal(g.params.vals(), torch.full((7,), -1.0))
    for shard, buf in zip(comm.shards(), buffers):
        assert torch.equal(buf, current[shard.pos:shard.end])

    # 再交换一次恢复原参数
    comm.swap_params(buffers)
    for g in graphs:
        assert torch.equal(g.params.vals(), current)


def test_swap_params_requires_two_replicas():
    comm = DefaultCommunicator(make_graphs(1))
    with pytest.raises(CommunicatorError):
        comm.swap_params([torch.empty(7)])


def test_buffer_count_must_match_replicas():
    comm = DefaultCommunicator(make_graphs(2))
    with pytest.raises(CommunicatorError):
        comm.push_params([torch.empty(4)])
    with pytest.raises(CommunicatorError):
        comm.pull_params([torch.empty(4)] * 3)


@pytest.mark.parametrize("op", ["push_params", "pull_params", "swap_params"])
def test_buffer_size_must_match_shard(op):
    graphs = make_graphs(2, sizes=(4,))
    for g in graphs:
        g.params.vals().copy_(torch.arange(4, dtype=torch.float32))
    comm = DefaultCommunicator(graphs)
    # 分片为 [0, 2) 与 [2, 4)；过大的缓冲区不能越界读写下一个分片
    buffers = [torch.zeros(3), torch.zeros(2)]
    with pytest.raises(CommunicatorError):
        getattr(comm, op)(buffers)
    assert torch.equal(buffers[0], torch.zeros(3))
    for g in graphs:
        assert torch.equal(g.params.vals(), torch.arange(4, dtype=torch.float32))


# ==================== 派发与生命周期 ====================


def test_foreach_runs_one_worker_per_shard():
    comm = DefaultCommunicator(make_graphs(3))
    seen = []
    lock = threading.Lock()

    def record(shard):
        with lock:
            seen.append(shard.index)

    comm.foreach(record)
    assert sorted(seen) == [0, 1, 2]


def test_foreach_propagates_worker_errors():
    comm = DefaultCommunicator(make_graphs(3))

    def fail(shard):
        if shard.index == 1:
            raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        comm.foreach(fail)


def test_reset_recomputes_shards_after_model_change():
    graphs = make_graphs(2)
    comm = DefaultCommunicator(graphs)
    assert comm.shards()[-1].end == 7
    for g in graphs:
        g.param("extra", (3,))
    assert comm.shards()[-1].end == 7
    comm.reset()
    assert comm.shards()[-1].end == 10


def test_requires_at_least_one_graph():
    with pytest.raises(CommunicatorError):
        DefaultCommunicator([])


# ==================== 工厂与传输层 ====================


def test_create_communicator_single_process():
    comm = create_communicator(make_graphs(2), mpi=FakeMPIWrapper())
    assert type(comm) is DefaultCommunicator


def test_default_communicator_rejects_multi_process_transport():
    wrappers = ThreadGroup(2).wrappers()
    with pytest.raises(CommunicatorError):
        DefaultCommunicator(make_graphs(2), mpi=wrappers[0])


def test_profiler_records_collectives():
    graphs = make_graphs(2)
    comm = create_communicator(graphs, config=CommConfig(profile=True, max_workers=1))
    comm.all_reduce_grads()
    comm.all_reduce_grads()
    assert comm.profiler.get_count("scatter_reduce") == 2
    assert comm.profiler.get_count("all_gather") == 2


def test_mpi_communicator_reduces_across_processes():
    group = ThreadGroup(2)
    local = 2

    def worker(mpi):
        graphs = make_graphs(local)
        for i, g in enumerate(graphs):
            g.params.grads().fill_(float(mpi.my_rank() * local + i + 1))
        comm = create_communicator(graphs, mpi=mpi)
        assert isinstance(comm, MPICommunicator)
        comm.all_reduce_grads()
        return [g.params.grads().clone() for g in graphs]

    results = run_ranks(group.wrappers(), worker)
    # 1 + 2 + 3 + 4
    for grads in results:
        for grad in grads:
            assert torch.equal(grad, torch.full((7,), 10.0))


def test_mpi_communicator_single_local_replica():
    group = ThreadGroup(3)

    def worker(mpi):
        (graph,) = make_graphs(1)
        graph.params.grads().fill_(float(mpi.my_rank()))
        MPICommunicator([graph], mpi).all_reduce_grads()
        return graph.params.grads().clone()

    for grad in run_ranks(group.wrappers(), worker):
        assert torch.equal(grad, torch.full((7,), 3.0))
