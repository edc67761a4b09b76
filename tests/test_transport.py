"""集合通信传输层测试（单参与者与线程实现）"""

import numpy as np
import pytest
import torch

from distributed_autodiff.config import CommConfig
from distributed_autodiff.transport import (
    FakeMPIWrapper,
    MPIError,
    ThreadGroup,
    finalize_mpi,
    init_mpi,
    _Message,
    tensor_to_numpy,
    torch_to_numpy_dtype,
)

from conftest import run_ranks


# ==================== 单参与者 ====================


def test_fake_wrapper_is_single_participant():
    mpi = FakeMPIWrapper()
    assert mpi.my_rank() == 0
    assert mpi.comm_world_size() == 1
    mpi.barrier()

    send = np.arange(4, dtype=np.float32)
    recv = np.zeros(4, dtype=np.float32)
    mpi.all_reduce(send, recv)
    assert np.array_equal(recv, send)
    assert mpi.recv(recv, source=mpi.RECV_ANY_SOURCE) == 0


def test_fake_bcast_vector_returns_root_values():
    values = FakeMPIWrapper().bcast_vector([1, 2, 3], dtype=np.int64)
    assert values.dtype == np.int64
    assert values.tolist() == [1, 2, 3]


@pytest.mark.parametrize("buf", [
    np.zeros(3, dtype=np.float16),
    np.zeros((4, 4), dtype=np.float32)[:, 0],
    [1.0, 2.0],
])
def test_invalid_buffers_rejected(buf):
    with pytest.raises(MPIError):
        FakeMPIWrapper().bcast(buf)


def test_invalid_op_and_rank_rejected():
    mpi = FakeMPIWrapper()
    buf = np.zeros(2, dtype=np.float64)
    with pytest.raises(MPIError):
        mpi.all_reduce(buf, buf, op="prod")
    with pytest.raises(MPIError):
        mpi.bcast(buf, root=1)
    with pytest.raises(MPIError):
        mpi.ssend(buf, dest=3)


def test_all_reduce_tensor_single_participant():
    t = torch.arange(6, dtype=torch.float64).reshape(2, 3)
    out = FakeMPIWrapper().all_reduce_tensor(t)
    assert out is t
    assert torch.equal(t, torch.arange(6, dtype=torch.float64).reshape(2, 3))


def test_init_mpi_without_launcher_is_fake():
    mpi = init_mpi(config=CommConfig(use_mpi=False))
    assert isinstance(mpi, FakeMPIWrapper)
    finalize_mpi(mpi)
    finalize_mpi(None)


# ==================== 线程实现 ====================


def test_thread_bcast_vector_from_nonzero_root():
    def fn(mpi):
        values = [7.0, 8.0, 9.0, 10.0] if mpi.my_rank() == 1 else None
        return mpi.bcast_vector(values, root=1).tolist()

    results = run_ranks(ThreadGroup(3).wrappers(), fn)
    assert results == [[7.0, 8.0, 9.0, 10.0]] * 3


@pytest.mark.parametrize("op,expected", [("sum", [6, 9]), ("max", [3, 4]), ("min", [1, 2])])
def test_thread_all_reduce(op, expected):
    def fn(mpi):
        r = mpi.my_rank()
        send = np.array([r + 1, r + 2], dtype=np.int32)
        recv = np.empty_like(send)
        mpi.all_reduce(send, recv, op=op)
        return recv.tolist()

    assert run_ranks(ThreadGroup(3).wrappers(), fn) == [expected] * 3


def test_thread_all_reduce_repeated_rounds():
    def fn(mpi):
        totals = []
        for step in range(5):
            buf = np.full(3, float(mpi.my_rank() + step), dtype=np.float64)
            mpi.all_reduce(buf, buf)
            totals.append(buf[0])
        return totals

    results = run_ranks(ThreadGroup(2).wrappers(), fn)
    assert results[0] == results[1] == [1.0, 3.0, 5.0, 7.0, 9.0]


def test_thread_ssend_recv_any_source():
    def fn(mpi):
        if mpi.my_rank() == 0:
            got = []
            for _ in range(2):
                buf = np.empty(2, dtype=np.uint64)
                src = mpi.recv(buf, source=mpi.RECV_ANY_SOURCE, tag=5)
                got.append((src, buf.tolist()))
            return sorted(got)
        mpi.ssend(np.array([mpi.my_rank(), 99], dtype=np.uint64), dest=0, tag=5)
        return None

    results = run_ranks(ThreadGroup(3).wrappers(), fn)
    assert results[0] == [(1, [1, 99]), (2, [2, 99])]


def test_thread_recv_filters_by_source_and_tag():
    group = ThreadGroup(2)
    wrappers = group.wrappers()
    inbox = group._inbox[0]
    inbox.append(_Message(1, 1, np.array([10], dtype=np.int64)))
    inbox.append(_Message(1, 2, np.array([20], dtype=np.int64)))
    buf = np.empty(1, dtype=np.int64)
    assert wrappers[0].recv(buf, source=1, tag=2) == 1
    assert buf[0] == 20
    assert wrappers[0].recv(buf, source=1, tag=1) == 1
    assert buf[0] == 10
    assert not inbox


def test_thread_recv_rejects_dtype_mismatch():
    group = ThreadGroup(2)
    msg = _Message(1, 0, np.array([1.5], dtype=np.float64))
    group._inbox[0].append(msg)
    buf = np.empty(1, dtype=np.int64)
    with pytest.raises(MPIError):
        group.wrappers()[0].recv(buf, source=1)
    # 发送方不会因接收失败而永久阻塞
    assert msg.delivered.is_set()


def test_all_reduce_rejects_mismatched_local_buffers():
    mpi = ThreadGroup(1).wrappers()[0]
    with pytest.raises(MPIError):
        mpi.all_reduce(np.zeros(3, dtype=np.float32), np.zeros(2, dtype=np.float32))
    with pytest.raises(MPIError):
        mpi.all_reduce(np.zeros(3, dtype=np.float32), np.zeros(3, dtype=np.float64))
    with pytest.raises(MPIError):
        FakeMPIWrapper().all_reduce(np.zeros(3, dtype=np.int32), np.zeros(4, dtype=np.int32))


def test_thread_all_reduce_length_mismatch_across_ranks():
    def fn(mpi):
        n = 3 if mpi.my_rank() == 0 else 4
        buf = np.ones(n, dtype=np.float32)
        try:
            mpi.all_reduce(buf, buf)
        except MPIError:
            return "error"
        return "ok"

    assert run_ranks(ThreadGroup(2).wrappers(), fn) == ["error", "error"]


def test_thread_barrier_abort_raises():
    group = ThreadGroup(2)
    group.abort()
    with pytest.raises(MPIError):
        group.wrappers()[0].barrier()


def test_thread_group_size_validation():
    with pytest.raises(ValueError):
        ThreadGroup(0)


# ==================== 张量转换 ====================


def test_tensor_to_numpy_copies():
    t = torch.ones(3)
    arr = tensor_to_numpy(t)
    arr[0] = 5.0
    assert t[0].item() == 1.0
    assert arr.flags["C_CONTIGUOUS"]
    assert torch_to_numpy_dtype(torch.float64) is np.float64
    assert tensor_to_numpy(torch.ones(2, dtype=torch.float16)).dtype == np.float32
