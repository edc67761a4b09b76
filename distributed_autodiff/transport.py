"""
集合通信传输层 (Collective Transport)

定义通信器跨进程变体所依赖的最小点对点 / 集合通信接口，并提供两个
无需 MPI 运行时的实现：

- :class:`FakeMPIWrapper`：单参与者，所有操作都是本地空操作（只做类型检查）
- :class:`ThreadMPIWrapper`：同一进程内多个线程各扮演一个 rank

基于 mpi4py 的实现见 :mod:`distributed_autodiff.mpi_manager`。

失败策略：任何传输层错误都以 :class:`MPIError` 抛出，调用方不做重试。
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

import numpy as np
import torch

from .config import CommConfig

# ── 模块级 logger ──────────────────────────────────────────────
_logger = logging.getLogger("distributed_autodiff.mpi")

# ── 允许在传输层上传递的元素类型 ────────────────────────────────
SUPPORTED_DTYPES: Tuple[Type[np.generic], ...] = (
    np.float32, np.float64, np.uint32, np.uint64, np.int32, np.int64,
)
SUPPORTED_OPS: Tuple[str, ...] = ("sum", "max", "min")

_TORCH_TO_NUMPY_DTYPE: Dict[torch.dtype, Type[np.generic]] = {
    torch.float32: np.float32,
    torch.float64: np.float64,
    torch.int32: np.int32,
    torch.int64: np.int64,
}


# ══════════════════════════════════════════════════════════════════
#  异常类
# ══════════════════════════════════════════════════════════════════

class MPIError(RuntimeError):
    """传输层操作异常（附带 rank 信息）。"""

    def __init__(
        self,
        msg: str,
        rank: int = -1,
        original: Optional[Exception] = None,
    ) -> None:
        self.rank: int = rank
        self.original: Optional[Exception] = original
        super().__init__(f"[Rank {rank}] {msg}")


# ══════════════════════════════════════════════════════════════════
#  接口
# ══════════════════════════════════════════════════════════════════

class MPIWrapper(ABC):
    """
    集合通信接口

    与 MPI 的约定相比：
    - 出错时抛出异常而不是返回错误码
    - 缓冲区为 numpy 数组，元素个数与类型由数组本身携带
    - ``comm`` 参数表示逻辑通信组，``None`` 为全体进程
    """

    RECV_ANY_SOURCE: int = -1

    @abstractmethod
    def my_rank(self) -> int: ...

    @abstractmethod
    def comm_world_size(self) -> int: ...

    @abstractmethod
    def barrier(self, comm: Any = None) -> None: ...

    @abstractmethod
    def bcast(self, buf: np.ndarray, root: int = 0, comm: Any = None) -> None: ...

    @abstractmethod
    def ssend(self, buf: np.ndarray, dest: int, tag: int = 0, comm: Any = None) -> None: ...

    @abstractmethod
    def recv(self, buf: np.ndarray, source: int = -1, tag: int = 0, comm: Any = None) -> int:
        """阻塞接收到 *buf*，返回实际的发送方 rank。"""

    @abstractmethod
    def all_reduce(self, sendbuf: np.ndarray, recvbuf: np.ndarray,
                   op: str = "sum", comm: Any = None) -> None: ...

    @abstractmethod
    def finalize(self) -> None: ...

    # ── 便捷封装 ────────────────────────────────────────────────

    def bcast_vector(self, values: Optional[Sequence[Any]], root: int = 0,
                     dtype: Type[np.generic] = np.float32, comm: Any = None) -> np.ndarray:
        """
        广播变长向量：先广播长度（uint64），再广播数据。

        Args:
            values: 向量内容（仅 *root* 上有效，其它 rank 可传 None）
            root: 源 rank
            dtype: 元素类型

        Returns:
            广播后的向量（所有 rank 内容相同）
        """
        is_root = self.my_rank() == root
        data = np.asarray(values if is_root else [], dtype=dtype)
        length = np.array([data.size], dtype=np.uint64)
        self.bcast(length, root=root, comm=comm)
        if not is_root:
            data = np.empty(int(length[0]), dtype=dtype)
        self.bcast(data, root=root, comm=comm)
        return data

    def all_reduce_tensor(self, tensor: torch.Tensor, op: str = "sum") -> torch.Tensor:
        """对 torch 张量原地做 all-reduce（经由主机内存）。"""
        send = tensor_to_numpy(tensor)
        recv = np.empty_like(send)
        self.all_reduce(send, recv, op=op)
        tensor.copy_(torch.from_numpy(recv).reshape(tensor.shape))
        return tensor

    # ── 校验 ────────────────────────────────────────────────────

    def _check_buffer(self, buf: np.ndarray, name: str = "buf") -> None:
        if not isinstance(buf, np.ndarray):
            raise MPIError(f"{name} 必须是 numpy 数组，实际为 {type(buf).__name__}", rank=self.my_rank())
        if buf.dtype.type not in SUPPORTED_DTYPES:
            raise MPIError(f"不支持的元素类型: {buf.dtype}", rank=self.my_rank())
        if not buf.flags["C_CONTIGUOUS"]:
            raise MPIError(f"{name} 必须是连续内存", rank=self.my_rank())

    def _check_pair(self, sendbuf: np.ndarray, recvbuf: np.ndarray) -> None:
        self._check_buffer(sendbuf, "sendbuf")
        self._check_buffer(recvbuf, "recvbuf")
        if sendbuf.size != recvbuf.size or sendbuf.dtype != recvbuf.dtype:
            raise MPIError(
                f"sendbuf ({sendbuf.size}×{sendbuf.dtype}) 与 recvbuf ({recvbuf.size}×{recvbuf.dtype}) 不一致",
                rank=self.my_rank())

    def _check_op(self, op: str) -> None:
        if op not in SUPPORTED_OPS:
            raise MPIError(f"不支持的归约操作: {op!r}（可选 {SUPPORTED_OPS}）", rank=self.my_rank())

    def _check_rank(self, rank: int, name: str) -> None:
        if not 0 <= rank < self.comm_world_size():
            raise MPIError(f"{name}={rank} 超出范围 [0, {self.comm_world_size()})", rank=self.my_rank())


# ══════════════════════════════════════════════════════════════════
#  单参与者空实现
# ══════════════════════════════════════════════════════════════════

class FakeMPIWrapper(MPIWrapper):
    """单进程运行时使用：除类型检查外全部为本地空操作。"""

    def my_rank(self) -> int:
        return 0

    def comm_world_size(self) -> int:
        return 1

    def barrier(self, comm: Any = None) -> None:
        pass

    def bcast(self, buf: np.ndarray, root: int = 0, comm: Any = None) -> None:
        self._check_buffer(buf)
        self._check_rank(root, "root")

    def ssend(self, buf: np.ndarray, dest: int, tag: int = 0, comm: Any = None) -> None:
        self._check_buffer(buf)
        self._check_rank(dest, "dest")

    def recv(self, buf: np.ndarray, source: int = -1, tag: int = 0, comm: Any = None) -> int:
        self._check_buffer(buf)
        if source != self.RECV_ANY_SOURCE:
            self._check_rank(source, "source")
        return 0

    def all_reduce(self, sendbuf: np.ndarray, recvbuf: np.ndarray,
                   op: str = "sum", comm: Any = None) -> None:
        self._check_pair(sendbuf, recvbuf)
        self._check_op(op)
        if recvbuf is not sendbuf:
            np.copyto(recvbuf, sendbuf)

    def finalize(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════════
#  进程内多线程实现
# ══════════════════════════════════════════════════════════════════

class _Message:
    __slots__ = ("source", "tag", "data", "delivered")

    def __init__(self, source: int, tag: int, data: np.ndarray) -> None:
        self.source = source
        self.tag = tag
        self.data = data
        self.delivered = threading.Event()


class ThreadGroup:
    """
    线程通信组：*size* 个线程共享的同步状态。

    用法::

        group = ThreadGroup(4)
        wrappers = group.wrappers()   # 每个线程取一个
    """

    def __init__(self, size: int) -> None:
        if size < 1:
            raise ValueError(f"通信组大小必须 >= 1，实际为 {size}")
        self.size: int = size
        self._barrier = threading.Barrier(size)
        self._slots: List[Optional[np.ndarray]] = [None] * size
        self._inbox: List[List[_Message]] = [[] for _ in range(size)]
        self._cond = threading.Condition()

    def wrappers(self) -> List[ThreadMPIWrapper]:
        return [ThreadMPIWrapper(self, rank) for rank in range(self.size)]

    def abort(self) -> None:
        """打断所有正在等待 barrier 的线程（它们会收到 MPIError）。"""
        self._barrier.abort()


class ThreadMPIWrapper(MPIWrapper):
    """同一进程内的线程间集合通信；每个线程持有一个实例。"""

    def __init__(self, group: ThreadGroup, rank: int) -> None:
        self.group: ThreadGroup = group
        self.rank: int = rank

    def my_rank(self) -> int:
        return self.rank

    def comm_world_size(self) -> int:
        return self.group.size

    def _wait(self, what: str) -> None:
        try:
            self.group._barrier.wait()
        except threading.BrokenBarrierError as exc:
            msg = f"'{what}' 失败: 通信组已中断"
            _logger.error(msg)
            raise MPIError(msg, rank=self.rank, original=exc) from exc

    def barrier(self, comm: Any = None) -> None:
        self._wait("barrier")

    def bcast(self, buf: np.ndarray, root: int = 0, comm: Any = None) -> None:
        self._check_buffer(buf)
        self._check_rank(root, "root")
        if self.rank == root:
            self.group._slots[root] = buf.copy()
        self._wait("bcast")
        if self.rank != root:
            src = self.group._slots[root]
            if src.size != buf.size or src.dtype != buf.dtype:
                self._wait("bcast")
                raise MPIError(
                    f"bcast 缓冲区不一致: root={src.size}×{src.dtype}, 本地={buf.size}×{buf.dtype}",
                    rank=self.rank)
            np.copyto(buf, src.reshape(buf.shape))
        self._wait("bcast")

    def ssend(self, buf: np.ndarray, dest: int, tag: int = 0, comm: Any = None) -> None:
        """同步发送：直到接收方取走消息才返回。"""
        self._check_buffer(buf)
        self._check_rank(dest, "dest")
        msg = _Message(self.rank, tag, buf.copy())
        with self.group._cond:
            self.group._inbox[dest].append(msg)
            self.group._cond.notify_all()
        msg.delivered.wait()

    def recv(self, buf: np.ndarray, source: int = -1, tag: int = 0, comm: Any = None) -> int:
        self._check_buffer(buf)
        if source != self.RECV_ANY_SOURCE:
            self._check_rank(source, "source")
        inbox = self.group._inbox[self.rank]
        with self.group._cond:
            while True:
                for i, msg in enumerate(inbox):
                    if msg.tag == tag and source in (self.RECV_ANY_SOURCE, msg.source):
                        del inbox[i]
                        break
                else:
                    self.group._cond.wait()
                    continue
                break
        try:
            if msg.data.size != buf.size or msg.data.dtype != buf.dtype:
                raise MPIError(
                    f"recv 缓冲区不一致: 发送 {msg.data.size}×{msg.data.dtype}, "
                    f"接收 {buf.size}×{buf.dtype}", rank=self.rank)
            np.copyto(buf, msg.data.reshape(buf.shape))
        finally:
            msg.delivered.set()
        return msg.source

    def all_reduce(self, sendbuf: np.ndarray, recvbuf: np.ndarray,
                   op: str = "sum", comm: Any = None) -> None:
        self._check_pair(sendbuf, recvbuf)
        self._check_op(op)
        self.group._slots[self.rank] = sendbuf.copy()
        self._wait("all_reduce")
        slots = self.group._slots
        # 所有 rank 读取同一组 slots，判定结果一致
        mismatch = [(r, s.size, s.dtype) for r, s in enumerate(slots)
                    if s.size != sendbuf.size or s.dtype != sendbuf.dtype]
        if not mismatch:
            # 按 rank 顺序归约，保证所有参与者得到逐位相同的结果
            result = slots[0].copy()
            for contrib in slots[1:]:
                if op == "sum":
                    result += contrib
                elif op == "max":
                    np.maximum(result, contrib, out=result)
                else:
                    np.minimum(result, contrib, out=result)
        self._wait("all_reduce")
        if mismatch:
            raise MPIError(
                f"all_reduce 缓冲区不一致: 本地 {sendbuf.size}×{sendbuf.dtype}, 其它 rank {mismatch}",
                rank=self.rank)
        np.copyto(recvbuf, result.reshape(recvbuf.shape))

    def finalize(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════════
#  初始化 / 结束
# ══════════════════════════════════════════════════════════════════

def init_mpi(multi_threaded: bool = False, config: Optional[CommConfig] = None) -> MPIWrapper:
    """
    创建传输层实例。

    配置要求使用 MPI 时返回 :class:`~distributed_autodiff.mpi_manager.MPIManager`，
    否则返回单参与者的 :class:`FakeMPIWrapper`（无任何通信开销）。
    """
    config = config or CommConfig.from_auto_detect()
    multi_threaded = multi_threaded or config.multi_threaded
    if not config.use_mpi:
        _logger.debug("未启用 MPI，使用单进程传输层")
        return FakeMPIWrapper()

    # 线程级别必须在首次导入 mpi4py.MPI 之前设置
    import mpi4py
    mpi4py.rc.thread_level = "multiple" if multi_threaded else "serialized"
    from .mpi_manager import MPIManager

    return MPIManager(multi_threaded=multi_threaded)


def finalize_mpi(mpi: Optional[MPIWrapper]) -> None:
    if mpi is not None:
        mpi.finalize()


# ══════════════════════════════════════════════════════════════════
#  模块级工具函数
# ══════════════════════════════════════════════════════════════════

def torch_to_numpy_dtype(torch_dtype: torch.dtype) -> Type[np.generic]:
    """将 PyTorch dtype 转换为对应的 NumPy dtype。"""
    return _TORCH_TO_NUMPY_DTYPE.get(torch_dtype, np.float32)


def tensor_to_numpy(tensor: torch.Tensor) -> np.ndarray:
    """将 GPU/CPU 张量转为连续 NumPy 数组（总是拷贝，不与张量共享内存）。"""
    t = tensor.detach()
    if t.dtype not in _TORCH_TO_NUMPY_DTYPE:
        t = t.to(torch.float32)
    return np.ascontiguousarray(t.cpu().numpy()).copy()
