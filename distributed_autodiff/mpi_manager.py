"""
MPI 通信管理器 (MPI Communication Manager)

:class:`~distributed_autodiff.transport.MPIWrapper` 基于 mpi4py 的实现。
负责 MPI 环境的初始化、进程间通信和协调。
所有 MPI 调用都经过 ``_safe_call`` 包装：失败时记录日志并抛出
:class:`~distributed_autodiff.transport.MPIError`，而不是段错误或返回错误码。
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Callable, Dict, Type

import numpy as np
import torch
from mpi4py import MPI

from .transport import MPIError, MPIWrapper

# ── 模块级 logger ──────────────────────────────────────────────
_logger = logging.getLogger("distributed_autodiff.mpi")

# ── dtype / op 映射表（模块级常量，避免每次调用重建） ────────────
_NUMPY_TO_MPI_DTYPE: Dict[Type[np.generic], Any] = {
    np.float32: MPI.FLOAT,
    np.float64: MPI.DOUBLE,
    np.uint32: MPI.UNSIGNED,
    np.uint64: MPI.UNSIGNED_LONG_LONG,
    np.int32: MPI.INT,
    np.int64: MPI.LONG_LONG,
}

_MPI_OPS: Dict[str, Any] = {
    "sum": MPI.SUM,
    "max": MPI.MAX,
    "min": MPI.MIN,
}


# ══════════════════════════════════════════════════════════════════
#  MPI 管理器
# ══════════════════════════════════════════════════════════════════

class MPIManager(MPIWrapper):
    """
    MPI 通信管理器

    职责：
    - 初始化 MPI 环境并绑定 GPU 设备
    - 提供带错误处理的集合通信操作 (barrier / bcast / all_reduce …)
    - 提供带错误处理的同步点对点通信 (ssend / recv)
    """

    # ── 初始化 ──────────────────────────────────────────────────

    def __init__(self, multi_threaded: bool = False) -> None:
        """初始化 MPI 环境并绑定 GPU 设备。"""
        self.comm: MPI.Comm = MPI.COMM_WORLD
        self.rank: int = self.comm.Get_rank()
        self.size: int = self.comm.Get_size()
        self.is_master: bool = (self.rank == 0)

        provided = MPI.Query_thread()
        required = MPI.THREAD_MULTIPLE if multi_threaded else MPI.THREAD_SERIALIZED
        if provided < required:
            msg = (
                f"MPI 线程支持级别不足: 需要 {required}, 实际 {provided}"
                "（多线程训练需要 MPI_THREAD_MULTIPLE）"
            )
            _logger.error(msg)
            raise MPIError(msg, rank=self.rank)

        # 设置 GPU 设备（每个进程绑定一个 GPU）
        if torch.cuda.is_available():
            self.gpu_count: int = torch.cuda.device_count()
            self.gpu_id: int = self.rank % self.gpu_count
            torch.cuda.set_device(self.gpu_id)
        else:
            self.gpu_count = 0
            self.gpu_id = -1

        if self.is_master:
            _logger.info("MPI 环境初始化: %d 个进程, %d 个 GPU", self.size, self.gpu_count)

    # ── 内部：安全调用包装器 ────────────────────────────────────

    def _safe_call(self, func_name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        带错误处理的 MPI 操作包装器。

        如果 MPI 操作失败，会记录日志并抛出 :class:`MPIError`，
        避免无信息的段错误或死锁。
        """
        try:
            return fn(*args, **kwargs)
        except MPI.Exception as exc:
            msg = f"MPI 操作 '{func_name}' 失败: {exc}"
            _logger.error(msg)
            raise MPIError(msg, rank=self.rank, original=exc) from exc
        except Exception as exc:
            msg = f"操作 '{func_name}' 异常: {exc}\n{traceback.format_exc()}"
            _logger.error(msg)
            raise MPIError(msg, rank=self.rank, original=exc) from exc

    def _typed(self, buf: np.ndarray, name: str = "buf") -> list:
        """``[buf, MPI 类型]`` 形式的缓冲区描述。"""
        self._check_buffer(buf, name)
        return [buf, _NUMPY_TO_MPI_DTYPE[buf.dtype.type]]

    def _comm(self, comm: Any) -> MPI.Comm:
        return self.comm if comm is None else comm

    # ── 状态查询 ────────────────────────────────────────────────

    def my_rank(self) -> int:
        return self.rank

    def comm_world_size(self) -> int:
        return self.size

    def get_gpu_id(self) -> int:
        """获取当前进程绑定的 GPU ID。"""
        return self.gpu_id

    # ══════════════════════════════════════════════════════════════
    #  集合通信操作
    #  注意：所有进程都必须调用这些函数
    # ══════════════════════════════════════════════════════════════

    def barrier(self, comm: Any = None) -> None:
        """同步所有进程 (MPI_Barrier)。"""
        self._safe_call("Barrier", self._comm(comm).Barrier)

    def bcast(self, buf: np.ndarray, root: int = 0, comm: Any = None) -> None:
        """从 *root* 原地广播缓冲区 (MPI_Bcast)。"""
        self._check_rank(root, "root")
        self._safe_call("Bcast", self._comm(comm).Bcast, self._typed(buf), root=root)

    def all_reduce(self, sendbuf: np.ndarray, recvbuf: np.ndarray,
                   op: str = "sum", comm: Any = None) -> None:
        """全归约，所有进程得到结果 (MPI_Allreduce)。"""
        self._check_pair(sendbuf, recvbuf)
        self._check_op(op)
        send = MPI.IN_PLACE if sendbuf is recvbuf else self._typed(sendbuf, "sendbuf")
        self._safe_call(
            "Allreduce", self._comm(comm).Allreduce,
            send, self._typed(recvbuf, "recvbuf"), op=_MPI_OPS[op],
        )

    # ══════════════════════════════════════════════════════════════
    #  点对点通信
    # ══════════════════════════════════════════════════════════════

    def ssend(self, buf: np.ndarray, dest: int, tag: int = 0, comm: Any = None) -> None:
        """同步发送 (MPI_Ssend)：直到接收方开始接收才返回。"""
        self._check_rank(dest, "dest")
        self._safe_call("Ssend", self._comm(comm).Ssend, self._typed(buf), dest=dest, tag=tag)

    def recv(self, buf: np.ndarray, source: int = -1, tag: int = 0, comm: Any = None) -> int:
        """阻塞接收，返回实际发送方 rank。"""
        mpi_source = MPI.ANY_SOURCE if source == self.RECV_ANY_SOURCE else source
        status = MPI.Status()
        self._safe_call(
            "Recv", self._comm(comm).Recv, self._typed(buf),
            source=mpi_source, tag=tag, status=status,
        )
        return status.Get_source()

    # ── 结束 ────────────────────────────────────────────────────

    def finalize(self) -> None:
        if not MPI.Is_finalized():
            _logger.info("[Rank %d] MPI finalize", self.rank)
            self._safe_call("Finalize", MPI.Finalize)
