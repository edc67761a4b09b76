"""
梯度通信器 (Gradient Communicator)

让 N 个设备本地副本的扁平参数向量保持数值一致。
基于分片的 all-reduce 由两个原语组成：

- ``scatter_reduce()``：分片 i 的属主副本把其它副本对应区间的梯度累加到自己身上
- ``all_gather(vals)``：每个属主把自己的权威分片（参数或梯度）覆盖写到其它副本

并发模型：每次集合调用为每个分片派发一个工作线程，全部完成后才返回
（调用边界即 barrier）。分片之间互不依赖；没有超时，卡住的工作线程会
阻塞整个调用。
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from typing import Callable, ContextManager, List, Optional, Sequence

import torch

from ..config import CommConfig
from ..transport import MPIWrapper
from ..utils.profiler import Profiler
from .sharding import Shard, compute_shards

_logger = logging.getLogger("distributed_autodiff.comm")


# ══════════════════════════════════════════════════════════════════
#  异常类
# ══════════════════════════════════════════════════════════════════

class CommunicatorError(RuntimeError):
    """通信器前置条件不满足（不可恢复）。"""


# ══════════════════════════════════════════════════════════════════
#  抽象基类
# ══════════════════════════════════════════════════════════════════

class Communicator(ABC):
    """
    通信器基类

    分片划分在首次使用时根据副本 0 的参数总数计算并缓存；
    模型参数数量变化后必须调用 :meth:`reset`（通信器无法自动察觉）。
    """

    def __init__(
        self,
        graphs: Sequence,
        profiler: Optional[Profiler] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        if not graphs:
            raise CommunicatorError("通信器至少需要一个图副本")
        self.graphs: List = list(graphs)
        self.profiler: Optional[Profiler] = profiler
        self.max_workers: Optional[int] = max_workers
        self._shards: Optional[List[Shard]] = None

    # ── 分片 ────────────────────────────────────────────────────

    def shards(self) -> List[Shard]:
        if self._shards is None:
            total = self.graphs[0].params.vals().numel()
            self._shards = compute_shards(total, len(self.graphs))
            _logger.debug(
                "分片布局: 总长 %d, %d 个副本, 分片大小 %s",
                total, len(self.graphs), [s.size for s in self._shards],
            )
        return self._shards

    def reset(self) -> None:
        """丢弃缓存的分片划分（模型参数数量变化后调用）。"""
        self._shards = None

    # ── 并行派发 ────────────────────────────────────────────────

    def foreach(self, func: Callable[[Shard], None]) -> None:
        """
        为每个非空分片并行执行 ``func(shard)``，全部结束后返回。

        任一工作线程抛出的异常会在所有线程结束后重新抛出。
        """
        work = [s for s in self.shards() if s.size > 0]
        if not work:
            return
        workers = min(self.max_workers or len(work), len(work))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="shard") as pool:
            futures = [pool.submit(func, shard) for shard in work]
        for future in futures:
            future.result()

    def _timed(self, name: str) -> ContextManager[None]:
        return self.profiler.section(name) if self.profiler is not None else nullcontext()

    # ── 集合操作 ────────────────────────────────────────────────

    @abstractmethod
    def scatter_reduce(self) -> None: ...

    @abstractmethod
    def all_gather(self, vals: bool) -> None: ...

    @abstractmethod
    def all_reduce_grads(self) -> None: ...

    @abstractmethod
    def reduce_grads(self, root: int = 0) -> None: ...

    @abstractmethod
    def push_params(self, shards: Sequence[torch.Tensor]) -> None: ...

    @abstractmethod
    def pull_params(self, shards: Sequence[torch.Tensor]) -> None: ...

    @abstractmethod
    def swap_params(self, shards: Sequence[torch.Tensor]) -> None: ...


# ══════════════════════════════════════════════════════════════════
#  进程内实现
# ══════════════════════════════════════════════════════════════════

class DefaultCommunicator(Communicator):
    """
    单进程多设备通信器

    scatter-reduce 采用"拷贝到临时缓冲区 + 相加"的两两累加；
    临时缓冲区按分片分配在属主副本的设备上。
    """

    supports_multi_process: bool = False

    def __init__(
        self,
        graphs: Sequence,
        mpi: Optional[MPIWrapper] = None,
        profiler: Optional[Profiler] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        if mpi is not None and mpi.comm_world_size() > 1 and not self.supports_multi_process:
            raise CommunicatorError(
                f"{type(self).__name__} 不支持多进程（{mpi.comm_world_size()} 个 rank），"
                "请使用 MPICommunicator"
            )
        super().__init__(graphs, profiler=profiler, max_workers=max_workers)
        self.mpi: Optional[MPIWrapper] = mpi
        self._tmp: List[torch.Tensor] = []
        self._reduce_warned: bool = False

    def _init(self) -> None:
        if not self._tmp:
            for shard in self.shards():
                graph = self.graphs[shard.index]
                self._tmp.append(torch.empty(
                    shard.size, dtype=graph.params.dtype, device=graph.params.device))

    def reset(self) -> None:
        super().reset()
        self._tmp = []

    def _check_buffers(self, shards: Sequence[torch.Tensor]) -> None:
        if len(shards) != len(self.graphs):
            raise CommunicatorError(
                f"分片缓冲区数量 ({len(shards)}) 与副本数量 ({len(self.graphs)}) 不一致")
        for shard, buf in zip(self.shards(), shards):
            if buf.numel() != shard.size:
                raise CommunicatorError(
                    f"分片 {shard.index} 的缓冲区大小 ({buf.numel()}) 与分片大小 ({shard.size}) 不一致")

    # ── 梯度 ────────────────────────────────────────────────────

    def scatter_reduce(self) -> None:
        self._init()

        def scatter(shard: Shard) -> None:
            owner = self.graphs[shard.index]
            cur = owner.params.grads().narrow(0, shard.pos, shard.size)
            tmp = self._tmp[shard.index]
            for graph in self.graphs:
                if graph is not owner:
                    tmp.copy_(graph.params.grads().narrow(0, shard.pos, shard.size))
                    cur.add_(tmp)

        with self._timed("scatter_reduce"):
            self.foreach(scatter)

    def all_gather(self, vals: bool) -> None:
        def gather(shard: Shard) -> None:
            def get(graph) -> torch.Tensor:
                tensor = graph.params.vals() if vals else graph.params.grads()
                return tensor.narrow(0, shard.pos, shard.size)

            cur = get(self.graphs[shard.index])
            for idx, graph in enumerate(self.graphs):
                if idx != shard.index:
                    get(graph).copy_(cur)

        with self._timed("all_gather"):
            self.foreach(gather)

    def all_reduce_grads(self) -> None:
        if len(self.graphs) > 1:
            self.scatter_reduce()
            self.all_gather(vals=False)

    def reduce_grads(self, root: int = 0) -> None:
        """
        当前实现与 ``all_reduce_grads()`` 相同：所有副本都得到梯度和，
        而不仅是 *root*。比真正的 reduce-to-root 慢，且会覆盖非 root 副本的梯度。
        """
        if not 0 <= root < len(self.graphs):
            raise CommunicatorError(f"root={root} 超出副本范围 [0, {len(self.graphs)})")
        if not self._reduce_warned:
            _logger.debug("reduce_grads(root=%d) 以 all_reduce_grads 实现", root)
            self._reduce_warned = True
        self.all_reduce_grads()

    # ── 参数 ────────────────────────────────────────────────────

    def push_params(self, shards: Sequence[torch.Tensor]) -> None:
        """把副本 i 的参数分片拷贝到 ``shards[i]``（同一下标的副本与缓冲区位于同一设备）。"""
        self._check_buffers(shards)

        def copy(shard: Shard) -> None:
            buf = shards[shard.index]
            src = self.graphs[shard.index].params.vals().narrow(0, shard.pos, shard.size)
            buf.copy_(src.view(buf.shape))

        with self._timed("push_params"):
            self.foreach(copy)

    def pull_params(self, shards: Sequence[torch.Tensor]) -> None:
        """把 ``shards[i]`` 写回 **所有** 副本的分片 i。"""
        self._check_buffers(shards)

        def gather(shard: Shard) -> None:
            buf = shards[shard.index]
            for graph in self.graphs:
                graph.params.vals().narrow(0, shard.pos, shard.size).copy_(buf.reshape(-1))

        with self._timed("pull_params"):
            self.foreach(gather)

    def swap_params(self, shards: Sequence[torch.Tensor]) -> None:
        """
        与影子参数（例如指数滑动平均）交换。

        除最后一个副本外都写入 ``shards[i]``；``shards[i]`` 保存最后一个副本的原分片；
        最后一个副本再从副本 0 拷贝。执行完毕后所有副本一致，缓冲区持有原参数。
        """
        if len(self.graphs) < 2:
            raise CommunicatorError("swap_params 至少需要两个副本")
        self._check_buffers(shards)

        def swap(shard: Shard) -> None:
            buf = shards[shard.index]

            def sub(graph) -> torch.Tensor:
                return graph.params.vals().narrow(0, shard.pos, shard.size)

            for graph in self.graphs[:-1]:
                sub(graph).copy_(buf.reshape(-1))

            last = sub(self.graphs[-1])
            buf.copy_(last.view(buf.shape))
            last.copy_(sub(self.graphs[0]))

        with self._timed("swap_params"):
            self.foreach(swap)


# ══════════════════════════════════════════════════════════════════
#  跨进程实现
# ══════════════════════════════════════════════════════════════════

class MPICommunicator(DefaultCommunicator):
    """
    多进程通信器

    先在本进程内做 scatter-reduce，再由每个分片的属主在所有进程间
    all-reduce 该分片。跨进程归约在调用线程上按分片顺序串行执行，
    保证各进程发起集合操作的顺序一致。其余操作只作用于本进程副本。
    """

    supports_multi_process = True

    def __init__(
        self,
        graphs: Sequence,
        mpi: MPIWrapper,
        profiler: Optional[Profiler] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        if mpi is None:
            raise CommunicatorError("MPICommunicator 需要传输层实例")
        super().__init__(graphs, mpi=mpi, profiler=profiler, max_workers=max_workers)

    def scatter_reduce(self) -> None:
        super().scatter_reduce()
        with self._timed("cross_process_reduce"):
            for shard in self.shards():
                if shard.size:
                    owner = self.graphs[shard.index]
                    self.mpi.all_reduce_tensor(owner.params.grads().narrow(0, shard.pos, shard.size))

    def all_reduce_grads(self) -> None:
        self.scatter_reduce()
        if len(self.graphs) > 1:
            self.all_gather(vals=False)


# ══════════════════════════════════════════════════════════════════
#  工厂
# ══════════════════════════════════════════════════════════════════

def create_communicator(
    graphs: Sequence,
    mpi: Optional[MPIWrapper] = None,
    config: Optional[CommConfig] = None,
    profiler: Optional[Profiler] = None,
) -> Communicator:
    """
    根据传输层选择通信器：多于一个参与者时使用 :class:`MPICommunicator`。

    Args:
        graphs: 本进程的图副本（每个设备一个）
        mpi: 传输层实例（None 表示单进程）
        config: 通信配置
        profiler: 集合通信计时器（默认按 ``config.profile`` 创建）
    """
    config = config or CommConfig()
    if profiler is None and config.profile:
        profiler = Profiler()

    if mpi is not None and mpi.comm_world_size() > 1:
        comm: Communicator = MPICommunicator(
            graphs, mpi, profiler=profiler, max_workers=config.max_workers)
    else:
        comm = DefaultCommunicator(
            graphs, mpi=mpi, profiler=profiler, max_workers=config.max_workers)

    _logger.info("创建通信器 %s: %d 个本地副本", type(comm).__name__, len(comm.graphs))
    return comm
