"""
通信配置 (Communication Configuration)

决定使用哪种集合通信后端（进程内 / MPI）以及通信器的并发度。
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

# mpirun / srun 启动时会设置的环境变量（任一大于 1 即视为多进程）
_LAUNCHER_SIZE_VARS = (
    "OMPI_COMM_WORLD_SIZE",   # Open MPI
    "PMI_SIZE",               # MPICH / Intel MPI / Slurm PMI
    "MPI_LOCALNRANKS",        # MVAPICH
)


@dataclass
class CommConfig:
    """通信配置

    Attributes:
        use_mpi: 是否使用 MPI 跨进程通信（False 时使用单进程空实现）
        multi_threaded: 是否要求 MPI_THREAD_MULTIPLE
        max_workers: 每次集合调用的最大工作线程数（None = 每个分片一个线程）
        profile: 是否为集合通信记录耗时
    """
    use_mpi: bool = False
    multi_threaded: bool = False
    max_workers: Optional[int] = None
    profile: bool = False

    def __post_init__(self) -> None:
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError(f"max_workers 必须 >= 1，实际为 {self.max_workers}")

    # ------------------------------------------------------------------
    # 工厂方法
    # ------------------------------------------------------------------
    @classmethod
    def from_auto_detect(cls, environ: Optional[Mapping[str, str]] = None) -> CommConfig:
        """根据启动器设置的环境变量自动判断是否启用 MPI

        Args:
            environ: 环境变量表（默认 ``os.environ``）

        Returns:
            自动填充的 CommConfig 实例
        """
        env = os.environ if environ is None else environ
        world_size = 1
        for var in _LAUNCHER_SIZE_VARS:
            value = env.get(var)
            if value and value.isdigit():
                world_size = max(world_size, int(value))
        return cls(use_mpi=world_size > 1)
