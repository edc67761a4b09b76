"""
性能分析工具

为通信器的集合操作提供计时。
支持 CUDA 同步以获得精确的 GPU 计时。
"""

from __future__ import annotations

import statistics
import time
from contextlib import contextmanager
from typing import Dict, Iterator, List

import torch


class Profiler:
    """
    性能分析器

    用法::

        prof = Profiler()
        with prof.section("scatter_reduce"):
            comm.scatter_reduce()
        prof.print_summary()
    """

    def __init__(self, enabled: bool = True) -> None:
        """
        Args:
            enabled: 是否启用分析（False 时所有操作为空操作）
        """
        self.enabled: bool = enabled
        self.timings: Dict[str, List[float]] = {}
        self.active_timers: Dict[str, float] = {}

    # ==================== 计时 ====================

    def start(self, name: str) -> None:
        """开始计时（自动 CUDA 同步）"""
        if not self.enabled:
            return
        if torch.cuda.is_available():
            torch.cuda.synchronize()
        self.active_timers[name] = time.perf_counter()

    def end(self, name: str) -> float:
        """
        结束计时（自动 CUDA 同步）

        Returns:
            持续时间（秒），未启用或无对应 start 时返回 0.0
        """
        if not self.enabled:
            return 0.0
        if torch.cuda.is_available():
            torch.cuda.synchronize()
        if name not in self.active_timers:
            return 0.0

        duration: float = time.perf_counter() - self.active_timers.pop(name)
        self.timings.setdefault(name, []).append(duration)
        return duration

    @contextmanager
    def section(self, name: str) -> Iterator[None]:
        """以 ``with`` 语句包裹一段计时区间（异常时也会记录）。"""
        self.start(name)
        try:
            yield
        finally:
            self.end(name)

    # ==================== 统计查询 ====================

    def get_count(self, name: str) -> int:
        """获取指定操作的调用次数"""
        return len(self.timings.get(name, []))

    def get_average(self, name: str) -> float:
        """获取指定操作的平均耗时（秒）"""
        times = self.timings.get(name, [])
        return sum(times) / len(times) if times else 0.0

    def get_total(self, name: str) -> float:
        """获取指定操作的总耗时（秒）"""
        return sum(self.timings.get(name, []))

    # ==================== 生命周期 ====================

    def reset(self) -> None:
        """重置所有记录"""
        self.timings.clear()
        self.active_timers.clear()

    # ==================== 输出 ====================

    def print_summary(self) -> None:
        """打印性能摘要"""
        if not self.enabled or not self.timings:
            return

        print("\n" + "=" * 60)
        print("集合通信耗时摘要")
        print("=" * 60)

        for name, times in self.timings.items():
            total: float = sum(times)
            print(f"\n{name}:")
            print(f"  调用次数: {len(times)}")
            print(f"  总耗时: {total:.4f} 秒")
            print(f"  平均耗时: {total / len(times):.4f} 秒")
            print(f"  最大耗时: {max(times):.4f} 秒")
            if len(times) > 1:
                print(f"  标准差: {statistics.stdev(times):.4f} 秒")

        print("\n" + "=" * 60)
