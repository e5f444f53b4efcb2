"""时间桶对齐

所有桶键都必须经过 `align_to_interval` 计算，采集、回填与告警共用同一套口径。
"""


def align_to_interval(timestamp: int, interval_ms: int) -> int:
    """向下取整到桶起始时间"""
    return (timestamp // interval_ms) * interval_ms


def generate_buckets(start: int, end: int, interval_ms: int) -> list[int]:
    """生成 [start, end] 闭区间内的桶起始时间"""
    return list(range(start, end + 1, interval_ms))
