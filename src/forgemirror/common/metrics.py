"""In-process metrics rendered in the Prometheus text exposition format.

Values live only in memory for the lifetime of the process and are never
written anywhere; ``/_mirror/metrics`` is the only way to read them.
"""

from __future__ import annotations

from typing import Callable, Dict, Iterable


class Counter:
    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._value = 0.0

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        self._value += amount

    @property
    def value(self) -> float:
        return self._value

    def render(self) -> str:
        return f"# HELP {self.name} {self.description}\n# TYPE {self.name} counter\n{self.name} {self._value}\n"


class LabeledCounter:
    """Counter family keyed by a single label, e.g. ``policy="dynamic"``."""

    def __init__(self, name: str, label: str, description: str = "") -> None:
        self.name = name
        self.label = label
        self.description = description
        self._values: Dict[str, float] = {}

    def inc(self, label_value: str, amount: float = 1.0) -> None:
        self._values[label_value] = self._values.get(label_value, 0.0) + amount

    def value(self, label_value: str) -> float:
        return self._values.get(label_value, 0.0)

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} counter"]
        for label_value in sorted(self._values):
            lines.append(f'{self.name}{{{self.label}="{label_value}"}} {self._values[label_value]}')
        return "\n".join(lines) + "\n"


class Gauge:
    def __init__(self, name: str, description: str = "", supplier: Callable[[], float] | None = None) -> None:
        self.name = name
        self.description = description
        self._value = 0.0
        self._supplier = supplier

    def set(self, value: float) -> None:
        self._value = value

    def render(self) -> str:
        value = self._supplier() if self._supplier else self._value
        return f"# HELP {self.name} {self.description}\n# TYPE {self.name} gauge\n{self.name} {value}\n"


class Histogram:
    def __init__(self, name: str, buckets: Iterable[float], description: str = "") -> None:
        self.name = name
        self.description = description
        self._buckets = sorted(buckets)
        self._counts = [0] * len(self._buckets)
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        self._count += 1
        self._sum += value
        for index, bound in enumerate(self._buckets):
            if value <= bound:
                self._counts[index] += 1

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} histogram"]
        for bound, count in zip(self._buckets, self._counts):
            lines.append(f'{self.name}_bucket{{le="{bound}"}} {count}')
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {self._count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, object] = {}

    def register(self, metric):
        # Re-registering a name returns the existing metric so module reloads
        # and repeated app construction in tests share one series.
        existing = self._metrics.get(metric.name)
        if existing is not None:
            return existing
        self._metrics[metric.name] = metric
        return metric

    def get(self, name: str):
        return self._metrics.get(name)

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values()) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()
