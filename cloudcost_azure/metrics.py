"""Metric descriptors, constant metrics, counters and a registry for collectors."""

from __future__ import annotations

import enum
import threading
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

EXPORTER_NAME = "cloudcost_exporter"
METRIC_PREFIX = "cloudcost"

INSTANCE_CPU_COST_SUFFIX = "instance_cpu_usd_per_core_hour"
INSTANCE_MEMORY_COST_SUFFIX = "instance_memory_usd_per_gib_hour"
INSTANCE_TOTAL_COST_SUFFIX = "instance_total_usd_per_hour"


class ValueType(enum.Enum):
    """Kind of value a metric carries."""

    COUNTER = "counter"
    GAUGE = "gauge"
    UNTYPED = "untyped"


def build_fq_name(namespace: str, subsystem: str, name: str) -> str:
    """Join the non-empty parts with underscores; an empty name gives an empty result."""
    if not name:
        return ""
    return "_".join(part for part in (namespace, subsystem, name) if part)


@dataclass(frozen=True)
class Desc:
    """Describes a metric: its full name, help text and label names."""

    fq_name: str
    help: str
    variable_labels: tuple[str, ...] = ()
    const_labels: tuple[tuple[str, str], ...] = field(default=())

    def __post_init__(self) -> None:
        object.__setattr__(self, "variable_labels", tuple(self.variable_labels))
        labels: Any = self.const_labels
        if isinstance(labels, Mapping):
            labels = labels.items()
        object.__setattr__(self, "const_labels", tuple(sorted((str(k), str(v)) for k, v in labels)))

    def __str__(self) -> str:
        const = ",".join(f'{k}="{v}"' for k, v in self.const_labels)
        variable = ",".join(self.variable_labels)
        return (
            f'Desc{{fqName: "{self.fq_name}", help: "{self.help}", '
            f"constLabels: {{{const}}}, variableLabels: {{{variable}}}}}"
        )


def generate_desc(prefix: str, subsystem: str, suffix: str, help_text: str, labels: Iterable[str]) -> Desc:
    """Build a descriptor named prefix_subsystem_suffix."""
    return Desc(build_fq_name(prefix, subsystem, suffix), help_text, tuple(labels))


@dataclass(frozen=True)
class Metric:
    """A single sample with fixed label values."""

    desc: Desc
    value_type: ValueType
    value: float
    label_values: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "label_values", tuple(self.label_values))
        object.__setattr__(self, "value", float(self.value))
        expected = len(self.desc.variable_labels)
        if len(self.label_values) != expected:
            raise ValueError(
                f"inconsistent label cardinality for {self.desc.fq_name}: "
                f"expected {expected} label values, got {len(self.label_values)}"
            )

    @property
    def labels(self) -> dict[str, str]:
        """Label names mapped to their values."""
        return dict(zip(self.desc.variable_labels, self.label_values))


class Counter:
    """A monotonically increasing value, safe to share between threads."""

    def __init__(self) -> None:
        self._value = 0.0
        self._lock = threading.Lock()

    def inc(self) -> None:
        """Add one to the counter."""
        with self._lock:
            self._value += 1.0

    @property
    def value(self) -> float:
        with self._lock:
            return self._value


class CounterVec:
    """A family of counters partitioned by label values."""

    def __init__(self, name: str, help_text: str, label_names: Iterable[str]) -> None:
        self.desc = Desc(name, help_text, tuple(label_names))
        self._counters: dict[tuple[str, ...], Counter] = {}
        self._lock = threading.Lock()

    def with_label_values(self, *args: str) -> Counter:
        """Return the counter for these label values, creating it on first use."""
        if len(args) != len(self.desc.variable_labels):
            raise ValueError(
                f"expected {len(self.desc.variable_labels)} label values for "
                f"{self.desc.fq_name}, got {len(args)}"
            )
        key = tuple(args)
        with self._lock:
            return self._counters.setdefault(key, Counter())

    def collect(self) -> Iterator[Metric]:
        """Yield the current value of every counter in the family."""
        with self._lock:
            items = list(self._counters.items())
        for labels, counter in items:
            yield Metric(self.desc, ValueType.COUNTER, counter.value, labels)


class Registry:
    """Holds registered collectors; registering one twice is an error."""

    def __init__(self) -> None:
        self._collectors: list[Any] = []
        self._lock = threading.Lock()

    def must_register(self, *args: Any) -> None:
        """Register every collector given, failing on a duplicate."""
        with self._lock:
            for collector in args:
                if any(existing is collector for existing in self._collectors):
                    raise ValueError(f"duplicate collector registration: {collector!r}")
                self._collectors.append(collector)

    @property
    def collectors(self) -> tuple[Any, ...]:
        with self._lock:
            return tuple(self._collectors)