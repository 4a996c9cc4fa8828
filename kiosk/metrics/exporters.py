"""Render the metrics registry for external monitoring systems."""
from __future__ import annotations

import logging
from typing import Mapping

from .base import DistributionMetric, Metric
from .registry import MetricsRegistry

logger = logging.getLogger(__name__)


def _label_text(metric: Metric, labels: tuple[str, ...], **extra: str) -> str:
    pairs = [f'{name}="{value}"' for name, value in zip(metric.label_names, labels)]
    pairs.extend(f'{name}="{value}"' for name, value in extra.items())
    return "{" + ",".join(pairs) + "}" if pairs else ""


class PrometheusExporter:
    """Generate Prometheus compatible text format output."""

    def __init__(self, registry: MetricsRegistry) -> None:
        self.registry = registry

    def _histogram_lines(
        self, metric: DistributionMetric, labels: tuple[str, ...], values: Mapping[str, float]
    ) -> list[str]:
        lines = []
        for bound in metric.buckets:
            upper = format(bound, "g")
            lines.append(f"{metric.name}_bucket{_label_text(metric, labels, le=upper)} {values['le:' + upper]}")
        lines.append(f"{metric.name}_bucket{_label_text(metric, labels, le='+Inf')} {values['count']}")
        lines.append(f"{metric.name}_count{_label_text(metric, labels)} {values['count']}")
        lines.append(f"{metric.name}_sum{_label_text(metric, labels)} {values['sum']}")
        return lines

    def build_payload(self) -> str:
        lines: list[str] = []
        for metric in self.registry.metrics():
            lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {metric.kind}")
            for labels, values in sorted(metric.snapshot().items()):
                if isinstance(metric, DistributionMetric):
                    lines.extend(self._histogram_lines(metric, labels, values))
                else:
                    lines.append(f"{metric.name}{_label_text(metric, labels)} {values['value']}")
        return "\n".join(lines) + ("\n" if lines else "")

    def export(self) -> str:
        payload = self.build_payload()
        logger.debug("Generated metrics payload with %d bytes", len(payload))
        return payload
