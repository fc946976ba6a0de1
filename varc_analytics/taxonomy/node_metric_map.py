"""
Node -> core metric mapping.

The reasoning-node catalog is maintained outside this service and shipped as
a versioned JSON document:

    {
      "version": "v1.0",
      "metrics": {
        "inference_accuracy": {
          "reasoning_steps": [{"node_id": "...", "label": "..."}, ...]
        },
        ...
      }
    }

One node may back several metrics and one metric is backed by several
nodes. The document is parsed once per run into an immutable adjacency
structure that callers pass explicitly to the aggregator.
"""
from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from varc_analytics.core.errors import TaxonomyError


class ReasoningStepEntry(BaseModel):
    """One reasoning node reference inside a metric definition."""

    node_id: str = Field(..., min_length=1)
    label: str | None = None


class MetricEntry(BaseModel):
    """A core metric and the reasoning nodes that back it."""

    reasoning_steps: list[ReasoningStepEntry] = Field(default_factory=list)


class TaxonomyDocument(BaseModel):
    """Schema of the external mapping document (extra keys ignored)."""

    version: str = "unversioned"
    metrics: dict[str, MetricEntry]


@dataclass(frozen=True)
class NodeMetricMap:
    """Immutable many-to-many adjacency between reasoning nodes and metrics."""

    version: str
    node_to_metrics: Mapping[str, tuple[str, ...]]
    metric_to_nodes: Mapping[str, tuple[str, ...]]
    node_labels: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_pairs(
        cls,
        pairs: dict[str, list[str]] | Mapping[str, Any],
        version: str = "inline",
    ) -> NodeMetricMap:
        """Build from a plain ``{metric: [node_id, ...]}`` mapping."""
        document = {
            "version": version,
            "metrics": {
                metric: {"reasoning_steps": [{"node_id": node_id} for node_id in node_ids]}
                for metric, node_ids in pairs.items()
            },
        }
        return cls.from_document(document)

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> NodeMetricMap:
        """Validate a parsed mapping document and build the adjacency."""
        try:
            parsed = TaxonomyDocument.model_validate(document)
        except ValidationError as e:
            raise TaxonomyError(f"Invalid taxonomy document: {e}") from e

        node_to_metrics: dict[str, set[str]] = {}
        metric_to_nodes: dict[str, set[str]] = {}
        labels: dict[str, str] = {}

        for metric_key, metric in parsed.metrics.items():
            nodes = metric_to_nodes.setdefault(metric_key, set())
            for step in metric.reasoning_steps:
                nodes.add(step.node_id)
                node_to_metrics.setdefault(step.node_id, set()).add(metric_key)
                if step.label and step.node_id not in labels:
                    labels[step.node_id] = step.label

        # Sorted tuples keep iteration order stable across interpreter runs
        return cls(
            version=parsed.version,
            node_to_metrics=MappingProxyType(
                {node: tuple(sorted(metrics)) for node, metrics in sorted(node_to_metrics.items())}
            ),
            metric_to_nodes=MappingProxyType(
                {metric: tuple(sorted(nodes)) for metric, nodes in sorted(metric_to_nodes.items())}
            ),
            node_labels=MappingProxyType(labels),
        )

    @classmethod
    def load(cls, path: Path | str) -> NodeMetricMap:
        """Load and validate a mapping document from disk."""
        path = Path(path)
        if not path.exists():
            raise TaxonomyError(f"Taxonomy document not found: {path}")

        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise TaxonomyError(f"Taxonomy document is not valid JSON: {path}: {e}") from e

        mapping = cls.from_document(document)
        logger.info(
            f"Loaded taxonomy {mapping.version}: {len(mapping.metric_to_nodes)} metrics, "
            f"{len(mapping.node_to_metrics)} reasoning nodes"
        )
        return mapping

    def metrics_for(self, node_id: str) -> tuple[str, ...]:
        """Metrics backed by a node (empty for unknown nodes)."""
        return self.node_to_metrics.get(node_id, ())

    def nodes_for(self, metric_key: str) -> tuple[str, ...]:
        """Reasoning nodes that back a metric."""
        return self.metric_to_nodes.get(metric_key, ())

    @property
    def metric_keys(self) -> tuple[str, ...]:
        return tuple(self.metric_to_nodes)
