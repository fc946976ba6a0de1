"""Reasoning-node taxonomy: the versioned node -> core metric mapping."""

from varc_analytics.taxonomy.node_metric_map import NodeMetricMap, TaxonomyDocument

__all__ = [
    "NodeMetricMap",
    "TaxonomyDocument",
]
