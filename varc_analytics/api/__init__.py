"""HTTP surface for the analytics pipeline."""
