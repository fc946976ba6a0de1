"""Clients for external services used by the pipeline."""
from varc_analytics.integrations.reasoning_client import ReasoningServiceClient

__all__ = ["ReasoningServiceClient"]
