"""
Prometheus Metrics Collection for cred-tool

The tool runs once per runner start, so metrics are not scraped from a
server. When METRICS_TEXTFILE is configured the registry is dumped to that
file for the node-exporter textfile collector on the FPGA host.
"""

import logging
from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram, write_to_textfile

logger = logging.getLogger(__name__)

# =============================================================================
# External API Metrics
# =============================================================================

external_api_requests_total = Counter(
    "cred_tool_external_api_requests_total",
    "Total requests to external APIs",
    ["service"],
)

external_api_errors_total = Counter(
    "cred_tool_external_api_errors_total",
    "Total errors from external APIs",
    ["service"],
)

external_api_duration_seconds = Histogram(
    "cred_tool_external_api_duration_seconds",
    "External API request duration in seconds",
    ["service"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# =============================================================================
# Pipeline Metrics
# =============================================================================

pipeline_runs_total = Counter(
    "cred_tool_pipeline_runs_total",
    "Credential pipeline runs by outcome",
    ["outcome"],
)

pipeline_retries_total = Counter(
    "cred_tool_pipeline_retries_total",
    "Retries performed inside a pipeline stage",
    ["stage", "reason"],
)


def write_metrics(path: Optional[str], registry: CollectorRegistry = REGISTRY) -> None:
    """Write the registry in text exposition format; a failure here never fails the run."""
    if not path:
        return
    try:
        write_to_textfile(path, registry)
        logger.debug(f"Metrics written to {path}")
    except OSError as e:
        logger.warning(f"Could not write metrics to {path}: {e}")
