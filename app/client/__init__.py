"""Command-line client that drives an optimization through the proxy."""

from app.client.api import ProxyClient
from app.client.flow import FlowResult, OptimizationFlow, sha256_of_file

__all__ = ["FlowResult", "OptimizationFlow", "ProxyClient", "sha256_of_file"]
