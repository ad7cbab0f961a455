"""Generation capability: clients, cancellation and executor resolution."""

from delegrid.generation.base import CancellationToken, GenerationClient
from delegrid.generation.command_client import CommandGenerationClient
from delegrid.generation.resolver import ClientFactory, ExecutorResolver

__all__ = [
    "CancellationToken",
    "ClientFactory",
    "CommandGenerationClient",
    "ExecutorResolver",
    "GenerationClient",
]
