"""vault-gardener: scheduled, crash-safe runs of an LLM agent CLI against a markdown vault."""

__version__ = "0.1.0"

__all__ = ["__version__"]
