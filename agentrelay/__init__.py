"""agentrelay: drive coding-agent backends from a remote session."""

__version__ = "0.1.0"
