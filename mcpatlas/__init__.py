"""mcpatlas - discover, reconcile and verify MCP servers."""

__version__ = "0.4.0"
