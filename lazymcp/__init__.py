"""LazyMCP: a Model Context Protocol server with calculator, network and weather tools."""

__version__ = "1.0.0"
