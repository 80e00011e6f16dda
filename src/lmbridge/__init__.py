"""lmbridge: one language model chat capability behind bridge, Ollama, OpenAI and MCP surfaces."""

__version__ = "0.4.0"
