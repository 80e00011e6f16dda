"""Ollama and OpenAI compatible proxy in front of the bridge."""
