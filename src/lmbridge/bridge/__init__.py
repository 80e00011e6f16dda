"""Native bridge server: admission, chat sessions and the JSON/SSE surface."""
