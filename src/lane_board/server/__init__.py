"""Tool-invocation surface and HTTP/WebSocket app for the board."""
