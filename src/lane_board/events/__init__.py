"""In-process event bus and the WebSocket hub that relays it to viewers."""
