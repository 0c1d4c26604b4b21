"""WebSocket signaling transport: connections, events and dispatch."""
