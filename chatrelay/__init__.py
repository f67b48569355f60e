"""
Conversational session relay.

This package contains:
- settings: configuration from the environment / .env
- logging_config: shared logging setup
- session: in-memory conversation store and the TTL sweep timer
- relay: upstream client, SSE decoding, sinks and the relay engine
- orchestrator: glue between transports and the relay core
- routes: FastAPI app factory, HTTP and WebSocket endpoints
"""
