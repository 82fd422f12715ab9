"""Gemini chat relay: HTTP API, SSE streaming and a terminal client."""
