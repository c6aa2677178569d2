"""HTTP + SSE command surface for UI clients."""
