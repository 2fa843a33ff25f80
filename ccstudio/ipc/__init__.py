"""Inter-process transport: HTTP commands plus an SSE event channel."""
