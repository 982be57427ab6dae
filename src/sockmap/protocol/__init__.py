"""Live collection protocol: wire messages and the collection server."""
