"""Live agent: local collection and the client side of the protocol."""
