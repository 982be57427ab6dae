"""sockmap — process-to-process network topology from host socket inventories."""

__version__ = "0.1.0"
