"""Core components: local store, configuration, connectivity, session, sync and search."""
