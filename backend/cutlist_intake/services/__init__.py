"""Request-level services: the extraction orchestrator and its result cache."""
