"""Service layer: content download, pinning, persistence and orchestration."""
