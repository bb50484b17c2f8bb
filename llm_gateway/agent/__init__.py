"""Model calling, routing and multi-pass orchestration."""
