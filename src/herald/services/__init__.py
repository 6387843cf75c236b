"""Federation engine services."""
