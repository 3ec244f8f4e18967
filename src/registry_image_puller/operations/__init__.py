"""Pull pipeline operations."""
