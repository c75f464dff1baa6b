"""HTTP surface over the generation workflows."""
