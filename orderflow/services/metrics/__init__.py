"""Dashboard metrics."""
