"""HTTP surface of the data lifecycle engine."""
