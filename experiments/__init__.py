"""Benchmark scenarios and the optimizer comparison driver."""
