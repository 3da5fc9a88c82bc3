"""Prometheus metrics for the run plane."""
