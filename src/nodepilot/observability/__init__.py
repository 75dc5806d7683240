"""Tracing and in-process metrics."""
