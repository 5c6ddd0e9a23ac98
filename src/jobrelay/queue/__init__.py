"""Durable job queues, admission control, dead letters, and queue metrics."""
