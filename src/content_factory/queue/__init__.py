"""Durable task queue, delivery policy and the worker that drains it."""
