"""Webhook delivery: durable, idempotent, at-least-once webhook delivery."""
__version__ = "0.1.0"
