"""Offline-resilient mail sync core: sync engine, mutation queue and outbox."""

__version__ = "0.1.0"
