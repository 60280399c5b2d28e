"""Adapters wiring the engine to stream observers."""
