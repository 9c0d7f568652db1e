"""Kernel utilities shared across the connector engine.

Rules:
- Kernel code must not import from connectors or presentation layers.
- Keep these utilities small and stable; no business logic here.
"""
