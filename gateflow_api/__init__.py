"""
Top‑level package for the GateFlow API.

Marks ``gateflow_api`` as a package so that modules under ``app`` can
be imported with fully qualified names such as
``gateflow_api.app.main``.  All functionality lives in submodules.
"""

__all__ = []
