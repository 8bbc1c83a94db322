"""
Version 1 of the GateFlow API, mounted under ``/api/v1``.
"""
