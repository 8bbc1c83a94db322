"""
Pydantic schema definitions for API payloads.

Each domain defines its request bodies (``Create``/``Update``) and the
read models used to shape responses.  Field-level business rules that
need the API's own error messages live in the services.
"""
