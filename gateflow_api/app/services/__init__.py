"""
Service layer.

Each service encapsulates the business logic of one domain over the
SQLite database and raises ``core.errors.ApiError`` subclasses that the
application renders as error envelopes.
"""
