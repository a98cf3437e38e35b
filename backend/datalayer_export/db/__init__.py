"""Database interface and repository abstractions.

This package holds the request-scoped data models of the export pipeline and
the read-only repositories over the incident store (users, incidents,
collaboration rooms and room permissions). It provides a stable import
location for repository dependency injection, supporting production and
testing backends.

Example:
    Use in a service or FastAPI dependency:
        >>> from datalayer_export.db import database
        >>> repo = database.get_datalayer_repository(settings)
"""
