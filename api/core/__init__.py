"""
Shared, cross-cutting code for the API.

`core/` holds the building blocks every feature uses: configuration, the
connection pool, schema migrations, health reporting and logging setup.
Entity SQL and its error mapping live in the feature package (`users/`).
"""
