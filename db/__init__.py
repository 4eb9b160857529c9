"""
db/ - Database Layer
====================
Connection configuration, the PostgreSQL connection pool, the error
taxonomy and the sample schema. This layer is the lowest in the
architecture and has no dependencies on other layers.
"""
