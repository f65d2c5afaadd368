"""Database error types"""


class DatabaseError(Exception):
    """Base class for database errors"""
    pass


class DatabaseSchemaError(DatabaseError):
    """Raised when schema files are missing or a migration fails"""
    pass
