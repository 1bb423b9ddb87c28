"""Error taxonomy shared by every stage of the question-to-answer pipeline.

Each error carries a stable ``kind`` (used for metrics, history records and
HTTP mapping) and a ``user_message`` that is safe to show to the tenant. The
``str()`` of an error is for logs and may be more detailed, but never carries
credential material.
"""

from __future__ import annotations

from typing import Optional


class SqlAskError(Exception):
    kind = "internal"
    default_user_message = "Something went wrong while answering the question."

    def __init__(self, message: str = "", user_message: Optional[str] = None):
        super().__init__(message or self.default_user_message)
        self.user_message = user_message or self.default_user_message


class ConfigError(SqlAskError):
    kind = "config"
    default_user_message = "The service is misconfigured."


class CredentialIntegrityError(SqlAskError):
    kind = "credential_integrity"
    default_user_message = "Stored credentials for this connection could not be read. Please re-enter them."


class ConnectionNotFound(SqlAskError):
    kind = "connection_not_found"
    default_user_message = "The requested database connection was not found."


class ConnectionUnreachable(SqlAskError):
    kind = "connection_unreachable"
    default_user_message = (
        "The database connection is not reachable. Test or edit the connection and try again."
    )


class SchemaUnavailableError(SqlAskError):
    kind = "schema_unavailable"
    default_user_message = "The database schema has not been discovered yet."


class SchemaDiscoveryError(SqlAskError):
    kind = "schema_discovery"
    default_user_message = "The database schema could not be discovered."


class QueryGenerationError(SqlAskError):
    kind = "generation"
    default_user_message = "I could not understand the question well enough to write a query for it."


class QuerySafetyViolation(SqlAskError):
    kind = "safety_violation"
    default_user_message = (
        "That request would modify the database. Only read-only questions can be answered."
    )


class QueryExecutionError(SqlAskError):
    kind = "execution"
    default_user_message = "The query could not be executed."


__all__ = [
    "ConfigError",
    "ConnectionNotFound",
    "ConnectionUnreachable",
    "CredentialIntegrityError",
    "QueryExecutionError",
    "QueryGenerationError",
    "QuerySafetyViolation",
    "SchemaDiscoveryError",
    "SchemaUnavailableError",
    "SqlAskError",
]
