from __future__ import annotations

from typing import Any, Dict, List, Optional


class IngestionError(Exception):
    """Base for every failure an ingestion request can report to the client."""

    kind = "IngestionError"
    http_status = 500

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self, *, include_detail: bool = False) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.kind, "message": self.message}
        if include_detail and self.detail:
            body["detail"] = self.detail
        return body


class TenantNotFound(IngestionError):
    kind = "TenantNotFound"
    http_status = 404

    def __init__(self, identifier: str):
        super().__init__(f"Tenant not found: {identifier}")
        self.identifier = identifier


class PayloadValidationError(IngestionError):
    kind = "ValidationError"
    http_status = 422

    def __init__(self, message: str, *, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []

    def to_dict(self, *, include_detail: bool = False) -> Dict[str, Any]:
        body = super().to_dict(include_detail=include_detail)
        body["errors"] = self.errors
        return body


class TenantConnectionError(IngestionError):
    """Both the primary and the fallback backend are unreachable."""

    kind = "ConnectionError"


class SchemaError(IngestionError):
    kind = "SchemaError"

    def __init__(self, table: str, cause: BaseException):
        super().__init__(f"Schema change failed for table '{table}'", detail=str(cause))
        self.table = table
        self.__cause__ = cause


class KeyResolutionError(IngestionError):
    kind = "KeyResolutionError"

    def __init__(self, table: str):
        super().__init__(f"Cannot resolve a conflict key for table '{table}': it has no columns")
        self.table = table


class LoadError(IngestionError):
    kind = "LoadError"

    def __init__(self, table: str, cause: BaseException):
        super().__init__(f"Loading rows into table '{table}' failed", detail=str(cause))
        self.table = table
        self.__cause__ = cause
