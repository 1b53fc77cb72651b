from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

# bool first: smart-mode unions keep the exact JSON type
Scalar = Optional[Union[bool, int, float, str]]
Row = Dict[str, Scalar]


class TableEnvelope(BaseModel):
    data: List[Row] = Field(default_factory=list)
    columns: Optional[List[str]] = Field(default=None, description="Informational; rows carry their own keys.")


class ReceiveRequest(BaseModel):
    user_identifier: str = Field(min_length=1, description="Tenant id or physical database name.")
    payload: Dict[str, Union[List[Row], TableEnvelope]]

    @field_validator("user_identifier", mode="before")
    @classmethod
    def _identifier_to_str(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    def tables(self) -> Dict[str, List[Dict[str, Any]]]:
        out: Dict[str, List[Dict[str, Any]]] = {}
        for name, entry in self.payload.items():
            out[name] = list(entry.data) if isinstance(entry, TableEnvelope) else list(entry)
        return out


class TableReportModel(BaseModel):
    rows: int
    created: bool = False
    added_columns: List[str] = Field(default_factory=list)
    widened_columns: List[str] = Field(default_factory=list)
    conflict_key: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    types: Dict[str, str] = Field(default_factory=dict)
    estimated_row_bytes: int = 0


class ReceiveResponse(BaseModel):
    message: str
    tenant: str
    backend: str
    rows_loaded: int
    tables: Dict[str, TableReportModel]
    skipped: List[str] = Field(default_factory=list)


class ConnectBIRequest(BaseModel):
    user_identifier: str = Field(min_length=1)

    @field_validator("user_identifier", mode="before")
    @classmethod
    def _identifier_to_str(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class BITableModel(BaseModel):
    table: str
    columns: List[str]


class ConnectBIResponse(BaseModel):
    tenant: str
    connection: Dict[str, Any]
    tables: List[BITableModel]
