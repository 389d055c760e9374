from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    # Accept both the camelCase wire names and snake_case field names.
    model_config = ConfigDict(populate_by_name=True)


class FilterConfig(_CamelModel):
    id: str | None = None
    column_id: int = Field(alias="columnId")
    column_name: str | None = Field(default=None, alias="columnName")
    # Advisory only; the stored column type decides operator semantics.
    column_type: str | None = Field(default=None, alias="columnType")
    operator: str
    value: Any = None
    second_value: Any = Field(default=None, alias="secondValue")

    def stable_id(self) -> str:
        # Identity used to order filters canonically; independent of list position.
        return json.dumps(
            [self.column_id, self.operator, self.value, self.second_value],
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )


class FilterPayload(_CamelModel):
    page: int = Field(default=1, ge=1)
    # Bounded against settings in the filter engine so the error stays typed.
    page_size: int | None = Field(default=None, ge=1, alias="pageSize")
    include_cells: bool = Field(default=True, alias="includeCells")
    global_search: str = Field(default="", alias="globalSearch")
    filters: list[FilterConfig] = Field(default_factory=list)
    sort_by: str = Field(default="id", alias="sortBy")
    sort_order: Literal["asc", "desc"] = Field(default="asc", alias="sortOrder")


class ColumnSpec(_CamelModel):
    name: str = Field(min_length=1, max_length=128)
    type: str = "text"
    semantic_type: str | None = Field(default=None, alias="semanticType")
    description: str | None = None
    required: bool = False
    primary: bool = False
    unique: bool = False
    order: int | None = None
    # Either an existing table id or a symbolic name resolved within the batch.
    reference_table_id: int | None = Field(default=None, alias="referenceTableId")
    reference_table: str | None = Field(default=None, alias="referenceTable")
    custom_options: list[str] | None = Field(default=None, alias="customOptions")
    default_value: str | None = Field(default=None, alias="defaultValue")
    is_locked: bool = Field(default=False, alias="isLocked")


class TemplateSpec(_CamelModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=128)
    description: str = ""
    # Template ids from the same batch this template references.
    dependencies: list[str] = Field(default_factory=list)
    columns: list[ColumnSpec] = Field(default_factory=list)
    is_protected: bool = Field(default=False, alias="isProtected")
    protected_type: str | None = Field(default=None, alias="protectedType")
