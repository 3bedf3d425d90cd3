from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_FEATURE_FLAGS: dict[str, bool] = {
    "sheets_enabled": True,
    "kommo_enabled": True,
    "keyword_tracking": True,
    "organic_filter": False,
}
AUTO_SHEET_NAME = "auto"


class Tenant(BaseModel):
    id: str
    slug: str | None = None
    name: str
    instance_id: str | None = Field(default=None, alias="tintim_instance_id")
    account_id: str | None = Field(default=None, alias="kommo_account_id")
    pipeline_id: str | None = Field(default=None, alias="kommo_pipeline_id")
    spreadsheet_id: str
    sheet_name: str = AUTO_SHEET_NAME
    feature_flags: dict[str, bool] = Field(default_factory=dict)
    active: bool = True

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("id", "instance_id", "account_id", "pipeline_id", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        return str(value).strip()

    @field_validator("feature_flags", mode="before")
    @classmethod
    def _flags(cls, value: Any) -> Any:
        return value or {}

    @field_validator("sheet_name", mode="before")
    @classmethod
    def _sheet_name(cls, value: Any) -> Any:
        return value or AUTO_SHEET_NAME

    @property
    def sheet_naming_mode(self) -> Literal["fixed", "auto-monthly"]:
        if not self.sheet_name or self.sheet_name.strip().lower() == AUTO_SHEET_NAME:
            return "auto-monthly"
        return "fixed"

    def flag(self, name: str) -> bool:
        if name in self.feature_flags:
            return bool(self.feature_flags[name])
        return DEFAULT_FEATURE_FLAGS.get(name, False)


class TenantSummary(BaseModel):
    id: str
    name: str
    sheet_naming_mode: str
    active: bool
