"""Strict schema baselines with forbidden extras by default."""

from pydantic import BaseModel, ConfigDict


class StrictModel(BaseModel):
    """Neutral strict base for result DTOs."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class StrictRequestModel(StrictModel):
    """Input DTO base that always forbids unexpected fields and trims strings."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True, str_strip_whitespace=True)
