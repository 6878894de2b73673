from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class EquipmentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentName: str = Field(..., min_length=1, max_length=255)
    serialNumber: Optional[str] = None
    description: Optional[str] = None
    unitCount: int = Field(1, ge=1)


class EquipmentConditionUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Optional[Literal["UNDER_MAINTENANCE", "DEFECTIVE", "OUT_OF_SERVICE", "ARCHIVED"]] = None
