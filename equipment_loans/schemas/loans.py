from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class SubmitLoanDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    requestedStart: datetime
    requestedEnd: datetime
    classID: Optional[int] = None


class SubmitGroupLoanDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentIDs: List[int] = Field(..., min_length=1)
    requestedStart: datetime
    requestedEnd: datetime
    classID: Optional[int] = None


class ApproveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    approvedStart: Optional[datetime] = None
    approvedEnd: Optional[datetime] = None


class ApprovedWindowUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    approvedStart: datetime
    approvedEnd: datetime


class DataRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    remarks: Optional[str] = None
    equipmentIDs: List[int] = []


class RequestReturnDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    requestData: bool = False
    dataRequestRemarks: Optional[str] = None
    requestedEquipmentIDs: List[int] = []

    def to_data_request(self) -> Optional[DataRequest]:
        if not self.requestData:
            return None
        return DataRequest(remarks=self.dataRequestRemarks, equipmentIDs=self.requestedEquipmentIDs)


class DeficiencyCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Literal["DAMAGE", "LOSS", "MISHANDLING", "OTHER"]
    description: Optional[str] = None
    userID: Optional[int] = None
    equipmentID: Optional[int] = None


class FinalizeReturnDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    returnCondition: Optional[str] = None
    returnRemarks: Optional[str] = None
    completed: bool = False
    deficiency: Optional[DeficiencyCreate] = None
