from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from equipment_loans.db.base import Base


class Equipment(Base):
    __tablename__ = "Equipment"

    EquipmentID = Column(Integer, primary_key=True)
    EquipmentName = Column(String(255), nullable=False)
    SerialNumber = Column(String(255))
    Description = Column(String(1000))
    UnitCount = Column(Integer, nullable=False, default=1)
    Status = Column(String(40), nullable=False, default="AVAILABLE")
    NextReservedFrom = Column(DateTime)
    VersionID = Column(Integer, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Borrows = relationship("Borrow", back_populates="Equipment")

    __mapper_args__ = {"version_id_col": VersionID}


class Borrow(Base):
    __tablename__ = "Borrows"

    BorrowID = Column(Integer, primary_key=True)
    GroupID = Column(String(64), index=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False, index=True)
    RequesterID = Column(Integer, nullable=False, index=True)
    ClassID = Column(Integer)
    RequestedStart = Column(DateTime, nullable=False)
    RequestedEnd = Column(DateTime, nullable=False)
    ApprovedStart = Column(DateTime)
    ApprovedEnd = Column(DateTime)
    CheckoutTime = Column(DateTime)
    ActualReturnTime = Column(DateTime)
    Status = Column(String(30), nullable=False, default="PENDING", index=True)
    RejectedByRole = Column(String(20))
    ApproverID = Column(Integer)
    ReturnCondition = Column(String(500))
    ReturnRemarks = Column(String(1000))
    DataRequested = Column(Boolean, default=False)
    DataRequestStatus = Column(String(20))
    DataRequestRemarks = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Equipment = relationship("Equipment", back_populates="Borrows")
    Deficiencies = relationship("Deficiency", back_populates="Borrow", cascade="all, delete-orphan")


class Deficiency(Base):
    __tablename__ = "Deficiencies"

    DeficiencyID = Column(Integer, primary_key=True)
    BorrowID = Column(Integer, ForeignKey("Borrows.BorrowID"), nullable=False, index=True)
    UserID = Column(Integer, nullable=False)
    TaggedByID = Column(Integer, nullable=False)
    Type = Column(String(30), nullable=False)
    Status = Column(String(30), nullable=False, default="UNRESOLVED")
    Description = Column(String(2000))
    CreatedDate = Column(DateTime, server_default=func.now())

    Borrow = relationship("Borrow", back_populates="Deficiencies")
