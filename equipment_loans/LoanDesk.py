import logging
import os
from datetime import date, datetime

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from equipment_loans.db.deps import get_loan_db
from equipment_loans.schemas.equipment import EquipmentConditionUpdate, EquipmentCreate
from equipment_loans.schemas.loans import (
    ApprovedWindowUpdate,
    ApproveRequest,
    DeficiencyCreate,
    FinalizeReturnDto,
    RequestReturnDto,
    SubmitGroupLoanDto,
    SubmitLoanDto,
)
from equipment_loans.services import loan_service
from equipment_loans.services.availability_service import get_availability, get_booked_days
from equipment_loans.services.equipment_service import (
    create_equipment,
    get_equipment,
    serialize_equipment,
    set_equipment_condition,
)
from equipment_loans.services.errors import LoanError
from equipment_loans.services.intervals import TimeWindow, make_window
from equipment_loans.services.loan_lifecycle import KNOWN_ROLES, Actor
from equipment_loans.services.loan_service import LoanRef, serialize_loan, serialize_result

API_LOGGER = logging.getLogger("equipment_loans.api")
logging.getLogger("equipment_loans").setLevel((os.environ.get("LOG_LEVEL") or "INFO").strip().upper())

app = FastAPI()


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)


@app.exception_handler(LoanError)
async def loan_error_handler(request: Request, exc: LoanError):
    API_LOGGER.info(
        "Request refused method=%s path=%s status=%s error=%s detail=%s",
        request.method,
        request.url.path,
        exc.status_code,
        type(exc).__name__,
        exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def require_actor(
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
) -> Actor:
    if not x_actor_id or not x_actor_role:
        raise HTTPException(status_code=401, detail="Missing actor identity")
    try:
        actor_id = int(x_actor_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid actor identity") from None
    role = x_actor_role.strip().upper()
    if role not in KNOWN_ROLES:
        raise HTTPException(status_code=403, detail=f"Unknown role: {x_actor_role}")
    return Actor(id=actor_id, role=role)


def _window_or_none(start: datetime | None, end: datetime | None) -> TimeWindow | None:
    if start is None and end is None:
        return None
    return make_window(start, end)


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_loan_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/equipment", status_code=201)
def register_equipment(
    payload: EquipmentCreate,
    db: Session = Depends(get_loan_db),
    actor: Actor = Depends(require_actor),
):
    equipment = create_equipment(
        db,
        payload.equipmentName,
        actor,
        unit_count=payload.unitCount,
        serial_number=payload.serialNumber,
        description=payload.description,
    )
    return serialize_equipment(equipment)


@app.get("/api/equipment/{equipment_id}")
def read_equipment(equipment_id: int, db: Session = Depends(get_loan_db)):
    return serialize_equipment(get_equipment(db, equipment_id))


@app.put("/api/equipment/{equipment_id}/condition")
def update_equipment_condition(
    equipment_id: int,
    payload: EquipmentConditionUpdate,
    db: Session = Depends(get_loan_db),
    actor: Actor = Depends(require_actor),
):
    equipment = set_equipment_condition(db, equipment_id, payload.status, actor)
    return serialize_equipment(equipment)


@app.get("/api/equipment/{equipment_id}/availability")
def read_availability(
    equipment_id: int,
    start: datetime = Query(...),
    end: datetime = Query(...),
    db: Session = Depends(get_loan_db),
):
    return get_availability(db, equipment_id, make_window(start, end))


@app.get("/api/equipment/{equipment_id}/booked-days")
def read_booked_days(
    equipment_id: int,
    start: date = Query(...),
    days: int = Query(31),
    db: Session = Depends(get_loan_db),
):
    return {"equipmentID": equipment_id, "bookedDays": get_booked_days(db, equipment_id, start, days)}


@app.post("/api/loans", status_code=201)
def submit_loan(
    payload: SubmitLoanDto,
    db: Session = Depends(get_loan_db),
    actor: Actor = Depends(require_actor),
):
    loan = loan_service.submit_loan(
        db,
        payload.equipmentID,
        actor,
        make_window(payload.requestedStart, payload.requestedEnd),
        class_id=payload.classID,
    )
    return serialize_loan(loan)


@app.post("/api/loan-groups", status_code=201)
def submit_loan_group(
    payload: SubmitGroupLoanDto,
    db: Session = Depends(get_loan_db),
    actor: Actor = Depends(require_actor),
):
    loans = loan_service.submit_group_loan(
        db,
        payload.equipmentIDs,
        actor,
        make_window(payload.requestedStart, payload.requestedEnd),
        class_id=payload.classID,
    )
    return {"groupID": loans[0].GroupID, "loans": [serialize_loan(loan) for loan in loans]}


@app.post("/api/loans/overdue-sweep")
def run_overdue_sweep(db: Session = Depends(get_loan_db), actor: Actor = Depends(require_actor)):
    if not actor.is_privileged:
        raise HTTPException(status_code=403, detail="Only staff or faculty can run the overdue sweep.")
    flipped = loan_service.mark_overdue_loans(db)
    API_LOGGER.info("Overdue sweep requested actor=%s flipped=%s", actor.id, flipped)
    return {"message": "Overdue sweep finished", "flipped": flipped}


@app.get("/api/loans/{loan_id}")
def read_loan(loan_id: int, db: Session = Depends(get_loan_db)):
    return serialize_loan(loan_service.get_loan(db, loan_id))


@app.get("/api/loan-groups/{group_id}")
def read_loan_group(group_id: str, db: Session = Depends(get_loan_db)):
    members = loan_service.list_group(db, group_id)
    return {"groupID": group_id, "loans": [serialize_loan(loan) for loan in members]}


@app.delete("/api/loans/{loan_id}")
def delete_pending_loan(
    loan_id: int,
    db: Session = Depends(get_loan_db),
    actor: Actor = Depends(require_actor),
):
    loan_service.delete_pending(db, loan_id, actor)
    return {"message": "Request deleted"}


@app.put("/api/loans/{loan_id}/approved-window")
def edit_approved_window(
    loan_id: int,
    payload: ApprovedWindowUpdate,
    db: Session = Depends(get_loan_db),
    actor: Actor = Depends(require_actor),
):
    result = loan_service.update_approved_window(
        db,
        loan_id,
        actor,
        make_window(payload.approvedStart, payload.approvedEnd),
    )
    return serialize_result(result, "Approved time updated")


@app.post("/api/loans/{loan_id}/deficiencies", status_code=201)
def tag_deficiency(
    loan_id: int,
    payload: DeficiencyCreate,
    db: Session = Depends(get_loan_db),
    actor: Actor = Depends(require_actor),
):
    deficiency = loan_service.record_deficiency(db, loan_id, actor, payload)
    return loan_service.serialize_deficiency(deficiency)


def _approve(db: Session, target: LoanRef, actor: Actor, payload: ApproveRequest | None):
    window = _window_or_none(payload.approvedStart, payload.approvedEnd) if payload else None
    result = loan_service.approve(db, target, actor, window=window)
    return serialize_result(result, "Request approved")


def _request_return(db: Session, target: LoanRef, actor: Actor, payload: RequestReturnDto | None):
    data_request = payload.to_data_request() if payload else None
    result = loan_service.request_return(db, target, actor, data_request=data_request)
    return serialize_result(result, "Return requested")


def _finalize_return(db: Session, target: LoanRef, actor: Actor, payload: FinalizeReturnDto | None):
    payload = payload or FinalizeReturnDto()
    result = loan_service.finalize_return(
        db,
        target,
        actor,
        deficiency=payload.deficiency,
        condition=payload.returnCondition,
        remarks=payload.returnRemarks,
        completed=payload.completed,
    )
    return serialize_result(result, "Return confirmed")


@app.post("/api/loans/{loan_id}/approve")
def approve_loan(
    loan_id: int,
    payload: ApproveRequest | None = None,
    db: Session = Depends(get_loan_db),
    actor: Actor = Depends(require_actor),
):
    return _approve(db, LoanRef.single(loan_id), actor, payload)


@app.post("/api/loan-groups/{group_id}/approve")
def approve_loan_group(
    group_id: str,
    payload: ApproveRequest | None = None,
    db: Session = Depends(get_loan_db),
    actor: Actor = Depends(require_actor),
):
    return _approve(db, LoanRef.group(group_id), actor, payload)


@app.post("/api/loans/{loan_id}/reject")
def reject_loan(loan_id: int, db: Session = Depends(get_loan_db), actor: Actor = Depends(require_actor)):
    return serialize_result(loan_service.reject(db, LoanRef.single(loan_id), actor), "Request rejected")


@app.post("/api/loan-groups/{group_id}/reject")
def reject_loan_group(group_id: str, db: Session = Depends(get_loan_db), actor: Actor = Depends(require_actor)):
    return serialize_result(loan_service.reject(db, LoanRef.group(group_id), actor), "Request rejected")


@app.post("/api/loans/{loan_id}/cancel")
def cancel_loan(loan_id: int, db: Session = Depends(get_loan_db), actor: Actor = Depends(require_actor)):
    return serialize_result(loan_service.cancel(db, LoanRef.single(loan_id), actor), "Request cancelled")


@app.post("/api/loan-groups/{group_id}/cancel")
def cancel_loan_group(group_id: str, db: Session = Depends(get_loan_db), actor: Actor = Depends(require_actor)):
    return serialize_result(loan_service.cancel(db, LoanRef.group(group_id), actor), "Request cancelled")


@app.post("/api/loans/{loan_id}/checkout")
def checkout_loan(loan_id: int, db: Session = Depends(get_loan_db), actor: Actor = Depends(require_actor)):
    return serialize_result(loan_service.checkout(db, LoanRef.single(loan_id), actor), "Checked out")


@app.post("/api/loan-groups/{group_id}/checkout")
def checkout_loan_group(group_id: str, db: Session = Depends(get_loan_db), actor: Actor = Depends(require_actor)):
    return serialize_result(loan_service.checkout(db, LoanRef.group(group_id), actor), "Checked out")


@app.post("/api/loans/{loan_id}/request-return")
def request_loan_return(
    loan_id: int,
    payload: RequestReturnDto | None = None,
    db: Session = Depends(get_loan_db),
    actor: Actor = Depends(require_actor),
):
    return _request_return(db, LoanRef.single(loan_id), actor, payload)


@app.post("/api/loan-groups/{group_id}/request-return")
def request_loan_group_return(
    group_id: str,
    payload: RequestReturnDto | None = None,
    db: Session = Depends(get_loan_db),
    actor: Actor = Depends(require_actor),
):
    return _request_return(db, LoanRef.group(group_id), actor, payload)


@app.post("/api/loans/{loan_id}/finalize-return")
def finalize_loan_return(
    loan_id: int,
    payload: FinalizeReturnDto | None = None,
    db: Session = Depends(get_loan_db),
    actor: Actor = Depends(require_actor),
):
    return _finalize_return(db, LoanRef.single(loan_id), actor, payload)


@app.post("/api/loan-groups/{group_id}/finalize-return")
def finalize_loan_group_return(
    group_id: str,
    payload: FinalizeReturnDto | None = None,
    db: Session = Depends(get_loan_db),
    actor: Actor = Depends(require_actor),
):
    return _finalize_return(db, LoanRef.group(group_id), actor, payload)
