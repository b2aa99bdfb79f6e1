import asyncio
import logging
import os
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from bson.errors import InvalidId
from bson.objectid import ObjectId
from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import database
import images
import inventory
import mailer
import reminders
from database import create_document, ensure_indexes, get_documents
from schemas import (
    Appointment as AppointmentSchema,
    Material as MaterialSchema,
    MedicalImage as MedicalImageSchema,
    Patient as PatientSchema,
    Prescription as PrescriptionSchema,
    Role,
    User as UserSchema,
    embedded,
)
from security import (
    create_token,
    get_current_user,
    hash_password,
    is_staff,
    password_strength_error,
    public_user,
    require_admin,
    require_staff,
    verify_password,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("clinic")

APP_URL = os.getenv("APP_URL", "http://localhost:3000")
RESET_TOKEN_TTL_MINUTES = int(os.getenv("RESET_TOKEN_TTL_MINUTES", "60"))
RESET_COOLDOWN_SECONDS = int(os.getenv("RESET_COOLDOWN_SECONDS", "60"))
APPOINTMENT_SLOT_MINUTES = int(os.getenv("APPOINTMENT_SLOT_MINUTES", "20"))
REMINDER_WORKER_ENABLED = os.getenv("REMINDER_WORKER_ENABLED", "1") not in ("0", "false", "False")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is None:
        logger.warning("DATABASE_URL/DATABASE_NAME not set, running without a database")
        yield
        return
    ensure_indexes()
    stop = asyncio.Event()
    worker = asyncio.create_task(reminders.run_worker(stop)) if REMINDER_WORKER_ENABLED else None
    yield
    if worker is not None:
        stop.set()
        await worker


# App setup
app = FastAPI(title="Dental Clinic API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
        msg = err.get("msg", "Invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return JSONResponse(status_code=400, content={"detail": "; ".join(parts) or "Invalid request"})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.warning("Duplicate key on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=409, content={"detail": "Resource already exists"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Helpers
def _db():
    if database.db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return database.db


def oid(value: Optional[str]) -> ObjectId:
    if value is None:
        raise HTTPException(status_code=400, detail="Invalid id")
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail="Invalid id")


def serialize(value: Any) -> Any:
    """Make a Mongo document JSON friendly: ObjectIds become strings, datetimes ISO strings."""
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _as_utc(value: Any) -> Optional[datetime]:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _to_minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def _own_patient(current: dict) -> Optional[dict]:
    return _db()["patient"].find_one({"user_id": current["_id"]})


def _get_appointment(appointment_id: str, projection: Optional[dict] = None) -> dict:
    appt = _db()["appointment"].find_one({"_id": oid(appointment_id)}, projection)
    if not appt:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return appt


def _check_appointment_access(current: dict, appt: dict) -> None:
    if is_staff(current):
        return
    patient = _own_patient(current)
    if not patient or appt.get("patient_id") != str(patient["_id"]):
        raise HTTPException(status_code=403, detail="Not authorized")


def _get_patient(patient_id: str) -> dict:
    patient = _db()["patient"].find_one({"_id": oid(patient_id)})
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found")
    return patient


def _check_patient_access(current: dict, patient: dict) -> None:
    if not is_staff(current) and patient.get("user_id") != current["_id"]:
        raise HTTPException(status_code=403, detail="Not authorized")


def _patient_email(patient_id: Optional[str]) -> Optional[str]:
    if not patient_id:
        return None
    try:
        patient = _db()["patient"].find_one({"_id": ObjectId(patient_id)})
    except InvalidId:
        return None
    if not patient or not patient.get("user_id"):
        return None
    try:
        user = _db()["user"].find_one({"_id": ObjectId(patient["user_id"])}, {"email": 1})
    except InvalidId:
        return None
    return user.get("email") if user else None


def _with_user(patient: dict) -> dict:
    out = serialize(patient)
    user = None
    if patient.get("user_id"):
        try:
            user = _db()["user"].find_one({"_id": ObjectId(patient["user_id"])}, {"full_name": 1, "email": 1})
        except InvalidId:
            user = None
    out["user"] = serialize(user) if user else None
    return out


# Request models
class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


class SignupRequest(BaseModel):
    name: str = Field(..., min_length=3)
    email: EmailStr
    password: str = Field(..., min_length=6)
    confirm_password: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    password: str


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str


class _AppointmentFields(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    @field_validator("date", check_fields=False)
    @classmethod
    def _valid_date(cls, v):
        if v is not None:
            v = datetime.strptime(v, "%Y-%m-%d").strftime("%Y-%m-%d")
        return v

    @field_validator("time", check_fields=False)
    @classmethod
    def _valid_time(cls, v):
        if v is not None:
            v = datetime.strptime(v, "%H:%M").strftime("%H:%M")
        return v


class AppointmentCreate(_AppointmentFields):
    description: str = Field(..., min_length=1)
    date: str = Field(..., min_length=1)
    time: str = Field(..., min_length=1)
    patient_id: Optional[str] = None
    confirmed: bool = False


class AppointmentReplace(_AppointmentFields):
    description: str = Field(..., min_length=1)
    date: str = Field(..., min_length=1)
    time: str = Field(..., min_length=1)
    confirmed: bool = False
    patient_id: Optional[str] = None
    doctor_report: str = ""
    total_price: float = Field(0.0, ge=0)


class AppointmentUpdate(_AppointmentFields):
    description: Optional[str] = Field(None, min_length=1)
    date: Optional[str] = None
    time: Optional[str] = None
    confirmed: Optional[bool] = None
    patient_id: Optional[str] = None
    doctor_report: Optional[str] = None
    total_price: Optional[float] = Field(None, ge=0)


class MaterialCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)


class PrescriptionCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    medication: str = Field(..., min_length=1)
    dosage: str = Field(..., min_length=1)
    duration: str = Field(..., min_length=1)
    instructions: str = Field(..., min_length=1)


class AppointmentPrescriptionCreate(PrescriptionCreate):
    appointment_id: str


class PatientCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    age: int = Field(..., ge=0, le=120)
    cedula: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)


class UserUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: Optional[str] = Field(None, min_length=3)
    email: Optional[EmailStr] = None


class RoleUpdate(BaseModel):
    role: Role


# Routes
@app.get("/")
def root():
    return {"name": "Dental Clinic API", "status": "ok"}


@app.get("/test")
def test_database():
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    db = database.db
    if db is None:
        return response
    response["database_url"] = "Set" if os.getenv("DATABASE_URL") else "Not Set"
    response["database_name"] = db.name
    try:
        response["collections"] = db.list_collection_names()
        response["database"] = "Connected & Working"
        response["connection_status"] = "Connected"
    except Exception as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = f"Error: {str(e)[:80]}"
    return response


# Auth
@app.post("/api/auth/signup", status_code=201)
def signup(payload: SignupRequest):
    db = _db()
    if payload.password != payload.confirm_password:
        raise HTTPException(status_code=400, detail="Passwords do not match")
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="A user with that email already exists")
    user = UserSchema(
        full_name=payload.name,
        email=email,
        password_hash=hash_password(payload.password),
        role="user",
    )
    uid = create_document("user", user)
    logger.info("User %s signed up", uid)
    return {"message": "User created", "id": uid}


@app.post("/api/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest):
    user = _db()["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return TokenResponse(access_token=create_token(user), user=public_user(user))


@app.get("/api/auth/session")
def session(current=Depends(get_current_user)):
    return {"user": {
        "id": current["_id"],
        "email": current.get("email"),
        "name": current.get("full_name"),
        "role": current.get("role"),
    }}


@app.post("/api/auth/forgot-password")
def forgot_password(payload: ForgotPasswordRequest):
    db = _db()
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user:
        raise HTTPException(status_code=404, detail="This email is not registered")

    now = datetime.now(timezone.utc)
    last = _as_utc(user.get("reset_requested_at"))
    if last and (now - last).total_seconds() < RESET_COOLDOWN_SECONDS:
        remaining = int(RESET_COOLDOWN_SECONDS - (now - last).total_seconds())
        raise HTTPException(status_code=429, detail=f"Please wait {remaining}s before requesting another link")

    token = secrets.token_hex(32)
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "reset_password_token": token,
            "reset_password_expiry": now + timedelta(minutes=RESET_TOKEN_TTL_MINUTES),
            "reset_requested_at": now,
            "updated_at": now,
        }},
    )
    reset_url = f"{APP_URL}/reset-password?token={token}"
    subject, text, html = mailer.password_reset(user.get("full_name", ""), reset_url, RESET_TOKEN_TTL_MINUTES)
    if not mailer.send_email(user["email"], subject, text, html):
        db["user"].update_one(
            {"_id": user["_id"]},
            {"$unset": {"reset_password_token": "", "reset_password_expiry": ""}},
        )
        raise HTTPException(status_code=500, detail="Could not send the reset email")
    logger.info("Password reset link sent to user %s", user["_id"])
    return {"message": "If the email exists you will receive a link to reset your password"}


@app.post("/api/auth/reset-password")
def reset_password(payload: ResetPasswordRequest):
    db = _db()
    weak = password_strength_error(payload.password)
    if weak:
        raise HTTPException(status_code=400, detail=weak)
    user = db["user"].find_one({"reset_password_token": payload.token})
    expiry = _as_utc(user.get("reset_password_expiry")) if user else None
    if not user or expiry is None or expiry <= datetime.now(timezone.utc):
        raise HTTPException(status_code=400, detail="Invalid or expired token")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(payload.password), "updated_at": datetime.now(timezone.utc)},
         "$unset": {"reset_password_token": "", "reset_password_expiry": ""}},
    )
    logger.info("Password reset for user %s", user["_id"])
    return {"message": "Password reset successfully"}


# Appointments
@app.post("/api/appointments", status_code=201)
def create_appointment(payload: AppointmentCreate, current=Depends(get_current_user)):
    db = _db()
    patient_id = payload.patient_id
    if not is_staff(current):
        own = _own_patient(current)
        if patient_id and (not own or patient_id != str(own["_id"])):
            raise HTTPException(status_code=403, detail="Not authorized")
        if not own:
            raise HTTPException(status_code=400, detail="No patient profile for this user")
        patient_id = str(own["_id"])
    if patient_id and not db["patient"].find_one({"_id": oid(patient_id)}):
        raise HTTPException(status_code=400, detail="Invalid patient_id")

    wanted = _to_minutes(payload.time)
    for other in db["appointment"].find({"date": payload.date}, {"time": 1}):
        try:
            taken = _to_minutes(other["time"])
        except (KeyError, ValueError):
            continue
        if abs(wanted - taken) < APPOINTMENT_SLOT_MINUTES:
            suggested = taken + APPOINTMENT_SLOT_MINUTES
            raise HTTPException(
                status_code=409,
                detail=f"Time slot not available: there is an appointment on {payload.date} at {other['time']}. "
                       f"Try {suggested // 60 % 24:02d}:{suggested % 60:02d} or another date.",
            )

    appt = AppointmentSchema(
        description=payload.description,
        date=payload.date,
        time=payload.time,
        confirmed=payload.confirmed,
        patient_id=patient_id,
    )
    aid = create_document("appointment", appt)
    doc = db["appointment"].find_one({"_id": ObjectId(aid)})

    to_email = _patient_email(patient_id) or mailer.CLINIC_EMAIL
    subject, text, html = mailer.appointment_confirmation(doc)
    if not mailer.send_email(to_email, subject, text, html):
        logger.warning("Confirmation email for appointment %s not sent", aid)
    reminders.schedule_reminder(doc, to_email)
    logger.info("Appointment %s created for %s %s", aid, payload.date, payload.time)
    return serialize(doc)


@app.get("/api/appointments")
def list_appointments(patient_id: Optional[str] = None, current=Depends(get_current_user)):
    db = _db()
    filt: dict = {}
    if is_staff(current):
        if patient_id:
            filt["patient_id"] = patient_id
    else:
        own = _own_patient(current)
        if not own or (patient_id and patient_id != str(own["_id"])):
            return []
        filt["patient_id"] = str(own["_id"])
    items = db["appointment"].find(filt).sort([("date", 1), ("time", 1)])
    return [serialize(it) for it in items]


@app.get("/api/appointments/{appointment_id}")
def get_appointment(appointment_id: str, current=Depends(get_current_user)):
    appt = _get_appointment(appointment_id)
    _check_appointment_access(current, appt)
    return serialize(appt)


@app.put("/api/appointments/{appointment_id}")
def replace_appointment(appointment_id: str, payload: AppointmentReplace, current=Depends(require_staff)):
    db = _db()
    before = _get_appointment(appointment_id)
    if payload.patient_id and not db["patient"].find_one({"_id": oid(payload.patient_id)}):
        raise HTTPException(status_code=400, detail="Invalid patient_id")
    updates = payload.model_dump()
    updates["updated_at"] = datetime.now(timezone.utc)
    appt = db["appointment"].find_one_and_update(
        {"_id": before["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER,
    )
    if appt is None:
        raise HTTPException(status_code=404, detail="Appointment not found")

    if (before.get("date"), before.get("time")) != (appt["date"], appt["time"]):
        patient_email = _patient_email(appt.get("patient_id"))
        if patient_email:
            subject, text, html = mailer.appointment_changed(appt)
            if not mailer.send_email(patient_email, subject, text, html):
                logger.warning("Change notification for appointment %s not sent", appointment_id)
        reminders.reschedule_reminder(appt, patient_email or mailer.CLINIC_EMAIL)
    return serialize(appt)


@app.patch("/api/appointments/{appointment_id}")
def update_appointment(appointment_id: str, payload: AppointmentUpdate, current=Depends(require_staff)):
    db = _db()
    updates = payload.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No valid fields to update")
    if updates.get("patient_id") and not db["patient"].find_one({"_id": oid(updates["patient_id"])}):
        raise HTTPException(status_code=400, detail="Invalid patient_id")
    for field, value in updates.items():
        if value is None and field != "patient_id":
            raise HTTPException(status_code=400, detail=f"{field} cannot be null")
    updates["updated_at"] = datetime.now(timezone.utc)
    appt = db["appointment"].find_one_and_update(
        {"_id": oid(appointment_id)}, {"$set": updates}, return_document=ReturnDocument.AFTER,
    )
    if appt is None:
        raise HTTPException(status_code=404, detail="Appointment not found")
    if "date" in updates or "time" in updates:
        reminders.reschedule_reminder(appt, _patient_email(appt.get("patient_id")) or mailer.CLINIC_EMAIL)
    return serialize(appt)


@app.delete("/api/appointments/{appointment_id}")
def delete_appointment(appointment_id: str, current=Depends(require_staff)):
    res = _db()["appointment"].delete_one({"_id": oid(appointment_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Appointment not found")
    reminders.cancel_reminders(appointment_id)
    return {"message": "Appointment deleted", "deleted": 1}


# Embedded materials
@app.post("/api/appointments/{appointment_id}/materials", status_code=201)
def add_material(appointment_id: str, payload: MaterialCreate, current=Depends(require_staff)):
    material = embedded(MaterialSchema(**payload.model_dump()))
    appt = _db()["appointment"].find_one_and_update(
        {"_id": oid(appointment_id)},
        {"$push": {"materials": material}, "$set": {"updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if appt is None:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return {"message": "Material added", "material": serialize(material), "appointment": serialize(appt)}


@app.get("/api/appointments/{appointment_id}/materials")
def list_materials(appointment_id: str, current=Depends(require_staff)):
    appt = _get_appointment(appointment_id, {"materials": 1})
    return {"materials": serialize(appt.get("materials") or [])}


@app.delete("/api/appointments/{appointment_id}/materials")
def delete_material(appointment_id: str, material_id: str = Query(...), current=Depends(require_staff)):
    return _pull_embedded(appointment_id, "materials", material_id, "Material")


# Embedded prescriptions
def _push_prescription(appointment_id: str, payload: PrescriptionCreate) -> dict:
    fields = payload.model_dump(include={"medication", "dosage", "duration", "instructions"})
    prescription = embedded(PrescriptionSchema(**fields))
    appt = _db()["appointment"].find_one_and_update(
        {"_id": oid(appointment_id)},
        {"$push": {"prescriptions": prescription}, "$set": {"updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if appt is None:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return {"message": "Prescription added", "prescription": serialize(prescription), "appointment": serialize(appt)}


def _pull_embedded(appointment_id: str, field: str, item_id: str, label: str) -> dict:
    aid, iid = oid(appointment_id), oid(item_id)
    appt = _db()["appointment"].find_one_and_update(
        {"_id": aid, f"{field}._id": iid},
        {"$pull": {field: {"_id": iid}}, "$set": {"updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if appt is None:
        _get_appointment(appointment_id)
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return {"message": f"{label} deleted", "appointment": serialize(appt)}


@app.post("/api/appointments/{appointment_id}/prescriptions", status_code=201)
def add_prescription(appointment_id: str, payload: PrescriptionCreate, current=Depends(require_staff)):
    return _push_prescription(appointment_id, payload)


@app.get("/api/appointments/{appointment_id}/prescriptions")
def list_appointment_prescriptions(appointment_id: str, current=Depends(get_current_user)):
    appt = _get_appointment(appointment_id)
    _check_appointment_access(current, appt)
    return {"prescriptions": serialize(appt.get("prescriptions") or [])}


@app.delete("/api/appointments/{appointment_id}/prescriptions")
def delete_prescription(appointment_id: str, prescription_id: str = Query(...), current=Depends(require_staff)):
    return _pull_embedded(appointment_id, "prescriptions", prescription_id, "Prescription")


@app.get("/api/prescriptions")
def list_prescriptions(appointment_id: Optional[str] = None, current=Depends(require_staff)):
    filt: dict = {"prescriptions": {"$exists": True, "$ne": []}}
    if appointment_id:
        filt["_id"] = oid(appointment_id)
    rows = []
    for appt in _db()["appointment"].find(filt, {"prescriptions": 1, "date": 1, "patient_id": 1}):
        for p in appt.get("prescriptions") or []:
            row = serialize(p)
            row["appointment_id"] = str(appt["_id"])
            row["appointment_date"] = appt.get("date")
            row["patient_id"] = appt.get("patient_id")
            rows.append(row)
    rows.sort(key=lambda r: r.get("created_at") or "", reverse=True)
    return rows


@app.post("/api/prescriptions", status_code=201)
def create_prescription(payload: AppointmentPrescriptionCreate, current=Depends(require_staff)):
    return _push_prescription(payload.appointment_id, payload)


# Materials inventory
def _materials_report(search: Optional[str], material_type: Optional[str]) -> dict:
    appts = list(_db()["appointment"].find(
        {"materials": {"$exists": True, "$ne": []}},
        {"description": 1, "date": 1, "time": 1, "materials": 1, "patient_id": 1, "confirmed": 1},
    ).sort("date", -1))
    return inventory.build_report(appts, search=search, material_type=material_type)


@app.get("/api/materials")
def materials_report(search: Optional[str] = None, type: Optional[str] = None, current=Depends(require_admin)):
    return serialize(_materials_report(search, type))


@app.get("/api/materials/export")
def materials_export(view: str = Query("detailed", pattern="^(detailed|summary)$"),
                     search: Optional[str] = None, type: Optional[str] = None,
                     current=Depends(require_admin)):
    report = _materials_report(search, type)
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    return Response(
        content=inventory.to_csv(report, view),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="materials_{view}_{stamp}.csv"'},
    )


# Patients
@app.post("/api/patients", status_code=201)
def create_patient(payload: PatientCreate, current=Depends(require_staff)):
    db = _db()
    if not db["user"].find_one({"_id": oid(payload.user_id)}):
        raise HTTPException(status_code=400, detail="User not found")
    if db["patient"].find_one({"cedula": payload.cedula}):
        raise HTTPException(status_code=409, detail="A patient with that cedula already exists")
    if db["patient"].find_one({"user_id": payload.user_id}):
        raise HTTPException(status_code=409, detail="That user is already assigned to a patient")
    pid = create_document("patient", PatientSchema(**payload.model_dump()))
    logger.info("Patient %s created for user %s", pid, payload.user_id)
    return _with_user(db["patient"].find_one({"_id": ObjectId(pid)}))


@app.get("/api/patients")
def list_patients(current=Depends(require_staff)):
    _db()
    return [serialize(p) for p in get_documents("patient", sort=[("created_at", -1)])]


@app.get("/api/patients/by-user")
def patient_by_user(email: str = Query(..., min_length=3), current=Depends(get_current_user)):
    email = email.strip().lower()
    if not is_staff(current) and email != (current.get("email") or "").lower():
        raise HTTPException(status_code=403, detail="Not authorized")
    db = _db()
    user = db["user"].find_one({"email": email})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    patient = db["patient"].find_one({"user_id": str(user["_id"])})
    if not patient:
        raise HTTPException(status_code=404, detail="Patient profile not found for this user")
    return _with_user(patient)


@app.get("/api/patients/{patient_id}")
def get_patient(patient_id: str, current=Depends(get_current_user)):
    patient = _get_patient(patient_id)
    _check_patient_access(current, patient)
    return _with_user(patient)


@app.delete("/api/patients/{patient_id}")
def delete_patient(patient_id: str, current=Depends(require_staff)):
    patient = _db()["patient"].find_one_and_delete({"_id": oid(patient_id)})
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found")
    for image in patient.get("medical_images") or []:
        images.delete(image["gridfs_id"])
    logger.info("Patient %s deleted with %d image(s)", patient_id, len(patient.get("medical_images") or []))
    return {"message": "Patient deleted", "patient": serialize(patient)}


# Medical images
@app.post("/api/patients/{patient_id}/images", status_code=201)
def upload_image(patient_id: str, file: UploadFile = File(...), type: str = Form("photo"),
                 description: str = Form(""), current=Depends(require_staff)):
    db = _db()
    patient = _get_patient(patient_id)
    data = file.file.read(images.IMAGE_MAX_BYTES + 1)
    problem = images.validate_upload(file.content_type, len(data))
    if problem:
        raise HTTPException(status_code=400, detail=problem)

    original_name = file.filename or "upload"
    filename = f"patient_{patient_id}_{int(datetime.now().timestamp() * 1000)}_{original_name}"
    gridfs_id = images.store(filename, data, file.content_type, {
        "patient_id": patient_id,
        "type": type or "photo",
        "description": description or "",
        "original_name": original_name,
    })
    image = embedded(MedicalImageSchema(
        gridfs_id=gridfs_id,
        filename=filename,
        original_name=original_name,
        content_type=file.content_type,
        size=len(data),
        type=type or "photo",
        description=description or "",
    ))
    updated = db["patient"].find_one_and_update(
        {"_id": patient["_id"]},
        {"$push": {"medical_images": image}, "$set": {"updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        images.delete(gridfs_id)
        raise HTTPException(status_code=404, detail="Patient not found")
    return {"message": "Image uploaded", "image": serialize(image), "patient": serialize(updated)}


@app.get("/api/patients/{patient_id}/images")
def list_images(patient_id: str, current=Depends(get_current_user)):
    patient = _get_patient(patient_id)
    _check_patient_access(current, patient)
    return {"images": serialize(patient.get("medical_images") or [])}


@app.delete("/api/patients/{patient_id}/images")
def delete_image(patient_id: str, image_id: str = Query(...), current=Depends(require_staff)):
    iid = oid(image_id)
    patient = _get_patient(patient_id)
    image = next((img for img in patient.get("medical_images") or [] if img.get("_id") == iid), None)
    if image is None:
        raise HTTPException(status_code=404, detail="Image not found")
    if not images.delete(image["gridfs_id"]):
        logger.warning("Continuing delete of image %s without its blob", image_id)
    updated = _db()["patient"].find_one_and_update(
        {"_id": patient["_id"]},
        {"$pull": {"medical_images": {"_id": iid}}, "$set": {"updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    return {"message": "Image deleted", "patient": serialize(updated)}


@app.get("/api/images/{image_id}")
def get_image(image_id: str, current=Depends(get_current_user)):
    _db()
    grid_out = images.open_download(oid(image_id))
    if grid_out is None:
        raise HTTPException(status_code=404, detail="Image not found")
    return StreamingResponse(
        grid_out,
        media_type=images.content_type_of(grid_out),
        headers={
            "Content-Length": str(grid_out.length),
            "Cache-Control": "private, max-age=31536000, immutable",
        },
    )


# Users
@app.get("/api/users")
def list_users(current=Depends(require_staff)):
    _db()
    return [serialize(public_user(u)) for u in get_documents("user", sort=[("created_at", -1)])]


@app.put("/api/users/change-password")
def change_password(payload: ChangePasswordRequest, current=Depends(get_current_user)):
    db = _db()
    weak = password_strength_error(payload.new_password)
    if weak:
        raise HTTPException(status_code=400, detail=weak)
    user = db["user"].find_one({"_id": ObjectId(current["_id"])})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if not verify_password(payload.current_password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    if verify_password(payload.new_password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="New password must be different from the current one")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(payload.new_password), "updated_at": datetime.now(timezone.utc)}},
    )
    return {"message": "Password updated"}


@app.get("/api/users/{user_id}")
def get_user(user_id: str, current=Depends(get_current_user)):
    if current.get("role") != "admin" and current["_id"] != user_id:
        raise HTTPException(status_code=403, detail="Not authorized")
    user = _db()["user"].find_one({"_id": oid(user_id)})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return serialize(public_user(user))


@app.put("/api/users/{user_id}")
def update_user(user_id: str, payload: UserUpdate, current=Depends(require_admin)):
    db = _db()
    updates = {k: v for k, v in payload.model_dump().items() if v is not None}
    if not updates:
        raise HTTPException(status_code=400, detail="No valid fields to update")
    if "email" in updates:
        updates["email"] = updates["email"].lower()
        clash = db["user"].find_one({"email": updates["email"], "_id": {"$ne": oid(user_id)}})
        if clash:
            raise HTTPException(status_code=409, detail="A user with that email already exists")
    updates["updated_at"] = datetime.now(timezone.utc)
    user = db["user"].find_one_and_update(
        {"_id": oid(user_id)}, {"$set": updates}, return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return serialize(public_user(user))


@app.put("/api/users/{user_id}/role")
def update_role(user_id: str, payload: RoleUpdate, current=Depends(require_admin)):
    user = _db()["user"].find_one_and_update(
        {"_id": oid(user_id)},
        {"$set": {"role": payload.role, "updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("User %s role set to %s by %s", user_id, payload.role, current["_id"])
    return {"message": "Role updated", "user": serialize(public_user(user))}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
