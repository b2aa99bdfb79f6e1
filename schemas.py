"""
Database Schemas for the dental clinic

Each Pydantic model corresponds to a MongoDB collection.
Collection name = lowercase of the class name (handled by caller).

Materials, prescriptions and medical images are embedded sub-documents,
they live inside their parent document rather than in their own collection.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field

Role = Literal["admin", "doctor", "user"]
STAFF_ROLES = ("admin", "doctor")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    full_name: str
    email: EmailStr
    password_hash: str = Field(..., description="Hashed password")
    role: Role = "user"
    reset_password_token: Optional[str] = None
    reset_password_expiry: Optional[datetime] = None
    reset_requested_at: Optional[datetime] = None


class MedicalImage(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)

    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    gridfs_id: ObjectId
    filename: str
    original_name: str
    content_type: str
    size: int
    type: str = Field("photo", description="photo | xray | scan | other")
    description: str = ""
    uploaded_at: datetime = Field(default_factory=_now)


class Patient(BaseModel):
    age: int = Field(..., ge=0, le=120)
    cedula: str = Field(..., description="National id, unique per patient")
    phone: str
    address: str
    user_id: Optional[str] = None
    medical_images: List[dict] = Field(default_factory=list)


class Material(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)

    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    name: str
    type: str
    quantity: int = Field(..., ge=1)
    created_at: datetime = Field(default_factory=_now)


class Prescription(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)

    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    medication: str
    dosage: str
    duration: str
    instructions: str
    created_at: datetime = Field(default_factory=_now)


class Appointment(BaseModel):
    description: str
    date: str  # YYYY-MM-DD
    time: str  # HH:MM
    confirmed: bool = False
    patient_id: Optional[str] = None
    materials: List[dict] = Field(default_factory=list)
    prescriptions: List[dict] = Field(default_factory=list)
    doctor_report: str = ""
    total_price: float = Field(0.0, ge=0)


class Reminder(BaseModel):
    appointment_id: str
    to_email: str
    remind_at: datetime
    next_attempt_at: datetime
    status: str = Field("pending", description="pending | sending | sent | failed")
    attempts: int = 0
    claimed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    sent_at: Optional[datetime] = None


def embedded(model: BaseModel) -> dict:
    """Dump an embedded sub-document keeping its ObjectId under `_id`."""
    return model.model_dump(by_alias=True)
