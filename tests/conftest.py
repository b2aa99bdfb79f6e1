import os

os.environ.setdefault("REMINDER_WORKER_ENABLED", "0")

from datetime import datetime, timezone

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from gridfs.errors import NoFile

import database
import images
import mailer
import main
from security import create_token, hash_password

PASSWORD = "Secret123"


class FakeGridOut:
    def __init__(self, data, metadata):
        self._data = data
        self.length = len(data)
        self.metadata = metadata

    def __iter__(self):
        yield self._data


class FakeBucket:
    """In-memory stand-in for a GridFS bucket."""

    def __init__(self):
        self.files = {}
        self.fail_delete = False

    def upload_from_stream(self, filename, source, metadata=None):
        file_id = ObjectId()
        self.files[file_id] = (filename, bytes(source), metadata or {})
        return file_id

    def open_download_stream(self, file_id):
        if file_id not in self.files:
            raise NoFile(f"no file {file_id}")
        _, data, metadata = self.files[file_id]
        return FakeGridOut(data, metadata)

    def delete(self, file_id):
        if self.fail_delete:
            raise RuntimeError("storage unavailable")
        if file_id not in self.files:
            raise NoFile(f"no file {file_id}")
        del self.files[file_id]


@pytest.fixture
def db(monkeypatch):
    fake = mongomock.MongoClient(tz_aware=True)["clinic_test"]
    monkeypatch.setattr(database, "db", fake)
    database.ensure_indexes(fake)
    return fake


@pytest.fixture
def bucket(monkeypatch):
    fake = FakeBucket()
    monkeypatch.setattr(images, "_bucket", fake)
    return fake


@pytest.fixture
def outbox(monkeypatch):
    sent = []

    def fake_send(to_email, subject, body_text, body_html=None):
        sent.append({"to": to_email, "subject": subject, "text": body_text})
        return True

    monkeypatch.setattr(mailer, "send_email", fake_send)
    return sent


@pytest.fixture
def client(db, outbox):
    return TestClient(main.app)


@pytest.fixture
def make_user(db):
    def _make(role="user", email=None, full_name="Test User", password=PASSWORD):
        email = email or f"{role}-{ObjectId()}@example.com"
        now = datetime.now(timezone.utc)
        doc = {
            "full_name": full_name,
            "email": email,
            "password_hash": hash_password(password),
            "role": role,
            "created_at": now,
            "updated_at": now,
        }
        doc["_id"] = db["user"].insert_one(doc).inserted_id
        doc["id"] = str(doc["_id"])
        doc["headers"] = {"Authorization": f"Bearer {create_token(doc)}"}
        return doc
    return _make


@pytest.fixture
def admin(make_user):
    return make_user("admin", email="admin@example.com", full_name="Ada Admin")


@pytest.fixture
def doctor(make_user):
    return make_user("doctor", email="doctor@example.com", full_name="Dora Doctor")


@pytest.fixture
def patient_user(make_user):
    return make_user("user", email="paula@example.com", full_name="Paula Patient")


@pytest.fixture
def make_patient(db):
    def _make(user=None, cedula=None, age=30):
        now = datetime.now(timezone.utc)
        doc = {
            "age": age,
            "cedula": cedula or str(ObjectId())[-9:],
            "phone": "8888-0000",
            "address": "San Jose",
            "user_id": user["id"] if user else None,
            "medical_images": [],
            "created_at": now,
            "updated_at": now,
        }
        doc["_id"] = db["patient"].insert_one(doc).inserted_id
        doc["id"] = str(doc["_id"])
        return doc
    return _make


@pytest.fixture
def make_appointment(db):
    def _make(date="2030-05-10", time="10:00", description="Checkup", patient=None, materials=None,
              prescriptions=None):
        now = datetime.now(timezone.utc)
        doc = {
            "description": description,
            "date": date,
            "time": time,
            "confirmed": False,
            "patient_id": patient["id"] if patient else None,
            "materials": materials or [],
            "prescriptions": prescriptions or [],
            "doctor_report": "",
            "total_price": 0.0,
            "created_at": now,
            "updated_at": now,
        }
        doc["_id"] = db["appointment"].insert_one(doc).inserted_id
        doc["id"] = str(doc["_id"])
        return doc
    return _make
