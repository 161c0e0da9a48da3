"""Shared fixtures: a Flask test client wired to a mocked data store."""
from unittest.mock import MagicMock

import pytest

import app as app_module
from store import LabStore


STUDENT = {"id": "stu1", "email": "stu@example.edu", "full_name": "Sam Student", "role": "student", "is_active": True, "is_blocked": False}
FACULTY = {"id": "fac1", "email": "fac@example.edu", "full_name": "Fay Faculty", "role": "faculty", "is_active": True, "is_blocked": False}
ADMIN = {"id": "adm1", "email": "adm@example.edu", "full_name": "Ada Admin", "role": "admin", "is_active": True, "is_blocked": False}


@pytest.fixture
def fake_store(monkeypatch):
    fake = MagicMock(spec=LabStore)
    fake.get_user.return_value = None
    fake.get_attempt.return_value = None
    fake.get_active_attempt.return_value = None
    fake.close_attempt.return_value = None
    fake.find_test_submission.return_value = None
    fake.list_users.return_value = []
    fake.list_assessments.return_value = []
    fake.list_test_submissions.return_value = []
    fake.list_published_questions.return_value = []
    fake.list_faculty_questions.return_value = []
    fake.list_student_submissions.return_value = []
    fake.list_materials.return_value = []
    fake.submission_counts.return_value = {}
    fake.names_for.return_value = {}
    fake.count_users_by_role.return_value = {"student": 0, "faculty": 0, "admin": 0}
    fake.coding_stats.return_value = {}
    monkeypatch.setattr(app_module, "store", fake)
    return fake


@pytest.fixture
def fake_piston(monkeypatch):
    fake = MagicMock()
    monkeypatch.setattr(app_module, "piston", fake)
    return fake


@pytest.fixture
def client(fake_store):
    app_module.app.config.update(TESTING=True, SECRET_KEY="test-secret")
    with app_module.app.test_client() as client:
        yield client


def login_as(client, fake_store, user):
    fake_store.get_user.side_effect = lambda uid: dict(user) if uid == user["id"] else None
    with client.session_transaction() as sess:
        sess["user_id"] = user["id"]
        sess["user_role"] = user["role"]
