"""
Tests for login, role-based routing and account settings.
"""
from werkzeug.security import generate_password_hash

from .conftest import ADMIN, FACULTY, STUDENT, login_as


def test_anonymous_root_redirects_to_login(client) -> None:
    response = client.get("/")
    assert response.status_code == 302
    assert response.headers["Location"].endswith("/login")


def test_login_success_sets_session(client, fake_store) -> None:
    fake_store.get_user_by_email.return_value = dict(STUDENT, password_hash=generate_password_hash("pw123456"))

    response = client.post("/login", data={"email": "STU@example.edu", "password": "pw123456"})

    assert response.status_code == 302
    fake_store.get_user_by_email.assert_called_once_with("stu@example.edu", with_secret=True)
    with client.session_transaction() as sess:
        assert sess["user_id"] == "stu1"
        assert sess["user_role"] == "student"


def test_login_wrong_password(client, fake_store) -> None:
    fake_store.get_user_by_email.return_value = dict(STUDENT, password_hash=generate_password_hash("right"))
    response = client.post("/login", data={"email": "stu@example.edu", "password": "wrong"})
    assert response.status_code == 401
    assert b"Invalid email or password" in response.data


def test_login_blocked_user_refused(client, fake_store) -> None:
    fake_store.get_user_by_email.return_value = dict(STUDENT, is_blocked=True, password_hash=generate_password_hash("pw"))
    response = client.post("/login", data={"email": "stu@example.edu", "password": "pw"})
    assert response.status_code == 403
    with client.session_transaction() as sess:
        assert "user_id" not in sess


def test_login_restores_session_lock(client, fake_store) -> None:
    fake_store.get_user_by_email.return_value = dict(STUDENT, password_hash=generate_password_hash("pw"))
    fake_store.get_active_attempt.return_value = {"id": "att1", "assessment_id": "a1"}
    client.post("/login", data={"email": "stu@example.edu", "password": "pw"})
    with client.session_transaction() as sess:
        assert sess["attempt_id"] == "att1"


def test_admin_root_redirects_to_admin(client, fake_store) -> None:
    login_as(client, fake_store, ADMIN)
    response = client.get("/")
    assert response.status_code == 302
    assert response.headers["Location"].endswith("/admin")


def test_student_root_renders_dashboard(client, fake_store) -> None:
    login_as(client, fake_store, STUDENT)
    fake_store.list_assessments.return_value = [
        {"id": "a1", "title": "Quiz 1", "course": "CS101", "is_published": True, "duration_minutes": 20},
    ]
    response = client.get("/")
    assert response.status_code == 200
    assert b"Quiz 1" in response.data
    fake_store.list_assessments.assert_called_once_with(published_only=True)


def test_faculty_root_renders_dashboard(client, fake_store) -> None:
    login_as(client, fake_store, FACULTY)
    fake_store.list_assessments.return_value = [{"id": "a1", "title": "Midterm", "is_published": False}]
    fake_store.list_test_submissions.return_value = [{"id": "s1", "assessment_id": "a1"}]
    response = client.get("/")
    assert response.status_code == 200
    assert b"Midterm" in response.data
    fake_store.list_assessments.assert_called_once_with(faculty_id="fac1")


def test_wrong_role_is_sent_to_login(client, fake_store) -> None:
    login_as(client, fake_store, STUDENT)
    response = client.get("/admin")
    assert response.status_code == 302
    assert response.headers["Location"].endswith("/login")

    response = client.get("/coding-management")
    assert response.headers["Location"].endswith("/login")


def test_blocked_session_is_dropped(client, fake_store) -> None:
    login_as(client, fake_store, dict(STUDENT, is_blocked=True))
    response = client.get("/coding-lab")
    assert response.headers["Location"].endswith("/login")
    with client.session_transaction() as sess:
        assert "user_id" not in sess


def test_api_me_requires_login(client, fake_store) -> None:
    response = client.get("/api/me")
    assert response.status_code == 401
    login_as(client, fake_store, STUDENT)
    response = client.get("/api/me")
    assert response.get_json()["user"]["id"] == "stu1"


def test_unknown_api_path_is_json_404(client) -> None:
    response = client.get("/api/nope")
    assert response.status_code == 404
    assert response.get_json()["ok"] is False


def test_unknown_page_redirects_home(client) -> None:
    response = client.get("/somewhere/else")
    assert response.status_code == 302


def test_health_reports_store(client, fake_store) -> None:
    fake_store.ping.return_value = True
    assert client.get("/health").get_json()["mongodb"] == "Connected"
    fake_store.ping.return_value = False
    assert client.get("/health").status_code == 503


def test_security_headers(client) -> None:
    response = client.get("/login")
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_change_password(client, fake_store) -> None:
    login_as(client, fake_store, STUDENT)
    fake_store.get_user_by_email.return_value = dict(STUDENT, password_hash=generate_password_hash("oldpass"))

    response = client.post("/change-password", data={
        "current_password": "oldpass", "new_password": "newpass1", "confirm_password": "newpass1",
    })
    assert response.status_code == 302
    fake_store.set_password.assert_called_once_with("stu1", "newpass1")


def test_change_password_rejects_mismatch(client, fake_store) -> None:
    login_as(client, fake_store, STUDENT)
    fake_store.get_user_by_email.return_value = dict(STUDENT, password_hash=generate_password_hash("oldpass"))
    response = client.post("/change-password", data={
        "current_password": "oldpass", "new_password": "newpass1", "confirm_password": "other",
    })
    assert response.status_code == 400
    fake_store.set_password.assert_not_called()


def test_profile_update(client, fake_store) -> None:
    login_as(client, fake_store, FACULTY)
    response = client.post("/profile", data={"full_name": "Dr. Fay"})
    assert response.status_code == 302
    fake_store.update_user.assert_called_once_with("fac1", {"full_name": "Dr. Fay"})


def test_reset_password_request_and_consume(client, fake_store) -> None:
    fake_store.set_reset_token.return_value = "tok123"
    response = client.post("/reset-password", data={"email": "stu@example.edu"})
    assert response.status_code == 302
    fake_store.set_reset_token.assert_called_once_with("stu@example.edu")

    fake_store.consume_reset_token.return_value = True
    response = client.post("/reset-password", data={"token": "tok123", "password": "brandnew", "confirm_password": "brandnew"})
    assert response.status_code == 302
    fake_store.consume_reset_token.assert_called_once_with("tok123", "brandnew")


def test_reset_password_expired_token(client, fake_store) -> None:
    fake_store.consume_reset_token.return_value = False
    response = client.post("/reset-password", data={"token": "old", "password": "brandnew", "confirm_password": "brandnew"})
    assert response.status_code == 400
    assert b"invalid or has expired" in response.data
