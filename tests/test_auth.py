import datetime
import os
import sqlite3

import jwt
from werkzeug.security import generate_password_hash

import socialfeed


def register(client, email="alice@x.com", password="pw-123456", **extra):
    data = {"firstName": "Alice", "lastName": "Anders", "email": email, "password": password}
    data.update(extra)
    return client.post("/api/auth/register", data=data)


def insert_user(app, email, password="pw-123456", verified=False, token=None):
    now = socialfeed.timestamp()
    with app.app_context():
        return socialfeed.execute_db(
            """
            INSERT INTO users (first_name, last_name, email, password_hash, is_verified,
                               email_verification_token, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            ("Eve", "Early", email, generate_password_hash(password), int(verified), token, now, now),
        )


def count(app, query, args=()):
    with app.app_context():
        return socialfeed.query_db(query, args, one=True)[0]


def test_register_sends_otp(client, mailer):
    rv = register(client)
    assert rv.status_code == 201
    assert rv.get_json() == {"message": "OTP sent"}
    assert len(mailer.outbox) == 1
    assert mailer.outbox[0]["to"] == "alice@x.com"
    assert len(mailer.last_otp("alice@x.com")) == 6


def test_register_requires_email_and_password(client):
    assert client.post("/api/auth/register", data={"email": "a@x.com"}).status_code == 400
    assert client.post("/api/auth/register", data={"email": "not-an-email", "password": "x"}).status_code == 400


def test_register_existing_email_conflicts(client, alice):
    rv = register(client, email="alice@x.com")
    assert rv.status_code == 400
    assert rv.get_json()["message"] == "User already exists"


def test_reregistering_overwrites_pending_code(client, mailer, app):
    register(client)
    first = mailer.last_otp("alice@x.com")
    register(client)
    second = mailer.last_otp("alice@x.com")
    assert count(app, "SELECT COUNT(*) FROM pending_registrations") == 1

    if first != second:
        rv = client.post("/api/auth/verify-otp", json={"email": "alice@x.com", "otp": first})
        assert rv.status_code == 400
    rv = client.post("/api/auth/verify-otp", json={"email": "alice@x.com", "otp": second})
    assert rv.status_code == 200


def test_verify_otp_creates_one_user_and_consumes_code(client, mailer, app):
    register(client)
    otp = mailer.last_otp("alice@x.com")

    rv = client.post("/api/auth/verify-otp", json={"email": "alice@x.com", "otp": otp})
    assert rv.status_code == 200
    assert rv.get_json() == {"message": "Registration successful"}
    assert count(app, "SELECT COUNT(*) FROM users WHERE email = ?", ("alice@x.com",)) == 1
    assert count(app, "SELECT COUNT(*) FROM pending_registrations") == 0
    assert count(app, "SELECT is_verified FROM users WHERE email = ?", ("alice@x.com",)) == 1

    rv = client.post("/api/auth/verify-otp", json={"email": "alice@x.com", "otp": otp})
    assert rv.status_code == 400
    assert count(app, "SELECT COUNT(*) FROM users") == 1


def test_verify_otp_accepts_numeric_code(client, mailer):
    register(client)
    otp = int(mailer.last_otp("alice@x.com"))
    rv = client.post("/api/auth/verify-otp", json={"email": "alice@x.com", "otp": otp})
    assert rv.status_code == 200


def test_verify_otp_wrong_code(client, mailer):
    register(client)
    otp = mailer.last_otp("alice@x.com")
    wrong = "000000" if otp != "000000" else "111111"
    rv = client.post("/api/auth/verify-otp", json={"email": "alice@x.com", "otp": wrong})
    assert rv.status_code == 400
    assert rv.get_json()["message"] == "Invalid OTP"


def test_verify_otp_unknown_email(client):
    rv = client.post("/api/auth/verify-otp", json={"email": "ghost@x.com", "otp": "123456"})
    assert rv.status_code == 400


def test_expired_pending_registration_cannot_verify(client, mailer, app):
    register(client)
    otp = mailer.last_otp("alice@x.com")
    stale = socialfeed.timestamp(socialfeed.utcnow() - datetime.timedelta(minutes=6))
    with app.app_context():
        socialfeed.execute_db(
            "UPDATE pending_registrations SET created_at = ? WHERE email = ?", (stale, "alice@x.com")
        )

    rv = client.post("/api/auth/verify-otp", json={"email": "alice@x.com", "otp": otp})
    assert rv.status_code == 400
    assert count(app, "SELECT COUNT(*) FROM pending_registrations") == 0
    assert count(app, "SELECT COUNT(*) FROM users") == 0


def test_mail_failure_is_a_server_error_and_leaves_nothing_pending(client, mailer, app, upload):
    mailer.fail = True
    rv = register(client, profilePicture=upload())
    assert rv.status_code == 500
    assert rv.get_json() == {"message": "Server error"}
    assert count(app, "SELECT COUNT(*) FROM pending_registrations") == 0
    assert os.listdir(app.config["UPLOAD_FOLDER"]) == []


def test_register_with_profile_picture(client, mailer, app, upload, on_disk):
    rv = register(client, profilePicture=upload("me.JPG", "image/jpeg"))
    assert rv.status_code == 201
    with app.app_context():
        picture = socialfeed.query_db(
            "SELECT profile_picture FROM pending_registrations WHERE email = ?", ("alice@x.com",), one=True
        )[0]
    assert picture.startswith("/uploads/profile-")
    assert picture.endswith(".jpg")
    assert on_disk(picture)


def test_register_rejects_non_image_picture(client, mailer, app, upload):
    rv = register(client, profilePicture=upload("notes.txt", "text/plain", b"hello"))
    assert rv.status_code == 400
    assert mailer.outbox == []
    assert count(app, "SELECT COUNT(*) FROM pending_registrations") == 0


def test_register_without_picture_uses_default(client, mailer, app):
    register(client)
    client.post("/api/auth/verify-otp", json={"email": "alice@x.com", "otp": mailer.last_otp("alice@x.com")})
    rv = client.post("/api/auth/login", json={"email": "alice@x.com", "password": "pw-123456"})
    assert rv.get_json()["user"]["profilePicture"] == socialfeed.DEFAULT_PROFILE_PICTURE


def test_login_returns_token_and_trimmed_user(client, alice):
    rv = client.post("/api/auth/login", json={"email": "alice@x.com", "password": "s3cret-pass"})
    assert rv.status_code == 200
    body = rv.get_json()
    assert set(body["user"]) == {"id", "firstName", "lastName", "email", "profilePicture"}
    assert body["user"]["firstName"] == "Alice"

    payload = jwt.decode(body["token"], "test-secret", algorithms=["HS256"])
    assert payload["sub"] == str(body["user"]["id"])
    assert payload["exp"] - payload["iat"] == 7 * 24 * 60 * 60


def test_login_wrong_password(client, alice):
    rv = client.post("/api/auth/login", json={"email": "alice@x.com", "password": "nope"})
    assert rv.status_code == 400
    assert rv.get_json()["message"] == "Invalid credentials"


def test_login_unknown_email(client):
    rv = client.post("/api/auth/login", json={"email": "ghost@x.com", "password": "nope"})
    assert rv.status_code == 400


def test_login_does_not_require_verification(client, app):
    insert_user(app, "eve@x.com", verified=False)
    rv = client.post("/api/auth/login", json={"email": "eve@x.com", "password": "pw-123456"})
    assert rv.status_code == 200


def test_verify_email_token(client, app):
    insert_user(app, "eve@x.com", token="tok-abc")
    rv = client.get("/api/auth/verify-email/tok-abc")
    assert rv.status_code == 200
    assert count(app, "SELECT is_verified FROM users WHERE email = ?", ("eve@x.com",)) == 1
    assert count(app, "SELECT COUNT(*) FROM users WHERE email_verification_token IS NOT NULL") == 0

    assert client.get("/api/auth/verify-email/tok-abc").status_code == 400


def test_protected_route_requires_token(client):
    rv = client.get("/api/posts")
    assert rv.status_code == 401
    rv = client.get("/api/posts", headers={"Authorization": "Bearer not-a-jwt"})
    assert rv.status_code == 401
    rv = client.get("/api/posts", headers={"Authorization": "Token abc"})
    assert rv.status_code == 401


def test_expired_or_foreign_token_rejected(client, alice):
    past = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(seconds=5)
    expired = jwt.encode({"sub": str(alice["id"]), "exp": past}, "test-secret", algorithm="HS256")
    rv = client.get("/api/posts", headers={"Authorization": f"Bearer {expired}"})
    assert rv.status_code == 401

    future = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=1)
    forged = jwt.encode({"sub": str(alice["id"]), "exp": future}, "other-secret", algorithm="HS256")
    rv = client.get("/api/posts", headers={"Authorization": f"Bearer {forged}"})
    assert rv.status_code == 401


def test_security_headers_and_json_404(client):
    rv = client.get("/")
    assert rv.get_json() == {"message": "Social Feed API is running"}
    assert rv.headers["X-Content-Type-Options"] == "nosniff"

    rv = client.get("/api/nowhere")
    assert rv.status_code == 404
    assert "message" in rv.get_json()


def test_pending_registration_is_committed_before_mailing(client, mailer, app):
    seen = {}

    def write_from_another_connection(to):
        conn = sqlite3.connect(app.config["DATABASE"], timeout=0.2)
        try:
            seen["pending"] = conn.execute(
                "SELECT COUNT(*) FROM pending_registrations WHERE email = ?", (to,)
            ).fetchone()[0]
            conn.execute(
                "INSERT INTO pending_registrations (email, password_hash, otp, created_at) VALUES (?, ?, ?, ?)",
                ("other@x.com", "hash", "123456", socialfeed.timestamp()),
            )
            conn.commit()
        finally:
            conn.close()

    mailer.on_send = write_from_another_connection
    rv = register(client)
    assert rv.status_code == 201
    assert seen["pending"] == 1
    assert count(app, "SELECT COUNT(*) FROM pending_registrations") == 2


def test_reregistering_removes_previous_pending_picture(client, upload, on_disk, app):
    register(client, profilePicture=upload("first.png"))
    with app.app_context():
        first = socialfeed.query_db("SELECT profile_picture FROM pending_registrations", one=True)[0]
    assert on_disk(first)

    register(client, profilePicture=upload("second.png"))
    with app.app_context():
        second = socialfeed.query_db("SELECT profile_picture FROM pending_registrations", one=True)[0]
    assert second != first
    assert not on_disk(first)
    assert on_disk(second)

    register(client)
    assert not on_disk(second)
    assert os.listdir(app.config["UPLOAD_FOLDER"]) == []


def test_non_string_fields_are_rejected(client, alice):
    rv = client.post("/api/auth/register", json={"email": ["a@x.com"], "password": "pw-123456"})
    assert rv.status_code == 400
    assert rv.get_json()["message"] == "email must be a string"

    rv = client.post("/api/auth/register", json={"email": "new@x.com", "password": 123456})
    assert rv.status_code == 400

    rv = client.post("/api/auth/login", json={"email": 5, "password": "s3cret-pass"})
    assert rv.status_code == 400
    assert rv.get_json()["message"] == "email must be a string"

    rv = client.post("/api/auth/login", json={"email": "alice@x.com", "password": {"p": 1}})
    assert rv.status_code == 400
