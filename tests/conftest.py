import io
import os
import re

import pytest

import socialfeed


class FakeMailer:
    """Records outgoing mail instead of talking to SMTP."""

    def __init__(self):
        self.outbox = []
        self.fail = False
        self.on_send = None

    def send(self, to, subject, body):
        if self.fail:
            raise OSError("SMTP unavailable")
        if self.on_send:
            self.on_send(to)
        self.outbox.append({"to": to, "subject": subject, "body": body})

    def last_otp(self, to):
        for message in reversed(self.outbox):
            if message["to"] == to:
                return re.search(r"\b(\d{6})\b", message["body"]).group(1)
        return None


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def app(tmp_path, mailer):
    return socialfeed.create_app(
        {
            "TESTING": True,
            "DATABASE": str(tmp_path / "social-test.db"),
            "UPLOAD_FOLDER": str(tmp_path / "uploads"),
            "SECRET_KEY": "test-secret",
            "PROFILE_IMAGE_MAX_BYTES": 512,
            "POST_MEDIA_MAX_BYTES": 1024,
        },
        mailer=mailer,
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def upload():
    """Factory for multipart file tuples accepted by the test client."""

    def _upload(name="photo.png", mimetype="image/png", data=b"\x89PNG\r\n\x1a\nfake"):
        return (io.BytesIO(data), name, mimetype)

    return _upload


@pytest.fixture
def on_disk(app):
    """True when the file behind an /uploads/ URL exists."""

    def _on_disk(url):
        return os.path.exists(os.path.join(app.config["UPLOAD_FOLDER"], os.path.basename(url)))

    return _on_disk


@pytest.fixture
def make_user(client, mailer):
    """Registers, verifies and logs in a user; returns id, token and auth headers."""

    def _make_user(email, first_name="Test", last_name="User", password="s3cret-pass"):
        rv = client.post(
            "/api/auth/register",
            data={"firstName": first_name, "lastName": last_name, "email": email, "password": password},
        )
        assert rv.status_code == 201, rv.get_json()
        rv = client.post("/api/auth/verify-otp", json={"email": email, "otp": mailer.last_otp(email)})
        assert rv.status_code == 200, rv.get_json()
        rv = client.post("/api/auth/login", json={"email": email, "password": password})
        assert rv.status_code == 200, rv.get_json()
        body = rv.get_json()
        return {
            "id": body["user"]["id"],
            "token": body["token"],
            "headers": {"Authorization": f"Bearer {body['token']}"},
        }

    return _make_user


@pytest.fixture
def alice(make_user):
    return make_user("alice@x.com", "Alice", "Anders")


@pytest.fixture
def bob(make_user):
    return make_user("bob@x.com", "Bob", "Brown")
