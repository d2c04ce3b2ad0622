# socialfeed.py
"""
Social Feed: single-file Flask backend for a small social network.

Accounts are created through an emailed one-time code, login hands out a
7-day bearer token, and the feed holds posts with up to five media files,
likes and comments.

Production notes:
 - Configure via environment variables (see defaults below).
 - Serve with a WSGI server, e.g.
     gunicorn -w 4 -b 0.0.0.0:5000 'socialfeed:create_app()'
 - Uploads land in SOCIAL_UPLOAD_FOLDER and are served under /uploads/.
   Behind nginx, let the proxy serve that directory instead.
"""

import os
import re
import hmac
import sqlite3
import secrets
import smtplib
import datetime
import functools
import uuid
import logging
from collections import defaultdict
from email.message import EmailMessage
from pathlib import Path

from flask import (
    Blueprint,
    Flask,
    current_app,
    request,
    jsonify,
    g,
    send_from_directory,
)
import jwt  # PyJWT
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.utils import secure_filename
from flask_cors import CORS

# -----------------------
# Configuration (env)
# -----------------------
BASE_DIR = Path(__file__).parent.resolve()
DATABASE = os.environ.get("SOCIAL_DATABASE", str(BASE_DIR / "social.db"))
UPLOAD_FOLDER = os.environ.get("SOCIAL_UPLOAD_FOLDER", str(BASE_DIR / "uploads"))
JWT_SECRET = os.environ.get("SOCIAL_JWT_SECRET", None)
if not JWT_SECRET:
    # In production this MUST be set. For dev only fallback:
    JWT_SECRET = "please_set_SOCIAL_JWT_SECRET_in_env"
JWT_ALGORITHM = os.environ.get("SOCIAL_JWT_ALGORITHM", "HS256")
JWT_EXP_SECONDS = int(os.environ.get("SOCIAL_JWT_EXP_SECONDS", 60 * 60 * 24 * 7))  # 7 days
OTP_TTL_SECONDS = int(os.environ.get("SOCIAL_OTP_TTL_SECONDS", 5 * 60))

SMTP_HOST = os.environ.get("SOCIAL_SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.environ.get("SOCIAL_SMTP_PORT", 587))
EMAIL_USER = os.environ.get("EMAIL_USER", "")
EMAIL_PASS = os.environ.get("EMAIL_PASS", "")

# Whole-request cap; per-file caps are checked on each upload.
MAX_CONTENT_LENGTH = int(os.environ.get("SOCIAL_MAX_CONTENT_LENGTH", 60 * 1024 * 1024))
PROFILE_IMAGE_MAX_BYTES = 5 * 1024 * 1024
POST_MEDIA_MAX_BYTES = 10 * 1024 * 1024
MAX_POST_MEDIA = 5
CORS_ORIGINS = os.environ.get("SOCIAL_CORS_ORIGINS", "*")  # set to origin(s) in prod

UPLOAD_URL_PREFIX = "/uploads/"
DEFAULT_PROFILE_PICTURE = UPLOAD_URL_PREFIX + "user-photo.jpg"
DELETED_USER = {
    "id": "deleted",
    "firstName": "Deleted",
    "lastName": "User",
    "profilePicture": DEFAULT_PROFILE_PICTURE,
}

IMAGE_TYPES = ("image/",)
POST_MEDIA_TYPES = ("image/", "video/")

# Logging
logging.basicConfig(level=os.environ.get("SOCIAL_LOG_LEVEL", "INFO"))
logger = logging.getLogger("social-feed")


# -----------------------
# Errors
# -----------------------
class APIError(Exception):
    """Base for errors rendered as ``{"message": ...}`` with ``status_code``."""

    status_code = 500
    default_message = "Server error"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(APIError):
    status_code = 400
    default_message = "Invalid request"


class InvalidCredentials(APIError):
    status_code = 400
    default_message = "Invalid credentials"


class InvalidToken(APIError):
    status_code = 400
    default_message = "Invalid or expired verification token"


class Conflict(APIError):
    status_code = 400
    default_message = "User already exists"


class Unauthenticated(APIError):
    status_code = 401
    default_message = "Invalid or expired token"


class Forbidden(APIError):
    status_code = 403
    default_message = "Unauthorized"


class NotFound(APIError):
    status_code = 404
    default_message = "Not found"


class ServerError(APIError):
    pass


# -----------------------
# Mail
# -----------------------
class SMTPMailer:
    """Plain-text mail over SMTP with STARTTLS. One connection per message."""

    def __init__(self, host, port, username="", password="", sender=None, timeout=10):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username
        self.timeout = timeout

    def send(self, to, subject, body):
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(msg)


# -----------------------
# Database helpers
# -----------------------
def get_db():
    """
    Returns the sqlite3.Connection bound to the current app context,
    opening it on first use. Closed by close_db on teardown.
    """
    if "db" not in g:
        conn = sqlite3.connect(current_app.config["DATABASE"], check_same_thread=False)
        conn.row_factory = sqlite3.Row
        cur = conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA synchronous=NORMAL;")
        cur.execute("PRAGMA foreign_keys=ON;")
        cur.close()
        g.db = conn
    return g.db


def close_db(exc):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def query_db(query, args=(), one=False):
    cur = get_db().execute(query, args)
    rv = cur.fetchall()
    cur.close()
    return (rv[0] if rv else None) if one else rv


def execute_db(query, args=()):
    conn = get_db()
    cur = conn.execute(query, args)
    conn.commit()
    lastrowid = cur.lastrowid
    cur.close()
    return lastrowid


def placeholders(values):
    return ",".join("?" * len(values))


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def timestamp(moment=None):
    # Fixed-width ISO strings so created_at sorts and compares as text.
    return (moment or utcnow()).isoformat(timespec="microseconds")


def init_db():
    db = get_db()
    db.executescript(
        """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    first_name TEXT NOT NULL DEFAULT '',
    last_name TEXT NOT NULL DEFAULT '',
    email TEXT UNIQUE NOT NULL,
    password_hash TEXT NOT NULL,
    is_verified INTEGER NOT NULL DEFAULT 0,
    email_verification_token TEXT,
    profile_picture TEXT,
    cover_photo TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pending_registrations (
    email TEXT PRIMARY KEY,
    first_name TEXT NOT NULL DEFAULT '',
    last_name TEXT NOT NULL DEFAULT '',
    password_hash TEXT NOT NULL,
    otp TEXT NOT NULL,
    profile_picture TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_pending_created ON pending_registrations(created_at);

-- user_id columns below are plain references: readers substitute a
-- placeholder identity when the user row is gone.
CREATE TABLE IF NOT EXISTS posts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    media_type TEXT NOT NULL DEFAULT '' CHECK (media_type IN ('image', 'video', '')),
    shares INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_posts_user ON posts(user_id, created_at);

CREATE TABLE IF NOT EXISTS post_media (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    post_id INTEGER NOT NULL,
    position INTEGER NOT NULL,
    path TEXT NOT NULL,
    FOREIGN KEY(post_id) REFERENCES posts(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS post_likes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    post_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    UNIQUE(post_id, user_id),
    FOREIGN KEY(post_id) REFERENCES posts(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS comments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    post_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY(post_id) REFERENCES posts(id) ON DELETE CASCADE
);
"""
    )
    db.commit()


# -----------------------
# JWT helpers
# -----------------------
def create_token(user_id: int):
    now = utcnow()
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + datetime.timedelta(seconds=current_app.config["JWT_EXP_SECONDS"]),
    }
    return jwt.encode(payload, current_app.config["SECRET_KEY"], algorithm=current_app.config["JWT_ALGORITHM"])


def user_id_from_token(token: str):
    """Returns the user id a valid token was issued for, or None."""
    try:
        payload = jwt.decode(
            token,
            current_app.config["SECRET_KEY"],
            algorithms=[current_app.config["JWT_ALGORITHM"]],
            options={"require": ["exp", "sub"]},
        )
        return int(payload["sub"])
    except (jwt.InvalidTokenError, ValueError):
        return None


def jwt_required(f):
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Bearer "):
            raise Unauthenticated("Missing or invalid Authorization header")
        user_id = user_id_from_token(auth.split(" ", 1)[1].strip())
        if user_id is None:
            raise Unauthenticated("Invalid or expired token")
        g.user_id = user_id
        return f(*args, **kwargs)
    return wrapper


# -----------------------
# Upload helpers
# -----------------------
def uploaded_files(field):
    # Browsers send an empty part when no file was picked.
    return [f for f in request.files.getlist(field) if f and f.filename]


def _stream_size(file_storage):
    stream = file_storage.stream
    pos = stream.tell()
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(pos)
    return size


def validate_uploads(files, allowed_types, max_count, max_size):
    if len(files) > max_count:
        raise ValidationError(f"Too many files (max {max_count})")
    for f in files:
        mimetype = (f.mimetype or "").lower()
        if not mimetype.startswith(allowed_types):
            raise ValidationError("Unsupported file type")
        if _stream_size(f) > max_size:
            raise ValidationError("File too large")


def save_uploads(files, prefix):
    """
    Writes already-validated files into UPLOAD_FOLDER under uuid names,
    keeping the original extension. Returns (url, mimetype) pairs in order.
    """
    saved = []
    for f in files:
        ext = os.path.splitext(secure_filename(f.filename))[1].lower()
        name = f"{prefix}-{uuid.uuid4().hex}{ext}"
        f.save(os.path.join(current_app.config["UPLOAD_FOLDER"], name))
        saved.append((UPLOAD_URL_PREFIX + name, (f.mimetype or "").lower()))
    return saved


def accept_uploads(files, allowed_types, max_count, max_size, prefix):
    validate_uploads(files, allowed_types, max_count, max_size)
    return save_uploads(files, prefix)


def upload_path(url):
    """Maps an /uploads/ URL to a path inside UPLOAD_FOLDER, or None."""
    if not url or not url.startswith(UPLOAD_URL_PREFIX):
        return None
    name = os.path.basename(url[len(UPLOAD_URL_PREFIX):])
    if name in ("", ".", ".."):
        return None
    return os.path.join(current_app.config["UPLOAD_FOLDER"], name)


def remove_upload(url):
    path = upload_path(url)
    if path is None:
        return False
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    except OSError:
        logger.warning("Could not remove upload %s", path, exc_info=True)
        return False
    return True


def media_kind(mimetype):
    mimetype = (mimetype or "").lower()
    if mimetype.startswith("image/"):
        return "image"
    if mimetype.startswith("video/"):
        return "video"
    return ""


# -----------------------
# Serialization helpers
# -----------------------
def user_to_dict(row):
    if row is None:
        return None
    return {
        "id": row["id"],
        "firstName": row["first_name"],
        "lastName": row["last_name"],
        "email": row["email"],
        "isVerified": bool(row["is_verified"]),
        "profilePicture": row["profile_picture"] or DEFAULT_PROFILE_PICTURE,
        "coverPhoto": row["cover_photo"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def display_identity(row):
    if row is None:
        return dict(DELETED_USER)
    return {
        "id": row["id"],
        "firstName": row["first_name"],
        "lastName": row["last_name"],
        "profilePicture": row["profile_picture"] or DEFAULT_PROFILE_PICTURE,
    }


def load_display_identities(user_ids):
    ids = sorted(set(user_ids))
    if not ids:
        return {}
    rows = query_db(
        f"SELECT id, first_name, last_name, profile_picture FROM users WHERE id IN ({placeholders(ids)})",
        ids,
    )
    return {r["id"]: display_identity(r) for r in rows}


def posts_to_dicts(rows):
    """
    Builds post payloads for a batch of post rows: media, likes and comments
    are fetched per batch, then owners and commenters are resolved in one
    user lookup. Missing users become DELETED_USER.
    """
    if not rows:
        return []
    post_ids = [r["id"] for r in rows]
    marks = placeholders(post_ids)

    media = defaultdict(list)
    for m in query_db(
        f"SELECT post_id, path FROM post_media WHERE post_id IN ({marks}) ORDER BY position, id", post_ids
    ):
        media[m["post_id"]].append(m["path"])

    likes = defaultdict(list)
    for like in query_db(f"SELECT post_id, user_id FROM post_likes WHERE post_id IN ({marks}) ORDER BY id", post_ids):
        likes[like["post_id"]].append(like["user_id"])

    comment_rows = query_db(f"SELECT * FROM comments WHERE post_id IN ({marks}) ORDER BY id DESC", post_ids)
    users = load_display_identities([r["user_id"] for r in rows] + [c["user_id"] for c in comment_rows])

    def identity(user_id):
        return users.get(user_id) or dict(DELETED_USER)

    comments = defaultdict(list)
    for c in comment_rows:
        comments[c["post_id"]].append(
            {
                "id": c["id"],
                "user": identity(c["user_id"]),
                "content": c["content"],
                "createdAt": c["created_at"],
                "updatedAt": c["updated_at"],
            }
        )

    return [
        {
            "id": r["id"],
            "user": identity(r["user_id"]),
            "content": r["content"],
            "media": media[r["id"]],
            "mediaType": r["media_type"],
            "likes": likes[r["id"]],
            "comments": comments[r["id"]],
            "shares": r["shares"],
            "createdAt": r["created_at"],
            "updatedAt": r["updated_at"],
        }
        for r in rows
    ]


def post_to_dict(row):
    return posts_to_dicts([row])[0]


# -----------------------
# Lookup / validation helpers
# -----------------------
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def validate_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email))


def request_data():
    """JSON body when the request has one, form fields otherwise."""
    if request.is_json:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}
    return request.form


def text_field(data, name, strip=True):
    """A string field from request_data(); "" when absent, 400 when not a string."""
    value = data.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value.strip() if strip else value


def get_user_row(user_id):
    row = query_db("SELECT * FROM users WHERE id = ?", (user_id,), one=True)
    if row is None:
        raise NotFound("User not found")
    return row


def get_post_row(post_id):
    row = query_db("SELECT * FROM posts WHERE id = ?", (post_id,), one=True)
    if row is None:
        raise NotFound("Post not found")
    return row


def get_owned_post_row(post_id):
    row = get_post_row(post_id)
    if row["user_id"] != g.user_id:
        raise Forbidden("Unauthorized")
    return row


def media_paths(post_id):
    rows = query_db("SELECT path FROM post_media WHERE post_id = ? ORDER BY position, id", (post_id,))
    return [r["path"] for r in rows]


def generate_otp():
    return str(100000 + secrets.randbelow(900000))


def purge_expired_registrations():
    cutoff = utcnow() - datetime.timedelta(seconds=current_app.config["OTP_TTL_SECONDS"])
    execute_db("DELETE FROM pending_registrations WHERE created_at <= ?", (timestamp(cutoff),))


# -----------------------
# Routes: auth
# -----------------------
auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.route("/register", methods=["POST"])
def register():
    data = request_data()
    first_name = text_field(data, "firstName")
    last_name = text_field(data, "lastName")
    email = text_field(data, "email").lower()
    password = text_field(data, "password", strip=False)

    if not email or not password:
        raise ValidationError("email and password required")
    if not validate_email(email):
        raise ValidationError("invalid email")
    if query_db("SELECT id FROM users WHERE email = ?", (email,), one=True):
        raise Conflict("User already exists")

    saved = accept_uploads(
        uploaded_files("profilePicture"),
        IMAGE_TYPES,
        1,
        current_app.config["PROFILE_IMAGE_MAX_BYTES"],
        "profile",
    )
    picture = saved[0][0] if saved else DEFAULT_PROFILE_PICTURE
    otp = generate_otp()

    purge_expired_registrations()
    previous = query_db("SELECT profile_picture FROM pending_registrations WHERE email = ?", (email,), one=True)
    # Committed before mailing so the write lock is not held across SMTP.
    execute_db(
        """
        INSERT INTO pending_registrations
            (email, first_name, last_name, password_hash, otp, profile_picture, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(email) DO UPDATE SET
            first_name = excluded.first_name,
            last_name = excluded.last_name,
            password_hash = excluded.password_hash,
            otp = excluded.otp,
            profile_picture = excluded.profile_picture,
            created_at = excluded.created_at
        """,
        (email, first_name, last_name, generate_password_hash(password), otp, picture, timestamp()),
    )
    if previous and previous["profile_picture"] not in (None, DEFAULT_PROFILE_PICTURE, picture):
        remove_upload(previous["profile_picture"])

    try:
        current_app.extensions["mailer"].send(
            email,
            "Your verification code",
            f"Your OTP is: {otp}\n\nIt expires in {current_app.config['OTP_TTL_SECONDS'] // 60} minutes.",
        )
    except Exception as exc:
        logger.exception("OTP registration for %s failed", email)
        execute_db("DELETE FROM pending_registrations WHERE email = ? AND otp = ?", (email, otp))
        if saved:
            remove_upload(picture)
        raise ServerError() from exc

    logger.info("Pending registration stored for %s", email)
    return jsonify({"message": "OTP sent"}), 201


@auth_bp.route("/verify-otp", methods=["POST"])
def verify_otp():
    data = request_data()
    email = text_field(data, "email").lower()
    otp = str(data.get("otp") or "").strip()

    purge_expired_registrations()
    pending = query_db("SELECT * FROM pending_registrations WHERE email = ?", (email,), one=True)
    if not pending or not otp or not hmac.compare_digest(pending["otp"].encode(), otp.encode()):
        raise InvalidCredentials("Invalid OTP")

    now = timestamp()
    db = get_db()
    try:
        db.execute(
            """
            INSERT INTO users
                (first_name, last_name, email, password_hash, is_verified, profile_picture, created_at, updated_at)
            VALUES (?, ?, ?, ?, 1, ?, ?, ?)
            """,
            (
                pending["first_name"],
                pending["last_name"],
                pending["email"],
                pending["password_hash"],
                pending["profile_picture"],
                now,
                now,
            ),
        )
        db.execute("DELETE FROM pending_registrations WHERE email = ?", (email,))
        db.commit()
    except sqlite3.IntegrityError as exc:
        db.rollback()
        raise Conflict("User already exists") from exc

    logger.info("Account verified for %s", email)
    return jsonify({"message": "Registration successful"})


@auth_bp.route("/verify-email/<token>", methods=["GET"])
def verify_email(token):
    row = query_db("SELECT id FROM users WHERE email_verification_token = ?", (token,), one=True)
    if not row:
        raise InvalidToken("Invalid or expired verification token")
    execute_db(
        "UPDATE users SET is_verified = 1, email_verification_token = NULL, updated_at = ? WHERE id = ?",
        (timestamp(), row["id"]),
    )
    return jsonify({"message": "Email verified successfully. You can now log in."})


@auth_bp.route("/login", methods=["POST"])
def login():
    data = request_data()
    email = text_field(data, "email").lower()
    password = text_field(data, "password", strip=False)

    # is_verified is deliberately not checked here.
    row = query_db("SELECT * FROM users WHERE email = ?", (email,), one=True)
    if not row or not password or not check_password_hash(row["password_hash"], password):
        raise InvalidCredentials("Invalid credentials")

    return jsonify(
        {
            "token": create_token(row["id"]),
            "user": {
                "id": row["id"],
                "firstName": row["first_name"],
                "lastName": row["last_name"],
                "email": row["email"],
                "profilePicture": row["profile_picture"] or DEFAULT_PROFILE_PICTURE,
            },
        }
    )


# -----------------------
# Routes: posts
# -----------------------
posts_bp = Blueprint("posts", __name__, url_prefix="/api/posts")


@posts_bp.route("", methods=["GET"])
@jwt_required
def list_posts():
    rows = query_db("SELECT * FROM posts ORDER BY created_at DESC, id DESC")
    return jsonify(posts_to_dicts(rows))


@posts_bp.route("", methods=["POST"])
@jwt_required
def create_post():
    content = text_field(request_data(), "content")
    files = uploaded_files("media")
    if not content and not files:
        raise ValidationError("Post needs content or media")

    saved = accept_uploads(
        files,
        POST_MEDIA_TYPES,
        current_app.config["MAX_POST_MEDIA"],
        current_app.config["POST_MEDIA_MAX_BYTES"],
        "post",
    )
    # The first file decides the kind for the whole set.
    kind = media_kind(saved[0][1]) if saved else ""
    now = timestamp()

    db = get_db()
    cur = db.execute(
        "INSERT INTO posts (user_id, content, media_type, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
        (g.user_id, content, kind, now, now),
    )
    post_id = cur.lastrowid
    db.executemany(
        "INSERT INTO post_media (post_id, position, path) VALUES (?, ?, ?)",
        [(post_id, i, url) for i, (url, _) in enumerate(saved)],
    )
    db.commit()

    return jsonify(post_to_dict(get_post_row(post_id))), 201


@posts_bp.route("/<int:post_id>", methods=["GET"])
@jwt_required
def get_post(post_id):
    return jsonify(post_to_dict(get_post_row(post_id)))


@posts_bp.route("/<int:post_id>/likes", methods=["GET"])
@jwt_required
def list_likers(post_id):
    get_post_row(post_id)
    rows = query_db(
        """
        SELECT u.id, u.first_name, u.last_name, u.profile_picture
        FROM post_likes l JOIN users u ON u.id = l.user_id
        WHERE l.post_id = ?
        ORDER BY l.id
        """,
        (post_id,),
    )
    return jsonify([display_identity(r) for r in rows])


@posts_bp.route("/<int:post_id>/like", methods=["PUT"])
@jwt_required
def toggle_like(post_id):
    get_post_row(post_id)
    db = get_db()
    cur = db.execute("DELETE FROM post_likes WHERE post_id = ? AND user_id = ?", (post_id, g.user_id))
    if cur.rowcount == 0:
        db.execute("INSERT OR IGNORE INTO post_likes (post_id, user_id) VALUES (?, ?)", (post_id, g.user_id))
    db.execute("UPDATE posts SET updated_at = ? WHERE id = ?", (timestamp(), post_id))
    db.commit()
    return jsonify(post_to_dict(get_post_row(post_id)))


@posts_bp.route("/<int:post_id>/comment", methods=["POST"])
@jwt_required
def add_comment(post_id):
    content = text_field(request_data(), "content")
    if not content:
        raise ValidationError("Content is required")
    get_post_row(post_id)

    now = timestamp()
    db = get_db()
    db.execute(
        "INSERT INTO comments (post_id, user_id, content, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
        (post_id, g.user_id, content, now, now),
    )
    db.execute("UPDATE posts SET updated_at = ? WHERE id = ?", (now, post_id))
    db.commit()
    return jsonify(post_to_dict(get_post_row(post_id)))


@posts_bp.route("/<int:post_id>", methods=["PUT"])
@jwt_required
def update_post(post_id):
    get_owned_post_row(post_id)
    content = text_field(request_data(), "content")
    saved = accept_uploads(
        uploaded_files("media"),
        POST_MEDIA_TYPES,
        current_app.config["MAX_POST_MEDIA"],
        current_app.config["POST_MEDIA_MAX_BYTES"],
        "post",
    )

    db = get_db()
    replaced = []
    if saved:
        replaced = media_paths(post_id)
        db.execute("DELETE FROM post_media WHERE post_id = ?", (post_id,))
        db.executemany(
            "INSERT INTO post_media (post_id, position, path) VALUES (?, ?, ?)",
            [(post_id, i, url) for i, (url, _) in enumerate(saved)],
        )
        db.execute("UPDATE posts SET media_type = ? WHERE id = ?", (media_kind(saved[0][1]), post_id))
    if content:
        db.execute("UPDATE posts SET content = ? WHERE id = ?", (content, post_id))
    db.execute("UPDATE posts SET updated_at = ? WHERE id = ?", (timestamp(), post_id))
    db.commit()

    for url in replaced:
        remove_upload(url)
    return jsonify(post_to_dict(get_post_row(post_id)))


@posts_bp.route("/<int:post_id>/media", methods=["DELETE"])
@jwt_required
def delete_media_item(post_id):
    image_url = text_field(request_data(), "imageUrl")
    if not image_url:
        raise ValidationError("Image URL is required")
    get_owned_post_row(post_id)

    db = get_db()
    cur = db.execute("DELETE FROM post_media WHERE post_id = ? AND path = ?", (post_id, image_url))
    removed = cur.rowcount > 0
    if removed:
        db.execute("UPDATE posts SET updated_at = ? WHERE id = ?", (timestamp(), post_id))
    db.commit()

    # Only files that actually belonged to this post are touched on disk.
    if removed:
        remove_upload(image_url)
    return jsonify({"message": "Image removed", "updatedMedia": media_paths(post_id)})


@posts_bp.route("/<int:post_id>", methods=["DELETE"])
@jwt_required
def delete_post(post_id):
    get_owned_post_row(post_id)
    media = media_paths(post_id)
    execute_db("DELETE FROM posts WHERE id = ?", (post_id,))
    for url in media:
        remove_upload(url)
    logger.info("Post %s deleted by user %s", post_id, g.user_id)
    return jsonify({"message": "Post deleted successfully"})


# -----------------------
# Routes: users
# -----------------------
users_bp = Blueprint("users", __name__, url_prefix="/api/users")


@users_bp.route("/me", methods=["GET"])
@jwt_required
def get_self():
    return jsonify(user_to_dict(get_user_row(g.user_id)))


@users_bp.route("/<int:user_id>", methods=["GET"])
@jwt_required
def get_user(user_id):
    return jsonify(user_to_dict(get_user_row(user_id)))


@users_bp.route("/<int:user_id>/posts", methods=["GET"])
@jwt_required
def user_posts(user_id):
    get_user_row(user_id)
    rows = query_db("SELECT * FROM posts WHERE user_id = ? ORDER BY created_at DESC, id DESC", (user_id,))
    return jsonify(posts_to_dicts(rows))


@users_bp.route("/<int:user_id>/profile", methods=["PATCH"])
@jwt_required
def update_profile_images(user_id):
    if user_id != g.user_id:
        raise Forbidden("Unauthorized")
    get_user_row(user_id)

    max_size = current_app.config["PROFILE_IMAGE_MAX_BYTES"]
    picture = uploaded_files("profilePicture")
    cover = uploaded_files("coverPhoto")
    # Both fields are checked before either is written.
    validate_uploads(picture, IMAGE_TYPES, 1, max_size)
    validate_uploads(cover, IMAGE_TYPES, 1, max_size)

    updates = {}
    if picture:
        updates["profile_picture"] = save_uploads(picture, "user")[0][0]
    if cover:
        updates["cover_photo"] = save_uploads(cover, "user")[0][0]
    if updates:
        updates["updated_at"] = timestamp()
        assignments = ", ".join(f"{column} = ?" for column in updates)
        execute_db(f"UPDATE users SET {assignments} WHERE id = ?", (*updates.values(), user_id))

    return jsonify(user_to_dict(get_user_row(user_id)))


# -----------------------
# Routes: misc
# -----------------------
misc_bp = Blueprint("misc", __name__)


@misc_bp.route("/", methods=["GET"])
def index():
    return jsonify({"message": "Social Feed API is running"})


@misc_bp.route("/uploads/<path:filename>", methods=["GET"])
def uploaded_file(filename):
    # send_from_directory refuses paths escaping the folder
    return send_from_directory(current_app.config["UPLOAD_FOLDER"], filename, as_attachment=False)


# -----------------------
# Security headers
# -----------------------
def set_security_headers(response):
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer-when-downgrade")
    return response


# -----------------------
# Error handlers
# -----------------------
def handle_api_error(e):
    return jsonify({"message": e.message}), e.status_code


def too_large(e):
    return jsonify({"message": "Uploaded file is too large"}), 413


def handle_http_error(e):
    return jsonify({"message": e.name}), e.code


def handle_unexpected_error(e):
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({"message": "Server error"}), 500


# -----------------------
# App factory
# -----------------------
def create_app(test_config=None, mailer=None):
    """
    Builds the app. ``test_config`` overrides the env-derived settings;
    ``mailer`` replaces the SMTP mailer (anything with ``send(to, subject, body)``).
    """
    app = Flask(__name__, static_folder=None)
    app.config.from_mapping(
        DATABASE=DATABASE,
        UPLOAD_FOLDER=UPLOAD_FOLDER,
        SECRET_KEY=JWT_SECRET,
        JWT_ALGORITHM=JWT_ALGORITHM,
        JWT_EXP_SECONDS=JWT_EXP_SECONDS,
        OTP_TTL_SECONDS=OTP_TTL_SECONDS,
        SMTP_HOST=SMTP_HOST,
        SMTP_PORT=SMTP_PORT,
        EMAIL_USER=EMAIL_USER,
        EMAIL_PASS=EMAIL_PASS,
        MAX_CONTENT_LENGTH=MAX_CONTENT_LENGTH,
        PROFILE_IMAGE_MAX_BYTES=PROFILE_IMAGE_MAX_BYTES,
        POST_MEDIA_MAX_BYTES=POST_MEDIA_MAX_BYTES,
        MAX_POST_MEDIA=MAX_POST_MEDIA,
        CORS_ORIGINS=CORS_ORIGINS,
    )
    if test_config:
        app.config.update(test_config)

    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)
    CORS(app, resources={r"/*": {"origins": app.config["CORS_ORIGINS"]}})

    if mailer is None:
        mailer = SMTPMailer(
            app.config["SMTP_HOST"],
            app.config["SMTP_PORT"],
            username=app.config["EMAIL_USER"],
            password=app.config["EMAIL_PASS"],
        )
    app.extensions["mailer"] = mailer

    app.teardown_appcontext(close_db)
    app.after_request(set_security_headers)

    app.register_error_handler(APIError, handle_api_error)
    app.register_error_handler(413, too_large)
    app.register_error_handler(HTTPException, handle_http_error)
    app.register_error_handler(Exception, handle_unexpected_error)

    app.register_blueprint(auth_bp)
    app.register_blueprint(posts_bp)
    app.register_blueprint(users_bp)
    app.register_blueprint(misc_bp)

    with app.app_context():
        init_db()
        logger.info("Database initialized/ready at %s", app.config["DATABASE"])
        logger.info("Uploads folder: %s", app.config["UPLOAD_FOLDER"])

    return app


# -----------------------
# Run server (for dev only). For production use a WSGI server.
# -----------------------
if __name__ == "__main__":
    create_app().run(
        host="0.0.0.0",
        port=int(os.environ.get("PORT", 5000)),
        debug=os.environ.get("FLASK_DEBUG", "0") == "1",
    )
