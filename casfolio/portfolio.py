#!/usr/bin/env python3
"""
A single-file CAS portfolio: creativity, activity, service and conversation
entries with a password-gated admin area.
"""

import io
import json
import os
import secrets
import sqlite3
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import NamedTuple
from zoneinfo import ZoneInfo, available_timezones

import boto3
import click
import markdown
import requests
from botocore.exceptions import BotoCoreError, ClientError
from flask import (
    Flask,
    abort,
    flash,
    g,
    make_response,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)

STRANDS = ("creativity", "activity", "service", "conversation")
MEDIA_KINDS = ("image", "audio")

# One row per strand; every strand-specific decision reads from here.
STRAND_TABLE = {
    "creativity": {
        "label": "Creativity",
        "slug": "creativity",
        "media": "image",
        "color": "#8b8ff5",
        "blurb": "Art, design, music and everything made by hand.",
    },
    "activity": {
        "label": "Activity",
        "slug": "activity",
        "media": "image",
        "color": "#34c79a",
        "blurb": "Training, sport and physical challenges.",
    },
    "service": {
        "label": "Service",
        "slug": "service",
        "media": "image",
        "color": "#f47a8e",
        "blurb": "Volunteering and work done for others.",
    },
    "conversation": {
        "label": "CAS Conversations",
        "slug": "conversations",
        "media": "audio",
        "color": "#4cb8ea",
        "blurb": "Audio reflections documenting termly progress.",
    },
}

AUTH_COOKIE = "admin_auth"
HINT_COOKIE = "admin_hint"
AUTH_MAX_AGE = 60 * 60 * 24 * 7  # 7 days
auth_signer = TimestampSigner(SECRET_KEY, salt="admin-auth")

CLOUDINARY_ENV_KEYS = ("CLOUDINARY_CLOUD_NAME", "CLOUDINARY_UPLOAD_PRESET")
R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_PUBLIC_BASE",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = ("R2_ACCOUNT_ID", "R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY", "R2_BUCKET")
UPLOAD_MAX_BYTES = 64 * 1024 * 1024
UPLOAD_TIMEOUT = 60
UPLOAD_WORKERS = 4

RECENT_LIMIT = 6
WORD_LIMIT = 150
GOAL_DFLT = 8
TZ_DFLT = "UTC"
SITE_NAME_DFLT = "CAS Portfolio"
MD_EXTENSIONS = ["extra", "sane_lists", "nl2br"]

try:
    __version__ = version("casfolio")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# Errors
################################################################################
class PortfolioError(Exception):
    """Base class for errors the HTTP layer turns into responses."""

    status = 500


class ValidationError(PortfolioError):
    status = 400


class NotFoundError(PortfolioError):
    status = 404


class AuthError(PortfolioError):
    status = 401


class UpstreamError(PortfolioError):
    """The media host answered with something other than success."""

    status = 502

    def __init__(self, message: str, body: str = ""):
        super().__init__(message)
        self.body = body


class StorageFault(PortfolioError):
    status = 500


################################################################################
# Configuration
################################################################################
def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def env_value(key: str, default: str = "") -> str:
    """Process environment first, then the .env file next to this module."""
    return (os.environ.get(key) or _read_env_file().get(key) or default).strip()


def database_file() -> Path:
    """`DATABASE_URI` is the directory, `DATABASE_NAME` the file stem."""
    uri = env_value("DATABASE_URI")
    if uri.startswith("sqlite:///"):
        uri = uri[len("sqlite:///") :]
    base = Path(uri) if uri else ROOT
    return base / f"{env_value('DATABASE_NAME', 'casfolio')}.sqlite3"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, DATABASE=str(database_file()))
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=True,
    PERMANENT_SESSION_LIFETIME=timedelta(seconds=AUTH_MAX_AGE),
    ADMIN_COOKIE_SECURE=True,
    ADMIN_PASSWORD=None,  # falls back to the ADMIN_PASSWORD env var
    MAX_CONTENT_LENGTH=UPLOAD_MAX_BYTES,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    if not text:
        return Markup("")
    return Markup(markdown.markdown(text, extensions=MD_EXTENSIONS))


@app.template_filter("day")
def day_filter(value) -> str:
    """Local calendar day of a datetime (or ISO string) in the site timezone."""
    if not value:
        return ""
    if isinstance(value, str):
        try:
            value = parse_iso(value)
        except ValueError:
            return value
    if isinstance(value, datetime):
        value = value.astimezone(site_tz()).date()
    return value.strftime("%Y.%m.%d")


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.row_factory = sqlite3.Row
        _create_schema(g.db)
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def _create_schema(db) -> None:
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Entries: one JSON document per row
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS entries (
            _id   INTEGER PRIMARY KEY,
            doc   TEXT NOT NULL
        );

        ------------------------------------------------------------
        -- 2.  Site settings
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS settings (
            key    TEXT PRIMARY KEY,
            value  TEXT
        );
        """
    )


def init_db():
    db = get_db()
    db.commit()
    return db


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def parse_iso(value: str) -> datetime:
    """ISO-8601 → aware datetime; naive values are taken as UTC."""
    dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def parse_entry_date(value: str, tz) -> datetime:
    """
    A bare ``YYYY-MM-DD`` from the date picker means midnight in the site
    timezone, so the entry lands on that calendar day when bucketed.
    """
    value = (value or "").strip()
    try:
        if len(value) == 10:
            return datetime.combine(date.fromisoformat(value), datetime.min.time(), tz)
        return parse_iso(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid entryDate: {value!r}") from exc


###############################################################################
# Settings
###############################################################################
def get_setting(key, default=None):
    row = get_db().execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(key, value):
    db = get_db()
    db.execute(
        "INSERT INTO settings (key,value) VALUES (?,?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
        (key, value),
    )
    db.commit()


def site_name() -> str:
    return get_setting("site_name", SITE_NAME_DFLT)


def tz_name() -> str:
    tz = get_setting("timezone", TZ_DFLT)
    return tz if tz in available_timezones() else TZ_DFLT


def site_tz() -> ZoneInfo:
    return ZoneInfo(tz_name())


def monthly_goal() -> int:
    raw = get_setting("monthly_goal", "")
    return int(raw) if str(raw).isdigit() and int(raw) > 0 else GOAL_DFLT


def admin_password() -> str:
    return app.config.get("ADMIN_PASSWORD") or env_value("ADMIN_PASSWORD")


###############################################################################
# Strands
###############################################################################
def strand_slug(kind: str) -> str:
    return STRAND_TABLE[kind]["slug"]


def slug_to_strand(slug: str) -> str | None:
    for kind, row in STRAND_TABLE.items():
        if row["slug"] == slug:
            return kind
    return None


def expected_media(kind: str) -> str:
    return STRAND_TABLE[kind]["media"]


def word_count(text: str | None) -> int:
    return len(text.split()) if text and text.strip() else 0


###############################################################################
# Entry records <-> wire DTOs
###############################################################################
def new_entry_id() -> str:
    return str(uuid.uuid4())


def normalize_media(item) -> dict:
    if not isinstance(item, dict):
        raise ValidationError("Media items must be objects")
    kind = item.get("kind")
    name = item.get("name")
    url = item.get("url")
    if kind not in MEDIA_KINDS or not isinstance(name, str) or not url:
        raise ValidationError("Media items need kind (image|audio), name and url")
    return {"kind": kind, "name": name, "url": str(url)}


def to_dto(record: dict) -> dict:
    """Storage record → JSON-able dict. `_id` never leaves the server."""
    dto = {
        "id": record["id"],
        "kind": record["kind"],
        "title": record["title"],
        "description": record["description"],
        "week": record.get("week"),
        "createdAt": record["createdAt"].isoformat(),
        "media": [dict(m) for m in record.get("media") or []],
    }
    if record.get("entryDate"):
        dto["entryDate"] = record["entryDate"].isoformat()
    return dto


def from_dto(dto: dict) -> dict:
    """Inverse of :func:`to_dto`."""
    return {
        "id": dto["id"],
        "kind": dto["kind"],
        "title": dto["title"],
        "description": dto["description"],
        "week": dto.get("week"),
        "createdAt": parse_iso(dto["createdAt"]),
        "entryDate": parse_iso(dto["entryDate"]) if dto.get("entryDate") else None,
        "media": [normalize_media(m) for m in dto.get("media") or []],
    }


def validate_entry_payload(body, *, tz) -> dict:
    """
    Check a creation payload and return keyword arguments for
    :func:`create_entry`. Only kind/title/description are required.
    """
    if not isinstance(body, dict):
        raise ValidationError("Missing required fields")

    kind, title, description = (body.get(k) for k in ("kind", "title", "description"))
    if not all(isinstance(v, str) and v.strip() for v in (kind, title, description)):
        raise ValidationError("Missing required fields")
    if kind not in STRANDS:
        raise ValidationError(f"Unknown kind: {kind}")

    week = body.get("week")
    if week in (None, ""):
        week = None
    elif isinstance(week, str) and week.strip().isdigit():
        week = int(week)
    elif type(week) is not int:
        # bools, floats and anything else
        raise ValidationError("week must be a whole number")

    media = body.get("media") or []
    if not isinstance(media, list):
        raise ValidationError("media must be a list")

    raw_date = body.get("entryDate")
    if raw_date is not None and not isinstance(raw_date, str):
        raise ValidationError(f"Invalid entryDate: {raw_date!r}")
    return {
        "kind": kind,
        "title": title,
        "description": description,
        "week": week,
        "media": [normalize_media(m) for m in media],
        "entry_date": parse_entry_date(raw_date, tz) if raw_date else None,
    }


###############################################################################
# Entry store
###############################################################################
ORDER_NEWEST = " ORDER BY json_extract(doc,'$.createdAt') DESC, _id DESC"


def _row_to_record(row) -> dict:
    return {"_id": row["_id"], **from_dto(json.loads(row["doc"]))}


def _insert_record(record: dict, *, db, commit: bool = True) -> int:
    try:
        cur = db.execute(
            "INSERT INTO entries (doc) VALUES (?)",
            (json.dumps(to_dto(record), ensure_ascii=False),),
        )
        if commit:
            db.commit()
    except sqlite3.Error as exc:
        raise StorageFault("could not insert entry") from exc
    return cur.lastrowid


def create_entry(
    kind, title, description, week=None, media=(), entry_date=None, *, db
) -> dict:
    record = {
        "id": new_entry_id(),
        "kind": kind,
        "title": title,
        "description": description,
        "week": week,
        "createdAt": utc_now(),
        "entryDate": entry_date,
        "media": list(media),
    }
    return {"_id": _insert_record(record, db=db), **record}


def list_entries(kind=None, *, db) -> list[dict]:
    sql = "SELECT _id, doc FROM entries"
    params: tuple = ()
    if kind:
        sql += " WHERE json_extract(doc,'$.kind')=?"
        params = (kind,)
    try:
        rows = db.execute(sql + ORDER_NEWEST, params).fetchall()
    except sqlite3.Error as exc:
        raise StorageFault("could not list entries") from exc
    return [_row_to_record(r) for r in rows]


def get_entry(entry_id: str, *, db) -> dict | None:
    try:
        row = db.execute(
            "SELECT _id, doc FROM entries WHERE json_extract(doc,'$.id')=? LIMIT 1",
            (entry_id,),
        ).fetchone()
    except sqlite3.Error as exc:
        raise StorageFault("could not read entry") from exc
    return _row_to_record(row) if row else None


def delete_entry(entry_id: str, *, db) -> bool:
    """Remove one entry by its app-level id; False when nothing matched."""
    try:
        cur = db.execute(
            """DELETE FROM entries
                WHERE _id = (SELECT _id FROM entries
                              WHERE json_extract(doc,'$.id')=? LIMIT 1)""",
            (entry_id,),
        )
        db.commit()
    except sqlite3.Error as exc:
        raise StorageFault("could not delete entry") from exc
    return cur.rowcount > 0


def _unwrap_extended(value):
    """Strip mongoexport's {"$date": ...} / {"$oid": ...} wrappers."""
    if isinstance(value, dict):
        if "$date" in value:
            inner = value["$date"]
            if isinstance(inner, dict) and "$numberLong" in inner:
                ms = int(inner["$numberLong"])
                return datetime.fromtimestamp(ms / 1000, timezone.utc).isoformat()
            return inner
        if "$oid" in value:
            return value["$oid"]
    return value


def import_entries(docs, *, db) -> int:
    """
    Load a list of entry DTOs (or a raw ``mongoexport --jsonArray`` dump).
    Ids and dates are kept; ids already present are skipped. Every document
    is checked before the first insert, and the inserts share one
    transaction: the batch lands whole or not at all.
    """
    if not isinstance(docs, list):
        raise ValidationError("Expected a JSON array of entries")
    records, seen = [], set()
    for idx, raw in enumerate(docs):
        if not isinstance(raw, dict):
            raise ValidationError(f"Entry #{idx} is not an object")
        doc = {k: _unwrap_extended(v) for k, v in raw.items() if k != "_id"}
        try:
            record = from_dto(doc)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise ValidationError(f"Entry #{idx} is malformed: {exc}") from exc
        if record["kind"] not in STRANDS:
            raise ValidationError(f"Entry #{idx} has unknown kind {record['kind']!r}")
        if record["id"] in seen or get_entry(record["id"], db=db):
            continue
        seen.add(record["id"])
        record["createdAt"] = record["createdAt"].astimezone(timezone.utc)
        records.append(record)

    try:
        for record in records:
            _insert_record(record, db=db, commit=False)
        db.commit()
    except StorageFault:
        db.rollback()
        raise
    return len(records)


###############################################################################
# Dashboard aggregation
###############################################################################
def effective_date(entry: dict) -> datetime:
    return entry.get("entryDate") or entry["createdAt"]


def local_day(dt: datetime, tz) -> date:
    return dt.astimezone(tz).date()


def filter_entries(entries, *, kind=None, query="") -> list[dict]:
    """Kind (exact) AND case-insensitive substring over title/description."""
    q = (query or "").strip().lower()
    out = []
    for e in entries:
        if kind and e["kind"] != kind:
            continue
        if q and q not in e["title"].lower() and q not in e["description"].lower():
            continue
        out.append(e)
    return out


def month_count(entries, *, now: datetime, tz) -> int:
    ref = now.astimezone(tz)
    return sum(
        1
        for e in entries
        if (d := local_day(effective_date(e), tz)).year == ref.year
        and d.month == ref.month
    )


def day_streak(entries, *, now: datetime, tz) -> int:
    """
    Consecutive local days with at least one entry, counted back from today,
    or from yesterday when nothing is logged today yet.
    """
    days = {local_day(effective_date(e), tz) for e in entries}
    cursor = now.astimezone(tz).date()
    if cursor not in days:
        cursor -= timedelta(days=1)
    streak = 0
    while cursor in days:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def goal_percent(count: int, goal: int) -> int:
    if goal <= 0:
        return 0
    return min(100, round(count * 100 / goal))


def bucket_by_day(entries, *, tz) -> list[dict]:
    """Newest first, grouped as [{day, items}] by local calendar day."""
    buckets: list[dict] = []
    for e in sorted(entries, key=effective_date, reverse=True):
        day = local_day(effective_date(e), tz)
        if not buckets or buckets[-1]["day"] != day:
            buckets.append({"day": day, "items": []})
        buckets[-1]["items"].append(e)
    return buckets


def dashboard_snapshot(entries, *, now, tz, goal, kind=None, query="") -> dict:
    """Everything the dashboard shows, computed from one list of records."""
    entries = list(entries)
    counts = {k: 0 for k in STRANDS}
    for e in entries:
        counts[e["kind"]] = counts.get(e["kind"], 0) + 1

    filtered = filter_entries(entries, kind=kind, query=query)
    this_month = month_count(entries, now=now, tz=tz)
    return {
        "counts": counts,
        "total": len(entries),
        "month_count": this_month,
        "streak": day_streak(entries, now=now, tz=tz),
        "goal": goal,
        "goal_pct": goal_percent(this_month, goal),
        "kind": kind,
        "query": (query or "").strip(),
        "matches": len(filtered),
        "timeline": bucket_by_day(filtered, tz=tz),
        "recent": sorted(entries, key=lambda e: e["createdAt"], reverse=True)[
            :RECENT_LIMIT
        ],
    }


def snapshot_json(snap: dict) -> dict:
    return {
        **{k: v for k, v in snap.items() if k not in ("timeline", "recent")},
        "timeline": [
            {"day": b["day"].isoformat(), "items": [to_dto(e) for e in b["items"]]}
            for b in snap["timeline"]
        ],
        "recent": [to_dto(e) for e in snap["recent"]],
    }


###############################################################################
# Media hosts
###############################################################################
class PendingUpload(NamedTuple):
    name: str
    data: bytes
    mimetype: str


class CloudinaryHost:
    """Unsigned uploads into one account, authorised by an upload preset."""

    endpoint = "https://api.cloudinary.com/v1_1/{account}/{resource}/upload"

    def __init__(self, account: str, upload_preset: str, *, timeout=UPLOAD_TIMEOUT):
        self.account = account
        self.upload_preset = upload_preset
        self.timeout = timeout

    @staticmethod
    def resource_type(media_kind: str) -> str:
        # the host has no audio resource type; audio goes through "video"
        return "image" if media_kind == "image" else "video"

    def upload(self, pending: PendingUpload, media_kind: str) -> str:
        url = self.endpoint.format(
            account=self.account, resource=self.resource_type(media_kind)
        )
        try:
            resp = requests.post(
                url,
                files={"file": (pending.name, pending.data, pending.mimetype)},
                data={"upload_preset": self.upload_preset},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise UpstreamError("Media host unreachable", str(exc)) from exc
        if not resp.ok:
            raise UpstreamError(f"Media host answered {resp.status_code}", resp.text)
        try:
            return resp.json()["secure_url"]
        except (ValueError, KeyError) as exc:
            raise UpstreamError("Media host reply had no secure_url", resp.text) from exc


def r2_config() -> dict[str, str]:
    cfg = {k: env_value(k) for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def r2_object_url(cfg: dict[str, str], key: str) -> str:
    base = cfg.get("R2_PUBLIC_BASE")
    if base:
        return f"{base.rstrip('/')}/{key.lstrip('/')}"
    return f"https://{cfg['R2_BUCKET']}.{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com/{key.lstrip('/')}"


class R2Host:
    """S3-compatible bucket; audio keeps its own key prefix and content type."""

    def __init__(self, cfg: dict[str, str]):
        self.cfg = cfg

    def upload(self, pending: PendingUpload, media_kind: str) -> str:
        ext = Path(secure_filename(pending.name)).suffix.lower()
        key = f"uploads/{media_kind}/{utc_now().strftime('%Y/%m/%d')}/{uuid.uuid4().hex}{ext}"
        try:
            _r2_client(self.cfg).upload_fileobj(
                io.BytesIO(pending.data),
                self.cfg["R2_BUCKET"],
                key,
                ExtraArgs={"ContentType": pending.mimetype or "application/octet-stream"},
            )
        except (BotoCoreError, ClientError) as exc:
            raise UpstreamError("Bucket upload failed", str(exc)) from exc
        return r2_object_url(self.cfg, key)


def media_host():
    """The configured media host, Cloudinary first; None when uploads are off."""
    account, preset = (env_value(k) for k in CLOUDINARY_ENV_KEYS)
    if account and preset:
        return CloudinaryHost(account, preset)
    cfg = r2_config()
    if r2_is_configured(cfg):
        return R2Host(cfg)
    return None


def upload_media(host, pending: PendingUpload, media_kind: str) -> dict:
    url = host.upload(pending, media_kind)
    return {"kind": media_kind, "name": pending.name, "url": url}


def upload_batch(host, uploads, media_kind: str) -> list[dict]:
    """
    Upload every file concurrently and return media items in input order.
    The first failure propagates as UpstreamError; nothing partial is returned.
    """
    uploads = list(uploads)
    if not uploads:
        return []
    with ThreadPoolExecutor(max_workers=min(UPLOAD_WORKERS, len(uploads))) as pool:
        futures = [pool.submit(upload_media, host, p, media_kind) for p in uploads]
        return [f.result() for f in futures]


def pending_uploads(field: str, media_kind: str) -> list[PendingUpload]:
    """Read the files posted under *field*, checking their MIME family."""
    out = []
    for f in request.files.getlist(field):
        if not f or not f.filename:
            continue
        mime = (f.mimetype or "").lower()
        if not mime.startswith(f"{media_kind}/"):
            raise ValidationError(f"{f.filename}: only {media_kind} files are allowed.")
        out.append(PendingUpload(f.filename, f.read(), mime))
    return out


###############################################################################
# Authentication
###############################################################################
def check_password(candidate: str, expected: str) -> bool:
    if not expected or not isinstance(candidate, str):
        return False
    return secrets.compare_digest(candidate.encode(), expected.encode())


def issue_auth_token() -> str:
    return auth_signer.sign("admin").decode()


def verify_auth_token(token: str, max_age: int = AUTH_MAX_AGE) -> bool:
    if not token:
        return False
    try:
        return auth_signer.unsign(token, max_age=max_age) == b"admin"
    except SignatureExpired:
        return False
    except BadSignature:
        return False


class AdminGuard:
    """
    Admin state for one request.

    unknown --resolve()--> authenticated | unauthenticated
    unauthenticated --submit(correct password)--> authenticated

    Only the signed HTTP-only cookie counts; the script-readable hint cookie
    is never consulted here.
    """

    UNKNOWN = "unknown"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"

    def __init__(self, cookies, *, password: str, max_age: int = AUTH_MAX_AGE):
        self.cookies = cookies
        self.password = password
        self.max_age = max_age
        self.state = self.UNKNOWN

    def resolve(self) -> str:
        if self.state == self.UNKNOWN:
            token = self.cookies.get(AUTH_COOKIE, "")
            self.state = (
                self.AUTHENTICATED
                if verify_auth_token(token, self.max_age)
                else self.UNAUTHENTICATED
            )
        return self.state

    @property
    def authenticated(self) -> bool:
        return self.resolve() == self.AUTHENTICATED

    def submit(self, password: str) -> str:
        """Return a fresh cookie token on an exact match, else raise AuthError."""
        self.resolve()
        if not check_password(password, self.password):
            raise AuthError("Incorrect password")
        self.state = self.AUTHENTICATED
        return issue_auth_token()


def admin_guard() -> AdminGuard:
    """A fresh guard over the current request's cookies."""
    return AdminGuard(request.cookies, password=admin_password())


def admin_hint() -> bool:
    return request.cookies.get(HINT_COOKIE) == "true"


def remember_admin(resp, token: str):
    """Set the auth cookie plus its script-readable mirror."""
    secure = app.config["ADMIN_COOKIE_SECURE"]
    resp.set_cookie(
        AUTH_COOKIE,
        token,
        max_age=AUTH_MAX_AGE,
        httponly=True,
        secure=secure,
        samesite="Strict",
        path="/",
    )
    resp.set_cookie(
        HINT_COOKIE,
        "true",
        max_age=AUTH_MAX_AGE,
        httponly=False,
        secure=secure,
        samesite="Strict",
        path="/",
    )
    session.permanent = True
    session["csrf"] = secrets.token_hex(16)
    return resp


def admin_required(view):
    """Render the password prompt instead of *view* for non-admins."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        if not admin_guard().authenticated:
            nxt = request.full_path.rstrip("?")
            return login_prompt(next_url=nxt), 401
        return view(*args, **kwargs)

    return wrapped


def _safe_next(target: str | None) -> str:
    if target and target.startswith("/") and not target.startswith("//"):
        return target
    return url_for("admin")


def client_ip() -> str:
    return (
        request.access_route[0] if request.access_route else request.remote_addr
    ) or "unknown"


def _csrf_token() -> str:
    """One token per session; minted lazily for admins."""
    if admin_guard().authenticated and not session.get("csrf"):
        session.permanent = True
        session["csrf"] = secrets.token_hex(16)
    return session.get("csrf", "")


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
CSRF_EXEMPT = {"auth", "login"}


@app.before_request
def csrf_protect():
    if request.method in SAFE_METHODS or request.endpoint in CSRF_EXEMPT:
        return
    # anonymous writes are refused by the guard itself
    if not admin_guard().authenticated:
        return
    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


# Expose helpers to templates
app.jinja_env.globals.update(
    strands=STRANDS,
    strand_table=STRAND_TABLE,
    strand_slug=strand_slug,
    site_name=site_name,
    admin_hint=admin_hint,
    csrf_token=_csrf_token,
    word_count=word_count,
    effective_date=effective_date,
    WORD_LIMIT=WORD_LIMIT,
    version=__version__,
)


###############################################################################
# Templates + Views
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or site_name() }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}
body{font-size:1.7rem;line-height:1.6;max-width:60rem;margin:auto;color:#1f2937;background:#f8fafc;padding:13px}
a{color:#111827}a:hover{color:#4b5563}
h1,h2,h3{line-height:1.15;margin:2rem 0 1rem}
nav{display:flex;flex-wrap:wrap;gap:1.2rem;font-size:.9em;margin-bottom:1rem}
nav a{text-decoration:none}nav a[aria-current=page]{text-decoration:underline}
input,select,textarea{font:inherit;padding:6px 10px;margin-bottom:10px;border:1px solid #cbd5e1;border-radius:6px;box-sizing:border-box}
textarea{width:100%;min-height:10rem}
button,.button{font:inherit;padding:5px 12px;border-radius:6px;border:1px solid #111827;background:#111827;color:#fff;cursor:pointer;text-decoration:none}
button[disabled]{opacity:.5;cursor:default}
.pill{display:inline-block;padding:.1em .7em;border-radius:1em;font-size:.7em;text-transform:uppercase;letter-spacing:.12em;color:#fff}
.cards{display:grid;grid-template-columns:repeat(auto-fit,minmax(12rem,1fr));gap:1rem}
.card{border:1px solid #e5e7eb;border-radius:12px;padding:1rem;background:#fff}
.card .num{font-size:2.4em;font-weight:600}
.muted{color:#6b7280;font-size:.8em}
.error{color:#b91c1c}
article.entry{border-bottom:1px solid #e5e7eb;padding:1rem 0}
.media img{max-width:100%;border-radius:8px;margin:.5rem 0}
.media audio{width:100%}
.bar{height:.6rem;border-radius:.3rem;background:#e5e7eb;overflow:hidden}
.bar>span{display:block;height:100%;background:#111827}
</style>
<body>
{% if admin_hint() %}
<script>try { localStorage.setItem("admin_auth", "true"); } catch (e) {}</script>
{% endif %}
<header>
    <h1 style="margin-top:1rem"><a href="{{ url_for('index') }}" style="text-decoration:none">{{ site_name() }}</a></h1>
    <nav aria-label="Primary">
        <a href="{{ url_for('index') }}" {% if kind=='dashboard' %}aria-current="page"{% endif %}>Dashboard</a>
        {% for s in strands %}
        <a href="{{ url_for('by_strand', slug=strand_slug(s)) }}"
           {% if kind==s %}aria-current="page"{% endif %}>{{ strand_table[s].label }}</a>
        {% endfor %}
        {% if admin_hint() %}
        <a href="{{ url_for('admin') }}" {% if kind=='admin' %}aria-current="page"{% endif %}>Admin</a>
        {% else %}
        <a href="{{ url_for('login') }}" {% if kind=='login' %}aria-current="page"{% endif %}>Login</a>
        {% endif %}
    </nav>
</header>
{% with msgs = get_flashed_messages() %}
{% if msgs %}
<div role="status" aria-live="polite" class="card" style="border-color:#111827">
    {% for m in msgs %}<div>{{ m }}</div>{% endfor %}
</div>
{% endif %}
{% endwith %}
{% macro badge(k) -%}
<span class="pill" style="background:{{ strand_table[k].color }}">{{ k }}</span>
{%- endmacro %}
{% macro media_block(e) -%}
{% if e.media %}
<div class="media">
    {% for m in e.media %}
        {% if m.kind == 'image' %}
        <a href="{{ m.url }}" target="_blank" rel="noopener"><img src="{{ m.url }}" alt="{{ m.name }}" loading="lazy"></a>
        {% else %}
        <p class="muted">Audio {{ loop.index }} – {{ m.name }}</p>
        <audio controls preload="none" src="{{ m.url }}"></audio>
        {% endif %}
    {% endfor %}
</div>
{% endif %}
{%- endmacro %}
<main id="main-content" role="main">
"""

TEMPL_EPILOG = """
</main>
<footer style="margin-top:2rem;padding-top:1rem;border-top:1px solid #e5e7eb" class="muted">
    casfolio v{{ version }}
</footer>
</body>
</html>
"""


###############################################################################
# Login
###############################################################################
def login_prompt(*, next_url: str = "", error: str | None = None):
    return render_template_string(
        TEMPL_LOGIN, next_url=next_url, error=error, title="Admin login", kind="login"
    )


@app.route("/auth", methods=["POST"])
def auth():
    body = request.get_json(silent=True) or {}
    try:
        token = admin_guard().submit(body.get("password", ""))
    except AuthError:
        app.logger.warning("Rejected admin password from %s", client_ip())
        return {"success": False}, 401
    return remember_admin(make_response({"success": True}), token)


@app.route("/login", methods=["GET", "POST"])
def login():
    guard = admin_guard()
    nxt = _safe_next(request.values.get("next"))
    if guard.authenticated:
        return redirect(nxt)

    if request.method == "POST":
        try:
            token = guard.submit(request.form.get("password", ""))
        except AuthError:
            app.logger.warning("Rejected admin password from %s", client_ip())
            return login_prompt(next_url=nxt, error="Incorrect password."), 401
        return remember_admin(redirect(nxt), token)

    return login_prompt(next_url=nxt)


TEMPL_LOGIN = wrap("""
<h2>Admin login</h2>
<form method="post" action="{{ url_for('login') }}" id="login-form" style="max-width:24rem">
    <input type="hidden" name="next" value="{{ next_url }}">
    <input id="password" name="password" type="password" autocomplete="current-password"
           placeholder="Enter admin password" style="width:100%" required>
    <p id="login-error" class="error" role="alert">{{ error or '' }}</p>
    <button type="submit" id="login-btn">Login</button>
</form>
<script>
(() => {
  const form = document.getElementById("login-form");
  if (!form || !window.fetch) return;
  const err = document.getElementById("login-error");
  const btn = document.getElementById("login-btn");
  form.addEventListener("submit", async (ev) => {
    ev.preventDefault();
    btn.disabled = true;
    err.textContent = "";
    try {
      const res = await fetch("{{ url_for('auth') }}", {
        method: "POST",
        headers: {"Content-Type": "application/json"},
        body: JSON.stringify({password: form.password.value}),
      });
      if (res.ok) {
        try { localStorage.setItem("admin_auth", "true"); } catch (e) {}
        location.href = form.next.value || "/admin";
        return;
      }
      err.textContent = "Incorrect password.";
    } catch (e) {
      err.textContent = "Could not reach the server – check your connection.";
    }
    btn.disabled = false;
  });
})();
</script>
""")


###############################################################################
# Entry API
###############################################################################
@app.route("/entries", methods=["GET", "POST"])
def entries_api():
    db = get_db()
    if request.method == "POST":
        if not admin_guard().authenticated:
            return {"error": "Unauthorized"}, 401
        try:
            fields = validate_entry_payload(request.get_json(silent=True), tz=site_tz())
        except ValidationError as exc:
            return {"error": str(exc)}, 400
        saved = create_entry(**fields, db=db)
        app.logger.info("Created %s entry %s", saved["kind"], saved["id"])
        return to_dto(saved), 201

    kind = request.args.get("kind") or None
    if kind and kind not in STRANDS:
        return {"error": f"Unknown kind: {kind}"}, 400
    return [to_dto(r) for r in list_entries(kind, db=db)]


@app.route("/entries/<entry_id>", methods=["DELETE"])
def entry_api(entry_id):
    if not admin_guard().authenticated:
        return {"ok": False, "error": "Unauthorized"}, 401
    if not delete_entry(entry_id, db=get_db()):
        return {"ok": False, "error": "Not found"}, 404
    app.logger.info("Deleted entry %s", entry_id)
    return {"ok": True}


###############################################################################
# Dashboard
###############################################################################
@app.route("/")
def index():
    kind = request.args.get("kind") or None
    if kind not in STRANDS:
        kind = None
    snap = dashboard_snapshot(
        list_entries(db=get_db()),
        now=utc_now(),
        tz=site_tz(),
        goal=monthly_goal(),
        kind=kind,
        query=request.args.get("q", ""),
    )
    if request.args.get("format") == "json":
        return snapshot_json(snap)
    return render_template_string(TEMPL_INDEX, snap=snap, kind="dashboard")


TEMPL_INDEX = wrap("""
<section class="cards">
    {% for s in strands %}
    <div class="card" style="border-top:4px solid {{ strand_table[s].color }}">
        <div class="muted">{{ strand_table[s].label }}</div>
        <div class="num">{{ snap.counts[s] }}</div>
    </div>
    {% endfor %}
</section>

<section class="cards" style="margin-top:1rem">
    <div class="card">
        <div class="muted">This month</div>
        <div class="num">{{ snap.month_count }}</div>
        <div class="bar" title="{{ snap.goal_pct }}%"><span style="width:{{ snap.goal_pct }}%"></span></div>
        <div class="muted">{{ snap.goal_pct }}% of a {{ snap.goal }}-entry goal
        {% if admin_hint() %}· <a href="{{ url_for('settings') }}">edit goal</a>{% endif %}</div>
    </div>
    <div class="card">
        <div class="muted">Day streak</div>
        <div class="num">{{ snap.streak }}</div>
        <div class="muted">consecutive days with an entry</div>
    </div>
</section>

<h2>Recent entries</h2>
{% if not snap.recent %}
<p class="muted">No entries yet. Create your first one in the Admin panel.</p>
{% endif %}
<section class="cards">
    {% for e in snap.recent %}
    <article class="card">
        {{ badge(e.kind) }}
        <h3 style="margin:.5rem 0">{{ e.title }}</h3>
        <div class="muted">{{ effective_date(e)|day }}</div>
        <p>{{ e.description|truncate(160) }}</p>
    </article>
    {% endfor %}
</section>

<h2>Timeline</h2>
<form method="get" style="display:flex;gap:.5rem;flex-wrap:wrap">
    <input type="search" name="q" value="{{ snap.query }}" placeholder="Search titles or reflections">
    <select name="kind">
        <option value="">All strands</option>
        {% for s in strands %}
        <option value="{{ s }}" {% if snap.kind==s %}selected{% endif %}>{{ strand_table[s].label }}</option>
        {% endfor %}
    </select>
    <button>Filter</button>
</form>
<p class="muted">{{ snap.matches }} matching {{ 'entry' if snap.matches == 1 else 'entries' }}</p>
{% for b in snap.timeline %}
    <h3>{{ b.day|day }}</h3>
    {% for e in b['items'] %}
    <article class="entry">
        {{ badge(e.kind) }} <strong>{{ e.title }}</strong>
        {% if e.week %}<span class="muted">· week {{ e.week }}</span>{% endif %}
        <div class="e-content">{{ e.description|md }}</div>
    </article>
    {% endfor %}
{% endfor %}
""")


###############################################################################
# Strand listings
###############################################################################
@app.route("/<slug>")
def by_strand(slug):
    kind = slug_to_strand(slug)
    if not kind:
        abort(404)
    entries = list_entries(kind, db=get_db())
    return render_template_string(
        TEMPL_STRAND,
        entries=entries,
        strand=STRAND_TABLE[kind],
        kind=kind,
        title=STRAND_TABLE[kind]["label"],
    )


TEMPL_STRAND = wrap("""
<p class="muted" style="text-transform:uppercase;letter-spacing:.2em">Strand · {{ strand.label }}</p>
<h2 style="margin-top:0;color:{{ strand.color }}">{{ strand.label }}</h2>
<p class="muted">{{ strand.blurb }}</p>
{% if not entries %}
<p class="muted">No {{ strand.label|lower }} entries yet. Create one in the Admin panel.</p>
{% endif %}
{% for e in entries %}
<article class="entry">
    <h3 style="margin:0">{{ e.title }}</h3>
    <div class="muted">
        {{ effective_date(e)|day }}
        {% if e.week %}· week {{ e.week }}{% endif %}
    </div>
    <div class="e-content">{{ e.description|md }}</div>
    {{ media_block(e) }}
</article>
{% endfor %}
""")


###############################################################################
# Admin
###############################################################################
@app.route("/admin")
@admin_required
def admin():
    kind = request.args.get("kind") or None
    if kind not in STRANDS:
        kind = None
    query = request.args.get("q", "").strip()
    entries = filter_entries(list_entries(db=get_db()), kind=kind, query=query)
    return render_template_string(
        TEMPL_ADMIN,
        entries=entries,
        selected=kind,
        query=query,
        kind="admin",
        title="Manage entries",
    )


TEMPL_ADMIN = wrap("""
<h2>Manage entries</h2>
<p><a class="button" href="{{ url_for('admin_new') }}">+ New entry</a>
   <a href="{{ url_for('settings') }}" style="margin-left:1rem">Settings</a></p>
<form method="get" style="display:flex;gap:.5rem;flex-wrap:wrap">
    <input type="search" name="q" value="{{ query }}" placeholder="Search titles or reflections">
    <select name="kind">
        <option value="">All</option>
        {% for s in strands %}
        <option value="{{ s }}" {% if selected==s %}selected{% endif %}>{{ strand_table[s].label }}</option>
        {% endfor %}
    </select>
    <button>Filter</button>
</form>
<p class="muted">{{ entries|length }} {{ 'entry' if entries|length == 1 else 'entries' }}</p>
<table style="width:100%;border-collapse:collapse">
    {% for e in entries %}
    <tr style="border-bottom:1px solid #e5e7eb">
        <td>{{ badge(e.kind) }}</td>
        <td><strong>{{ e.title }}</strong>
            <div class="muted">{{ effective_date(e)|day }} · {{ word_count(e.description) }} words
            · {{ e.media|length }} media</div></td>
        <td style="text-align:right">
            <a href="{{ url_for('admin_delete', entry_id=e.id) }}" style="color:#b91c1c">Delete</a>
        </td>
    </tr>
    {% endfor %}
</table>
""")


@app.route("/admin/<entry_id>/delete", methods=["GET", "POST"])
@admin_required
def admin_delete(entry_id):
    db = get_db()
    entry = get_entry(entry_id, db=db)
    if not entry:
        raise NotFoundError(entry_id)

    if request.method == "POST":
        if not delete_entry(entry_id, db=db):
            raise NotFoundError(entry_id)
        app.logger.info("Deleted entry %s", entry_id)
        flash("Entry deleted.")
        return redirect(url_for("admin"))

    return render_template_string(
        TEMPL_DELETE_ENTRY, e=entry, kind="admin", title="Delete entry?"
    )


TEMPL_DELETE_ENTRY = wrap("""
<h2>Delete entry?</h2>
<article style="border-left:3px solid #b91c1c;padding-left:1rem">
    {{ badge(e.kind) }}
    <h3>{{ e.title }}</h3>
    <div class="e-content">{{ e.description|md }}</div>
    <small class="muted">{{ effective_date(e)|day }}</small>
</article>
<form method="post" style="margin-top:1rem">
    {% if csrf_token() %}
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    {% endif %}
    <button style="background:#b91c1c;border-color:#b91c1c">Yes – delete it</button>
    <a href="{{ url_for('admin') }}" style="margin-left:1rem">Cancel</a>
</form>
""")


@app.route("/admin/new", methods=["GET", "POST"])
@admin_required
def admin_new():
    form = request.form
    if request.method == "POST":
        host = media_host()
        try:
            fields = validate_entry_payload(
                {
                    "kind": form.get("kind"),
                    "title": form.get("title"),
                    "description": form.get("description"),
                    "week": form.get("week", "").strip() or None,
                    "entryDate": form.get("entry_date", "").strip() or None,
                },
                tz=site_tz(),
            )
            images = pending_uploads("images", "image")
            audio = pending_uploads("audio", "audio")
            if (images or audio) and host is None:
                raise ValidationError("Media uploads are not configured.")
            fields["media"] = upload_batch(host, images, "image") + upload_batch(
                host, audio, "audio"
            )
        except ValidationError as exc:
            flash(str(exc))
            return _render_new_form(form), 400
        except UpstreamError as exc:
            app.logger.exception("Media upload failed: %s – %s", exc, exc.body)
            flash("Upload failed – the entry was not saved.")
            return _render_new_form(form), 502

        saved = create_entry(**fields, db=get_db())
        app.logger.info("Created %s entry %s", saved["kind"], saved["id"])
        flash("Entry saved.")
        return redirect(url_for("by_strand", slug=strand_slug(saved["kind"])))

    return _render_new_form(form)


def _render_new_form(form):
    today = utc_now().astimezone(site_tz()).date().isoformat()
    return render_template_string(
        TEMPL_NEW_ENTRY,
        form=form,
        today=today,
        uploads_enabled=media_host() is not None,
        media_for={k: row["media"] for k, row in STRAND_TABLE.items()},
        kind="admin",
        title="Create a new entry",
    )


TEMPL_NEW_ENTRY = wrap("""
<h2>Create a new entry</h2>
<p><a href="{{ url_for('admin') }}">← Back to Admin</a></p>
<form method="post" enctype="multipart/form-data" id="entry-form">
    {% if csrf_token() %}
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    {% endif %}
    <label for="kind">Entry type</label>
    <select id="kind" name="kind">
        {% for s in strands %}
        <option value="{{ s }}" {% if form.get('kind', 'creativity')==s %}selected{% endif %}>{{ strand_table[s].label }}</option>
        {% endfor %}
    </select>

    <label for="title">Title</label>
    <input id="title" name="title" value="{{ form.get('title', '') }}" style="width:100%" required>

    <label for="description">Reflection</label>
    <textarea id="description" name="description" required>{{ form.get('description', '') }}</textarea>
    <p class="muted"><span id="word-count">{{ word_count(form.get('description', '')) }}</span>/{{ WORD_LIMIT }} words</p>

    <div id="week-field">
        <label for="week">Week</label>
        <input id="week" name="week" type="number" min="1" value="{{ form.get('week', '') }}">
    </div>

    <label for="entry_date">Date</label>
    <input id="entry_date" name="entry_date" type="date" value="{{ form.get('entry_date') or today }}">

    {% if uploads_enabled %}
    <div id="images-field">
        <label for="images">Images</label>
        <input id="images" name="images" type="file" accept="image/*" multiple>
    </div>
    <div id="audio-field">
        <label for="audio">Audio</label>
        <input id="audio" name="audio" type="file" accept="audio/*" multiple>
    </div>
    {% else %}
    <p class="muted">Media uploads are not configured.</p>
    {% endif %}

    <button type="submit" id="save-btn">Save entry</button>
</form>
<script>
(() => {
  const mediaFor = {{ media_for|tojson }};
  const kind = document.getElementById("kind");
  const desc = document.getElementById("description");
  const counter = document.getElementById("word-count");
  const form = document.getElementById("entry-form");
  const show = (id, on) => { const el = document.getElementById(id); if (el) el.style.display = on ? "" : "none"; };
  const sync = () => {
    const media = mediaFor[kind.value];
    show("images-field", media === "image");
    show("audio-field", media === "audio");
    show("week-field", kind.value !== "conversation");
  };
  kind.addEventListener("change", sync);
  sync();
  desc.addEventListener("input", () => {
    const t = desc.value.trim();
    counter.textContent = t ? t.split(/\\s+/).length : 0;
  });
  form.addEventListener("submit", () => { document.getElementById("save-btn").disabled = true; });
})();
</script>
""")


###############################################################################
# Settings
###############################################################################
@app.route("/settings", methods=["GET", "POST"])
@admin_required
def settings():
    if request.method == "POST":
        name = request.form.get("site_name", "").strip()
        if name:
            set_setting("site_name", name)

        tz = request.form.get("timezone", "").strip()
        if tz in available_timezones():
            set_setting("timezone", tz)
        elif tz:
            flash("Unknown timezone – kept the previous one.")

        raw = request.form.get("monthly_goal", "").strip()
        if raw.isdigit() and int(raw) > 0:
            set_setting("monthly_goal", raw)
        elif raw:
            flash("Monthly goal must be a positive whole number.")

        flash("Settings saved.")
        return redirect(url_for("settings"))

    return render_template_string(
        TEMPL_SETTINGS,
        current_tz=tz_name(),
        timezones=sorted(available_timezones()),
        goal=monthly_goal(),
        kind="admin",
        title="Settings",
    )


TEMPL_SETTINGS = wrap("""
<h2>Settings</h2>
<form method="post" style="max-width:30rem">
    {% if csrf_token() %}
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    {% endif %}
    <label for="site_name">Site name</label>
    <input id="site_name" name="site_name" value="{{ site_name() }}" style="width:100%">

    <label for="timezone">Timezone (day boundaries for streaks and the timeline)</label>
    <input id="timezone" name="timezone" list="tz-list" value="{{ current_tz }}" style="width:100%">
    <datalist id="tz-list">
        {% for tz in timezones %}<option value="{{ tz }}">{% endfor %}
    </datalist>

    <label for="monthly_goal">Monthly goal (entries)</label>
    <input id="monthly_goal" name="monthly_goal" type="number" min="1" value="{{ goal }}">

    <div><button>Save</button></div>
</form>
""")


###############################################################################
# CLI
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create the database tables (no-op if they exist)."""
    init_db()
    click.secho(f"\n✅  Database ready at {app.config['DATABASE']}", fg="green")


@app.cli.command("export")
@click.option("--output", "-o", type=click.File("w"), default="-", help="Target file")
def cli_export(output):
    """Dump every entry as a JSON array of wire DTOs."""
    records = list_entries(db=get_db())
    json.dump([to_dto(r) for r in records], output, indent=2, ensure_ascii=False)
    output.write("\n")


@app.cli.command("import-entries")
@click.argument("source", type=click.File("r"))
def cli_import(source):
    """Load entries from a JSON array (export output or a mongoexport dump)."""
    try:
        count = import_entries(json.load(source), db=get_db())
    except (ValueError, ValidationError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.secho(f"Imported {count} entries.", fg="green")


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(StorageFault)
def storage_fault(exc):
    app.logger.exception("Storage fault on %s %s", request.method, request.path)
    if request.path.startswith("/entries"):
        return {"ok": False, "error": "Server error"}, 500
    return render_template_string(TEMPL_500), 500


@app.errorhandler(413)
def too_large(exc):
    app.logger.warning(
        "Rejected %s byte body on %s", request.content_length, request.path
    )
    if request.path.startswith("/entries"):
        return {"error": "Upload too large"}, 413
    return render_template_string(TEMPL_413), 413


@app.errorhandler(NotFoundError)
def entry_not_found(exc):
    return render_template_string(TEMPL_404), 404


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(TEMPL_404), 404


@app.errorhandler(500)
def internal_error(exc):
    return render_template_string(TEMPL_500), 500


TEMPL_404 = wrap("""
<h2>Page not found</h2>
<p>The URL you asked for doesn’t exist.
   <a href="{{ url_for('index') }}">Back to the dashboard</a>.</p>
""")

TEMPL_413 = wrap("""
<h2>Upload too large</h2>
<p>Requests are capped at {{ (config.MAX_CONTENT_LENGTH // 1048576) }} MiB; nothing was saved.
   <a href="{{ url_for('admin_new') }}">Back to the form</a>.</p>
""")

TEMPL_500 = wrap("""
<h2>Internal Server Error</h2>
<p>Something went wrong on our side. Please try again in a minute.</p>
""")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
