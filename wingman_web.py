"""
Wingman Web API
═══════════════
The HTTP side of Wingman: sign-up, sign-in, sign-out, password reset
and the list of AI providers the settings panel offers. The menu bar
app's panel loads pages that call these.

ENDPOINTS
─────────
  GET  /api/register            readiness
  POST /api/register            201 {success, message, userId, timestamp}
  GET  /api/login               readiness
  POST /api/login               {success, message, user, token, timestamp} + auth-token cookie
  POST /api/logout              {success, message, timestamp}, auth-token cookie cleared
  GET  /api/reset-password      readiness
  POST /api/reset-password      {success, message, timestamp}
  GET  /api/providers           {providers: [...], defaultProvider}
  GET  /api/providers/{id}      provider

  Every auth response carries a `timestamp`. Failures come back as
  {success: false, error, timestamp} with the status from the error type.

USAGE
─────
  wingman-web                                # uvicorn on WINGMAN_HOST:WINGMAN_PORT
  wingman-web --seed-providers providers.json
  uvicorn wingman_web:app --port 3000

ENVIRONMENT (a .env file in the working directory is honoured)
───────────
  JWT_SECRET       signing key for auth and reset tokens
  WINGMAN_ENV      "production" makes the auth cookie Secure
  WINGMAN_DB_PATH  SQLite file, default ~/.wingman/wingman.db
"""

import json
import logging
import os
import re
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from wingman_db import ConstraintError, DatabaseError, WingmanDB

logger = logging.getLogger(__name__)


# ── Settings ─────────────────────────────────────────────────────

DEFAULT_JWT_SECRET = "your-secret-key-change-in-production"
JWT_ALGORITHM      = "HS256"
AUTH_COOKIE        = "auth-token"
BCRYPT_ROUNDS      = 10
BCRYPT_MAX_BYTES   = 72
MIN_PASSWORD_LEN   = 8

REMEMBER_ME_TTL    = timedelta(days=7)
SESSION_TTL        = timedelta(hours=1)
RESET_TOKEN_TTL    = timedelta(hours=1)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PASSWORD_POLICY = (
    "Password must be at least 8 characters long and contain "
    "an uppercase letter and a number"
)

USAGE_TEXT = """\
Wingman Web API

Usage:
  wingman-web                       Serve the API (uvicorn)
  wingman-web --seed-providers FILE Insert AI providers from a JSON list, then exit
  wingman-web --help                Show this help

FILE holds a JSON list of objects with the ai_providers columns:
  [{"id": "openai", "name": "OpenAI", "base_urls": ["https://api.openai.com/v1"],
    "default_model": "gpt-4o", "requires_auth": true, "auth_header": "Authorization"}]
"""


@dataclass
class WebSettings:
    jwt_secret: str = DEFAULT_JWT_SECRET
    environment: str = "development"
    db_path: Optional[str] = None
    host: str = "127.0.0.1"
    port: int = 3000

    @property
    def is_production(self):
        return self.environment == "production"

    @classmethod
    def from_env(cls):
        load_dotenv(os.path.join(os.getcwd(), ".env"))
        secret = os.getenv("JWT_SECRET")
        if not secret:
            logger.warning("JWT_SECRET not set, using the development default")
            secret = DEFAULT_JWT_SECRET
        return cls(
            jwt_secret=secret,
            environment=os.getenv("WINGMAN_ENV", "development"),
            db_path=os.getenv("WINGMAN_DB_PATH") or None,
            host=os.getenv("WINGMAN_HOST", "127.0.0.1"),
            port=int(os.getenv("WINGMAN_PORT", "3000")),
        )


# ── Errors ───────────────────────────────────────────────────────

class WingmanWebError(Exception):
    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(WingmanWebError):
    status_code = 400


class AuthenticationError(WingmanWebError):
    status_code = 401


class PersistenceError(WingmanWebError):
    """Storage failed. The message stays generic."""
    status_code = 500


class ServiceUnavailableError(WingmanWebError):
    status_code = 503


# ── Request models ───────────────────────────────────────────────

class RegisterRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    apiKey: Optional[str] = None
    profileImage: Optional[str] = None


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
    rememberMe: bool = False


class ResetPasswordRequest(BaseModel):
    token: Optional[str] = None
    password: Optional[str] = None


# ── Helpers ──────────────────────────────────────────────────────

def timestamp():
    """UTC ISO-8601 with milliseconds and a Z suffix."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def envelope(status_code, success, **fields):
    body = {"success": success, **fields, "timestamp": timestamp()}
    return JSONResponse(status_code=status_code, content=body)


def password_is_strong(password):
    """At least 8 characters, one uppercase letter, one digit."""
    return (
        len(password) >= MIN_PASSWORD_LEN
        and re.search(r"[A-Z]", password) is not None
        and re.search(r"[0-9]", password) is not None
    )


def check_bcrypt_length(password):
    if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValidationError(f"Password must be at most {BCRYPT_MAX_BYTES} bytes")


def hash_password(password):
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("ascii")


def check_password(password, hashed):
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # malformed stored hash or over-long candidate
        return False


def issue_auth_token(user, secret, expires_in):
    now = datetime.now(timezone.utc)
    payload = {
        "userId": user["id"],
        "email": user["email"],
        "name": user["name"],
        "iat": now,
        "exp": now + expires_in,
    }
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def issue_reset_token(user_id, secret, expires_in=RESET_TOKEN_TTL):
    """Token the reset-password route accepts: {type: "reset", userId, exp}."""
    now = datetime.now(timezone.utc)
    payload = {"type": "reset", "userId": user_id, "iat": now, "exp": now + expires_in}
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def verify_reset_token(token, secret):
    """
    Decode and check a reset token. A token without `exp` is rejected
    like an expired one.

    Raises:
        AuthenticationError: bad signature, expired or missing `exp`,
            malformed, or not a reset token.
    """
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM],
                             options={"require": ["exp"]})
    except jwt.InvalidTokenError as e:
        raise AuthenticationError("Invalid or expired reset token") from e

    if payload.get("type") != "reset" or "userId" not in payload:
        raise AuthenticationError("Invalid reset token")
    return payload


def load_provider_seed(path):
    with open(path) as f:
        providers = json.load(f)
    if not isinstance(providers, list):
        raise ValueError(f"{path} must hold a JSON list of providers")
    return providers


# ── Singletons (lazy; tests swap them out) ───────────────────────

_settings = None
_db = None


def _get_settings():
    global _settings
    if _settings is None:
        _settings = WebSettings.from_env()
    return _settings


def _get_db():
    global _db
    if _db is None:
        _db = WingmanDB(_get_settings().db_path)
        logger.info("Database opened at %s", _db.db_path)
    return _db


# ── App factory ──────────────────────────────────────────────────

def create_app():
    """Build the FastAPI application with all Wingman routes."""
    app = FastAPI(
        title="Wingman Web API",
        description="Authentication and AI provider endpoints for Wingman",
        version="1.0.0",
    )

    @app.exception_handler(WingmanWebError)
    async def wingman_error(_request: Request, exc: WingmanWebError):
        return envelope(exc.status_code, False, error=exc.message)

    @app.exception_handler(RequestValidationError)
    async def bad_request(_request: Request, exc: RequestValidationError):
        logger.debug("Rejected request body: %s", exc.errors())
        return envelope(400, False, error="Invalid request body")

    # ── register ─────────────────────────────────────────────

    @app.get("/api/register")
    def register_ready():
        return {"message": "Registration API endpoint", "status": "ready",
                "timestamp": timestamp()}

    @app.post("/api/register")
    def register(req: RegisterRequest):
        try:
            if not (req.name and req.email and req.password and req.apiKey):
                raise ValidationError("Missing required fields")
            if not EMAIL_RE.match(req.email):
                raise ValidationError("Invalid email format")
            if len(req.password) < MIN_PASSWORD_LEN:
                raise ValidationError(f"Password must be at least {MIN_PASSWORD_LEN} characters")
            check_bcrypt_length(req.password)

            db = _get_db()
            if db.get_user_by_email(req.email) is not None:
                raise ValidationError("Email already registered")

            try:
                user_id = db.create_user(req.name, req.email, hash_password(req.password),
                                         api_key=req.apiKey, profile_image=req.profileImage)
            except ConstraintError as e:
                # lost a race with another sign-up for the same address
                raise ValidationError("Email already registered") from e

            logger.info("Registered user id %s", user_id)
            return envelope(201, True, message="User registered successfully", userId=user_id)
        except WingmanWebError:
            raise
        except Exception:
            logger.exception("Registration error")
            return envelope(500, False, error="Registration failed. Please try again.")

    # ── login ────────────────────────────────────────────────

    @app.get("/api/login")
    def login_ready():
        return {"message": "Login API endpoint", "status": "ready", "timestamp": timestamp()}

    @app.post("/api/login")
    def login(req: LoginRequest):
        try:
            if not req.email or not req.password:
                raise ValidationError("Missing email or password")
            if not EMAIL_RE.match(req.email):
                raise ValidationError("Invalid email format")

            settings = _get_settings()
            try:
                user = _get_db().get_user_by_email(req.email)
            except DatabaseError as e:
                logger.error("Database connection failed: %s", e)
                raise ServiceUnavailableError("Database connection failed") from e

            if not user or not check_password(req.password, user["password"]):
                raise AuthenticationError("Invalid credentials")

            ttl = REMEMBER_ME_TTL if req.rememberMe else SESSION_TTL
            token = issue_auth_token(user, settings.jwt_secret, ttl)
            user_data = {
                "id": user["id"],
                "name": user["name"],
                "email": user["email"],
                "profileImage": user.get("profile_image"),
            }
            response = envelope(200, True, message="Login successful",
                                user=user_data, token=token)
            response.set_cookie(
                AUTH_COOKIE, token,
                max_age=int(ttl.total_seconds()),
                path="/",
                secure=settings.is_production,
                httponly=True,
                samesite="strict",
            )
            logger.info("Login for user id %s", user["id"])
            return response
        except WingmanWebError:
            raise
        except Exception:
            logger.exception("Login error")
            return envelope(500, False, error="Login failed. Please try again.")

    # ── logout ───────────────────────────────────────────────

    @app.post("/api/logout")
    def logout():
        try:
            response = envelope(200, True, message="Logout successful")
            response.set_cookie(
                AUTH_COOKIE, "",
                max_age=0,
                expires=0,
                path="/",
                secure=_get_settings().is_production,
                httponly=True,
                samesite="strict",
            )
            return response
        except Exception:
            logger.exception("Logout error")
            return envelope(500, False, error="Logout failed. Please try again.")

    # ── reset password ───────────────────────────────────────

    @app.get("/api/reset-password")
    def reset_password_ready():
        return {"message": "Reset Password API endpoint", "status": "ready",
                "timestamp": timestamp()}

    @app.post("/api/reset-password")
    def reset_password(req: ResetPasswordRequest):
        try:
            if not req.token or not req.password:
                raise ValidationError("Missing token or password")
            if not password_is_strong(req.password):
                raise ValidationError(PASSWORD_POLICY)
            check_bcrypt_length(req.password)

            payload = verify_reset_token(req.token, _get_settings().jwt_secret)
            hashed = hash_password(req.password)

            try:
                updated = _get_db().update_password(payload["userId"], hashed)
            except DatabaseError as e:
                logger.error("Password update failed: %s", e)
                raise PersistenceError("Failed to update password") from e
            if updated == 0:
                logger.warning("Reset token for unknown user id %s", payload["userId"])
                raise PersistenceError("Failed to update password")

            logger.info("Password reset for user id %s", payload["userId"])
            return envelope(200, True, message="Password reset successful")
        except WingmanWebError:
            raise
        except Exception:
            logger.exception("Reset password error")
            return envelope(500, False, error="Failed to process password reset")

    # ── providers ────────────────────────────────────────────

    @app.get("/api/providers")
    def list_providers():
        try:
            db = _get_db()
            providers = db.get_all_providers()
            default_provider = db.get_default_provider()
        except Exception:
            logger.exception("Error fetching providers")
            return JSONResponse(status_code=500, content={"error": "Failed to fetch providers"})
        logger.debug("Fetched %d providers", len(providers))
        return {"providers": providers, "defaultProvider": default_provider}

    @app.get("/api/providers/{provider_id}")
    def get_provider(provider_id: str):
        try:
            provider = _get_db().get_provider_by_id(provider_id)
        except Exception:
            logger.exception("Error fetching provider %s", provider_id)
            return JSONResponse(status_code=500, content={"error": "Failed to fetch provider"})
        if provider is None:
            return JSONResponse(status_code=404, content={"error": "Provider not found"})
        return provider

    return app


app = create_app()


# ── CLI ──────────────────────────────────────────────────────────

def cmd_seed_providers(path):
    """Load providers from a JSON file into the database. Returns the ids added."""
    providers = load_provider_seed(path)
    added = _get_db().seed_providers(providers)
    print(f"Seeded {len(added)} of {len(providers)} providers into {_get_db().db_path}")
    return added


def main():
    args = sys.argv[1:]

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if "--help" in args or "-h" in args:
        print(USAGE_TEXT)
        sys.exit(0)

    if "--seed-providers" in args:
        idx = args.index("--seed-providers")
        if idx + 1 >= len(args):
            print("Usage: --seed-providers FILE")
            sys.exit(1)
        try:
            cmd_seed_providers(args[idx + 1])
        except (OSError, ValueError, KeyError, DatabaseError) as e:
            print(f"Seeding failed: {e}")
            sys.exit(1)
        sys.exit(0)

    import uvicorn

    settings = _get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
