import hashlib
import hmac
import json
import math
import os
import re
import secrets
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple
from urllib.parse import quote, urlencode, urljoin
from uuid import uuid4

import bcrypt
import requests
import resend
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, redirect, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

load_dotenv()

ACCOUNT_PENDING = "pending"
ACCOUNT_ACTIVE = "active"
ACCOUNT_SUSPENDED = "suspended"

ROLE_USER = "user"
ROLE_ADMIN = "admin"

PAYMENT_INITIALIZED = "initialized"
PAYMENT_VERIFIED = "verified"
PAYMENT_FAILED = "failed"
TERMINAL_PAYMENT_STATUSES = {PAYMENT_VERIFIED, PAYMENT_FAILED}

GATEWAY_SUCCESS = "success"
GATEWAY_FAILURE = "failure"
GATEWAY_PENDING = "pending"
GATEWAY_FAILURE_STATUSES = {"failed", "reversed"}

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"


class ApiError(Exception):
    """Base class for errors reported to API callers."""

    status_code = 400

    def __init__(self, message: str, payload: Optional[Dict] = None):
        super().__init__(message)
        self.message = message
        self.payload = payload or {}

    def to_dict(self) -> Dict[str, object]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            **self.payload,
        }


class ValidationError(ApiError):
    status_code = 400


class InvalidCode(ApiError):
    status_code = 400


class Expired(ApiError):
    status_code = 400


class Unauthorized(ApiError):
    status_code = 401


class InvalidSignature(ApiError):
    status_code = 401


class Forbidden(ApiError):
    status_code = 403


class NotFound(ApiError):
    status_code = 404


class Conflict(ApiError):
    status_code = 409


class AlreadyVerified(ApiError):
    status_code = 409


class GatewayError(ApiError):
    status_code = 502


def create_app(config_overrides: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application.

    ``config_overrides`` is applied on top of the environment-derived
    settings. ``database`` replaces the PyMongo connection when given.
    """
    app = Flask(__name__)

    # Honor proxy headers so upload and callback links keep the public origin.
    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "JWT_SECRET_KEY", "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        hours=int(os.getenv("JWT_ACCESS_TOKEN_HOURS", "1"))
    )
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/minimart"
    )
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "5"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * 1024 * 1024
    app.config["PROFILE_UPLOAD_FOLDER"] = os.getenv(
        "PROFILE_UPLOAD_FOLDER", os.path.join(app.root_path, "uploads")
    )
    app.config["PROFILE_ALLOWED_EXTENSIONS"] = {"png", "jpg", "jpeg", "gif", "webp"}
    app.config["BCRYPT_ROUNDS"] = int(os.getenv("BCRYPT_ROUNDS", "12"))
    app.config["OTP_LENGTH"] = int(os.getenv("OTP_LENGTH", "6"))
    app.config["OTP_EXPIRATION_MINUTES"] = int(
        os.getenv("OTP_EXPIRATION_MINUTES", "10")
    )
    app.config["OTP_SENDER_EMAIL"] = (
        os.getenv("OTP_SENDER_EMAIL", "verification@minimart.store")
        or "verification@minimart.store"
    )
    app.config["RESEND_API_KEY"] = (os.getenv("RESEND_API_KEY") or "").strip()
    app.config["DEFAULT_ADMIN_EMAIL"] = os.getenv("DEFAULT_ADMIN_EMAIL", "")
    app.config["PAYSTACK_SECRET_KEY"] = (
        os.getenv("PAYSTACK_SECRET_KEY") or ""
    ).strip()
    app.config["PAYSTACK_WEBHOOK_SECRET"] = (
        os.getenv("PAYSTACK_WEBHOOK_SECRET") or ""
    ).strip()
    app.config["PAYSTACK_BASE_URL"] = os.getenv(
        "PAYSTACK_BASE_URL", "https://api.paystack.co"
    )
    app.config["PAYSTACK_CALLBACK_URL"] = os.getenv("PAYSTACK_CALLBACK_URL", "")
    app.config["PAYMENT_CURRENCY"] = os.getenv("PAYMENT_CURRENCY", "NGN")
    app.config["GATEWAY_TIMEOUT_SECONDS"] = float(
        os.getenv("GATEWAY_TIMEOUT_SECONDS", "10")
    )
    app.config["GOOGLE_CLIENT_ID"] = os.getenv("GOOGLE_CLIENT_ID", "")
    app.config["GOOGLE_CLIENT_SECRET"] = os.getenv("GOOGLE_CLIENT_SECRET", "")
    app.config["GOOGLE_REDIRECT_URI"] = os.getenv("GOOGLE_REDIRECT_URI", "")
    app.config["OAUTH_STATE_TTL_MINUTES"] = int(
        os.getenv("OAUTH_STATE_TTL_MINUTES", "10")
    )

    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    os.makedirs(app.config["PROFILE_UPLOAD_FOLDER"], exist_ok=True)

    # --- Initialize extensions ---
    allowed_origins = [
        origin.strip()
        for origin in os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")
        if origin.strip()
    ]
    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    jwt_manager = JWTManager(app)
    if database is None:
        database = PyMongo(app).db
    db = database

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone_regex = re.compile(r"^\+?\d{10,15}$")
    otp_length = app.config["OTP_LENGTH"]
    otp_expiration_minutes = app.config["OTP_EXPIRATION_MINUTES"]

    try:
        db.users.create_index("email", unique=True)
        db.products.create_index("name_key", unique=True)
        db.payments.create_index("reference", unique=True)
        db.payments.create_index("transaction_id")
        db.oauth_states.create_index("expires_at", expireAfterSeconds=0)
    except PyMongoError as exc:
        app.logger.warning("Unable to ensure indexes: %s", exc)

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def isoformat(value) -> Optional[str]:
        return f"{value.isoformat()}Z" if isinstance(value, datetime) else None

    def parse_object_id(value, message: str) -> ObjectId:
        try:
            return ObjectId(str(value))
        except (InvalidId, TypeError):
            raise NotFound(message)

    def hash_secret(value: str) -> bytes:
        return bcrypt.hashpw(
            value.encode("utf-8"), bcrypt.gensalt(rounds=app.config["BCRYPT_ROUNDS"])
        )

    def matches_secret(value: str, stored_hash) -> bool:
        if not value or not stored_hash:
            return False
        return bcrypt.checkpw(value.encode("utf-8"), bytes(stored_hash))

    def generate_otp_code(length: int = otp_length) -> str:
        upper_bound = 10**length
        return f"{secrets.randbelow(upper_bound):0{length}d}"

    def new_verification_fields() -> Tuple[str, Dict[str, object]]:
        code = generate_otp_code()
        created_at = datetime.utcnow()
        return code, {
            "otp_hash": hash_secret(code),
            "otp_created_at": created_at,
            "otp_expires_at": created_at + timedelta(minutes=otp_expiration_minutes),
        }

    def default_role_for(email: str) -> str:
        admin_email = normalize_email(app.config.get("DEFAULT_ADMIN_EMAIL"))
        return ROLE_ADMIN if admin_email and email == admin_email else ROLE_USER

    def build_upload_url(filename: Optional[str]) -> str:
        if not filename:
            return ""
        return urljoin(request.host_url, f"uploads/{filename}")

    def serialize_account(account) -> Dict[str, object]:
        if not account:
            return {}

        return {
            "id": str(account.get("_id")),
            "fullName": account.get("full_name", "") or "",
            "email": account.get("email", "") or "",
            "phoneNumber": account.get("phone_number", "") or "",
            "age": account.get("age"),
            "role": account.get("role", ROLE_USER),
            "status": account.get("status", ACCOUNT_PENDING),
            "authProvider": account.get("auth_provider", "local"),
            "profilePicture": build_upload_url(account.get("profile_picture"))
            or account.get("avatar_url", "")
            or "",
            "createdAt": isoformat(account.get("created_at")),
            "verifiedAt": isoformat(account.get("verified_at")),
        }

    def serialize_product(product) -> Dict[str, object]:
        return {
            "id": str(product.get("_id")),
            "productName": product.get("name", ""),
            "price": product.get("price", 0),
            "createdAt": isoformat(product.get("created_at")),
        }

    def serialize_payment(payment) -> Dict[str, object]:
        return {
            "id": str(payment.get("_id")),
            "reference": payment.get("reference"),
            "transactionId": payment.get("transaction_id"),
            "productId": str(payment.get("product_id") or ""),
            "productName": payment.get("product_name", ""),
            "payerId": str(payment.get("payer_id") or ""),
            "amount": payment.get("amount"),
            "currency": payment.get("currency"),
            "status": payment.get("status"),
            "checkoutUrl": payment.get("checkout_url", ""),
            "reconciledVia": payment.get("reconciled_via"),
            "failureReason": payment.get("failure_reason"),
            "createdAt": isoformat(payment.get("created_at")),
            "reconciledAt": isoformat(payment.get("reconciled_at")),
        }

    def issue_token(account) -> str:
        return create_access_token(
            identity=str(account["_id"]),
            additional_claims={
                "role": account.get("role", ROLE_USER),
                "email": account.get("email", ""),
            },
        )

    def require_admin():
        if get_jwt().get("role") != ROLE_ADMIN:
            raise Forbidden("Only admins can perform this action.")

    def read_payload() -> Dict[str, object]:
        payload = request.form.to_dict() if request.form else {}
        if not payload:
            payload = request.get_json(silent=True) or {}
        return payload if isinstance(payload, dict) else {}

    # --- Notifications ---

    def send_email_via_resend(payload: Dict[str, object], api_key: str):
        configured_api_key = (api_key or "").strip()
        if not configured_api_key:
            return False, "Resend API key is not configured."

        previous_api_key = getattr(resend, "api_key", None)
        resend.api_key = configured_api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            return False, str(exc)
        finally:
            resend.api_key = previous_api_key

        if not isinstance(response, dict) or not response.get("id"):
            return False, str(response)

        return True, None

    def build_verification_email_html(code: str, recipient_name: str) -> str:
        greeting = f"Hi {recipient_name}," if recipient_name else "Hi there,"
        return f"""<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <title>Minimart Email Verification</title>
  </head>
  <body style="margin:0;padding:32px 16px;background:#f6f7f9;font-family:'Segoe UI',Arial,sans-serif;color:#1d2433;">
    <table width="100%" cellpadding="0" cellspacing="0" role="presentation" style="max-width:520px;margin:0 auto;background:#ffffff;border-radius:16px;">
      <tr>
        <td style="padding:40px 36px;">
          <p style="margin:0 0 16px 0;font-size:15px;">{greeting}</p>
          <p style="margin:0 0 24px 0;font-size:15px;line-height:1.6;">
            Use the code below to activate your Minimart account.
            It is valid for {otp_expiration_minutes} minutes.
          </p>
          <p style="margin:0 0 24px 0;text-align:center;font-size:32px;letter-spacing:0.35em;font-weight:700;">{code}</p>
          <p style="margin:0;font-size:13px;color:#6b7280;">
            Didn&rsquo;t create an account? You can safely ignore this email.
          </p>
        </td>
      </tr>
    </table>
  </body>
</html>"""

    def dispatch_verification_code(email: str, code: str, recipient_name: str) -> bool:
        payload: Dict[str, object] = {
            "from": f"Minimart <{app.config['OTP_SENDER_EMAIL']}>",
            "to": [email],
            "subject": "Minimart • Verify your email",
            "html": build_verification_email_html(code, recipient_name),
            "text": (
                f"Your Minimart verification code is {code}. "
                f"Enter it within {otp_expiration_minutes} minutes to activate your account."
            ),
        }
        sent, error_details = send_email_via_resend(
            payload, app.config["RESEND_API_KEY"]
        )
        if not sent:
            app.logger.error(
                "OTP dispatch failed for %s: %s",
                email,
                error_details or "Unknown Resend error",
            )
        return sent

    # --- Profile pictures ---

    def allowed_image_extension(filename: str) -> bool:
        extension = os.path.splitext(filename)[1].lower().lstrip(".")
        if not extension:
            return False
        return extension in app.config["PROFILE_ALLOWED_EXTENSIONS"]

    def save_profile_picture(image_file) -> Optional[str]:
        if not image_file or not getattr(image_file, "filename", ""):
            return None

        original_filename = secure_filename(image_file.filename)
        if not original_filename:
            raise ValidationError("Please choose a valid file name.")

        if not allowed_image_extension(original_filename):
            raise ValidationError(
                "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files."
            )

        extension = os.path.splitext(original_filename)[1].lower()
        unique_filename = f"{uuid4().hex}{extension}"
        destination = os.path.join(app.config["PROFILE_UPLOAD_FOLDER"], unique_filename)

        try:
            image_file.save(destination)
        except OSError:
            raise ValidationError(
                "We could not store the uploaded image. Please try again."
            )

        return unique_filename

    def remove_profile_picture(filename: Optional[str]):
        if not filename:
            return

        target = os.path.join(app.config["PROFILE_UPLOAD_FOLDER"], filename)
        try:
            os.remove(target)
        except OSError:
            return

    # --- Account verification workflow ---

    def validate_registration(payload: Dict[str, object]) -> Dict[str, object]:
        full_name = str(payload.get("fullName", "") or "").strip()
        email = normalize_email(payload.get("email"))
        phone_number = str(payload.get("phoneNumber", "") or "").strip()
        raw_age = payload.get("age")
        password = str(payload.get("password", "") or "")
        confirm_password = payload.get("confirmPassword")

        if len(full_name) < 3:
            raise ValidationError("Full name must be at least 3 characters long.")
        if not is_valid_email(email):
            raise ValidationError("Please provide a valid email address.")
        if phone_number and not phone_regex.match(phone_number):
            raise ValidationError("Phone number must contain 10 to 15 digits.")

        age = None
        if raw_age not in (None, ""):
            try:
                age = int(raw_age)
            except (TypeError, ValueError):
                raise ValidationError("Age must be a whole number.")
            if age <= 0:
                raise ValidationError("Age must be greater than zero.")

        if (
            len(password) < 8
            or not re.search(r"[A-Za-z]", password)
            or not re.search(r"\d", password)
        ):
            raise ValidationError(
                "Password must be at least 8 characters and contain letters and numbers."
            )
        if confirm_password is not None and str(confirm_password) != password:
            raise ValidationError("Passwords do not match.")

        return {
            "full_name": full_name,
            "email": email,
            "phone_number": phone_number,
            "age": age,
            "password": password,
        }

    def register_account(fields: Dict[str, object], image_file) -> Tuple[Dict, bool]:
        email = fields["email"]
        if db.users.find_one({"email": email}):
            raise Conflict("An account with this email already exists.")

        profile_picture = save_profile_picture(image_file)
        code, verification_fields = new_verification_fields()

        account = {
            "full_name": fields["full_name"],
            "email": email,
            "phone_number": fields["phone_number"],
            "age": fields["age"],
            "password": hash_secret(fields["password"]),
            "profile_picture": profile_picture,
            "status": ACCOUNT_PENDING,
            "role": default_role_for(email),
            "auth_provider": "local",
            "created_at": datetime.utcnow(),
            **verification_fields,
        }

        try:
            insert_result = db.users.insert_one(account)
        except DuplicateKeyError:
            remove_profile_picture(profile_picture)
            raise Conflict("An account with this email already exists.")
        account["_id"] = insert_result.inserted_id

        otp_sent = dispatch_verification_code(email, code, fields["full_name"])
        app.logger.info("Registered account %s (otp sent: %s)", email, otp_sent)
        return account, otp_sent

    def load_account_for_verification(email: str):
        account = db.users.find_one({"email": email})
        if not account:
            raise NotFound("No account is registered with this email.")

        status = account.get("status")
        if status == ACCOUNT_ACTIVE:
            raise AlreadyVerified("This account has already been verified.")
        if status != ACCOUNT_PENDING:
            raise Forbidden("This account has been suspended.")
        return account

    def verify_account(email: str, submitted_code: str):
        account = load_account_for_verification(email)

        stored_hash = account.get("otp_hash")
        well_formed = submitted_code.isdigit() and len(submitted_code) == otp_length
        if not well_formed or not matches_secret(submitted_code, stored_hash):
            raise InvalidCode("The verification code is incorrect.")

        expires_at = account.get("otp_expires_at")
        if not isinstance(expires_at, datetime) or datetime.utcnow() > expires_at:
            raise Expired("The verification code has expired. Please request a new one.")

        # Guarded on the hash that was checked so a concurrent resend wins.
        activated = db.users.find_one_and_update(
            {"_id": account["_id"], "status": ACCOUNT_PENDING, "otp_hash": stored_hash},
            {
                "$set": {"status": ACCOUNT_ACTIVE, "verified_at": datetime.utcnow()},
                "$unset": {"otp_hash": "", "otp_created_at": "", "otp_expires_at": ""},
            },
            return_document=ReturnDocument.AFTER,
        )
        if activated is None:
            current = db.users.find_one({"_id": account["_id"]}) or {}
            if current.get("status") == ACCOUNT_ACTIVE:
                raise AlreadyVerified("This account has already been verified.")
            raise InvalidCode("The verification code is incorrect.")

        app.logger.info("Account %s verified", email)
        return activated

    def resend_verification_code(email: str):
        account = load_account_for_verification(email)

        code, verification_fields = new_verification_fields()
        updated = db.users.find_one_and_update(
            {"_id": account["_id"], "status": ACCOUNT_PENDING},
            {"$set": verification_fields},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise AlreadyVerified("This account has already been verified.")

        if not dispatch_verification_code(email, code, updated.get("full_name", "")):
            raise GatewayError(
                "We could not send the verification email. Please try again in a moment."
            )
        return updated

    # --- Identity provider ---

    def google_is_configured() -> bool:
        return all(
            app.config.get(key)
            for key in ("GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET", "GOOGLE_REDIRECT_URI")
        )

    def consume_oauth_state(state: str):
        if not state:
            raise Unauthorized("The sign-in session is invalid or has expired.")

        state_document = db.oauth_states.find_one_and_delete({"state": state})
        expires_at = (state_document or {}).get("expires_at")
        if not isinstance(expires_at, datetime) or datetime.utcnow() > expires_at:
            raise Unauthorized("The sign-in session is invalid or has expired.")

    def fetch_google_identity(code: str) -> Dict[str, object]:
        timeout = app.config["GATEWAY_TIMEOUT_SECONDS"]
        try:
            token_response = requests.post(
                GOOGLE_TOKEN_URL,
                data={
                    "code": code,
                    "client_id": app.config["GOOGLE_CLIENT_ID"],
                    "client_secret": app.config["GOOGLE_CLIENT_SECRET"],
                    "redirect_uri": app.config["GOOGLE_REDIRECT_URI"],
                    "grant_type": "authorization_code",
                },
                timeout=timeout,
            )
            if token_response.status_code != 200:
                app.logger.error("Google token exchange failed: %s", token_response.text)
                raise Unauthorized("Google sign-in could not be completed.")

            access_token = token_response.json().get("access_token")
            if not access_token:
                raise Unauthorized("Google sign-in could not be completed.")

            userinfo_response = requests.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=timeout,
            )
            if userinfo_response.status_code != 200:
                app.logger.error("Google userinfo failed: %s", userinfo_response.text)
                raise GatewayError("Google did not return the account profile.")
            profile = userinfo_response.json()
        except (requests.RequestException, ValueError) as exc:
            app.logger.error("Google sign-in error: %s", exc)
            raise GatewayError("Google sign-in is temporarily unavailable.")

        if not isinstance(profile, dict):
            raise GatewayError("Google did not return the account profile.")
        return profile

    def find_or_create_oauth_account(email: str, full_name: str, avatar_url: str):
        now = datetime.utcnow()
        try:
            account = db.users.find_one_and_update(
                {"email": email},
                {
                    "$setOnInsert": {
                        "full_name": full_name,
                        "phone_number": "",
                        "age": None,
                        "password": None,
                        "profile_picture": None,
                        "avatar_url": avatar_url,
                        "status": ACCOUNT_ACTIVE,
                        "role": default_role_for(email),
                        "auth_provider": "google",
                        "created_at": now,
                        "verified_at": now,
                    }
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            account = db.users.find_one({"email": email})

        if account.get("status") == ACCOUNT_PENDING:
            # The provider has already proven control of the email.
            activated = db.users.find_one_and_update(
                {"_id": account["_id"], "status": ACCOUNT_PENDING},
                {
                    "$set": {"status": ACCOUNT_ACTIVE, "verified_at": now},
                    "$unset": {
                        "otp_hash": "",
                        "otp_created_at": "",
                        "otp_expires_at": "",
                    },
                },
                return_document=ReturnDocument.AFTER,
            )
            account = activated or db.users.find_one({"_id": account["_id"]})

        if account.get("status") == ACCOUNT_SUSPENDED:
            raise Forbidden("This account has been suspended.")
        return account

    # --- Payment gateway ---

    def to_minor_units(amount) -> int:
        return int(round(float(amount) * 100))

    def paystack_headers() -> Dict[str, str]:
        secret_key = app.config.get("PAYSTACK_SECRET_KEY")
        if not secret_key:
            raise GatewayError("The payment provider is not configured.")
        return {
            "Authorization": f"Bearer {secret_key}",
            "Content-Type": "application/json",
        }

    def read_gateway_response(response, action: str) -> Dict[str, object]:
        try:
            body = response.json()
        except ValueError:
            body = None

        if (
            response.status_code >= 400
            or not isinstance(body, dict)
            or not body.get("status")
        ):
            details = body.get("message") if isinstance(body, dict) else response.text
            app.logger.error(
                "Paystack %s failed (%s): %s", action, response.status_code, details
            )
            raise GatewayError("The payment provider rejected the request.")

        data = body.get("data")
        return data if isinstance(data, dict) else {}

    def gateway_create_transaction(
        amount, currency: str, email: str, reference: str, metadata: Dict[str, str]
    ) -> Dict[str, str]:
        callback_url = app.config.get("PAYSTACK_CALLBACK_URL") or urljoin(
            request.host_url, "api/v1/verify-payment"
        )
        try:
            response = requests.post(
                f"{app.config['PAYSTACK_BASE_URL']}/transaction/initialize",
                json={
                    "email": email,
                    "amount": to_minor_units(amount),
                    "currency": currency,
                    "reference": reference,
                    "callback_url": callback_url,
                    "metadata": metadata,
                },
                headers=paystack_headers(),
                timeout=app.config["GATEWAY_TIMEOUT_SECONDS"],
            )
        except requests.RequestException as exc:
            app.logger.error("Paystack initialize error for %s: %s", reference, exc)
            raise GatewayError("The payment provider could not be reached.")

        data = read_gateway_response(response, "initialize")
        checkout_url = data.get("authorization_url")
        if not checkout_url:
            raise GatewayError("The payment provider did not return a checkout URL.")

        return {
            "transaction_id": str(data.get("reference") or reference),
            "checkout_url": checkout_url,
            "access_code": data.get("access_code", ""),
        }

    def gateway_transaction_status(transaction_id: str) -> Dict[str, object]:
        try:
            response = requests.get(
                f"{app.config['PAYSTACK_BASE_URL']}/transaction/verify/"
                f"{quote(transaction_id, safe='')}",
                headers=paystack_headers(),
                timeout=app.config["GATEWAY_TIMEOUT_SECONDS"],
            )
        except requests.RequestException as exc:
            app.logger.error("Paystack verify error for %s: %s", transaction_id, exc)
            raise GatewayError("The payment provider could not be reached.")

        return read_gateway_response(response, "verify")

    def classify_gateway_outcome(payment, gateway_data) -> Tuple[str, Optional[str]]:
        gateway_status = str(gateway_data.get("status") or "").strip().lower()
        if gateway_status in GATEWAY_FAILURE_STATUSES:
            return GATEWAY_FAILURE, gateway_status
        if gateway_status != "success":
            return GATEWAY_PENDING, None

        reported_amount = gateway_data.get("amount")
        if reported_amount is not None:
            try:
                amount_matches = int(reported_amount) == to_minor_units(payment["amount"])
            except (TypeError, ValueError):
                amount_matches = False
            if not amount_matches:
                app.logger.warning(
                    "Payment %s reported amount %s, expected %s",
                    payment["reference"],
                    reported_amount,
                    to_minor_units(payment["amount"]),
                )
                return GATEWAY_FAILURE, "amount_mismatch"

        return GATEWAY_SUCCESS, None

    def verify_webhook_signature(payload: bytes, signature: Optional[str]) -> bool:
        secret = (
            app.config.get("PAYSTACK_WEBHOOK_SECRET")
            or app.config.get("PAYSTACK_SECRET_KEY")
        )
        if not secret or not signature:
            return False
        computed = hmac.new(secret.encode(), payload, hashlib.sha512).hexdigest()
        return hmac.compare_digest(computed, signature)

    # --- Payment verification workflow ---

    def fetch_product(product_id: str):
        object_id = parse_object_id(product_id, "Product not found.")
        product = db.products.find_one({"_id": object_id})
        if not product:
            raise NotFound("Product not found.")
        return product

    def initialize_payment(payer_id: str, product_id: str):
        product = fetch_product(product_id)
        payer = db.users.find_one(
            {"_id": parse_object_id(payer_id, "Account not found.")}
        )
        if not payer:
            raise NotFound("Account not found.")

        amount = product.get("price", 0)
        currency = app.config["PAYMENT_CURRENCY"]
        reference = f"PAY-{uuid4().hex[:16].upper()}"

        transaction = gateway_create_transaction(
            amount,
            currency,
            payer["email"],
            reference,
            {
                "payment_reference": reference,
                "product_id": str(product["_id"]),
                "payer_id": str(payer["_id"]),
            },
        )

        now = datetime.utcnow()
        payment = {
            "reference": reference,
            "transaction_id": transaction["transaction_id"],
            "access_code": transaction["access_code"],
            "checkout_url": transaction["checkout_url"],
            "product_id": product["_id"],
            "product_name": product.get("name", ""),
            "payer_id": payer["_id"],
            "payer_email": payer["email"],
            "amount": amount,
            "currency": currency,
            "status": PAYMENT_INITIALIZED,
            "created_at": now,
            "updated_at": now,
        }
        insert_result = db.payments.insert_one(payment)
        payment["_id"] = insert_result.inserted_id

        app.logger.info(
            "Payment %s initialized for product %s by %s",
            reference,
            product["_id"],
            payer["email"],
        )
        return payment

    def reconcile_payment(payment, outcome: str, source: str, gateway_data, reason=None):
        """Move an initialized payment to its terminal status exactly once.

        Returns the stored payment and whether this call applied the change.
        A call that loses the race gets the already committed document back.
        """
        if outcome == GATEWAY_PENDING:
            return payment, False

        new_status = PAYMENT_VERIFIED if outcome == GATEWAY_SUCCESS else PAYMENT_FAILED
        now = datetime.utcnow()
        updates = {
            "status": new_status,
            "gateway_status": gateway_data.get("status"),
            "reconciled_via": source,
            "reconciled_at": now,
            "updated_at": now,
        }
        if reason:
            updates["failure_reason"] = reason

        reconciled = db.payments.find_one_and_update(
            {"_id": payment["_id"], "status": PAYMENT_INITIALIZED},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if reconciled is None:
            current = db.payments.find_one({"_id": payment["_id"]})
            app.logger.info(
                "Payment %s already %s; ignoring %s outcome from %s",
                payment["reference"],
                (current or {}).get("status"),
                new_status,
                source,
            )
            return current, False

        app.logger.info(
            "Payment %s marked %s via %s", payment["reference"], new_status, source
        )
        return reconciled, True

    def verify_payment(reference: str):
        payment = db.payments.find_one(
            {"$or": [{"reference": reference}, {"transaction_id": reference}]}
        )
        if not payment:
            raise NotFound("Payment not found.")

        if payment.get("status") in TERMINAL_PAYMENT_STATUSES:
            return payment

        gateway_data = gateway_transaction_status(payment["transaction_id"])
        outcome, reason = classify_gateway_outcome(payment, gateway_data)
        payment, _ = reconcile_payment(payment, outcome, "poll", gateway_data, reason)
        return payment

    def apply_webhook_event(event) -> str:
        if not isinstance(event, dict):
            app.logger.warning("Paystack webhook: body is not an object")
            return "ignored"

        event_type = str(event.get("event") or "")
        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        if not event_type.startswith("charge."):
            app.logger.info("Paystack webhook: ignoring %s event", event_type or "unknown")
            return "ignored"

        transaction_id = str(data.get("reference") or "").strip()
        if not transaction_id:
            app.logger.warning("Paystack webhook: %s event without reference", event_type)
            return "ignored"

        payment = db.payments.find_one({"transaction_id": transaction_id})
        if not payment:
            app.logger.warning(
                "Paystack webhook: no payment matches reference %s", transaction_id
            )
            return "ignored"

        if payment.get("status") in TERMINAL_PAYMENT_STATUSES:
            app.logger.info(
                "Paystack webhook: payment %s already %s",
                payment["reference"],
                payment.get("status"),
            )
            return "duplicate"

        outcome, reason = classify_gateway_outcome(payment, data)
        if outcome == GATEWAY_PENDING:
            return "pending"

        _, applied = reconcile_payment(payment, outcome, "webhook", data, reason)
        return "processed" if applied else "duplicate"

    # --- Error handling ---

    @app.errorhandler(ApiError)
    def handle_api_error(error: ApiError):
        if error.status_code >= 500:
            app.logger.error("%s on %s: %s", error.__class__.__name__, request.path, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(RequestEntityTooLarge)
    def handle_upload_too_large(error):
        return (
            jsonify(
                {
                    "error": "ValidationError",
                    "message": "The uploaded file is too large.",
                }
            ),
            413,
        )

    @app.errorhandler(500)
    def handle_server_error(error):
        original = getattr(error, "original_exception", None) or error
        app.logger.error("Unhandled error on %s: %s", request.path, original)
        return (
            jsonify(
                {
                    "error": "ServerError",
                    "message": "An internal server error occurred. Please try again later.",
                }
            ),
            500,
        )

    @jwt_manager.unauthorized_loader
    def handle_missing_token(reason: str):
        return jsonify({"error": "Unauthorized", "message": reason}), 401

    @jwt_manager.invalid_token_loader
    def handle_invalid_token(reason: str):
        return jsonify({"error": "Unauthorized", "message": reason}), 401

    @jwt_manager.expired_token_loader
    def handle_expired_token(jwt_header, jwt_payload):
        return (
            jsonify({"error": "Unauthorized", "message": "Your session has expired."}),
            401,
        )

    # --- ROUTES ---

    @app.route("/")
    def index():
        return "Connected to Backend Server"

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(app.config["PROFILE_UPLOAD_FOLDER"], filename)

    # Accounts
    @app.route("/api/v1/register", methods=["POST"])
    def register():
        fields = validate_registration(read_payload())
        image_file = request.files.get("profilePicture") if request.files else None

        account, otp_sent = register_account(fields, image_file)

        message = "Account created. Enter the verification code we emailed to continue."
        if not otp_sent:
            message = (
                "Account created, but we could not send the verification code. "
                "Request a new code to continue."
            )

        return (
            jsonify(
                {
                    "message": message,
                    "data": serialize_account(account),
                    "requiresVerification": True,
                    "otpSent": otp_sent,
                    "otpLength": otp_length,
                    "expiresInSeconds": otp_expiration_minutes * 60,
                }
            ),
            201,
        )

    @app.route("/api/v1/verify", methods=["POST"])
    def verify():
        payload = read_payload()
        email = normalize_email(payload.get("email"))
        code = str(payload.get("otp", "") or "").strip()

        if not is_valid_email(email):
            raise ValidationError("Please provide a valid email address.")
        if not code:
            raise ValidationError("The verification code is required.")

        account = verify_account(email, code)
        return jsonify(
            {"message": "Account verified successfully.", "data": serialize_account(account)}
        )

    @app.route("/api/v1/resend-otp", methods=["POST"])
    def resend_otp():
        payload = read_payload()
        email = normalize_email(payload.get("email"))
        if not is_valid_email(email):
            raise ValidationError("Please provide a valid email address.")

        account = resend_verification_code(email)
        return jsonify(
            {
                "message": "A new verification code has been sent.",
                "email": account["email"],
                "otpLength": otp_length,
                "expiresInSeconds": otp_expiration_minutes * 60,
            }
        )

    @app.route("/api/v1/login", methods=["POST"])
    def login():
        payload = read_payload()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", "") or "")

        if not email or not password:
            raise ValidationError("Email and password are required.")

        account = db.users.find_one({"email": email})
        if not account or not matches_secret(password, account.get("password")):
            raise Unauthorized("Invalid credentials")

        if account.get("status") == ACCOUNT_PENDING:
            raise Forbidden(
                "Please verify your email before logging in.",
                {"requires_verification": True},
            )
        if account.get("status") == ACCOUNT_SUSPENDED:
            raise Forbidden("This account has been suspended.")

        updates = {"last_login_at": datetime.utcnow()}
        if default_role_for(email) == ROLE_ADMIN:
            updates["role"] = ROLE_ADMIN
        account = db.users.find_one_and_update(
            {"_id": account["_id"]},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )

        return jsonify(
            {
                "message": "Login successful",
                "token": issue_token(account),
                "data": serialize_account(account),
            }
        )

    @app.route("/api/v1/auth/google", methods=["GET"])
    def google_login():
        if not google_is_configured():
            raise GatewayError("Google sign-in is not configured.")

        state = secrets.token_urlsafe(24)
        now = datetime.utcnow()
        db.oauth_states.insert_one(
            {
                "state": state,
                "created_at": now,
                "expires_at": now
                + timedelta(minutes=app.config["OAUTH_STATE_TTL_MINUTES"]),
            }
        )

        query = urlencode(
            {
                "client_id": app.config["GOOGLE_CLIENT_ID"],
                "redirect_uri": app.config["GOOGLE_REDIRECT_URI"],
                "response_type": "code",
                "scope": "openid email profile",
                "state": state,
                "prompt": "select_account",
            }
        )
        return redirect(f"{GOOGLE_AUTH_URL}?{query}")

    @app.route("/api/v1/auth/google/callback", methods=["GET"])
    def google_callback():
        if request.args.get("error"):
            raise Unauthorized("Google sign-in was cancelled.")
        if not google_is_configured():
            raise GatewayError("Google sign-in is not configured.")

        consume_oauth_state(request.args.get("state", ""))
        code = request.args.get("code", "")
        if not code:
            raise Unauthorized("Google sign-in could not be completed.")

        profile = fetch_google_identity(code)
        email = normalize_email(profile.get("email"))
        if not is_valid_email(email) or not profile.get("email_verified"):
            raise Unauthorized("Google did not confirm this email address.")

        account = find_or_create_oauth_account(
            email,
            str(profile.get("name") or "").strip(),
            str(profile.get("picture") or "").strip(),
        )
        app.logger.info("Google sign-in for %s", email)

        return jsonify(
            {
                "message": "Login successful via Google",
                "token": issue_token(account),
                "data": serialize_account(account),
            }
        )

    @app.route("/api/v1/users", methods=["GET"])
    @jwt_required()
    def list_users():
        require_admin()
        accounts = [
            serialize_account(account)
            for account in db.users.find().sort("created_at", -1)
        ]
        return jsonify({"message": "All users retrieved successfully", "data": accounts})

    @app.route("/api/v1/users/<user_id>", methods=["PATCH"])
    @jwt_required()
    def make_admin(user_id: str):
        require_admin()
        promoted = db.users.find_one_and_update(
            {"_id": parse_object_id(user_id, "User not found.")},
            {"$set": {"role": ROLE_ADMIN}},
            return_document=ReturnDocument.AFTER,
        )
        if not promoted:
            raise NotFound("User not found.")

        app.logger.info("Promoted %s to admin (by %s)", promoted["email"], get_jwt_identity())
        return jsonify(
            {"message": "User promoted to admin successfully", "data": serialize_account(promoted)}
        )

    # Products
    @app.route("/api/v1/create-product", methods=["POST"])
    @jwt_required()
    def create_product():
        require_admin()
        payload = read_payload()

        name = str(payload.get("productName", "") or "").strip()
        if not name:
            raise ValidationError("A product name is required.")

        try:
            price = round(float(payload.get("price", "")), 2)
        except (TypeError, ValueError):
            raise ValidationError("Price must be a valid number.")
        if not math.isfinite(price):
            raise ValidationError("Price must be a valid number.")
        if price < 0:
            raise ValidationError("Price cannot be negative.")

        name_key = name.lower()
        if db.products.find_one({"name_key": name_key}):
            raise Conflict("Product already exists")

        product = {
            "name": name,
            "name_key": name_key,
            "price": price,
            "created_at": datetime.utcnow(),
            "created_by": get_jwt_identity(),
        }
        try:
            insert_result = db.products.insert_one(product)
        except DuplicateKeyError:
            raise Conflict("Product already exists")
        product["_id"] = insert_result.inserted_id

        return (
            jsonify(
                {"message": "Product created successfully", "data": serialize_product(product)}
            ),
            201,
        )

    @app.route("/api/v1/products", methods=["GET"])
    def list_products():
        products = [
            serialize_product(product)
            for product in db.products.find().sort("created_at", -1)
        ]
        return jsonify({"message": "All products", "data": products})

    @app.route("/api/v1/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product = fetch_product(product_id)
        return jsonify({"message": "Product", "data": serialize_product(product)})

    # Payments
    @app.route("/api/v1/make-payment/<product_id>", methods=["POST"])
    @jwt_required()
    def make_payment(product_id: str):
        payment = initialize_payment(get_jwt_identity(), product_id)
        return (
            jsonify(
                {
                    "message": "Payment initialized",
                    "data": {
                        "paymentReference": payment["reference"],
                        "redirectUrl": payment["checkout_url"],
                        "payment": serialize_payment(payment),
                    },
                }
            ),
            201,
        )

    @app.route("/api/v1/verify-payment", methods=["GET"])
    def verify_payment_status():
        reference = str(
            request.args.get("reference") or request.args.get("trxref") or ""
        ).strip()
        if not reference:
            raise ValidationError("A payment reference is required.")

        payment = verify_payment(reference)
        return jsonify(
            {"message": f"Payment {payment['status']}", "data": serialize_payment(payment)}
        )

    @app.route("/api/v1/verify-payment/webhook", methods=["POST"])
    def verify_payment_webhook():
        raw_body = request.get_data()
        signature = request.headers.get("x-paystack-signature")
        if not verify_webhook_signature(raw_body, signature):
            app.logger.warning("Paystack webhook rejected: invalid signature")
            raise InvalidSignature("Invalid webhook signature.")

        try:
            event = json.loads(raw_body or b"{}")
        except ValueError:
            app.logger.warning("Paystack webhook: body is not valid JSON")
            event = None

        result = apply_webhook_event(event)
        return jsonify({"message": "Webhook received", "status": result}), 200

    return app
