"""Registration, session login and the caller's own account."""
from __future__ import annotations

from flask import Blueprint, request
from flask_login import current_user, login_required, login_user, logout_user

from marketplace.auth import SessionUser, current_identity, require_roles
from marketplace.models import Role, public_account, public_profile
from marketplace.routes import ok, services
from marketplace.uploads import PROFILE_IMAGE
from marketplace.validation import require_json

bp = Blueprint("account", __name__, url_prefix="/api")


@bp.get("/health")
def health():
    return ok({"status": "up"})


@bp.get("/me")
def me():
    if not current_user.is_authenticated:
        return ok({"account": None, "profile": None})
    # Load from db to avoid stale role/email in session
    return ok(services().accounts.me(current_identity()))


@bp.post("/register")
def register():
    data = require_json()
    account, profile = services().accounts.register(data)
    login_user(SessionUser(account))
    return ok(
        {"account": public_account(account), "profile": public_profile(account["role_type"], profile)},
        201,
        "Registration successful.",
    )


@bp.post("/login")
def login():
    data = require_json()
    accounts = services().accounts
    account = accounts.authenticate(data.get("email", ""), data.get("password") or "")
    login_user(SessionUser(account))
    return ok({
        "account": public_account(account),
        "profile": public_profile(account.get("role_type"), accounts.profile_for(account)),
    }, message="Login successful.")


@bp.post("/logout")
@login_required
def logout():
    logout_user()
    return ok(message="Logged out.")


@bp.get("/user/profile")
@login_required
def get_profile():
    return ok(services().accounts.me(current_identity())["profile"])


@bp.put("/user/profile")
@login_required
def update_profile():
    data = require_json()
    return ok(services().accounts.update_profile(current_identity(), data), message="Profile updated.")


@bp.put("/user/password")
@login_required
def change_password():
    data = require_json()
    services().accounts.change_password(current_identity(), data.get("current_password"), data.get("new_password"))
    return ok(message="Password changed successfully.")


@bp.put("/user/email")
@login_required
def change_email():
    data = require_json()
    account = services().accounts.change_email(current_identity(), data.get("email", ""), data.get("password"))
    return ok({"account": public_account(account)}, message="Email updated.")


@bp.post("/user/upload/profile-image")
@require_roles(Role.USER.value)
def upload_profile_image():
    identity = current_identity()
    svc = services()
    upload = request.files.get("file") or request.files.get("image")
    url = svc.uploader.upload(upload, PROFILE_IMAGE, identity.role_id)
    svc.accounts.set_profile_image(identity, "profile_image", url)
    return ok({"url": url}, 201, "Profile image uploaded.")
