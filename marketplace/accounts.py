"""Master accounts and their role profiles."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.security import check_password_hash, generate_password_hash

from marketplace import sequences
from marketplace.db import Store
from marketplace.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    InternalError,
    NotFoundError,
    ValidationError,
    field_error,
)
from marketplace.models import PROFILE_SOURCES, OrganizerStatus, Role, public_account, public_profile
from marketplace.sequences import SequenceGenerator
from marketplace.util import iso_now
from marketplace.validation import (
    optional_text,
    require_text,
    validate_email,
    validate_new_password,
    validate_password,
)

logger = logging.getLogger("marketplace.accounts")

USER_PROFILE_FIELDS = ("first_name", "last_name", "phone_number", "gender", "dob")
ORGANIZER_PROFILE_FIELDS = (
    "organization_name",
    "phone_number",
    "description",
    "facebook_link",
    "insta_link",
    "web_link",
)
ADMIN_PROFILE_FIELDS = ("name",)

EDITABLE_FIELDS = {
    Role.USER: USER_PROFILE_FIELDS,
    Role.ORGANIZER: ORGANIZER_PROFILE_FIELDS,
    Role.ADMIN: ADMIN_PROFILE_FIELDS,
}
REQUIRED_FIELDS = {
    Role.USER: ("first_name", "last_name"),
    Role.ORGANIZER: ("organization_name",),
    Role.ADMIN: ("name",),
}


class AccountService:
    def __init__(self, store: Store, seq: SequenceGenerator, hash_method: str = "scrypt"):
        self.store = store
        self.seq = seq
        self.hash_method = hash_method

    def _hash(self, password: str) -> str:
        return generate_password_hash(password, method=self.hash_method)

    def _profiles(self, role: Role):
        source = PROFILE_SOURCES[role]
        return self.store.database[source.collection], source.id_field

    # -------------------------
    # Registration
    # -------------------------
    def register(self, data: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        email = validate_email(data.get("email", ""))
        password = validate_password(data.get("password", ""))
        raw_role = (data.get("role") or data.get("userType") or Role.USER.value)
        raw_role = raw_role.strip().lower() if isinstance(raw_role, str) else ""
        if raw_role == Role.ADMIN.value:
            raise ValidationError("Admin accounts can only be created by an admin.", details={"field": "role"})
        try:
            role = Role(raw_role)
        except ValueError:
            raise field_error("role", "role must be 'user' or 'organizer'.")
        fields = self._profile_fields(role, data, required=True)
        return self._create(email, password, role, fields)

    def create_admin(self, data: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        email = validate_email(data.get("email", ""))
        password = validate_password(data.get("password", ""))
        fields = self._profile_fields(Role.ADMIN, data, required=True)
        return self._create(email, password, Role.ADMIN, fields)

    def ensure_default_admin(self, email: str, password: str) -> None:
        try:
            if self.store.accounts.find_one({"email": email.lower()}):
                return
            self._create(email.lower(), password, Role.ADMIN, {"name": "Administrator"})
            logger.info("Default admin created: %s", email)
        except (ConflictError, PyMongoError):
            logger.exception("Failed to ensure default admin account")

    def _profile_fields(self, role: Role, data: Dict[str, Any], required: bool) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for field in EDITABLE_FIELDS[role]:
            if required and field in REQUIRED_FIELDS[role]:
                out[field] = require_text(data, field)
            elif field in data:
                out[field] = optional_text(data, field)
        if not required:
            for field in REQUIRED_FIELDS[role]:
                if field in out and not out[field]:
                    raise field_error(field, f"{field} cannot be empty.")
        return out

    def _create(self, email: str, password: Optional[str], role: Role,
                fields: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        if self.store.accounts.find_one({"email": email}):
            raise ConflictError("Email already registered.", details={"field": "email"})

        profiles, id_field = self._profiles(role)
        account_id = self.seq.next_value(sequences.ACCOUNT)
        role_id = self.seq.next_value(id_field)
        now = iso_now()
        account = {
            "account_id": account_id,
            "email": email,
            "password_hash": self._hash(password) if password else None,
            "role_type": role.value,
            "role_id": role_id,
            "email_verified": False,
            "last_login": None,
            "created_at": now,
            "updated_at": now,
        }
        profile = {id_field: role_id, "account_id": account_id, **fields, "created_at": now, "updated_at": now}
        if role is Role.ORGANIZER:
            profile["status"] = OrganizerStatus.PENDING.value

        try:
            self.store.accounts.insert_one(account)
        except DuplicateKeyError:
            raise ConflictError("Email already registered.", details={"field": "email"})
        try:
            profiles.insert_one(profile)
        except PyMongoError:
            logger.exception("Profile insert failed for account %s; removing account", account_id)
            self.store.accounts.delete_one({"account_id": account_id})
            raise InternalError("Registration failed.")
        logger.info("Registered %s account %s", role.value, account_id)
        return account, profile

    # -------------------------
    # Authentication
    # -------------------------
    def authenticate(self, email: str, password: str) -> Dict[str, Any]:
        email = validate_email(email)
        account = self.store.accounts.find_one({"email": email})
        if not account or not account.get("password_hash") or not check_password_hash(
            account["password_hash"], password or ""
        ):
            raise AuthenticationError("Invalid credentials.")
        now = iso_now()
        self.store.accounts.update_one({"account_id": account["account_id"]}, {"$set": {"last_login": now}})
        account["last_login"] = now
        return account

    def get_account(self, account_id: int) -> Dict[str, Any]:
        account = self.store.accounts.find_one({"account_id": account_id})
        if not account:
            raise NotFoundError("Account not found.")
        return account

    # -------------------------
    # Profiles
    # -------------------------
    def profile_for(self, account: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            role = Role(account.get("role_type"))
        except ValueError:
            return None
        profiles, id_field = self._profiles(role)
        return profiles.find_one({id_field: account.get("role_id")})

    def user_profile(self, identity) -> Dict[str, Any]:
        if identity.role != Role.USER.value:
            raise AuthorizationError("Only user accounts can do this.")
        user = self.store.users.find_one({"user_id": identity.role_id})
        if not user:
            raise NotFoundError("User not found.")
        return user

    def organizer_profile(self, identity) -> Optional[Dict[str, Any]]:
        if identity.role != Role.ORGANIZER.value:
            return None
        return self.store.organizers.find_one({"organizer_id": identity.role_id})

    def approved_organizer(self, identity) -> Dict[str, Any]:
        organizer = self.organizer_profile(identity)
        if not organizer or organizer.get("status") != OrganizerStatus.APPROVED.value:
            raise AuthorizationError("Organizer not found or not approved.")
        return organizer

    def me(self, identity) -> Dict[str, Any]:
        account = self.get_account(identity.account_id)
        return {
            "account": public_account(account),
            "profile": public_profile(account.get("role_type"), self.profile_for(account)),
        }

    def update_profile(self, identity, data: Dict[str, Any]) -> Dict[str, Any]:
        role = Role(identity.role)
        updates = self._profile_fields(role, data, required=False)
        profiles, id_field = self._profiles(role)
        if updates:
            updates["updated_at"] = iso_now()
            profiles.update_one({id_field: identity.role_id}, {"$set": updates})
        profile = profiles.find_one({id_field: identity.role_id})
        if not profile:
            raise NotFoundError("Profile not found.")
        return public_profile(role.value, profile)

    def set_profile_image(self, identity, field: str, url: str) -> None:
        profiles, id_field = self._profiles(Role(identity.role))
        profiles.update_one({id_field: identity.role_id}, {"$set": {field: url, "updated_at": iso_now()}})

    # -------------------------
    # Credentials
    # -------------------------
    def change_password(self, identity, current: str, new: str) -> None:
        if not current or not new:
            raise ValidationError("Current password and new password are required.")
        validate_new_password(new)
        account = self.get_account(identity.account_id)
        if not account.get("password_hash"):
            raise ValidationError("Cannot change password for an account without a password.")
        if not check_password_hash(account["password_hash"], current):
            raise AuthenticationError("Current password is incorrect.")
        if check_password_hash(account["password_hash"], new):
            raise field_error("new_password", "New password must be different from the current password.")
        self.store.accounts.update_one(
            {"account_id": account["account_id"]},
            {"$set": {"password_hash": self._hash(new), "updated_at": iso_now()}},
        )
        logger.info("Password changed for account %s", account["account_id"])

    def change_email(self, identity, new_email: str, password: str) -> Dict[str, Any]:
        new_email = validate_email(new_email)
        account = self.get_account(identity.account_id)
        if account.get("password_hash") and not check_password_hash(account["password_hash"], password or ""):
            raise AuthenticationError("Password is incorrect.")
        if new_email == account["email"]:
            return account
        if self.store.accounts.find_one({"email": new_email}):
            raise ConflictError("Email already registered.", details={"field": "email"})
        try:
            self.store.accounts.update_one(
                {"account_id": account["account_id"]},
                {"$set": {"email": new_email, "email_verified": False, "updated_at": iso_now()}},
            )
        except DuplicateKeyError:
            raise ConflictError("Email already registered.", details={"field": "email"})
        return self.get_account(account["account_id"])

    # -------------------------
    # Admin
    # -------------------------
    def delete_account(self, actor, account_id: int) -> None:
        if actor.account_id == account_id:
            raise ConflictError("Admins cannot delete their own account.")
        account = self.get_account(account_id)
        try:
            role = Role(account.get("role_type"))
        except ValueError:
            role = None
        if role is not None:
            profiles, id_field = self._profiles(role)
            profiles.delete_one({id_field: account.get("role_id")})
        self.store.accounts.delete_one({"account_id": account_id})
        logger.info("Account %s (%s) removed by admin %s", account_id, account.get("role_type"), actor.account_id)

    def list_users(self, search: str, page: int, per_page: int) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query = {"$or": [{"first_name": pattern}, {"last_name": pattern}]}
        total = self.store.users.count_documents(query)
        docs = list(
            self.store.users.find(query).sort("user_id", ASCENDING).skip((page - 1) * per_page).limit(per_page)
        )
        account_ids = [d.get("account_id") for d in docs]
        emails = {
            a["account_id"]: a.get("email", "")
            for a in self.store.accounts.find({"account_id": {"$in": account_ids}})
        }
        users: List[Dict[str, Any]] = []
        for d in docs:
            out = public_profile(Role.USER.value, d)
            out["email"] = emails.get(d.get("account_id"), "")
            users.append(out)
        return {
            "users": users,
            "pagination": {"page": page, "per_page": per_page, "total": total,
                           "total_pages": (total + per_page - 1) // per_page},
        }
