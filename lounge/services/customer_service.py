from __future__ import annotations

import logging
import secrets
import string
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from lounge.config import Config
from lounge.integrations.mpesa import normalize_phone_number
from lounge.models import User, UserRole
from lounge.observability import increment_counter, record_event
from lounge.services.loyalty_service import LoyaltyService
from lounge.services.validation import sanitize_text

_REFERRAL_ALPHABET = string.ascii_uppercase + string.digits
_UPDATABLE_FIELDS = ("display_name", "gaming_name", "phone_number", "email")


class CustomerService:
    """Registration, lookup and sign-in for customers and lounge staff."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        loyalty_service: Optional[LoyaltyService] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.loyalty = loyalty_service or LoyaltyService(db_session, config=config)

    def register_customer(
        self,
        display_name: str,
        gaming_name: str,
        phone_number: str,
        password: Optional[str] = None,
        email: Optional[str] = None,
        referral_code: Optional[str] = None,
        points: int = 0,
    ) -> Tuple[bool, str, Optional[User]]:
        return self._create_user(
            display_name=display_name,
            gaming_name=gaming_name,
            phone_number=phone_number,
            password=password,
            email=email,
            role=UserRole.CUSTOMER,
            referral_code=referral_code,
            points=points,
        )

    def create_staff_user(
        self,
        display_name: str,
        gaming_name: str,
        phone_number: str,
        password: str,
        role: UserRole | str = UserRole.STAFF,
        email: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[User]]:
        try:
            role_enum = role if isinstance(role, UserRole) else UserRole(role)
        except ValueError:
            return False, f"Unknown role: {role}", None
        if role_enum == UserRole.CUSTOMER:
            return False, "Use customer registration for customer accounts", None
        if not password or len(password) < 8:
            return False, "Staff accounts need a password of at least 8 characters", None
        return self._create_user(
            display_name=display_name,
            gaming_name=gaming_name,
            phone_number=phone_number,
            password=password,
            email=email,
            role=role_enum,
        )

    def authenticate(self, identifier: str, password: str) -> Optional[User]:
        """Look a user up by phone number or gaming name and check the password."""
        if not identifier or not password:
            return None
        candidates = [identifier.strip()]
        try:
            candidates.append(normalize_phone_number(identifier))
        except ValueError:
            pass
        user = (
            self.db.query(User)
            .filter(or_(User.phone_number.in_(candidates), User.gaming_name == identifier.strip()))
            .first()
        )
        if not user or not user.passwordHash or not check_password_hash(user.passwordHash, password):
            increment_counter("auth_failures_total")
            return None
        return user

    def get_customer(self, user_id: int) -> Optional[User]:
        return self.db.get(User, user_id)

    def find_by_phone(self, phone_number: str) -> Optional[User]:
        try:
            phone = normalize_phone_number(phone_number)
        except ValueError:
            return None
        return self.db.query(User).filter(User.phone_number == phone).first()

    def list_customers(self, search: Optional[str] = None, limit: int = 100) -> List[User]:
        query = self.db.query(User).filter(User.role == UserRole.CUSTOMER)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(
                or_(
                    User.display_name.ilike(pattern),
                    User.gaming_name.ilike(pattern),
                    User.phone_number.ilike(pattern),
                )
            )
        return query.order_by(User.display_name).limit(limit).all()

    def update_customer(self, user_id: int, changes: Dict[str, Any]) -> Tuple[bool, str, Optional[User]]:
        user = self.db.get(User, user_id)
        if not user:
            return False, "Customer not found", None

        updates: Dict[str, Any] = {}
        for field in _UPDATABLE_FIELDS:
            if field in changes:
                updates[field] = sanitize_text(changes[field], max_length=255)

        if "phone_number" in updates:
            try:
                updates["phone_number"] = normalize_phone_number(updates["phone_number"])
            except ValueError as exc:
                return False, str(exc), None
        for required in ("display_name", "gaming_name", "phone_number"):
            if required in updates and not updates[required]:
                return False, f"{required.replace('_', ' ').capitalize()} cannot be empty", None

        conflict = self._uniqueness_error(updates.get("gaming_name"), updates.get("phone_number"), exclude_id=user_id)
        if conflict:
            return False, conflict, None

        for field, value in updates.items():
            setattr(user, field, value)
        self.db.commit()
        return True, "Customer updated", user

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _create_user(
        self,
        display_name: str,
        gaming_name: str,
        phone_number: str,
        password: Optional[str],
        email: Optional[str],
        role: UserRole,
        referral_code: Optional[str] = None,
        points: int = 0,
    ) -> Tuple[bool, str, Optional[User]]:
        display_name = sanitize_text(display_name, max_length=255)
        gaming_name = sanitize_text(gaming_name, max_length=100)
        if not display_name or not gaming_name:
            return False, "Display name and gaming name are required", None
        try:
            phone = normalize_phone_number(phone_number)
        except ValueError as exc:
            return False, str(exc), None

        conflict = self._uniqueness_error(gaming_name, phone)
        if conflict:
            return False, conflict, None

        referrer = None
        if referral_code:
            referrer = self.db.query(User).filter(User.referral_code == referral_code.strip().upper()).first()
            if not referrer:
                return False, "Referral code not recognised", None

        user = User(
            display_name=display_name,
            gaming_name=gaming_name,
            phone_number=phone,
            email=sanitize_text(email, max_length=255),
            role=role,
            points=max(int(points or 0), 0),
            referral_code=self._generate_referral_code(),
            referred_by_id=referrer.userID if referrer else None,
        )
        if password:
            user.passwordHash = generate_password_hash(password)
        self.db.add(user)
        self.db.flush()

        if referrer and self.config.REFERRAL_BONUS_POINTS > 0:
            self.loyalty.apply_points(
                referrer,
                self.config.REFERRAL_BONUS_POINTS,
                f"Referral bonus for {gaming_name}",
            )

        self.db.commit()
        increment_counter("users_registered_total", labels={"role": role.value})
        record_event("user_registered", {"user_id": user.userID, "role": role.value})
        self.logger.info("Registered %s", role.value, extra={"user_id": user.userID})
        return True, "User created", user

    def _uniqueness_error(
        self,
        gaming_name: Optional[str],
        phone_number: Optional[str],
        exclude_id: Optional[int] = None,
    ) -> Optional[str]:
        if gaming_name:
            query = self.db.query(User).filter(User.gaming_name == gaming_name)
            if exclude_id is not None:
                query = query.filter(User.userID != exclude_id)
            if query.first():
                return "Gaming Name is already in use."
        if phone_number:
            query = self.db.query(User).filter(User.phone_number == phone_number)
            if exclude_id is not None:
                query = query.filter(User.userID != exclude_id)
            if query.first():
                return "Phone Number is already in use."
        return None

    def _generate_referral_code(self) -> str:
        while True:
            code = "".join(secrets.choice(_REFERRAL_ALPHABET) for _ in range(8))
            if not self.db.query(User).filter(User.referral_code == code).first():
                return code
