"""Identity lookups for businesses, referrers, customers and admins."""

import logging
import secrets
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from pydantic import TypeAdapter

from .errors import (
    ConflictError,
    DuplicateKeyError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    UserNotFoundError,
    ValidationFailedError,
)
from .models import SHARE_CODE_MIN_LENGTH, BusinessUser, Campaign, CustomerUser, ReferrerUser, Role, User
from .storage import Store, UnitOfWork

logger = logging.getLogger(__name__)

_user_adapter = TypeAdapter(User)

SHARE_CODE_BYTES = 4


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def require_role(actor: User, *roles: Role) -> None:
    if actor.role not in roles:
        raise ForbiddenError(f"This action requires role {' or '.join(r.value for r in roles)}")


def require_owner(actor: User, business_id: UUID) -> None:
    """Business actions need the owning business itself, or an admin."""
    if actor.role == Role.ADMIN:
        return
    if actor.role != Role.BUSINESS or actor.id != business_id:
        raise ForbiddenError("You do not own this resource")


class Directory:
    def __init__(self, store: Store):
        self.store = store

    # --- registration ------------------------------------------------------

    def register_business(
        self, name: str, email: str, business_name: str,
        company: Optional[str] = None, business_code: Optional[str] = None,
    ) -> BusinessUser:
        return self._register({
            "role": Role.BUSINESS, "name": name, "email": email,
            "business_name": business_name, "company": company,
            "business_code": business_code or secrets.token_hex(SHARE_CODE_BYTES),
        })

    def register_referrer(
        self, name: str, email: str, company: Optional[str] = None, referral_code: Optional[str] = None,
    ) -> ReferrerUser:
        return self._register({
            "role": Role.REFERRER, "name": name, "email": email, "company": company,
            "referral_code": referral_code or secrets.token_hex(SHARE_CODE_BYTES),
        })

    def register_admin(self, name: str, email: str) -> User:
        return self._register({"role": Role.ADMIN, "name": name, "email": email})

    def _register(self, data: dict) -> User:
        for field in ("business_code", "referral_code"):
            if field in data and len(data[field]) < SHARE_CODE_MIN_LENGTH:
                raise ValidationFailedError(
                    "Invalid share code",
                    fields={field: f"must be at least {SHARE_CODE_MIN_LENGTH} characters"},
                )
        record = {"id": uuid4(), "created_at": datetime.now(timezone.utc), **data}
        user = _user_adapter.validate_python(record)
        unique = {"user_email": _normalize_email(user.email)}
        if user.role == Role.BUSINESS:
            unique["business_code"] = user.business_code
        elif user.role == Role.REFERRER:
            unique["referrer_code"] = user.referral_code
        try:
            with self.store.atomic() as uow:
                uow.insert("users", user.model_dump(), unique=unique)
        except DuplicateKeyError as e:
            raise ConflictError(f"A user with this {e.index.replace('_', ' ')} already exists")
        logger.info(f"Registered {user.role.value} {user.id}")
        return user

    # --- lookups -----------------------------------------------------------

    def get_user(self, user_id: UUID) -> User:
        record = self.store.get("users", user_id)
        if not record:
            raise UserNotFoundError(f"User {user_id} not found")
        return _user_adapter.validate_python(record)

    def resolve_actor(self, actor_id: Optional[UUID]) -> User:
        if actor_id is None:
            raise UnauthorizedError("Authentication required")
        record = self.store.get("users", actor_id)
        if not record:
            raise UnauthorizedError("Unknown actor")
        return _user_adapter.validate_python(record)

    def get_business_by_code(self, business_code: str) -> BusinessUser:
        user_id = self.store.lookup("business_code", business_code)
        if user_id is None:
            raise NotFoundError("Invalid business code")
        return self.get_user(user_id)

    def get_referrer_by_code(self, referrer_code: str) -> ReferrerUser:
        user_id = self.store.lookup("referrer_code", referrer_code)
        if user_id is None:
            raise NotFoundError("Invalid referrer code")
        return self.get_user(user_id)

    def display_name(self, user_id: UUID) -> str:
        record = self.store.get("users", user_id)
        return record["name"] if record else "Anonymous"

    def count_customers(self, business_id: UUID) -> int:
        return len(self.store.find(
            "users", lambda u: u["role"] == Role.CUSTOMER and u["business_id"] == business_id
        ))

    # --- access rules ------------------------------------------------------

    def shares_company(self, referrer: ReferrerUser, campaign: Campaign) -> bool:
        """Whether the referrer works for the company that runs the campaign."""
        company = referrer.company
        if not company:
            return False
        if campaign.company_name == company:
            return True
        business = self.store.get("users", campaign.business_id)
        if not business:
            return False
        return company in (business.get("business_name"), business.get("name"), business.get("company"))

    # --- customers ---------------------------------------------------------

    def ensure_customer(
        self, uow: UnitOfWork, business_id: UUID, email: str, name: Optional[str],
        phone: Optional[str], referred_by: UUID, referral_id: UUID,
    ) -> CustomerUser:
        """Return the business's customer with this email, creating it when absent."""
        key = (business_id, _normalize_email(email))
        existing_id = uow.lookup("customer_email", key)
        if existing_id is not None:
            return _user_adapter.validate_python(uow.get("users", existing_id))
        customer = CustomerUser(
            id=uuid4(), email=email, name=name or email.split("@")[0], phone=phone,
            business_id=business_id, referred_by=referred_by, referral_id=referral_id,
            created_at=datetime.now(timezone.utc),
        )
        uow.insert("users", customer.model_dump(), unique={"customer_email": key})
        logger.info(f"Created customer {customer.id} for business {business_id}")
        return customer
