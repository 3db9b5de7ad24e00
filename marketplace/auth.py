"""Bearer token handling and shop ownership checks."""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from jose import JWTError, jwt

from marketplace.config import get_settings
from marketplace.exceptions import ForbiddenError
from marketplace.models.shop import Shop


class Role(str, Enum):
    USER = "USER"
    SELLER = "SELLER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


ADMIN_ROLES = {Role.ADMIN, Role.SUPER_ADMIN}
SHOP_ROLES = {Role.SELLER} | ADMIN_ROLES


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def create_access_token(
    user_id: str, role: Role | str, expires_delta: Optional[timedelta] = None
) -> str:
    """Create a signed access token carrying ``sub`` and ``role``."""
    settings = get_settings()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=24))
    claims = {"sub": user_id, "role": Role(role).value, "exp": expire}
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[Principal]:
    """Return the token's principal, or None if it is invalid or expired."""
    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    user_id = claims.get("sub")
    try:
        role = Role(claims.get("role", Role.USER.value))
    except ValueError:
        return None
    if not user_id:
        return None
    return Principal(user_id=str(user_id), role=role)


def require_shop_access(principal: Principal, shop: Shop) -> None:
    """Sellers may act on their own shops; admins on any shop."""
    if principal.role not in SHOP_ROLES:
        raise ForbiddenError("Seller account required")
    if not principal.is_admin and shop.owner_id != principal.user_id:
        raise ForbiddenError("You do not have access to this shop")


def require_admin(principal: Principal) -> None:
    if not principal.is_admin:
        raise ForbiddenError("Admin access required")
