from dataclasses import dataclass
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import Settings
from models import UserRole


@dataclass(frozen=True)
class TenantContext:
    """An already-authenticated caller: who they are and which tenant they act for."""

    user_id: str
    organization_id: str
    role: UserRole
    email: str = ""

    def has_role(self, *roles: UserRole) -> bool:
        return self.role in roles


def _serializer(settings: Settings) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings.token_secret, salt="ledger-access-token")


def issue_access_token(settings: Settings, context: TenantContext) -> str:
    token_data = {
        "u": context.user_id,
        "o": context.organization_id,
        "r": context.role.value,
        "e": context.email,
    }
    return _serializer(settings).dumps(token_data)


def read_access_token(settings: Settings, token: str) -> Optional[TenantContext]:
    serializer = _serializer(settings)
    try:
        data = serializer.loads(token, max_age=settings.token_max_age_hours * 3600)
    except BadSignature:
        return None

    try:
        return TenantContext(
            user_id=str(data["u"]),
            organization_id=str(data["o"]),
            role=UserRole(data["r"]),
            email=str(data.get("e", "")),
        )
    except (KeyError, TypeError, ValueError):
        return None
