import json
import hmac
import base64
import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from config import get_settings

SELLER_ROLES = {"seller", "storefront_owner"}
ADMIN_ROLES = {"admin", "superadmin", "developer"}
CATALOG_ROLES = SELLER_ROLES | ADMIN_ROLES

# Simple JWT (HS256) without external deps
def _b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode()

def _b64url_decode(s: str) -> bytes:
    pad = '=' * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)

def jwt_encode(payload: dict, secret: str) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_b64 = _b64url_encode(json.dumps(header, separators=(',', ':')).encode())
    payload_b64 = _b64url_encode(json.dumps(payload, default=str, separators=(',', ':')).encode())
    signing_input = f"{header_b64}.{payload_b64}".encode()
    signature = hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()
    return f"{header_b64}.{payload_b64}.{_b64url_encode(signature)}"

def jwt_decode(token: str, secret: str) -> dict:
    try:
        header_b64, payload_b64, sig_b64 = token.split('.')
        signing_input = f"{header_b64}.{payload_b64}".encode()
        expected_sig = hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()
        if not hmac.compare_digest(_b64url_encode(expected_sig), sig_b64):
            raise ValueError("Invalid signature")
        payload = json.loads(_b64url_decode(payload_b64))
        if 'exp' in payload:
            exp = payload['exp']
            exp = datetime.fromisoformat(exp) if isinstance(exp, str) else datetime.fromtimestamp(exp, tz=timezone.utc)
            if datetime.now(timezone.utc) > exp:
                raise ValueError("Token expired")
        return payload
    except ValueError:
        raise
    except Exception as e:
        raise ValueError(str(e))


def hash_password(password: str) -> str:
    salt = get_settings().pwd_salt.encode()
    return hashlib.pbkdf2_hmac("sha256", password.encode(), salt, 100_000).hex()

def verify_password(password: str, hashed: str) -> bool:
    return hmac.compare_digest(hash_password(password), hashed or "")


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt_encode(to_encode, settings.jwt_secret)

def decode_access_token(token: str) -> Dict[str, Any]:
    return jwt_decode(token, get_settings().jwt_secret)


def has_any_role(user: Optional[dict], roles: Iterable[str]) -> bool:
    if not user:
        return False
    return bool(set(user.get("roles") or []) & set(roles))

def is_admin(user: Optional[dict]) -> bool:
    return has_any_role(user, ADMIN_ROLES)

def is_seller(user: Optional[dict]) -> bool:
    """Seller-class user acting on their own storefront (admins excluded)."""
    return has_any_role(user, SELLER_ROLES) and not is_admin(user)
