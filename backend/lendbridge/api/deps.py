import jwt
from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from lendbridge.core.errors import AdminOnly, Unauthorized, ValidationFailed
from lendbridge.core.security import decode_token, partner_key_matches
from lendbridge.services.container import Services

bearer = HTTPBearer(auto_error=False)

def services(request: Request) -> Services:
    return request.app.state.services

def current_user(creds: HTTPAuthorizationCredentials | None = Depends(bearer), sv: Services = Depends(services)) -> dict:
    if creds is None:
        raise Unauthorized("missing bearer token")
    try:
        u = decode_token(creds.credentials, sv.settings.jwt_secret, sv.settings.jwt_alg)
    except jwt.PyJWTError:
        raise Unauthorized("invalid token")
    if not u.get("sub"):
        raise Unauthorized("token has no subject")
    return u

def require_admin(u: dict = Depends(current_user)) -> dict:
    if u.get("role") != "admin":
        raise AdminOnly("admin role required", role=u.get("role"))
    return u

def require_wallet(u: dict = Depends(current_user)) -> dict:
    if not u.get("wallet"):
        raise ValidationFailed("no wallet linked to this account", user_id=u.get("sub"))
    return u

def require_partner(x_api_key: str | None = Header(default=None), sv: Services = Depends(services)) -> str:
    if not partner_key_matches(x_api_key, sv.settings.partner_api_key):
        raise Unauthorized("invalid partner credentials")
    return "partner"
