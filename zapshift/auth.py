from fastapi import Header, Request
from jose import JWTError, jwt

from zapshift.errors import Unauthorized


def verify_token(request: Request, authorization: str | None = Header(None)) -> str:
    """Return the caller's email from a bearer JWT signed with JWT_SECRET."""
    if not authorization:
        raise Unauthorized("Invalid or missing token")
    try:
        scheme, token = authorization.split()
    except ValueError:
        raise Unauthorized("Invalid or missing token")
    if scheme.lower() != "bearer":
        raise Unauthorized("Invalid or missing token")

    secret = request.app.state.settings.jwt_secret
    if not secret:
        raise Unauthorized("Token verification is not configured")
    try:
        claims = jwt.decode(token, secret, algorithms=["HS256"])
    except JWTError:
        raise Unauthorized("Invalid or missing token")

    email = claims.get("email")
    if not email:
        raise Unauthorized("Token carries no email")
    return email.lower()
