"""
Session Resolver - turns request credentials into an authenticated Identity
"""

from typing import Optional

from fastapi import Request
from supabase import AuthApiError, AuthRetryableError, AuthSessionMissingError, Client

from app.errors import AuthProviderError
from app.schema import Identity

from .base_service import BaseService


class SessionResolver(BaseService):
    """Reads the Supabase access token from the request and asks Supabase Auth who it is.

    "Not logged in" is a normal outcome and comes back as None. Only a
    failure to reach the auth provider raises (AuthProviderError, a 500).
    """

    def __init__(self, sb: Client, cookie_name: str = "sb-access-token"):
        super().__init__(name="session_resolver", sb=sb)
        self.cookie_name = cookie_name

    def extract_token(self, request: Request) -> Optional[str]:
        authorization = request.headers.get("authorization", "")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
        return request.cookies.get(self.cookie_name) or None

    def resolve(self, request: Request) -> Optional[Identity]:
        token = self.extract_token(request)
        if not token:
            return None
        return self.resolve_token(token)

    def resolve_token(self, token: str) -> Optional[Identity]:
        try:
            response = self.sb.auth.get_user(token)
        except AuthSessionMissingError:
            return None
        except AuthRetryableError as exc:
            self.logger.error("Auth provider unreachable: %s", exc)
            raise AuthProviderError(cause=exc) from exc
        except AuthApiError as exc:
            if (exc.status or 0) >= 500:
                self.logger.error("Auth provider failed (%s): %s", exc.status, exc)
                raise AuthProviderError(cause=exc) from exc
            self.logger.debug("Rejected session token: %s", exc)
            return None
        except Exception as exc:
            self.logger.error("Auth lookup failed: %s", exc, exc_info=True)
            raise AuthProviderError(cause=exc) from exc

        user = getattr(response, "user", None) if response is not None else None
        if user is None:
            return None
        return Identity(id=str(user.id), email=getattr(user, "email", None))
