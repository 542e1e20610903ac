from typing import Optional
from uuid import uuid4

from fastapi import Request, Response

from rosterauth.authentication.sign_in_flow import SignInFlow

CLIENT_SESSION_COOKIE = "rosterauth_client"


def get_sign_in_flow(request: Request) -> SignInFlow:
    return request.app.state.sign_in_flow


def get_client_session_id(request: Request) -> Optional[str]:
    return request.cookies.get(CLIENT_SESSION_COOKIE)


def ensure_client_session_id(request: Request, response: Response) -> str:
    """The caller's client session id, minting one (and its cookie) if missing."""
    client_session_id = request.cookies.get(CLIENT_SESSION_COOKIE)
    if not client_session_id:
        client_session_id = uuid4().hex
        response.set_cookie(
            CLIENT_SESSION_COOKIE,
            client_session_id,
            httponly=True,
            samesite="lax",
            secure=request.url.scheme == "https",
        )
    return client_session_id
