from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response, status
from fastapi.responses import JSONResponse

from rosterauth.authentication.auth_models import (
    CallbackRequest,
    InitiateAuthResponse,
    SignInResult,
    SignInStatusResponse,
)
from rosterauth.authentication.sign_in_flow import SignInFlow
from rosterauth.main.exceptions import SessionInvalid
from rosterauth.server.dependencies.flow import (
    ensure_client_session_id,
    get_client_session_id,
    get_sign_in_flow,
)
from rosterauth.server.models import CancelResponse, SignInResponse

router = APIRouter()


def _sign_in_response(result: SignInResult) -> JSONResponse:
    body = SignInResponse(
        granted=result.granted,
        token=result.session.token if result.session else None,
        profile=result.profile,
        message=result.message,
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if result.granted else status.HTTP_403_FORBIDDEN,
        content=body.model_dump(mode="json"),
    )


def _bearer_token(authorization: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise SessionInvalid("Missing bearer token")
    return token.strip()


@router.post("/initiate", response_model=InitiateAuthResponse)
async def initiate_auth(
    request: Request,
    response: Response,
    login_hint: Optional[str] = None,
    flow: SignInFlow = Depends(get_sign_in_flow),
):
    """Start a sign-in and return the provider URL to send the browser to.

    Starting again replaces any sign-in still pending for this client.
    """
    client_session_id = ensure_client_session_id(request, response)
    return await flow.begin(client_session_id, login_hint=login_hint)


@router.get("/callback", response_model=SignInResponse)
async def auth_callback(
    request: Request,
    flow: SignInFlow = Depends(get_sign_in_flow),
):
    """Provider redirect carrying the response in the query string."""
    result = await flow.handle_redirect(
        dict(request.query_params),
        client_session_id=get_client_session_id(request),
    )
    return _sign_in_response(result)


@router.post("/callback", response_model=SignInResponse)
async def auth_callback_forwarded(
    callback: CallbackRequest,
    request: Request,
    flow: SignInFlow = Depends(get_sign_in_flow),
):
    """Redirect parameters forwarded by a client, for responses delivered in a URL fragment."""
    result = await flow.handle_redirect(
        callback.model_dump(exclude_none=True),
        client_session_id=get_client_session_id(request),
    )
    return _sign_in_response(result)


@router.post("/cancel", response_model=CancelResponse)
async def cancel_auth(
    request: Request,
    flow: SignInFlow = Depends(get_sign_in_flow),
):
    client_session_id = get_client_session_id(request)
    if not client_session_id:
        return CancelResponse(cancelled=False)
    return CancelResponse(cancelled=await flow.cancel(client_session_id))


@router.get("/status", response_model=SignInStatusResponse)
async def sign_in_status(
    request: Request,
    flow: SignInFlow = Depends(get_sign_in_flow),
):
    client_session_id = get_client_session_id(request)
    return SignInStatusResponse(status=flow.status(client_session_id or ""))


@router.post("/sign-out", status_code=status.HTTP_204_NO_CONTENT)
async def sign_out(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    flow: SignInFlow = Depends(get_sign_in_flow),
):
    await flow.sign_out(get_client_session_id(request) or "", _bearer_token(authorization))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
