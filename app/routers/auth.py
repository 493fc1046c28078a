from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field

from app.core.security import create_session_token
from app.deps import SESSION_COOKIE_NAME, get_current_account, get_services
from app.models.account import Account, DeviceInfo
from app.services.container import Services
from app.services.payouts import EMAIL_RE
from app.services.users import session_payload_for_account

router = APIRouter()


class RegisterRequest(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    email: str = Field(pattern=EMAIL_RE.pattern, max_length=254)
    password: str
    paypal_email: str | None = Field(default=None, pattern=EMAIL_RE.pattern, max_length=254)
    country: str | None = Field(default=None, min_length=2, max_length=2)
    device_info: DeviceInfo | None = None


class LoginRequest(BaseModel):
    email: str = Field(pattern=EMAIL_RE.pattern, max_length=254)
    password: str
    device_info: DeviceInfo | None = None


class ProfileUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=50)
    paypal_email: str | None = Field(default=None, pattern=EMAIL_RE.pattern, max_length=254)
    device_info: DeviceInfo | None = None


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


def client_country(request: Request, country: str | None = None) -> str:
    """Body value, else the CDN country header, else unknown."""
    return (country or request.headers.get("CF-IPCountry") or "XX").upper()[:2]


def _issue_session(response: Response, account: Account, services: Services) -> str:
    token = create_session_token(session_payload_for_account(account))
    max_age = services.settings.session_max_age_seconds
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        max_age=max_age,
        httponly=True,
        secure=services.settings.env == "production",
        samesite="lax",
        path="/",
    )
    return token


@router.post("/register", status_code=201)
async def auth_register(
    body: RegisterRequest,
    request: Request,
    response: Response,
    services: Services = Depends(get_services),
):
    """Create an account with a zero balance and sign it in."""
    account = await services.accounts.register(
        name=body.name,
        email=body.email,
        password=body.password,
        paypal_email=body.paypal_email,
        country=client_country(request, body.country),
        ip_address=request.client.host if request.client else None,
        device_info=body.device_info,
    )
    token = _issue_session(response, account, services)
    return {"user": account.public_dict(), "token": token}


@router.post("/login")
async def auth_login(body: LoginRequest, response: Response, services: Services = Depends(get_services)):
    account = await services.accounts.authenticate(body.email, body.password, body.device_info)
    token = _issue_session(response, account, services)
    return {"user": account.public_dict(), "token": token}


@router.get("/profile")
async def auth_profile(account: Account = Depends(get_current_account)):
    return {"user": account.public_dict()}


@router.put("/profile")
async def auth_update_profile(
    body: ProfileUpdateRequest,
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    account = await services.accounts.update_profile(account.id, fields)
    return {"user": account.public_dict()}


@router.put("/change-password")
async def auth_change_password(
    body: ChangePasswordRequest,
    response: Response,
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    """Change password; other sessions are signed out, this one gets a fresh token."""
    account = await services.accounts.change_password(account.id, body.current_password, body.new_password)
    token = _issue_session(response, account, services)
    return {"message": "Password changed successfully", "token": token}


@router.post("/logout")
async def auth_logout(
    response: Response,
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    await services.accounts.logout(account.id)
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return {"message": "Logged out successfully"}
