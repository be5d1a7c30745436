from pydantic import BaseModel
from typing import Any, Dict, Optional


class RegisterBeginRequest(BaseModel):
    passkey_name: str
    user_name: Optional[str] = None


class LoginBeginRequest(BaseModel):
    redirect_origin: Optional[str] = None
    redirect_path: Optional[str] = None


class CeremonyCompleteRequest(BaseModel):
    challenge_id: str
    credential: Dict[str, Any]


class BeginResponse(BaseModel):
    challenge_id: str
    options: Dict[str, Any]


class LoginCompleteResponse(BaseModel):
    success: bool
    user_name: Optional[str] = None
    redirect_url: Optional[str] = None


class RedirectStartRequest(BaseModel):
    redirect_origin: str
    redirect_path: Optional[str] = None


class RenameRequest(BaseModel):
    name: str


class PasskeyInfo(BaseModel):
    id: int
    name: str
    created: str
    last_used: Optional[str] = None


class AuthStatus(BaseModel):
    setup_complete: bool
    authenticated: bool
    user_name: Optional[str] = None
    canonical_origin: str
