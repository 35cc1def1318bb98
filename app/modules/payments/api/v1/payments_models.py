from typing import Optional

from pydantic import BaseModel


class ConnectUrlResponse(BaseModel):
    authorization_url: str


class ConnectionStatusResponse(BaseModel):
    connected: bool


class TokenRefreshResponse(BaseModel):
    refreshed: bool


class CheckoutResponse(BaseModel):
    checkout_url: str
    external_reference: str
    preference_id: str


class WebhookAck(BaseModel):
    received: bool = True
    ignored: bool = False
    duplicate: bool = False
    reason: Optional[str] = None
