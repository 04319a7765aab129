"""Request-scoped access to the gateway clients created at startup."""

from fastapi import Request

from app.gateway.push_client import PushClient
from app.gateway.token_manager import TokenManager


def get_token_manager(request: Request) -> TokenManager:
    return request.app.state.token_manager


def get_push_client(request: Request) -> PushClient:
    return request.app.state.push_client
