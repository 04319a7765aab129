from app.gateway.errors import ConfigError, GatewayError, MpesaError, NetworkError, ValidationError
from app.gateway.push_client import PushClient, PushResult
from app.gateway.request_builder import PushPayload, build_push_payload, normalize_msisdn
from app.gateway.token_manager import TokenLease, TokenManager

__all__ = [
    "MpesaError",
    "ConfigError",
    "ValidationError",
    "NetworkError",
    "GatewayError",
    "PushClient",
    "PushResult",
    "PushPayload",
    "build_push_payload",
    "normalize_msisdn",
    "TokenLease",
    "TokenManager",
]
