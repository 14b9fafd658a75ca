from session_gateway.models.refresh_token import RefreshToken


__all__ = [
    "RefreshToken",
]
