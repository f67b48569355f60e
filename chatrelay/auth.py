from fastapi import Header, Query, Request, WebSocket

from .errors import unauthorized
from .settings import Settings, settings as default_settings


def _settings_for(app) -> Settings:
    return getattr(app.state, "settings", None) or default_settings


def api_key_is_valid(app_settings: Settings, api_key: str | None) -> bool:
    """
    Development mode and an empty key list both leave the API open;
    otherwise the supplied key must match one of VALID_API_KEYS.
    """
    if app_settings.is_development:
        return True
    valid_keys = app_settings.get_valid_api_keys()
    if not valid_keys:
        return True
    return bool(api_key) and api_key.strip() in valid_keys


async def require_api_key(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    api_key_param: str | None = Query(default=None, alias="apiKey"),
) -> str | None:
    """
    Simple API key guard.

    Accepts `X-API-Key: <key>` or the `apiKey` query parameter.
    """
    app_settings = _settings_for(request.app)
    api_key = x_api_key or api_key_param
    if not api_key_is_valid(app_settings, api_key):
        raise unauthorized(
            "Invalid API key" if api_key else "Missing X-API-Key header or apiKey parameter"
        )
    return api_key


def websocket_api_key_is_valid(websocket: WebSocket) -> bool:
    app_settings = _settings_for(websocket.app)
    api_key = websocket.query_params.get("apiKey") or websocket.headers.get("x-api-key")
    return api_key_is_valid(app_settings, api_key)


__all__ = ["api_key_is_valid", "require_api_key", "websocket_api_key_is_valid"]
