"""
Demo web app for the server-side flow.
GET /, /auth/signin, /callback, /profile; POST /auth/signout. Flow state and sessions in Redis;
the browser only holds a session_id cookie. Port 8000.
"""
import html
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from server_oidc.backend import RedisBackend
from server_oidc.client import ServerSideUserManager
from server_oidc.config import BACKEND_TIMEOUT, REDIS_URL, OidcSettings
from server_oidc.errors import BackendError, OidcError, StateMismatchError, StateNotFoundError, TokenExchangeError

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session_id"


def _page(title: str, message: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
  <h1>{html.escape(title)}</h1>
  <p>{html.escape(message)}</p>
  <p><a href="/">Home</a></p>
</body>
</html>""",
        status_code=status_code,
    )


def _safe_return_url(value) -> str:
    """Only same-site relative paths; anything else goes home."""
    if isinstance(value, str) and value.startswith("/") and not value.startswith("//"):
        return value
    return "/"


def create_app(user_manager: ServerSideUserManager | None = None) -> FastAPI:
    """
    Build the app. Without a user_manager, one is created at startup on a Redis client from
    REDIS_URL and the client is closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.user_manager is not None:
            yield
            return
        backend = RedisBackend.from_url(REDIS_URL, timeout=BACKEND_TIMEOUT)
        um = ServerSideUserManager(backend, OidcSettings.from_env())
        app.state.user_manager = um
        try:
            yield
        finally:
            await um.client.aclose()
            await backend.client.aclose()

    app = FastAPI(title="Server-side OIDC", version="0.1.0", lifespan=lifespan)
    app.state.user_manager = user_manager

    def manager(request: Request) -> ServerSideUserManager:
        return request.app.state.user_manager

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "server_oidc"}

    @app.get("/", response_class=HTMLResponse)
    async def home(request: Request):
        """Home page; shows whether this browser has a stored session."""
        session_id = request.cookies.get(SESSION_COOKIE)
        signed_in = bool(session_id) and await manager(request).has_user_session(session_id)
        status = "Signed in" if signed_in else "Not signed in"
        return HTMLResponse(
            f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>OIDC Client</title></head>
<body>
  <h1>Server-side OIDC</h1>
  <p>Status: {status}</p>
  <p><a href="/auth/signin">Sign in</a></p>
  <p><a href="/profile">Profile</a></p>
</body>
</html>"""
        )

    @app.get("/auth/signin")
    async def signin(request: Request, returnUrl: str = "/"):
        """Persist flow state and redirect to the provider."""
        try:
            auth_request = await manager(request).create_signin_request(state={"returnUrl": _safe_return_url(returnUrl)})
        except (BackendError, TokenExchangeError) as e:
            logger.error("Sign-in initiation failed: %s", e)
            return _page("Error", "Authentication initialization failed.", status_code=502)
        return RedirectResponse(url=auth_request.url, status_code=302)

    @app.get("/callback", response_class=HTMLResponse)
    async def callback(request: Request):
        """Complete the flow, store the session and send the user back to returnUrl."""
        session_id = str(uuid.uuid4())
        try:
            record = await manager(request).signin_callback(str(request.url), session_id=session_id)
        except StateNotFoundError:
            return _page("Error", "Invalid or expired state. Please try logging in again.", status_code=400)
        except StateMismatchError:
            logger.warning("Possible CSRF/replay on callback from %s", request.client.host if request.client else None)
            return _page("Error", "Authorization state could not be validated.", status_code=400)
        except TokenExchangeError as e:
            return _page("Login error", e.error_description or e.error, status_code=400)
        except BackendError as e:
            logger.error("Callback failed on backend: %s", e)
            return _page("Error", "Session storage unavailable.", status_code=503)

        state = record.state if isinstance(record.state, dict) else {}
        response = RedirectResponse(url=_safe_return_url(state.get("returnUrl")), status_code=302)
        response.set_cookie(SESSION_COOKIE, session_id, httponly=True, samesite="lax")
        return response

    @app.get("/profile")
    async def profile(request: Request):
        """Stored profile for this browser's session."""
        session_id = request.cookies.get(SESSION_COOKIE)
        record = await manager(request).get_user_session(session_id) if session_id else None
        if record is None:
            return JSONResponse({"error": "not_authenticated"}, status_code=401)
        return {
            "profile": record.profile,
            "scope": record.scope,
            "expires_at": record.expires_at,
            "expired": record.expired,
        }

    @app.post("/auth/signout")
    async def signout(request: Request):
        """Drop the session; returns the provider logout URL when one is advertised."""
        session_id = request.cookies.get(SESSION_COOKIE)
        um = manager(request)
        signout_url = None
        if session_id:
            try:
                signout_url = await um.create_signout_url(session_id)
            except OidcError as e:
                logger.debug("No provider sign-out URL: %s", e)
            await um.remove_user_session(session_id)
        response = JSONResponse({"message": "Signed out", "signout_url": signout_url})
        response.delete_cookie(SESSION_COOKIE)
        return response

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "server_oidc.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
