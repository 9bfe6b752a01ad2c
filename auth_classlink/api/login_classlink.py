"""ClassLink password login endpoint.

POST /login/classlink runs the configured login flow's page hook for the
submitted form and reports whether the host should continue its normal
login and, when the flow resolved one, which account to log in.
"""

from typing import Callable, ContextManager

from flask import Blueprint, Request, jsonify, request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth_classlink.helpers.auth_db import get_session
from auth_classlink.helpers.credential_exchange import TokenClient
from auth_classlink.helpers.error_response import login_error_response
from auth_classlink.helpers.events import EventSink
from auth_classlink.helpers.loginflow import LoginForm, get_loginflow
from auth_classlink.helpers.settings import load_settings


def form_from_request(req: Request) -> LoginForm | None:
    """Return the posted login form, or None when nothing was submitted."""
    if "username" not in req.form:
        return None
    return LoginForm(
        username=req.form.get("username", ""),
        password=req.form.get("password", ""),
        remote_addr=req.remote_addr or "",
        user_agent=req.headers.get("User-Agent", ""),
    )


def create_login_blueprint(
    session_factory: Callable[[], ContextManager[Session]] = get_session,
    *,
    client: TokenClient | None = None,
    events: EventSink | None = None,
) -> Blueprint:
    bp = Blueprint("login_classlink", __name__)

    @bp.post("/login/classlink")
    def login_classlink():
        form = form_from_request(request)
        try:
            with session_factory() as db:
                settings = load_settings(db)
                flow = get_loginflow(db, settings, client=client, events=events)
                result = flow.loginpage_hook(form)
                user = result.user
                payload = {
                    "continue": result.continue_flow,
                    "user_id": user.id if user is not None else None,
                    "username": user.username if user is not None else None,
                }
        except (SQLAlchemyError, ValueError) as e:
            return login_error_response(e, context="login_classlink")

        return jsonify(payload), 200 if result.continue_flow else 401

    return bp
