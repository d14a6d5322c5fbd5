"""Mock cmswww API server for dataload tests.

Implements the subset of the cmswww v1 API the dataload workflow uses:
- version (hands out the CSRF token)
- login / logout (cookie session)
- new identity / verify identity
- invite / resend invite / register
- user details / edit user
- invoice submit / set status
- password reset / change
- delete all data

plus a `/_mock/dbutil` backdoor that the fake DB utility script calls to
create the admin account or wipe everything, standing in for direct DB
access by the real utility.

State is kept in module-level dicts; call reset_mock_state() between tests.
"""
from __future__ import annotations

import base64
import hashlib
import secrets
from typing import Any, Dict, List, Optional

from flask import Flask, jsonify, request

from cms_dataload.identity import verify_signature

CSRF_HEADER = "X-Csrf-Token"
SESSION_COOKIE = "cmswww"

INVOICE_STATUS_NOT_REVIEWED = 2
INVOICE_STATUS_REJECTED = 3
INVOICE_STATUS_APPROVED = 4

# error codes loosely follow cmswww's ErrorStatus values
ERROR_INVALID_CREDENTIALS = 1
ERROR_INVALID_INPUT = 2
ERROR_NOT_LOGGED_IN = 3
ERROR_INVALID_TOKEN = 4
ERROR_USER_NOT_FOUND = 5
ERROR_INVALID_SIGNATURE = 6
ERROR_INVOICE_NOT_FOUND = 7
ERROR_INVALID_STATUS_TRANSITION = 8
ERROR_FORBIDDEN = 9
ERROR_CSRF = 10

# Mock data storage
USERS: Dict[str, Dict[str, Any]] = {}  # email -> user record
SESSIONS: Dict[str, str] = {}  # session id -> email
INVITES: Dict[str, str] = {}  # email -> verification token
RESETS: Dict[str, str] = {}  # email -> reset token
INVOICES: Dict[str, Dict[str, Any]] = {}  # censorship token -> invoice record
CSRF_TOKENS: set = set()
REQUEST_LOG: List[str] = []  # "METHOD path" for every request
COUNTERS: Dict[str, int] = {"login": 0, "logout": 0}
# HTTP status for a wrong email or password; politeiawww-style servers use 400
BEHAVIOUR: Dict[str, int] = {"bad_login_status": 401}

_next_user_id = [1]


def reset_mock_state() -> None:
    USERS.clear()
    SESSIONS.clear()
    INVITES.clear()
    RESETS.clear()
    INVOICES.clear()
    CSRF_TOKENS.clear()
    REQUEST_LOG.clear()
    COUNTERS["login"] = 0
    COUNTERS["logout"] = 0
    BEHAVIOUR["bad_login_status"] = 401
    _next_user_id[0] = 1


def add_user(email: str, username: str, password: str, is_admin: bool = False,
             name: str = "", location: str = "", extended_public_key: str = "") -> Dict[str, Any]:
    user = {
        "id": str(_next_user_id[0]),
        "email": email,
        "username": username,
        "password": password,
        "isadmin": is_admin,
        "name": name,
        "location": location,
        "extendedpublickey": extended_public_key,
        "identities": [],
        "pending_identity": None,
    }
    _next_user_id[0] += 1
    USERS[email] = user
    return user


def _error(status: int, code: int, *context: str):
    return jsonify({"errorcode": code, "errorcontext": list(context)}), status


def _current_user() -> Optional[Dict[str, Any]]:
    sid = request.cookies.get(SESSION_COOKIE)
    email = SESSIONS.get(sid) if sid else None
    return USERS.get(email) if email else None


def _find_user_by_id(user_id: str) -> Optional[Dict[str, Any]]:
    for user in USERS.values():
        if user["id"] == user_id:
            return user
    return None


def _public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {key: user[key] for key in
            ("id", "email", "username", "isadmin", "name", "location", "extendedpublickey")}


def create_mock_api_app() -> Flask:
    """Create and configure the mock cmswww Flask app."""
    app = Flask(__name__)
    app.config['TESTING'] = True

    @app.before_request
    def _check_csrf():
        REQUEST_LOG.append(f"{request.method} {request.path}")
        if request.method == "POST" and not request.path.startswith("/_mock/"):
            if request.headers.get(CSRF_HEADER) not in CSRF_TOKENS:
                return _error(403, ERROR_CSRF, "missing or invalid CSRF token")
        return None

    def _require_user(admin: bool = False):
        user = _current_user()
        if user is None:
            return None, _error(401, ERROR_NOT_LOGGED_IN, "not logged in")
        if admin and not user["isadmin"]:
            return None, _error(403, ERROR_FORBIDDEN, "admin only")
        return user, None

    @app.route('/', methods=['GET'])
    def version():
        token = secrets.token_hex(16)
        CSRF_TOKENS.add(token)
        response = jsonify({"version": 1, "route": "/v1", "pubkey": "00" * 32})
        response.headers[CSRF_HEADER] = token
        return response

    @app.route('/api/v1/login', methods=['POST'])
    def login():
        data = request.get_json() or {}
        user = USERS.get(data.get("email", ""))
        if user is None or user["password"] != data.get("password"):
            return _error(BEHAVIOUR["bad_login_status"], ERROR_INVALID_CREDENTIALS,
                          "invalid email or password")
        sid = secrets.token_hex(16)
        SESSIONS[sid] = user["email"]
        COUNTERS["login"] += 1
        response = jsonify({
            "userid": user["id"],
            "email": user["email"],
            "username": user["username"],
            "isadmin": user["isadmin"],
        })
        response.set_cookie(SESSION_COOKIE, sid)
        return response

    @app.route('/api/v1/logout', methods=['POST'])
    def logout():
        sid = request.cookies.get(SESSION_COOKIE)
        if not sid or sid not in SESSIONS:
            return _error(401, ERROR_NOT_LOGGED_IN, "not logged in")
        del SESSIONS[sid]
        COUNTERS["logout"] += 1
        response = jsonify({})
        response.delete_cookie(SESSION_COOKIE)
        return response

    @app.route('/api/v1/user/identity', methods=['POST'])
    def new_identity():
        user, error = _require_user()
        if error:
            return error
        public_key = (request.get_json() or {}).get("publickey", "")
        if len(public_key) != 64:
            return _error(400, ERROR_INVALID_INPUT, "invalid public key")
        token = secrets.token_hex(16)
        user["pending_identity"] = (public_key, token)
        return jsonify({"verificationtoken": token})

    @app.route('/api/v1/user/identity/verify', methods=['POST'])
    def verify_identity():
        user, error = _require_user()
        if error:
            return error
        data = request.get_json() or {}
        pending = user["pending_identity"]
        if pending is None or pending[1] != data.get("verificationtoken"):
            return _error(400, ERROR_INVALID_TOKEN, "invalid verification token")
        public_key, token = pending
        if not verify_signature(public_key, token, data.get("signature", "")):
            return _error(400, ERROR_INVALID_SIGNATURE, "invalid signature")
        user["identities"].append(public_key)
        user["pending_identity"] = None
        return jsonify({})

    @app.route('/api/v1/invite', methods=['POST'])
    def invite():
        _, error = _require_user(admin=True)
        if error:
            return error
        email = (request.get_json() or {}).get("email", "")
        if not email or email in USERS:
            return _error(400, ERROR_INVALID_INPUT, "email unavailable")
        INVITES[email] = secrets.token_hex(16)
        return jsonify({"verificationtoken": INVITES[email]})

    @app.route('/api/v1/user/invite/resend', methods=['POST'])
    def resend_invite():
        _, error = _require_user(admin=True)
        if error:
            return error
        email = (request.get_json() or {}).get("email", "")
        if email not in INVITES:
            return _error(404, ERROR_USER_NOT_FOUND, "no pending invite")
        INVITES[email] = secrets.token_hex(16)
        return jsonify({"verificationtoken": INVITES[email]})

    @app.route('/api/v1/register', methods=['POST'])
    def register():
        data = request.get_json() or {}
        email = data.get("email", "")
        token = data.get("verificationtoken", "")
        if INVITES.get(email) != token or not token:
            return _error(400, ERROR_INVALID_TOKEN, "invalid verification token")
        if not verify_signature(data.get("publickey", ""), token, data.get("signature", "")):
            return _error(400, ERROR_INVALID_SIGNATURE, "invalid signature")
        user = add_user(
            email, data.get("username", ""), data.get("password", ""),
            name=data.get("name", ""), location=data.get("location", ""),
            extended_public_key=data.get("extendedpublickey", ""),
        )
        user["identities"].append(data["publickey"])
        del INVITES[email]
        return jsonify({})

    @app.route('/api/v1/user', methods=['GET'])
    def user_details():
        current, error = _require_user()
        if error:
            return error
        user = _find_user_by_id(request.args.get("userid", ""))
        if user is None:
            return _error(404, ERROR_USER_NOT_FOUND, "user not found")
        if user is not current and not current["isadmin"]:
            return _error(403, ERROR_FORBIDDEN, "not your user")
        return jsonify({"user": _public_user(user)})

    @app.route('/api/v1/user/edit', methods=['POST'])
    def edit_user():
        user, error = _require_user()
        if error:
            return error
        data = request.get_json() or {}
        for key in ("name", "location", "extendedpublickey"):
            if key in data:
                user[key] = data[key]
        return jsonify({})

    @app.route('/api/v1/user/password/reset', methods=['POST'])
    def reset_password():
        data = request.get_json() or {}
        email = data.get("email", "")
        user = USERS.get(email)
        if user is None:
            return _error(404, ERROR_USER_NOT_FOUND, "user not found")
        if "verificationtoken" not in data:
            RESETS[email] = secrets.token_hex(16)
            return jsonify({"verificationtoken": RESETS[email]})
        if RESETS.get(email) != data["verificationtoken"]:
            return _error(400, ERROR_INVALID_TOKEN, "invalid verification token")
        user["password"] = data.get("newpassword", "")
        del RESETS[email]
        return jsonify({})

    @app.route('/api/v1/user/password/change', methods=['POST'])
    def change_password():
        user, error = _require_user()
        if error:
            return error
        data = request.get_json() or {}
        if data.get("currentpassword") != user["password"]:
            return _error(401, ERROR_INVALID_CREDENTIALS, "invalid current password")
        user["password"] = data.get("newpassword", "")
        return jsonify({})

    @app.route('/api/v1/invoice/submit', methods=['POST'])
    def submit_invoice():
        user, error = _require_user()
        if error:
            return error
        data = request.get_json() or {}
        file = data.get("file") or {}
        try:
            content = base64.b64decode(file.get("payload", ""), validate=True)
        except ValueError:
            return _error(400, ERROR_INVALID_INPUT, "invalid payload")
        digest = hashlib.sha256(content).hexdigest()
        if digest != file.get("digest"):
            return _error(400, ERROR_INVALID_INPUT, "digest mismatch")
        public_key = data.get("publickey", "")
        if public_key not in user["identities"]:
            return _error(400, ERROR_INVALID_SIGNATURE, "unknown public key")
        if not verify_signature(public_key, digest, data.get("signature", "")):
            return _error(400, ERROR_INVALID_SIGNATURE, "invalid signature")

        token = secrets.token_hex(32)
        INVOICES[token] = {
            "token": token,
            "userid": user["id"],
            "month": data.get("month"),
            "year": data.get("year"),
            "name": file.get("name"),
            "content": content.decode("utf-8"),
            "status": INVOICE_STATUS_NOT_REVIEWED,
            "reason": "",
        }
        return jsonify({"censorshiprecord": {"token": token, "merkle": digest, "signature": ""}})

    @app.route('/api/v1/invoice/setstatus', methods=['POST'])
    def set_invoice_status():
        admin, error = _require_user(admin=True)
        if error:
            return error
        data = request.get_json() or {}
        invoice = INVOICES.get(data.get("token", ""))
        if invoice is None:
            return _error(404, ERROR_INVOICE_NOT_FOUND, "invoice not found")
        status = data.get("status")
        if status not in (INVOICE_STATUS_APPROVED, INVOICE_STATUS_REJECTED):
            return _error(400, ERROR_INVALID_INPUT, "invalid status")
        if invoice["status"] != INVOICE_STATUS_NOT_REVIEWED:
            return _error(400, ERROR_INVALID_STATUS_TRANSITION, "invoice already reviewed")
        public_key = data.get("publickey", "")
        message = f"{invoice['token']}{status}{data.get('reason', '')}"
        if public_key not in admin["identities"] or not verify_signature(
                public_key, message, data.get("signature", "")):
            return _error(400, ERROR_INVALID_SIGNATURE, "invalid signature")
        invoice["status"] = status
        invoice["reason"] = data.get("reason", "")
        return jsonify({"invoice": {"token": invoice["token"], "status": status}})

    @app.route('/api/v1/admin/data/delete', methods=['POST'])
    def delete_all_data():
        admin, error = _require_user(admin=True)
        if error:
            return error
        for email in [e for e in USERS if e != admin["email"]]:
            del USERS[email]
        INVITES.clear()
        RESETS.clear()
        INVOICES.clear()
        return jsonify({})

    @app.route('/_mock/dbutil', methods=['POST'])
    def dbutil():
        args = (request.get_json() or {}).get("args", [])
        if args[:1] == ["-createadmin"] and len(args) == 4:
            _, email, username, password = args
            if email in USERS:
                return _error(400, ERROR_INVALID_INPUT, "user already exists")
            add_user(email, username, password, is_admin=True)
            return jsonify({})
        if args == ["-deletealldata"]:
            USERS.clear()
            SESSIONS.clear()
            INVITES.clear()
            RESETS.clear()
            INVOICES.clear()
            return jsonify({})
        return _error(400, ERROR_INVALID_INPUT, f"unsupported arguments: {args}")

    return app
