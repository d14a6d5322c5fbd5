"""
cmswww API Client
Handles one authenticated role at a time against the cmswww JSON API
"""
import base64
import hashlib
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

import requests

from .datagen import InvoiceFile
from .errors import APIError, DataloadError, NotAuthenticatedError, SessionError
from .identity import Identity, identity_path

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
CSRF_HEADER = "X-Csrf-Token"

ROUTE_VERSION = "/"
ROUTE_LOGIN = "/login"
ROUTE_LOGOUT = "/logout"
ROUTE_NEW_IDENTITY = "/user/identity"
ROUTE_VERIFY_IDENTITY = "/user/identity/verify"
ROUTE_INVITE = "/invite"
ROUTE_RESEND_INVITE = "/user/invite/resend"
ROUTE_REGISTER = "/register"
ROUTE_USER_DETAILS = "/user"
ROUTE_EDIT_USER = "/user/edit"
ROUTE_SUBMIT_INVOICE = "/invoice/submit"
ROUTE_SET_INVOICE_STATUS = "/invoice/setstatus"
ROUTE_RESET_PASSWORD = "/user/password/reset"
ROUTE_CHANGE_PASSWORD = "/user/password/change"
ROUTE_DELETE_ALL_DATA = "/admin/data/delete"

INVOICE_STATUS_REJECTED = 3
INVOICE_STATUS_APPROVED = 4

INVOICE_MIME = "text/plain; charset=utf-8"


@dataclass(frozen=True)
class Session:
    """The role currently logged in."""
    user_id: str
    email: str
    username: str
    is_admin: bool = False

    @classmethod
    def from_reply(cls, reply: Dict[str, Any]) -> "Session":
        return cls(
            user_id=str(reply.get("userid", "")),
            email=reply.get("email", ""),
            username=reply.get("username", ""),
            is_admin=bool(reply.get("isadmin", False)),
        )


@dataclass(frozen=True)
class UserDetails:
    user_id: str
    email: str
    username: str
    name: str
    location: str
    extended_public_key: str
    is_admin: bool = False

    @classmethod
    def from_reply(cls, reply: Dict[str, Any]) -> "UserDetails":
        user = reply.get("user", reply)
        return cls(
            user_id=str(user.get("id", "")),
            email=user.get("email", ""),
            username=user.get("username", ""),
            name=user.get("name", ""),
            location=user.get("location", ""),
            extended_public_key=user.get("extendedpublickey", ""),
            is_admin=bool(user.get("isadmin", False)),
        )

    def profile(self) -> Dict[str, str]:
        """The fields editable through edit_user."""
        return {
            "name": self.name,
            "location": self.location,
            "extended_public_key": self.extended_public_key,
        }


class SessionClient:
    """Client for the cmswww API, holding at most one logged in session.

    Role switches are explicit: logout() must be called before the next
    login(). session() wraps the pair and always logs out.
    """

    def __init__(self, base_url: str, home_dir: Optional[str] = None,
                 timeout: float = 30, verify_tls: bool = True):
        self.base_url = base_url.rstrip("/")
        self.home_dir = home_dir
        self.timeout = timeout
        self.http = requests.Session()
        self.http.verify = verify_tls
        self.csrf_token: Optional[str] = None
        self.server_public_key: Optional[str] = None
        self.active_session: Optional[Session] = None
        self.identities: Dict[str, Identity] = {}

    def _url(self, route: str) -> str:
        if route == ROUTE_VERSION:
            return f"{self.base_url}/"
        return f"{self.base_url}{API_PREFIX}{route}"

    def _make_request(self, method: str, route: str,
                      payload: Optional[Dict[str, Any]] = None,
                      params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Make one request and return the decoded JSON reply"""
        if method != "GET" and self.csrf_token is None:
            self.version()

        headers = {}
        if self.csrf_token:
            headers[CSRF_HEADER] = self.csrf_token

        try:
            response = self.http.request(
                method,
                self._url(route),
                json=payload,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Request to {route} failed: {e}")
            raise APIError(f"Request to {route} failed: {e}", route=route) from e

        token = response.headers.get(CSRF_HEADER)
        if token:
            self.csrf_token = token

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {"errorcontext": response.text[:200]}
        if not isinstance(body, dict):
            body = {"data": body}

        if not response.ok:
            raise APIError.from_reply(route, response.status_code, body)
        return body

    def _require_session(self, operation: str) -> Session:
        if self.active_session is None:
            raise NotAuthenticatedError(operation)
        return self.active_session

    def _identity_for(self, email: str) -> Identity:
        identity = self.identities.get(email)
        if identity is None and self.home_dir:
            path = identity_path(self.home_dir, email)
            if os.path.exists(path):
                identity = Identity.load(path)
                self.identities[email] = identity
        if identity is None:
            raise DataloadError(f"No identity available for {email}; create one first")
        return identity

    def _remember_identity(self, email: str, identity: Identity) -> None:
        self.identities[email] = identity
        if self.home_dir:
            identity.save(identity_path(self.home_dir, email))

    # ---- session -----------------------------------------------------------
    def version(self) -> Dict[str, Any]:
        """Fetch the API version; also primes the CSRF token"""
        reply = self._make_request("GET", ROUTE_VERSION)
        self.server_public_key = reply.get("pubkey")
        if self.csrf_token is None:
            logger.warning("cmswww version reply carried no CSRF token")
        return reply

    def login(self, email: str, password: str) -> Session:
        if self.active_session is not None:
            raise SessionError(
                f"Already logged in as {self.active_session.email}; log out first"
            )
        reply = self._make_request("POST", ROUTE_LOGIN,
                                   {"email": email, "password": password})
        self.active_session = Session.from_reply(reply)
        if not self.active_session.email:
            self.active_session = Session(
                user_id=self.active_session.user_id,
                email=email,
                username=self.active_session.username,
                is_admin=self.active_session.is_admin,
            )
        logger.info(f"Logged in as {email}")
        return self.active_session

    def logout(self) -> None:
        current = self._require_session("logout")
        try:
            self._make_request("POST", ROUTE_LOGOUT, {})
            logger.info(f"Logged out {current.email}")
        finally:
            self.active_session = None

    @contextmanager
    def session(self, email: str, password: str) -> Iterator[Session]:
        """Log in, yield the session, and log out on the way out.

        A logout failure while another error is propagating is logged and
        dropped so the original error reaches the caller.
        """
        active = self.login(email, password)
        try:
            yield active
        except BaseException:
            if self.active_session is not None:
                try:
                    self.logout()
                except DataloadError as e:
                    logger.warning(f"Logout of {email} after failure did not complete: {e}")
            raise
        if self.active_session is not None:
            self.logout()

    # ---- identities ---------------------------------------------------------
    def new_identity(self, identity: Identity) -> str:
        """Register a public key; returns the verification token"""
        self._require_session("new identity")
        reply = self._make_request("POST", ROUTE_NEW_IDENTITY,
                                   {"publickey": identity.public_key_hex})
        return reply.get("verificationtoken", "")

    def verify_identity(self, identity: Identity, token: str) -> None:
        self._require_session("verify identity")
        self._make_request("POST", ROUTE_VERIFY_IDENTITY, {
            "verificationtoken": token,
            "signature": identity.sign(token),
        })

    def create_identity(self) -> Identity:
        """Generate, register and verify a new identity for the session user"""
        current = self._require_session("create identity")
        identity = Identity.generate()
        token = self.new_identity(identity)
        self.verify_identity(identity, token)
        self._remember_identity(current.email, identity)
        logger.info(f"Created identity {identity.public_key_hex[:16]}... for {current.email}")
        return identity

    # ---- users --------------------------------------------------------------
    def invite_user(self, email: str) -> str:
        self._require_session("invite user")
        reply = self._make_request("POST", ROUTE_INVITE, {"email": email})
        return reply.get("verificationtoken", "")

    def resend_invite(self, email: str) -> str:
        self._require_session("resend invite")
        reply = self._make_request("POST", ROUTE_RESEND_INVITE, {"email": email})
        return reply.get("verificationtoken", "")

    def register_user(self, email: str, username: str, password: str, name: str,
                      location: str, extended_public_key: str, token: str) -> Identity:
        """Complete an invite; no session is needed"""
        identity = Identity.generate()
        self._make_request("POST", ROUTE_REGISTER, {
            "email": email,
            "username": username,
            "password": password,
            "name": name,
            "location": location,
            "extendedpublickey": extended_public_key,
            "verificationtoken": token,
            "publickey": identity.public_key_hex,
            "signature": identity.sign(token),
        })
        self._remember_identity(email, identity)
        logger.info(f"Registered {username} <{email}>")
        return identity

    def user_details(self, user_id: str) -> UserDetails:
        self._require_session("user details")
        reply = self._make_request("GET", ROUTE_USER_DETAILS, params={"userid": user_id})
        return UserDetails.from_reply(reply)

    def edit_user(self, name: str, location: str, extended_public_key: str) -> None:
        self._require_session("edit user")
        self._make_request("POST", ROUTE_EDIT_USER, {
            "name": name,
            "location": location,
            "extendedpublickey": extended_public_key,
        })

    def reset_password(self, email: str, new_password: str) -> None:
        """Request a reset token and use it to set ``new_password``"""
        reply = self._make_request("POST", ROUTE_RESET_PASSWORD, {"email": email})
        token = reply.get("verificationtoken", "")
        self._make_request("POST", ROUTE_RESET_PASSWORD, {
            "email": email,
            "verificationtoken": token,
            "newpassword": new_password,
        })
        logger.info(f"Reset password for {email}")

    def change_password(self, current_password: str, new_password: str) -> None:
        self._require_session("change password")
        self._make_request("POST", ROUTE_CHANGE_PASSWORD, {
            "currentpassword": current_password,
            "newpassword": new_password,
        })

    # ---- invoices -----------------------------------------------------------
    def submit_invoice(self, invoice: InvoiceFile, identity: Optional[Identity] = None) -> str:
        """Submit an invoice file; returns its censorship token"""
        current = self._require_session("submit invoice")
        identity = identity or self._identity_for(current.email)

        with open(invoice.path, "rb") as handle:
            content = handle.read()
        digest = hashlib.sha256(content).hexdigest()
        reply = self._make_request("POST", ROUTE_SUBMIT_INVOICE, {
            "month": invoice.month,
            "year": invoice.year,
            "file": {
                "name": os.path.basename(invoice.path),
                "mime": INVOICE_MIME,
                "digest": digest,
                "payload": base64.b64encode(content).decode("ascii"),
            },
            "publickey": identity.public_key_hex,
            "signature": identity.sign(digest),
        })
        token = reply.get("censorshiprecord", {}).get("token", "")
        if not token:
            raise APIError(f"{ROUTE_SUBMIT_INVOICE} reply carried no token",
                           route=ROUTE_SUBMIT_INVOICE)
        logger.info(f"Submitted invoice {invoice.period} as {token}")
        return token

    def set_invoice_status(self, token: str, status: int, reason: str = "",
                           identity: Optional[Identity] = None) -> Dict[str, Any]:
        current = self._require_session("set invoice status")
        identity = identity or self._identity_for(current.email)
        return self._make_request("POST", ROUTE_SET_INVOICE_STATUS, {
            "token": token,
            "status": status,
            "reason": reason,
            "publickey": identity.public_key_hex,
            "signature": identity.sign(f"{token}{status}{reason}"),
        })

    def approve_invoice(self, token: str, identity: Optional[Identity] = None) -> None:
        self.set_invoice_status(token, INVOICE_STATUS_APPROVED, identity=identity)
        logger.info(f"Approved invoice {token}")

    def reject_invoice(self, token: str, reason: str = "Rejected by dataload",
                       identity: Optional[Identity] = None) -> None:
        self.set_invoice_status(token, INVOICE_STATUS_REJECTED, reason, identity=identity)
        logger.info(f"Rejected invoice {token}")

    # ---- admin --------------------------------------------------------------
    def delete_all_data(self) -> None:
        self._require_session("delete all data")
        self._make_request("POST", ROUTE_DELETE_ALL_DATA, {})
        logger.info("Deleted all cmswww data")

    def close(self):
        self.http.close()

    def __enter__(self):
        """Context manager entry"""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit"""
        self.close()
